"""Exception hierarchy for slotwatch."""


class SlotwatchError(Exception):
    """Base exception."""


class NotInitialized(SlotwatchError):
    """Detector or behavior policy used before initialisation."""


class ElementNotFound(SlotwatchError):
    """Element did not appear within the allowed wait."""


class NavigationTimeout(SlotwatchError):
    """Page did not finish loading in time."""


class ParseFailure(SlotwatchError):
    """Every date-parsing strategy failed."""


class QuotaExceeded(SlotwatchError):
    """No rebooks left on the current plan."""


class MonitorNotFound(SlotwatchError):
    """Unknown monitor id."""

    def __init__(self, monitor_id: str) -> None:
        super().__init__(f"Monitor not found: {monitor_id}")
        self.monitor_id = monitor_id


class UnknownCommand(SlotwatchError):
    """Command action is not part of the command surface."""


class BookingInProgress(SlotwatchError):
    """A booking workflow is already running for this monitor."""


class CentreNotFound(ElementNotFound):
    """Requested test centre is missing from the centre list."""


class DateNotAvailable(ElementNotFound):
    """Target date cannot be selected in the calendar."""


class TimeSlotNotFound(ElementNotFound):
    """Target time is missing from the time list."""
