"""
Command surface and the request/response channel to page contexts.

Команды образуют закрытый набор pydantic-моделей с дискриминатором `action`.
Канал к детектору/движку бронирования всегда возвращает ответ: ошибки и
таймауты превращаются в `success=False`, а не пробрасываются.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .booking import BookingEngine
from .detector import MonitorSlots, SlotDetector
from .driver import PageDriver
from .errors import UnknownCommand
from .models import Monitor, MonitorStatus, Slot

logger = logging.getLogger(__name__)


class _Command(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class StartMonitoring(_Command):
    action: Literal["startMonitoring"] = "startMonitoring"


class StopMonitoring(_Command):
    action: Literal["stopMonitoring"] = "stopMonitoring"


class EmergencyStop(_Command):
    action: Literal["emergencyStop"] = "emergencyStop"


class ManualCheck(_Command):
    action: Literal["manualCheck"] = "manualCheck"


class AddMonitor(_Command):
    action: Literal["addMonitor"] = "addMonitor"
    monitor: Monitor


class UpdateMonitor(_Command):
    action: Literal["updateMonitor"] = "updateMonitor"
    monitor_id: str
    updates: dict[str, Any]


class DeleteMonitor(_Command):
    action: Literal["deleteMonitor"] = "deleteMonitor"
    monitor_id: str


class ToggleMonitor(_Command):
    action: Literal["toggleMonitor"] = "toggleMonitor"
    monitor_id: str
    status: MonitorStatus


class UpdateSettings(_Command):
    action: Literal["updateSettings"] = "updateSettings"
    settings: dict[str, Any]


class GetMonitors(_Command):
    action: Literal["getMonitors"] = "getMonitors"


class GetStats(_Command):
    action: Literal["getStats"] = "getStats"


class GetRisk(_Command):
    action: Literal["getRisk"] = "getRisk"


class GetSettings(_Command):
    action: Literal["getSettings"] = "getSettings"


class CheckConnection(_Command):
    action: Literal["checkConnection"] = "checkConnection"


class BookSlot(_Command):
    action: Literal["bookSlot"] = "bookSlot"
    slot: Slot
    monitor_id: str


Command = Annotated[
    Union[
        StartMonitoring,
        StopMonitoring,
        EmergencyStop,
        ManualCheck,
        AddMonitor,
        UpdateMonitor,
        DeleteMonitor,
        ToggleMonitor,
        UpdateSettings,
        GetMonitors,
        GetStats,
        GetRisk,
        GetSettings,
        CheckConnection,
        BookSlot,
    ],
    Field(discriminator="action"),
]

COMMAND_TYPES: tuple[type[_Command], ...] = (
    StartMonitoring,
    StopMonitoring,
    EmergencyStop,
    ManualCheck,
    AddMonitor,
    UpdateMonitor,
    DeleteMonitor,
    ToggleMonitor,
    UpdateSettings,
    GetMonitors,
    GetStats,
    GetRisk,
    GetSettings,
    CheckConnection,
    BookSlot,
)
ACTIONS = frozenset(t.model_fields["action"].default for t in COMMAND_TYPES)

_command_adapter: TypeAdapter[Command] = TypeAdapter(Command)


def parse_command(payload: dict[str, Any]) -> Command:
    """
    Validate an action-tagged request.

    Raises UnknownCommand for an unknown action and ValidationError for
    a known action with a bad payload.
    """
    action = payload.get("action")
    if action not in ACTIONS:
        raise UnknownCommand(f"Unknown action: {action!r}")
    return _command_adapter.validate_python(payload)


class Response(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, message: Optional[str] = None, **data: Any) -> "Response":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, error: str) -> "Response":
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.message is not None:
            out["message"] = self.message
        if self.error is not None:
            out["error"] = self.error
        out.update(self.data)
        return out


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "Invalid request: " + "; ".join(parts)


# region collaborator messages
class PerformCheck(BaseModel):
    monitors: list[Monitor]


class AutoBook(BaseModel):
    slot: Slot
    monitor: Monitor


class CheckReply(BaseModel):
    success: bool
    slots_found: list[MonitorSlots] = Field(default_factory=list)
    error: Optional[str] = None


class BookingReply(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None


# endregion


class Channel:
    """
    Request/response link to the detector and booking engine.

    Запрос ждёт ответа не дольше таймаута; любая ошибка на той стороне
    возвращается как success=False с текстом ошибки.
    """

    def __init__(
        self,
        detector: SlotDetector,
        booking: BookingEngine,
        *,
        check_timeout: float = 120.0,
        booking_timeout: float = 180.0,
    ) -> None:
        self.detector = detector
        self.booking = booking
        self.check_timeout = check_timeout
        self.booking_timeout = booking_timeout

    async def perform_check(self, driver: PageDriver, request: PerformCheck) -> CheckReply:
        try:
            report = await asyncio.wait_for(
                self.detector.perform_check(driver, request.monitors),
                timeout=self.check_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Check timed out after %.0fs", self.check_timeout)
            return CheckReply(success=False, error=f"Check timed out after {self.check_timeout:.0f}s")
        except Exception as e:  # noqa: BLE001
            logger.exception("Check failed: %s", e)
            return CheckReply(success=False, error=str(e))
        return CheckReply(success=True, slots_found=report.slots_found)

    async def auto_book(self, driver: PageDriver, request: AutoBook) -> BookingReply:
        try:
            result = await asyncio.wait_for(
                self.booking.perform_auto_booking(driver, request.slot, request.monitor),
                timeout=self.booking_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Auto-booking timed out after %.0fs", self.booking_timeout)
            return BookingReply(
                success=False, error=f"Auto-booking timed out after {self.booking_timeout:.0f}s"
            )
        except Exception as e:  # noqa: BLE001
            logger.error("Auto-booking failed: %s", e)
            return BookingReply(success=False, error=str(e))
        return BookingReply(success=result.success, message=result.message)


__all__ = [
    "Command",
    "COMMAND_TYPES",
    "parse_command",
    "Response",
    "Channel",
    "PerformCheck",
    "AutoBook",
    "CheckReply",
    "BookingReply",
    "describe_validation_error",
]
