"""
Slot detector.

Детектор свободных слотов:
- определяет тип текущей страницы и при необходимости переходит к календарю
- берёт тест-центр (селект → подпись → параметр URL)
- разбирает даты основной стратегией, при неудаче запасной
- для первых N дат раскрывает список времени и собирает слоты
- валидирует результат; наружу исключения не пробрасываются
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence

from .behavior import BehaviorPolicy
from .driver import PageDriver
from .errors import ElementNotFound, ParseFailure
from .models import Monitor, PageKind, Slot, SlotKind
from .snapshot import (
    TIME_CONTAINER,
    TIME_SLOT,
    DateCandidate,
    PageSnapshot,
    RawSlot,
    calendar_ready,
    challenge_present,
    classify_page,
    extract_centre,
    extract_time_slots,
    find_link,
    fuzzy_match,
    parse_date_text,
    parse_marked_dates,
    validate_slots,
)
from .utils import wait_until

logger = logging.getLogger(__name__)


DateStrategy = Callable[[PageSnapshot], list[DateCandidate]]


@dataclass
class MonitorSlots:
    monitor_id: str
    slots: list[Slot]


@dataclass
class CheckReport:
    slots_found: list[MonitorSlots] = field(default_factory=list)
    total_slots: int = 0


def find_available_dates(
    snapshot: PageSnapshot,
    strategies: Sequence[DateStrategy] = (parse_marked_dates, parse_date_text),
) -> list[DateCandidate]:
    """
    Run date strategies in order until one yields dates.

    Raises ParseFailure when every strategy raised.
    """
    last_error: Optional[Exception] = None
    failures = 0
    for strategy in strategies:
        try:
            dates = strategy(snapshot)
        except Exception as e:  # noqa: BLE001
            failures += 1
            last_error = e
            logger.warning("Date strategy %s failed: %s", getattr(strategy, "__name__", strategy), e)
            continue
        if dates:
            return dates
    if failures == len(strategies):
        raise ParseFailure("Calendar parsing failed") from last_error
    return []


def assign_to_monitors(slots: Sequence[Slot], monitors: Sequence[Monitor]) -> list[MonitorSlots]:
    """Group slots per monitor by centre name and date window."""
    groups: list[MonitorSlots] = []
    for monitor in monitors:
        matched = [
            slot
            for slot in slots
            if monitor.wants_date(slot.date)
            and fuzzy_match(slot.location, monitor.test_centres) is not None
        ]
        if matched:
            groups.append(MonitorSlots(monitor_id=monitor.id, slots=matched))
    return groups


class SlotDetector:
    def __init__(
        self,
        behavior: BehaviorPolicy,
        change_url: str,
        *,
        max_dates: int = 10,
        load_timeout: float = 10.0,
        navigation_timeout: float = 5.0,
        reveal_timeout: float = 3.0,
        strategies: Sequence[DateStrategy] = (parse_marked_dates, parse_date_text),
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.behavior = behavior
        self.change_url = change_url
        self.max_dates = max_dates
        self.load_timeout = load_timeout
        self.navigation_timeout = navigation_timeout
        self.reveal_timeout = reveal_timeout
        self.strategies = tuple(strategies)
        self._clock = clock

    async def perform_check(self, driver: PageDriver, monitors: Sequence[Monitor]) -> CheckReport:
        slots = await self.detect(driver)
        groups = assign_to_monitors(slots, monitors)
        return CheckReport(slots_found=groups, total_slots=len(slots))

    async def detect(self, driver: PageDriver) -> list[Slot]:
        """Return validated slots on the current calendar; [] on any failure."""
        try:
            return await self._detect(driver)
        except Exception as e:  # noqa: BLE001
            logger.error("Slot detection failed: %s", e)
            return []

    async def _detect(self, driver: PageDriver) -> list[Slot]:
        snapshot = await driver.snapshot()
        if challenge_present(snapshot):
            logger.warning("Captcha / bot wall on %s, skipping check", snapshot.url)
            return []

        kind = classify_page(snapshot)
        logger.info("Current page: %s", kind.value)

        if kind is not PageKind.CALENDAR:
            if not await self._navigate_to_calendar(driver, kind, snapshot):
                logger.error("Could not navigate to calendar page")
                return []

        if not await wait_until(lambda: self._calendar_loaded(driver), self.load_timeout):
            logger.error("Calendar did not load within %.0fs", self.load_timeout)
            return []

        snapshot = await driver.snapshot()
        centre = extract_centre(snapshot)
        logger.info("Test centre: %s (%s)", centre.name, centre.code)

        try:
            dates = find_available_dates(snapshot, self.strategies)
        except ParseFailure as e:
            logger.error("Both calendar parse methods failed: %s", e)
            return []

        logger.info("Found %s available dates", len(dates))
        if not dates:
            return []

        raw: list[RawSlot] = []
        probe = dates[: self.max_dates]
        for i, candidate in enumerate(probe):
            try:
                for t in await self._times_for(driver, candidate):
                    cancellation = candidate.is_cancellation or t.is_cancellation
                    raw.append(
                        RawSlot(
                            date=candidate.date,
                            time=t.time,
                            centre=centre.name,
                            centre_code=centre.code,
                            kind=SlotKind.CANCELLATION if cancellation else SlotKind.NEW,
                        )
                    )
            except Exception as e:  # noqa: BLE001
                logger.warning("Could not get time slots for %s: %s", candidate.date, e)
                continue

            if i < len(probe) - 1:
                await self.behavior.pause("probe")

        valid = validate_slots(raw, now=self._clock())
        logger.info("Slot detection complete: %s valid slots", len(valid))
        return valid

    async def _calendar_loaded(self, driver: PageDriver) -> bool:
        return calendar_ready(await driver.snapshot())

    async def _navigate_to_calendar(
        self, driver: PageDriver, kind: PageKind, snapshot: PageSnapshot
    ) -> bool:
        if kind is PageKind.LOGIN:
            logger.warning("Still on login page - user needs to log in first")
            return False

        link = find_link(snapshot, "change", "reschedule") if kind is PageKind.LISTING else None
        if link:
            await driver.click(link)
        else:
            logger.info("Attempting direct navigation to %s", self.change_url)
            await driver.goto(self.change_url, timeout=self.navigation_timeout)

        if not await driver.wait_for_load(self.navigation_timeout):
            logger.warning("Navigation did not complete within %.0fs", self.navigation_timeout)
        return True

    async def _times_for(self, driver: PageDriver, candidate: DateCandidate):
        if candidate.selector:
            await driver.click(candidate.selector)
            try:
                await driver.wait_for(f"{TIME_CONTAINER}, {TIME_SLOT}", timeout=self.reveal_timeout)
            except ElementNotFound:
                logger.warning("Time slots for %s did not appear", candidate.date)
        snapshot = await driver.snapshot()
        times = extract_time_slots(snapshot)
        logger.info("Found %s time slots for %s", len(times), candidate.date)
        return times


__all__ = [
    "SlotDetector",
    "CheckReport",
    "MonitorSlots",
    "assign_to_monitors",
    "find_available_dates",
]
