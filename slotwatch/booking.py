"""
Booking engine: pre-fills a reservation change up to the confirm step.

Движок автозаполнения: смена записи → номер прав → тест-центр → месяц
календаря → дата → время. Кнопку подтверждения только подсвечиваем,
финальное действие всегда делает человек.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from .behavior import BehaviorPolicy
from .driver import PageDriver
from .errors import (
    CentreNotFound,
    DateNotAvailable,
    ElementNotFound,
    TimeSlotNotFound,
)
from .models import Monitor, PageKind, Slot
from .snapshot import (
    TIME_RE,
    classify_booking_page,
    displayed_month,
    find_link,
    fuzzy_match,
    select_options,
    selector_for,
)

logger = logging.getLogger(__name__)


LICENCE_FIELD = "#driving-licence-number"
CENTRE_PICKER = "#test-centre-select"
SUBMIT_BUTTON = "button[type='submit']"
CALENDAR = ".calendar"
CALENDAR_NEXT = ".calendar-next"
CALENDAR_PREV = ".calendar-prev"
TIME_LIST = ".time-slots"
CONFIRM_BUTTON = "#confirm-booking, button[name='confirm']"

MAX_MONTH_STEPS = 24


@dataclass
class BookingResult:
    success: bool
    message: str = ""
    ready_for_confirmation: bool = False


class BookingEngine:
    def __init__(
        self,
        behavior: BehaviorPolicy,
        change_url: str,
        *,
        element_timeout: float = 5.0,
        navigation_timeout: float = 5.0,
        time_list_timeout: float = 3.0,
    ) -> None:
        self.behavior = behavior
        self.change_url = change_url
        self.element_timeout = element_timeout
        self.navigation_timeout = navigation_timeout
        self.time_list_timeout = time_list_timeout

    async def perform_auto_booking(self, driver: PageDriver, slot: Slot, monitor: Monitor) -> BookingResult:
        """
        Run the whole pre-fill workflow.

        Typed errors propagate; the channel turns them into a failed reply.
        """
        logger.info("Starting auto-booking for %s: %s", monitor.name, slot.summary())

        current = classify_booking_page(await driver.current_url())
        logger.info("Current page: %s", current.value)
        if current is not PageKind.CHANGE_BOOKING:
            await self.navigate_to_change_booking(driver)

        await self.fill_licence(driver, monitor.licence)
        await self.select_centre(driver, slot.location)
        await self.select_date(driver, slot.date)
        await self.select_time(driver, slot.time)
        await self.highlight_confirm(driver)

        logger.info("Auto-booking complete, waiting for user confirmation")
        return BookingResult(
            success=True,
            message="Booking form filled - please review and confirm",
            ready_for_confirmation=True,
        )

    async def human_click(self, driver: PageDriver, selector: str) -> None:
        """Scroll, pause, hover, click, pause."""
        await driver.scroll_into_view(selector)
        await self.behavior.pause("scroll")
        await self.behavior.move(driver, selector)
        await driver.hover(selector)
        await self.behavior.pause("hover")
        await driver.click(selector)
        await self.behavior.pause("click")

    async def navigate_to_change_booking(self, driver: PageDriver) -> None:
        snapshot = await driver.snapshot()
        link = find_link(snapshot, "change", "test", match_all=True)
        if link:
            await self.human_click(driver, link)
        else:
            logger.info("Change link not found, navigating to %s", self.change_url)
            await driver.goto(self.change_url, timeout=self.navigation_timeout)
        await driver.wait_for_load(self.navigation_timeout)

    async def fill_licence(self, driver: PageDriver, licence: str) -> None:
        if not licence:
            raise ElementNotFound("Monitor has no licence number to fill in")
        try:
            await driver.wait_for(LICENCE_FIELD, timeout=self.element_timeout)
        except ElementNotFound as e:
            raise ElementNotFound("License number field not found") from e

        await driver.scroll_into_view(LICENCE_FIELD)
        await driver.clear(LICENCE_FIELD)
        for char in licence:
            await driver.type_char(LICENCE_FIELD, char)
            await self.behavior.pause("keystroke")
        await driver.dispatch_event(LICENCE_FIELD, "change")
        await self.behavior.pause("settle")
        logger.info("Licence details filled")

    async def select_centre(self, driver: PageDriver, centre_name: str) -> None:
        try:
            await driver.wait_for(CENTRE_PICKER, timeout=self.element_timeout)
        except ElementNotFound as e:
            raise ElementNotFound("Test centre dropdown not found") from e

        options = select_options(await driver.snapshot(), CENTRE_PICKER)
        index = fuzzy_match(centre_name, [text for _, text in options])
        if index is None:
            index = fuzzy_match(centre_name, [value for value, _ in options])
        if index is None:
            raise CentreNotFound(f'Test centre "{centre_name}" not found in dropdown')

        value, label = options[index]
        await driver.select_option(CENTRE_PICKER, value)
        await driver.dispatch_event(CENTRE_PICKER, "change")
        await self.behavior.pause("settle")

        if await driver.exists(SUBMIT_BUTTON):
            await self.human_click(driver, SUBMIT_BUTTON)
            await driver.wait_for_load(self.navigation_timeout)
        logger.info("Test centre selected: %s", label)

    async def navigate_to_month(self, driver: PageDriver, year: int, month: int) -> None:
        """Step the calendar forwards or backwards until it shows year/month."""
        target = (year, month)
        for _ in range(MAX_MONTH_STEPS):
            shown = displayed_month(await driver.snapshot())
            if shown is None:
                raise ElementNotFound("Calendar month header not found")
            if shown == target:
                return
            button = CALENDAR_NEXT if shown < target else CALENDAR_PREV
            if not await driver.exists(button):
                raise DateNotAvailable(
                    f"Cannot move calendar from {shown[1]:02d}/{shown[0]} to {month:02d}/{year}"
                )
            await self.human_click(driver, button)
        raise DateNotAvailable(f"Calendar never reached {month:02d}/{year}")

    async def select_date(self, driver: PageDriver, target: date) -> None:
        try:
            await driver.wait_for(CALENDAR, timeout=self.element_timeout)
        except ElementNotFound as e:
            raise ElementNotFound("Calendar not found") from e

        await self.navigate_to_month(driver, target.year, target.month)

        iso = target.isoformat()
        selector = f'{CALENDAR} button[data-date="{iso}"]'
        snapshot = await driver.snapshot()
        button = snapshot.soup.select_one(selector)
        if button is None or button.has_attr("disabled"):
            raise DateNotAvailable(f"Date {iso} not available in calendar")
        await self.human_click(driver, selector)
        logger.info("Date selected: %s", iso)

    async def select_time(self, driver: PageDriver, target: str) -> None:
        try:
            await driver.wait_for(TIME_LIST, timeout=self.time_list_timeout)
        except ElementNotFound as e:
            raise TimeSlotNotFound(f"Time slot {target} not found") from e

        snapshot = await driver.snapshot()
        for button in snapshot.soup.select(f"{TIME_LIST} button"):
            label = str(button.get("data-time") or button.get_text(" ", strip=True))
            match = TIME_RE.search(label)
            shown = f"{int(match.group(1)):02d}:{match.group(2)}" if match else label
            if shown == target or target in label:
                await self.human_click(driver, selector_for(button))
                logger.info("Time slot selected: %s", target)
                return
        raise TimeSlotNotFound(f"Time slot {target} not found")

    async def highlight_confirm(self, driver: PageDriver) -> None:
        if await driver.exists(CONFIRM_BUTTON):
            await driver.highlight(CONFIRM_BUTTON)
            logger.info("Confirm button highlighted for user review")
        else:
            logger.warning("Confirm button not found, user must locate it manually")


__all__ = ["BookingEngine", "BookingResult"]
