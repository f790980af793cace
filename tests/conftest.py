"""Shared test fixtures: an in-memory page driver and a deterministic behavior policy."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

import pytest

from slotwatch.behavior import OperationResult
from slotwatch.errors import ElementNotFound
from slotwatch.snapshot import PageSnapshot

Page = Union[str, tuple[str, str]]


class FakeDriver:
    """
    PageDriver over static HTML.

    `transitions` maps a clicked selector to the next page (html, or (url, html));
    `pages` maps a URL to the html served by goto().
    """

    def __init__(
        self,
        url: str,
        html: str,
        transitions: Optional[dict[str, Page]] = None,
        pages: Optional[dict[str, str]] = None,
    ) -> None:
        self.url = url
        self.html = html
        self.transitions = transitions or {}
        self.pages = pages or {}
        self.clicks: list[str] = []
        self.hovers: list[str] = []
        self.visited: list[str] = []
        self.values: dict[str, str] = {}
        self.events: list[tuple[str, str]] = []
        self.selected: list[tuple[str, str]] = []
        self.highlighted: list[str] = []
        self.mouse: list[tuple[float, float]] = []

    def _snapshot(self) -> PageSnapshot:
        return PageSnapshot(url=self.url, html=self.html)

    def _show(self, page: Page) -> None:
        if isinstance(page, tuple):
            self.url, self.html = page
        else:
            self.html = page

    async def current_url(self) -> str:
        return self.url

    async def snapshot(self) -> PageSnapshot:
        return self._snapshot()

    async def goto(self, url: str, timeout: float = 10.0) -> None:
        self.visited.append(url)
        self.url = url
        if url in self.pages:
            self.html = self.pages[url]

    async def wait_for_load(self, timeout: float = 5.0) -> bool:
        return True

    async def wait_for(self, selector: str, timeout: float = 5.0) -> None:
        if not self._snapshot().has(selector):
            raise ElementNotFound(f"Element {selector} not found after {timeout:.0f}s")

    async def exists(self, selector: str) -> bool:
        return self._snapshot().has(selector)

    async def click(self, selector: str) -> None:
        if not self._snapshot().has(selector):
            raise ElementNotFound(f"Element {selector} is not clickable")
        self.clicks.append(selector)
        if selector in self.transitions:
            self._show(self.transitions[selector])

    async def hover(self, selector: str) -> None:
        self.hovers.append(selector)

    async def scroll_into_view(self, selector: str) -> None:
        if not self._snapshot().has(selector):
            raise ElementNotFound(f"Element {selector} not found")

    async def bounding_box(self, selector: str) -> Optional[dict[str, float]]:
        return {"x": 100.0, "y": 200.0, "width": 80.0, "height": 20.0}

    async def mouse_move(self, x: float, y: float) -> None:
        self.mouse.append((x, y))

    async def clear(self, selector: str) -> None:
        self.values[selector] = ""

    async def type_char(self, selector: str, char: str) -> None:
        self.values[selector] = self.values.get(selector, "") + char

    async def dispatch_event(self, selector: str, event: str) -> None:
        self.events.append((selector, event))

    async def select_option(self, selector: str, value: str) -> None:
        self.selected.append((selector, value))

    async def highlight(self, selector: str) -> None:
        self.highlighted.append(selector)


class NullBehavior:
    """Behavior policy without delays; records what was asked of it."""

    def __init__(self, block: bool = False) -> None:
        self.block = block
        self.initialized = False
        self.pauses: list[str] = []
        self.moves: list[str] = []
        self.operations: list[str] = []

    async def initialize(self) -> None:
        self.initialized = True

    async def execute_operation(self, name, thunk, context: Optional[dict[str, Any]] = None) -> OperationResult:
        self.operations.append(name)
        if self.block:
            return OperationResult(success=False, blocked=True)
        try:
            result = await thunk()
        except Exception as e:  # noqa: BLE001
            return OperationResult(success=False, error=str(e))
        return OperationResult(success=True, result=result)

    async def pause(self, kind: str) -> None:
        self.pauses.append(kind)

    async def move(self, driver, selector: str) -> None:
        self.moves.append(selector)

    def adaptive_interval(self, base_seconds: float, success_rate: float) -> float:
        return base_seconds


def calendar_page(dates: str, times: str = "", centre: str = "Manchester (Cheetham Hill)") -> str:
    return f"""
    <html><body>
      <div class="test-centre-name">{centre}</div>
      <div class="BookingCalendar">
        <h2 class="BookingCalendar-month">January 2030</h2>
        <div class="BookingCalendar-datesContainer">{dates}</div>
      </div>
      <div class="time-slots">{times}</div>
    </body></html>
    """


BOOKABLE_DATES = """
  <a class="BookingCalendar-date BookingCalendar-date--bookable" data-date="2030-01-15" data-available="true">15</a>
  <a class="BookingCalendar-date BookingCalendar-date--unavailable" data-date="2030-01-16">16</a>
  <a class="BookingCalendar-date BookingCalendar-date--bookable" data-date="2030-01-17" data-available="true">
    17 <span class="cancellation-indicator">C</span>
  </a>
"""

NO_AVAILABILITY_DATES = """
  <a class="BookingCalendar-date BookingCalendar-date--unavailable" data-date="2030-01-15">15</a>
  <a class="BookingCalendar-date BookingCalendar-date--unavailable" data-date="2030-01-16">16</a>
"""


@pytest.fixture
def behavior() -> NullBehavior:
    return NullBehavior()


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2029, 12, 1, 12, 0)


@pytest.fixture
def driver_factory():
    return FakeDriver


@pytest.fixture
def calendar():
    """Builder for calendar page HTML."""
    return calendar_page


@pytest.fixture
def bookable_dates() -> str:
    return BOOKABLE_DATES


@pytest.fixture
def empty_dates() -> str:
    return NO_AVAILABILITY_DATES
