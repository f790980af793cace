"""
Immutable page snapshots and the pure parsers over them.

Снимок страницы (URL + HTML) и чистые функции разбора: тип страницы,
тест-центр, доступные даты (основная и запасная стратегии), время, валидация.
Живая страница здесь не нужна, всё тестируется на строках HTML.
"""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from functools import cached_property
from typing import Iterable, Optional
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup, Tag
from pydantic import ValidationError

from .errors import ParseFailure
from .models import PageKind, Slot, SlotKind

logger = logging.getLogger(__name__)


# region selectors
CALENDAR_CONTAINER = (
    ".BookingCalendar, .booking-calendar, [data-module='booking-calendar'], .calendar"
)
DATES_CONTAINER = ".BookingCalendar-datesContainer, .calendar-dates, .booking-calendar-dates"
DATE_CELL = ".BookingCalendar-date, .calendar-date, [data-date]"
AVAILABLE_DATE = "[data-available='true'], .date-available, .BookingCalendar-date--bookable"
MONTH_HEADER = ".calendar-month, .BookingCalendar-month"
YEAR_HEADER = ".calendar-year, .BookingCalendar-year"

TIME_CONTAINER = ".time-slots, .available-times, [data-module='time-slots']"
TIME_SLOT = ".time-slot, .available-time, button[data-time]"

CENTRE_SELECT = "#test-centre, #testCentre, select[name*='centre']"
CENTRE_DISPLAY = ".test-centre-name, .centre-name, [data-centre-name]"

LOGIN_MARKERS = "#email, #password, .login-form"
LISTING_MARKERS = ".manage-booking, [data-page='manage']"
CALENDAR_MARKERS = ".BookingCalendar, .booking-calendar"
CONFIRM_MARKERS = ".confirm-booking, [data-page='confirm']"

UNAVAILABLE_CLASSES = frozenset(
    {"date-unavailable", "BookingCalendar-date--unavailable", "disabled", "unavailable"}
)
CANCELLATION_CLASSES = frozenset({"cancellation", "BookingCalendar-date--cancellation"})
CANCELLATION_MARKER = ".cancellation-indicator"
# endregion

CHALLENGE_TOKENS = ("captcha", "verify you are human", "cloudflare", "queue-it")

MONTHS = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}

TIME_RE = re.compile(r"(\d{1,2}):(\d{2})")
DATE_TEXT_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})"
    r"|(\d{1,2})/(\d{1,2})/(\d{4})"
    r"|(\d{1,2})\s+([A-Za-z]+)\s+(\d{4})"
)
_SIMPLE_ID_RE = re.compile(r"^[A-Za-z][\w-]*$")


@dataclass(frozen=True)
class PageSnapshot:
    """Point-in-time copy of a page: its URL and serialised DOM."""

    url: str
    html: str

    @cached_property
    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.html, "html.parser")

    def has(self, selector: str) -> bool:
        return self.soup.select_one(selector) is not None

    def text(self) -> str:
        return self.soup.get_text(" ", strip=True)


@dataclass(frozen=True)
class Centre:
    code: str
    name: str


UNKNOWN_CENTRE = Centre(code="UNKNOWN", name="unknown")


@dataclass(frozen=True)
class DateCandidate:
    date: str
    is_cancellation: bool
    selector: Optional[str]


@dataclass(frozen=True)
class TimeCandidate:
    time: str
    is_cancellation: bool = False


@dataclass(frozen=True)
class RawSlot:
    """Slot as scraped, before validation."""

    date: Optional[str]
    time: Optional[str]
    centre: Optional[str]
    centre_code: Optional[str] = None
    kind: SlotKind = SlotKind.NEW


# region helpers
def _classes(tag: Tag) -> set[str]:
    return set(tag.get("class") or [])


def _is_disabled(tag: Tag) -> bool:
    if tag.has_attr("disabled") or tag.get("aria-disabled") == "true":
        return True
    if tag.get("data-available") == "false":
        return True
    return bool(_classes(tag) & UNAVAILABLE_CLASSES)


def _has_cancellation_marker(tag: Tag) -> bool:
    if _classes(tag) & CANCELLATION_CLASSES:
        return True
    return tag.select_one(CANCELLATION_MARKER) is not None


def css_path(tag: Tag) -> str:
    """Structural nth-of-type path from the document root to the tag."""
    parts: list[str] = []
    node: Optional[Tag] = tag
    while node is not None and isinstance(node, Tag) and node.name != "[document]":
        node_id = node.get("id")
        if isinstance(node_id, str) and _SIMPLE_ID_RE.match(node_id):
            parts.append(f"#{node_id}")
            break
        parent = node.parent
        index = 1
        if parent is not None:
            same = parent.find_all(node.name, recursive=False)
            index = next(i for i, s in enumerate(same, start=1) if s is node)
        parts.append(f"{node.name}:nth-of-type({index})")
        node = parent
    return " > ".join(reversed(parts))


def selector_for(tag: Tag) -> str:
    """Stable selector for a tag, preferring id and data attributes."""
    node_id = tag.get("id")
    if isinstance(node_id, str) and _SIMPLE_ID_RE.match(node_id):
        return f"#{node_id}"
    for attr in ("data-date", "data-time"):
        value = tag.get(attr)
        if value:
            return f'{tag.name}[{attr}="{value}"]'
    return css_path(tag)


def month_number(name: str) -> Optional[int]:
    normalized = name.strip().lower()
    for month, num in MONTHS.items():
        if month in normalized:
            return num
    # короткие формы: "Nov", "Sept"
    for month, num in MONTHS.items():
        if normalized[:3] == month[:3]:
            return num
    return None


def centre_code(text: str) -> str:
    match = re.search(r"([A-Z]{2,}(?:-[A-Z]{2,})?)", text)
    return match.group(1) if match else re.sub(r"\s+", "-", text.strip().upper())


def normalize_name(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", " ", value.lower()).strip()


def fuzzy_match(name: str, candidates: Iterable[str], cutoff: float = 0.8) -> Optional[int]:
    """Index of the candidate that best matches `name`, or None."""
    target = normalize_name(name)
    if not target:
        return None
    normalized = [normalize_name(c) for c in candidates]
    for i, cand in enumerate(normalized):
        if cand == target:
            return i
    for i, cand in enumerate(normalized):
        if cand and (target in cand or cand in target):
            return i
    best_index: Optional[int] = None
    best_ratio = cutoff
    for i, cand in enumerate(normalized):
        ratio = difflib.SequenceMatcher(None, target, cand).ratio()
        if ratio >= best_ratio:
            best_index, best_ratio = i, ratio
    return best_index


# endregion


def challenge_present(snapshot: PageSnapshot) -> bool:
    """Captcha / bot-wall heuristics on visible text."""
    lower = snapshot.text().lower()
    return any(token in lower for token in CHALLENGE_TOKENS)


def classify_page(snapshot: PageSnapshot) -> PageKind:
    url = snapshot.url.lower()
    if "/login" in url or snapshot.has(LOGIN_MARKERS):
        return PageKind.LOGIN
    if "/manage" in url or snapshot.has(LISTING_MARKERS):
        return PageKind.LISTING
    if "/change" in url or "/choose-appointment" in url or snapshot.has(CALENDAR_MARKERS):
        return PageKind.CALENDAR
    if "/confirm" in url or snapshot.has(CONFIRM_MARKERS):
        return PageKind.CONFIRM
    if snapshot.has(CALENDAR_CONTAINER):
        return PageKind.CALENDAR
    return PageKind.UNKNOWN


def classify_booking_page(url: str) -> PageKind:
    url = url.lower()
    if "/login" in url:
        return PageKind.LOGIN
    if "/change-booking" in url:
        return PageKind.CHANGE_BOOKING
    if "/select-test-centre" in url:
        return PageKind.SELECT_CENTRE
    if "/choose-appointment" in url:
        return PageKind.CHOOSE_APPOINTMENT
    if "/confirm-appointment" in url:
        return PageKind.CONFIRM
    return PageKind.UNKNOWN


def calendar_ready(snapshot: PageSnapshot) -> bool:
    container = snapshot.soup.select_one(CALENDAR_CONTAINER)
    if container is None:
        return False
    dates = snapshot.soup.select_one(DATES_CONTAINER)
    if dates is not None and dates.find(True) is not None:
        return True
    return container.select_one(DATE_CELL) is not None


def find_link(snapshot: PageSnapshot, *words: str, match_all: bool = False) -> Optional[str]:
    """Selector of the first link whose text contains the given words."""
    needles = [w.lower() for w in words]
    check = all if match_all else any
    for link in snapshot.soup.find_all("a"):
        text = link.get_text(" ", strip=True).lower()
        if text and check(n in text for n in needles):
            return selector_for(link)
    return None


def select_options(snapshot: PageSnapshot, selector: str) -> list[tuple[str, str]]:
    select = snapshot.soup.select_one(selector)
    if select is None:
        return []
    return [
        (str(opt.get("value", "")), opt.get_text(" ", strip=True))
        for opt in select.find_all("option")
    ]


def extract_centre(snapshot: PageSnapshot) -> Centre:
    """Centre from the picker, then the display label, then the URL."""
    soup = snapshot.soup
    select = soup.select_one(CENTRE_SELECT)
    if select is not None:
        option = select.find("option", selected=True) or select.find("option")
        if option is not None:
            name = option.get_text(" ", strip=True)
            code = str(option.get("value") or "") or centre_code(name)
            if name:
                return Centre(code=code, name=name)

    display = soup.select_one(CENTRE_DISPLAY)
    if display is not None:
        text = display.get_text(" ", strip=True) or str(display.get("data-centre-name") or "")
        if text:
            return Centre(code=centre_code(text), name=text)

    params = parse_qs(urlparse(snapshot.url).query)
    value = (params.get("centre") or params.get("testCentre") or [""])[0]
    if value:
        return Centre(code=value, name=value)

    logger.warning("Could not determine test centre on %s", snapshot.url)
    return UNKNOWN_CENTRE


def displayed_month(snapshot: PageSnapshot, today: Optional[date] = None) -> Optional[tuple[int, int]]:
    """(year, month) shown in the calendar header."""
    today = today or date.today()
    header = snapshot.soup.select_one(MONTH_HEADER)
    if header is None:
        return None
    text = header.get_text(" ", strip=True)
    month = month_number(text)
    if month is None:
        return None
    year_match = re.search(r"\d{4}", text)
    if year_match is None:
        year_el = snapshot.soup.select_one(YEAR_HEADER)
        if year_el is not None:
            year_match = re.search(r"\d{4}", year_el.get_text())
    year = int(year_match.group(0)) if year_match else today.year
    return year, month


def _cell_date(cell: Tag, header: Optional[tuple[int, int]], today: date) -> Optional[str]:
    if cell.get("data-date"):
        return str(cell["data-date"]).strip()

    year, month = header or (today.year, today.month)
    if cell.get("data-day"):
        day = str(cell["data-day"])
        month = int(cell.get("data-month") or month)
        year = int(cell.get("data-year") or year)
        return f"{year}-{month:02d}-{int(day):02d}"

    day_match = re.search(r"\d+", cell.get_text(" ", strip=True))
    if day_match:
        return f"{year}-{month:02d}-{int(day_match.group(0)):02d}"
    return None


def parse_marked_dates(snapshot: PageSnapshot, today: Optional[date] = None) -> list[DateCandidate]:
    """
    Primary strategy: cells with explicit availability markers.

    Дата берётся из data-date, из data-day/month/year или из текста ячейки
    плюс месяц/год из заголовка календаря.
    """
    today = today or date.today()
    header = displayed_month(snapshot, today)
    found: list[DateCandidate] = []
    seen: set[str] = set()
    for cell in snapshot.soup.select(AVAILABLE_DATE):
        if _is_disabled(cell):
            continue
        iso = _cell_date(cell, header, today)
        if not iso or iso in seen:
            continue
        seen.add(iso)
        found.append(
            DateCandidate(
                date=iso,
                is_cancellation=_has_cancellation_marker(cell),
                selector=selector_for(cell),
            )
        )
    return found


def _date_from_match(match: re.Match[str]) -> Optional[str]:
    if match.group(1):
        return f"{match.group(1)}-{match.group(2)}-{match.group(3)}"
    if match.group(4):
        return f"{match.group(6)}-{int(match.group(5)):02d}-{int(match.group(4)):02d}"
    if match.group(7):
        month = month_number(match.group(8))
        if month is None:
            return None
        return f"{match.group(9)}-{month:02d}-{int(match.group(7)):02d}"
    return None


def parse_date_text(snapshot: PageSnapshot, today: Optional[date] = None) -> list[DateCandidate]:
    """Fallback strategy: date-looking text on any interactive calendar element."""
    container = snapshot.soup.select_one(CALENDAR_CONTAINER)
    if container is None:
        raise ParseFailure("Calendar not found")

    found: list[DateCandidate] = []
    seen: set[str] = set()
    for element in container.select("a, button, [data-date]"):
        if _is_disabled(element):
            continue
        text = (
            element.get("data-date")
            or element.get("aria-label")
            or element.get_text(" ", strip=True)
        )
        match = DATE_TEXT_RE.search(str(text))
        if not match:
            continue
        iso = _date_from_match(match)
        if not iso or iso in seen:
            continue
        seen.add(iso)
        found.append(
            DateCandidate(
                date=iso,
                is_cancellation=_has_cancellation_marker(element),
                selector=selector_for(element),
            )
        )
    return found


def extract_time_slots(snapshot: PageSnapshot) -> list[TimeCandidate]:
    times: list[TimeCandidate] = []
    seen: set[str] = set()
    for element in snapshot.soup.select(TIME_SLOT):
        if _is_disabled(element):
            continue
        text = element.get("data-time") or element.get("value") or element.get_text(" ", strip=True)
        match = TIME_RE.search(str(text))
        if not match:
            continue
        value = f"{int(match.group(1)):02d}:{match.group(2)}"
        if value in seen:
            continue
        seen.add(value)
        times.append(TimeCandidate(time=value, is_cancellation=_has_cancellation_marker(element)))
    return times


def validate_slots(raw: Iterable[RawSlot], now: Optional[datetime] = None) -> list[Slot]:
    """Drop incomplete, unparseable and non-future entries."""
    now = now or datetime.now()
    valid: list[Slot] = []
    for item in raw:
        if not item.date or not item.time or not item.centre:
            continue
        try:
            day = date.fromisoformat(item.date)
            datetime.strptime(item.time, "%H:%M")
        except ValueError:
            logger.debug("Dropping unparseable slot %s", item)
            continue
        # Слоты на сегодня уже не успеть, нужна дата строго позже сегодняшней
        if day <= now.date():
            continue
        try:
            valid.append(
                Slot(
                    date=day,
                    time=item.time,
                    location=item.centre,
                    location_code=item.centre_code,
                    kind=item.kind,
                    detected_at=now,
                )
            )
        except ValidationError as e:
            logger.debug("Dropping invalid slot %s: %s", item, e)
    return valid


__all__ = [
    "PageSnapshot",
    "Centre",
    "DateCandidate",
    "TimeCandidate",
    "RawSlot",
    "challenge_present",
    "classify_page",
    "classify_booking_page",
    "calendar_ready",
    "displayed_month",
    "extract_centre",
    "extract_time_slots",
    "find_link",
    "fuzzy_match",
    "month_number",
    "parse_date_text",
    "parse_marked_dates",
    "select_options",
    "validate_slots",
]
