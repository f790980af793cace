"""
Live-page operations used by the detector and the booking engine.

Все ожидания ограничены таймаутом (секунды): по истечении бросается
ElementNotFound / NavigationTimeout, а не бесконечное ожидание.
"""

from __future__ import annotations

from typing import Optional, Protocol

from .snapshot import PageSnapshot


class PageDriver(Protocol):
    async def current_url(self) -> str: ...

    async def snapshot(self) -> PageSnapshot: ...

    async def goto(self, url: str, timeout: float = 10.0) -> None: ...

    async def wait_for_load(self, timeout: float = 5.0) -> bool: ...

    async def wait_for(self, selector: str, timeout: float = 5.0) -> None: ...

    async def exists(self, selector: str) -> bool: ...

    async def click(self, selector: str) -> None: ...

    async def hover(self, selector: str) -> None: ...

    async def scroll_into_view(self, selector: str) -> None: ...

    async def bounding_box(self, selector: str) -> Optional[dict[str, float]]: ...

    async def mouse_move(self, x: float, y: float) -> None: ...

    async def clear(self, selector: str) -> None: ...

    async def type_char(self, selector: str, char: str) -> None: ...

    async def dispatch_event(self, selector: str, event: str) -> None: ...

    async def select_option(self, selector: str, value: str) -> None: ...

    async def highlight(self, selector: str) -> None: ...


class ContextProvider(Protocol):
    """Hands out page contexts on the target site."""

    async def acquire(self) -> PageDriver: ...

    async def open_booking(self) -> PageDriver: ...


__all__ = ["PageDriver", "ContextProvider"]
