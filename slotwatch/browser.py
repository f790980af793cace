"""
Playwright browser lifecycle and the live-page driver.

Браузерный модуль на Playwright:
- подключение к уже запущенному Chrome по CDP (или автозапуск Chrome с отладкой)
- обычный запуск Playwright с сохранением storage_state между сессиями
- перезапуск браузера после максимального времени жизни
- PlaywrightDriver: операции над живой страницей с ограниченными ожиданиями
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .config import DATA_DIR, BrowserConfig, SiteConfig, StorageConfig
from .errors import ElementNotFound, NavigationTimeout, NotInitialized
from .snapshot import PageSnapshot

logger = logging.getLogger(__name__)


# Порт по умолчанию для CDP
DEFAULT_CDP_PORT = 9222

HIGHLIGHT_SCRIPT = """
el => {
    el.scrollIntoView({behavior: 'smooth', block: 'center'});
    el.style.outline = '3px solid #ff9800';
    el.style.boxShadow = '0 0 12px rgba(255, 152, 0, 0.8)';
}
"""


def _ms(seconds: float) -> float:
    return seconds * 1000


def _find_chrome_executable() -> Optional[str]:
    """Ищем Chrome: сначала CHROME_PATH из .env, потом стандартные пути."""
    env_path = os.environ.get("CHROME_PATH", "").strip()
    if env_path:
        p = Path(env_path)
        if p.is_file():
            return str(p)
        # если указана папка Application
        if p.is_dir() and (p / "chrome.exe").exists():
            return str(p / "chrome.exe")

    if sys.platform == "win32":
        candidates = [
            Path(os.environ.get("LOCALAPPDATA", "")) / "Google" / "Chrome" / "Application" / "chrome.exe",
            Path(r"C:\Program Files\Google\Chrome\Application\chrome.exe"),
            Path(r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe"),
        ]
        for p in candidates:
            if p.exists():
                return str(p)
        return None

    if sys.platform == "darwin":
        mac = Path("/Applications/Google Chrome.app/Contents/MacOS/Google Chrome")
        return str(mac) if mac.exists() else None

    for name in ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser"):
        found = shutil.which(name)
        if found:
            return found
    return None


def _launch_chrome_with_cdp(port: int) -> bool:
    """
    Запускаем Chrome с --remote-debugging-port=port.

    Отдельный --user-data-dir нужен, чтобы поднялся новый процесс с открытым портом,
    даже если обычный Chrome уже запущен. В этом профиле пользователь логинится сам.
    """
    chrome = _find_chrome_executable()
    if not chrome:
        logger.warning("Chrome not found, skipping CDP auto-launch")
        return False
    user_data_dir = DATA_DIR / "chrome_cdp_profile"
    user_data_dir.mkdir(parents=True, exist_ok=True)
    try:
        subprocess.Popen(
            [chrome, f"--remote-debugging-port={port}", f"--user-data-dir={user_data_dir}"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as e:
        logger.warning("Failed to launch Chrome: %s", e)
        return False
    logger.info("Launched Chrome with remote debugging on port %s", port)
    return True


class PlaywrightDriver:
    """PageDriver over a single Playwright page. Timeouts are in seconds."""

    def __init__(self, page: Page, default_timeout: float = 5.0) -> None:
        self.page = page
        self.default_timeout = default_timeout

    async def current_url(self) -> str:
        return self.page.url

    async def snapshot(self) -> PageSnapshot:
        return PageSnapshot(url=self.page.url, html=await self.page.content())

    async def goto(self, url: str, timeout: float = 10.0) -> None:
        try:
            await self.page.goto(url, wait_until="domcontentloaded", timeout=_ms(timeout))
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(f"Navigation to {url} timed out after {timeout:.0f}s") from e

    async def wait_for_load(self, timeout: float = 5.0) -> bool:
        try:
            await self.page.wait_for_load_state("load", timeout=_ms(timeout))
        except PlaywrightTimeoutError:
            return False
        return True

    async def wait_for(self, selector: str, timeout: float = 5.0) -> None:
        try:
            await self.page.wait_for_selector(selector, state="attached", timeout=_ms(timeout))
        except PlaywrightTimeoutError as e:
            raise ElementNotFound(f"Element {selector} not found after {timeout:.0f}s") from e

    async def exists(self, selector: str) -> bool:
        return await self.page.locator(selector).count() > 0

    async def click(self, selector: str) -> None:
        try:
            await self.page.locator(selector).first.click(timeout=_ms(self.default_timeout))
        except PlaywrightTimeoutError as e:
            raise ElementNotFound(f"Element {selector} is not clickable") from e

    async def hover(self, selector: str) -> None:
        try:
            await self.page.locator(selector).first.hover(timeout=_ms(self.default_timeout))
        except PlaywrightTimeoutError as e:
            raise ElementNotFound(f"Element {selector} cannot be hovered") from e

    async def scroll_into_view(self, selector: str) -> None:
        try:
            await self.page.locator(selector).first.scroll_into_view_if_needed(
                timeout=_ms(self.default_timeout)
            )
        except PlaywrightTimeoutError as e:
            raise ElementNotFound(f"Element {selector} not found") from e

    async def bounding_box(self, selector: str) -> Optional[dict[str, float]]:
        locator = self.page.locator(selector).first
        if not await locator.count():
            return None
        box = await locator.bounding_box()
        return dict(box) if box else None

    async def mouse_move(self, x: float, y: float) -> None:
        await self.page.mouse.move(x, y)

    async def clear(self, selector: str) -> None:
        await self.page.locator(selector).first.fill("", timeout=_ms(self.default_timeout))

    async def type_char(self, selector: str, char: str) -> None:
        await self.page.locator(selector).first.press_sequentially(char)

    async def dispatch_event(self, selector: str, event: str) -> None:
        await self.page.locator(selector).first.dispatch_event(event)

    async def select_option(self, selector: str, value: str) -> None:
        await self.page.locator(selector).first.select_option(value=value)

    async def highlight(self, selector: str) -> None:
        await self.page.locator(selector).first.evaluate(HIGHLIGHT_SCRIPT)


class SiteBrowser:
    """
    Owns the Playwright browser and hands out page drivers.

    acquire() отдаёт основную вкладку (для проверок), open_booking() открывает
    новую вкладку на странице логина для сценария бронирования.
    """

    def __init__(
        self,
        browser_cfg: BrowserConfig,
        site_cfg: SiteConfig,
        storage_cfg: StorageConfig,
    ) -> None:
        self.browser_cfg = browser_cfg
        self.site_cfg = site_cfg
        self.storage_cfg = storage_cfg
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._startup_ts: Optional[datetime] = None
        self._cdp_mode: bool = False  # True = подключены к уже запущенному Chrome
        self._lock = asyncio.Lock()

    @property
    def page(self) -> Page:
        if not self._page:
            raise NotInitialized("Browser not initialised")
        return self._page

    async def acquire(self) -> PlaywrightDriver:
        async with self._lock:
            await self._ensure_browser()
            if self._page is None or self._page.is_closed():
                self._page = await self._context.new_page()  # type: ignore[union-attr]
            return PlaywrightDriver(self.page)

    async def open_booking(self) -> PlaywrightDriver:
        async with self._lock:
            await self._ensure_browser()
            page = await self._context.new_page()  # type: ignore[union-attr]
        driver = PlaywrightDriver(page)
        logger.info("Opening booking tab at %s", self.site_cfg.login_url)
        await driver.goto(self.site_cfg.login_url, timeout=30)
        return driver

    async def _ensure_browser(self) -> None:
        """
        Ensure browser and context are created.

        Ограничиваем время жизни браузера: при превышении пересоздаём.
        """
        now = datetime.now()
        if self._browser and self._startup_ts:
            lifetime = (now - self._startup_ts).total_seconds()
            if lifetime > self.browser_cfg.max_lifetime_seconds:
                logger.info("Restarting browser after %.0f seconds", lifetime)
                await self._shutdown()

        if self._browser:
            return

        # PWDEBUG включает инспектор Playwright и ломает CDP-режим
        os.environ.pop("PWDEBUG", None)
        self._playwright = await async_playwright().start()

        cdp_url = self.browser_cfg.cdp_url
        if cdp_url:
            await self._connect_cdp(cdp_url)
        else:
            await self._launch()
        self._startup_ts = now

    async def _connect_cdp(self, cdp_url: str) -> None:
        if self.browser_cfg.launch_cdp:
            port = urlparse(cdp_url).port or DEFAULT_CDP_PORT
            if _launch_chrome_with_cdp(port):
                await asyncio.sleep(5)

        logger.info("Connecting to Chrome at %s", cdp_url)
        assert self._playwright is not None
        last_error: Optional[Exception] = None
        for attempt in range(3):
            try:
                self._browser = await self._playwright.chromium.connect_over_cdp(cdp_url)
                break
            except Exception as e:  # noqa: BLE001
                last_error = e
                if attempt < 2:
                    await asyncio.sleep(2)
        else:
            hint = (
                " Set CHROME_LAUNCH_CDP=1 to let the bot start Chrome, or start it manually "
                "with --remote-debugging-port=9222"
            )
            raise NavigationTimeout(f"Could not connect to Chrome at {cdp_url}.{hint}") from last_error
        self._cdp_mode = True

        contexts = self._browser.contexts
        if contexts:
            self._context = contexts[0]
            self._page = self._context.pages[0] if self._context.pages else await self._context.new_page()
        else:
            self._context = await self._browser.new_context()
            self._page = await self._context.new_page()

    async def _launch(self) -> None:
        logger.info("Starting Playwright browser (headless=%s)", self.browser_cfg.headless)
        assert self._playwright is not None
        self._browser = await self._playwright.chromium.launch(
            channel="chrome",
            headless=self.browser_cfg.headless,
        )
        self._cdp_mode = False

        state_path = self.storage_cfg.storage_state_path
        self._context = await self._browser.new_context(
            viewport={"width": 1280, "height": 720},
            storage_state=state_path if state_path.exists() else None,
        )
        self._page = await self._context.new_page()

    async def _shutdown(self) -> None:
        """В режиме CDP только отключаемся, окно Chrome не закрываем."""
        logger.info("Closing Playwright browser%s", " (disconnect)" if self._cdp_mode else "")
        if not self._cdp_mode and self._context:
            try:
                state_path = self.storage_cfg.storage_state_path
                state_path.parent.mkdir(parents=True, exist_ok=True)
                await self._context.storage_state(path=str(state_path))
            except Exception as e:  # noqa: BLE001
                logger.warning("Failed to save storage_state: %s", e)
            await self._context.close()
        if self._browser:
            await self._browser.close()
        if self._playwright:
            await self._playwright.stop()

        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._startup_ts = None

    async def close(self) -> None:
        async with self._lock:
            await self._shutdown()


__all__ = ["SiteBrowser", "PlaywrightDriver"]
