"""
Utility helpers: logging setup, interval jitter, retries, bounded polling.

Вспомогательные функции: логирование с ротацией, разброс интервала,
ретраи с экспоненциальной задержкой и ожидание условия с таймаутом.
"""

from __future__ import annotations

import asyncio
import logging
import random
from functools import wraps
from logging.handlers import RotatingFileHandler
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .config import LoggingConfig, get_settings


T = TypeVar("T")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
# Библиотеки, которые слишком болтливы на INFO
QUIET_LOGGERS = ("aiogram.event", "asyncio")


def _handlers(logging_cfg: LoggingConfig) -> list[logging.Handler]:
    logging_cfg.logs_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    to_file = RotatingFileHandler(
        logging_cfg.logs_dir / "slotwatch.log",
        maxBytes=logging_cfg.max_bytes,
        backupCount=logging_cfg.backup_count,
        encoding="utf-8",
    )
    to_console = logging.StreamHandler()
    for handler in (to_file, to_console):
        handler.setFormatter(formatter)
    return [to_file, to_console]


def setup_logging(logging_cfg: LoggingConfig | None = None) -> None:
    """
    Install the rotating file handler and the console handler on the root logger.

    Повторный вызов заменяет обработчики, а не добавляет новые.
    """
    logging_cfg = logging_cfg or get_settings().logging

    root = logging.getLogger()
    root.setLevel(logging_cfg.log_level.upper())
    root.handlers.clear()
    for handler in _handlers(logging_cfg):
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def jitter_delay(
    base_seconds: float,
    variation_seconds: float,
    floor: float = 1.0,
    rng: Optional[random.Random] = None,
) -> float:
    """Base delay shifted by a uniform +/- variation, never below `floor`."""
    if variation_seconds <= 0:
        return float(base_seconds)
    uniform = (rng or random).uniform
    return max(floor, base_seconds + uniform(-variation_seconds, variation_seconds))


async def wait_until(
    predicate: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float = 0.25,
) -> bool:
    """
    Poll an async predicate until it is true or the timeout elapses.

    Возвращает False по таймауту, исключения предиката пробрасываются.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if await predicate():
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))


def async_retry(
    attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Retry an async callable with doubling delays.

    Последняя ошибка пробрасывается, когда попытки кончились.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        name = getattr(func, "__qualname__", None) or repr(func)
        log = logging.getLogger(getattr(func, "__module__", None) or __name__)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            delay = base_delay
            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as exc:  # type: ignore[misc]
                    if attempt >= attempts:
                        raise
                    log.warning(
                        "%s failed (%s), retry %s/%s in %.1fs",
                        name,
                        exc,
                        attempt,
                        attempts - 1,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    delay = min(max_delay, delay * 2)
            raise RuntimeError(f"{name}: no attempts configured")

        return wrapper

    return decorator


__all__ = ["setup_logging", "jitter_delay", "wait_until", "async_retry"]
