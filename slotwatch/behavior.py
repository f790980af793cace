"""
Behavior policy: human-paced timing, pointer movement, operation gating.

Политика поведения внедряется в детектор, движок бронирования и оркестратор,
поэтому в тестах её легко заменить детерминированной заглушкой.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from .driver import PageDriver
from .errors import NotInitialized
from .models import RiskAssessment, RiskLevel

logger = logging.getLogger(__name__)


# Диапазоны пауз в секундах: (min, max)
PAUSE_RANGES: dict[str, tuple[float, float]] = {
    "probe": (0.3, 0.8),
    "scroll": (0.25, 0.4),
    "hover": (0.08, 0.15),
    "click": (0.4, 0.8),
    "keystroke": (0.05, 0.15),
    "settle": (0.2, 0.4),
    "think": (1.0, 3.0),
}


@dataclass
class OperationResult:
    success: bool
    result: Any = None
    risk_level: RiskLevel = RiskLevel.LOW
    blocked: bool = False
    error: Optional[str] = None


class BehaviorPolicy(Protocol):
    async def initialize(self) -> None: ...

    async def execute_operation(
        self,
        name: str,
        thunk: Callable[[], Awaitable[Any]],
        context: Optional[dict[str, Any]] = None,
    ) -> OperationResult: ...

    async def pause(self, kind: str) -> None: ...

    async def move(self, driver: PageDriver, selector: str) -> None: ...

    def adaptive_interval(self, base_seconds: float, success_rate: float) -> float: ...


class HumanPacing:
    """
    Production behavior policy.

    Паузы: усечённое нормальное распределение в пределах диапазона,
    с лёгким "утомлением" по мере роста длительности сессии.
    """

    def __init__(
        self,
        risk: Optional[Callable[[], RiskAssessment]] = None,
        max_risk_percentage: int = 60,
        ranges: Optional[dict[str, tuple[float, float]]] = None,
    ) -> None:
        self._risk = risk
        self.max_risk_percentage = max_risk_percentage
        self.ranges = dict(ranges or PAUSE_RANGES)
        self._initialized = False
        self._session_start = time.monotonic()

    async def initialize(self) -> None:
        self._session_start = time.monotonic()
        self._initialized = True
        logger.info("Behavior policy initialised")

    def _fatigue(self) -> float:
        hours = (time.monotonic() - self._session_start) / 3600
        return min(1.5, 1.0 + hours * 0.1)

    def delay_for(self, kind: str) -> float:
        low, high = self.ranges.get(kind, self.ranges["settle"])
        mean = (low + high) / 2
        value = random.gauss(mean, (high - low) / 6) * self._fatigue()
        return max(low, min(high, value))

    async def pause(self, kind: str) -> None:
        await asyncio.sleep(self.delay_for(kind))

    async def move(self, driver: PageDriver, selector: str) -> None:
        """Move the pointer in a few steps towards the element centre."""
        box = await driver.bounding_box(selector)
        if not box:
            return
        target_x = box["x"] + box["width"] / 2
        target_y = box["y"] + box["height"] / 2
        start_x = random.uniform(0, target_x)
        start_y = random.uniform(0, target_y)
        await driver.mouse_move(start_x, start_y)

        steps = random.randint(5, 12)
        for step in range(steps):
            t = (step + 1) / steps
            await driver.mouse_move(
                start_x + (target_x - start_x) * t,
                start_y + (target_y - start_y) * t,
            )
            await asyncio.sleep(random.uniform(0.01, 0.05))

    async def execute_operation(
        self,
        name: str,
        thunk: Callable[[], Awaitable[Any]],
        context: Optional[dict[str, Any]] = None,
    ) -> OperationResult:
        if not self._initialized:
            raise NotInitialized("Behavior policy is not initialised")

        risk = self._risk() if self._risk else RiskAssessment()
        if risk.level is RiskLevel.HIGH and risk.percentage >= self.max_risk_percentage:
            logger.warning(
                "Operation %s blocked: risk %s%% (%s)", name, risk.percentage, context or {}
            )
            return OperationResult(success=False, risk_level=risk.level, blocked=True)

        try:
            result = await thunk()
        except Exception as e:  # noqa: BLE001
            logger.warning("Operation %s failed: %s", name, e)
            return OperationResult(success=False, risk_level=risk.level, error=str(e))
        return OperationResult(success=True, result=result, risk_level=risk.level)

    def adaptive_interval(self, base_seconds: float, success_rate: float) -> float:
        """Stretch the interval when checks keep failing."""
        if success_rate < 0.5:
            return base_seconds * min(2.0, 1.0 + (0.5 - success_rate) * 2)
        if success_rate > 0.9:
            return base_seconds * 1.1
        return float(base_seconds)


@dataclass
class BackoffPolicy:
    """
    Spacing between ticks after consecutive failed checks.

    Увеличиваем интервал при частых ошибках, чтобы не флудить сайт.
    """

    max_factor: float = 5.0
    enabled: bool = True
    failures: int = field(default=0)

    def record(self, success: bool) -> None:
        self.failures = 0 if success else self.failures + 1

    def factor(self) -> float:
        if not self.enabled or not self.failures:
            return 1.0
        return min(self.max_factor, 1.0 + self.failures)

    def next_delay(self, interval: float) -> float:
        return interval * self.factor()


__all__ = ["BehaviorPolicy", "HumanPacing", "OperationResult", "BackoffPolicy", "PAUSE_RANGES"]
