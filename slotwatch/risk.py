"""
Heuristic detection-risk model.

Оценка риска 0..100 по истории проверок: частота, доля успехов,
количество проверок за час, подозрительные паттерны и время суток.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Optional

from .models import RiskAssessment, RiskLevel, RiskState

logger = logging.getLogger(__name__)


# (граница в секундах, баллы): чем короче пауза, тем выше риск
GAP_TIERS: tuple[tuple[float, int], ...] = ((10.0, 30), (20.0, 20), (30.0, 10))
# (порог проверок за час, баллы), от старшего к младшему
HOURLY_TIERS: tuple[tuple[int, int], ...] = ((120, 30), (60, 20), (30, 10))
HIGH_SUCCESS_RATIO = 0.9
LOW_SUCCESS_RATIO = 0.1
HIGH_SUCCESS_SCORE = 10
LOW_SUCCESS_SCORE = 20
MIN_SAMPLES_FOR_RATIO = 5
SUSPICIOUS_SCORE = 5
SUSPICIOUS_CAP = 20
LATE_NIGHT_HOURS = frozenset({23, 0, 1, 2, 3, 4, 5})
LATE_NIGHT_SCORE = 10
SUSPICIOUS_INTERVAL_FLOOR = 15.0
MIN_SAMPLES_FOR_INTERVAL = 3

Clock = Callable[[], datetime]


class RiskModel:
    """
    Rolling risk state.

    `record_check` is called after every check result; `recompute` is called
    on a timer so the level decays while nothing happens.
    """

    def __init__(
        self,
        clock: Clock = datetime.now,
        interval_floor: float = SUSPICIOUS_INTERVAL_FLOOR,
    ) -> None:
        self._clock = clock
        self.interval_floor = interval_floor
        self._history: Deque[datetime] = deque()
        self._previous_gap: Optional[float] = None
        self.state = RiskState()

    @property
    def assessment(self) -> RiskAssessment:
        return RiskAssessment(level=self.state.level, percentage=self.state.percentage)

    @property
    def success_rate(self) -> float:
        if not self.state.total_checks:
            return 1.0
        return self.state.successful_checks / self.state.total_checks

    def record_check(self, success: bool, now: Optional[datetime] = None) -> RiskAssessment:
        now = now or self._clock()
        st = self.state

        # Интервал считаем до перезаписи last_check_at
        if st.last_check_at is not None:
            self._previous_gap = max(0.0, (now - st.last_check_at).total_seconds())

        self._history.append(now)
        self._trim(now)

        st.total_checks += 1
        if success:
            st.successful_checks += 1
        else:
            st.failed_checks += 1
        st.last_check_at = now

        average = self.average_interval()
        if average is not None and average < self.interval_floor:
            st.suspicious_patterns += 1
            logger.warning(
                "Suspicious check cadence: average interval %.1fs < %.1fs",
                average,
                self.interval_floor,
            )

        return self.recompute(now)

    def average_interval(self) -> Optional[float]:
        """Mean gap between recorded checks in the trailing hour."""
        if len(self._history) < MIN_SAMPLES_FOR_INTERVAL:
            return None
        stamps = list(self._history)
        gaps = [(b - a).total_seconds() for a, b in zip(stamps, stamps[1:])]
        return sum(gaps) / len(gaps)

    def recompute(self, now: Optional[datetime] = None) -> RiskAssessment:
        now = now or self._clock()
        self._trim(now)
        st = self.state
        st.checks_last_hour = len(self._history)

        score, factors = self._score(now)
        st.percentage = max(0, min(100, score))
        st.level = RiskLevel.from_percentage(st.percentage)
        return RiskAssessment(level=st.level, percentage=st.percentage, factors=factors)

    def _trim(self, now: datetime) -> None:
        horizon = now - timedelta(hours=1)
        while self._history and self._history[0] < horizon:
            self._history.popleft()

    def _gap(self, now: datetime) -> Optional[float]:
        st = self.state
        if st.last_check_at is None:
            return None
        idle = max(0.0, (now - st.last_check_at).total_seconds())
        if self._previous_gap is None:
            # Единственная проверка: смотрим только на простой после неё
            return idle if idle > 0 else None
        return max(self._previous_gap, idle)

    def _score(self, now: datetime) -> tuple[int, list[str]]:
        st = self.state
        score = 0
        factors: list[str] = []

        gap = self._gap(now)
        if gap is not None:
            for bound, points in GAP_TIERS:
                if gap < bound:
                    score += points
                    factors.append(f"check gap {gap:.0f}s < {bound:.0f}s")
                    break

        if st.total_checks >= MIN_SAMPLES_FOR_RATIO:
            ratio = st.successful_checks / st.total_checks
            if ratio > HIGH_SUCCESS_RATIO:
                score += HIGH_SUCCESS_SCORE
                factors.append(f"success ratio {ratio:.2f} unusually high")
            elif ratio < LOW_SUCCESS_RATIO:
                score += LOW_SUCCESS_SCORE
                factors.append(f"success ratio {ratio:.2f} unusually low")

        for threshold, points in HOURLY_TIERS:
            if st.checks_last_hour > threshold:
                score += points
                factors.append(f"{st.checks_last_hour} checks in the last hour")
                break

        if st.suspicious_patterns:
            score += min(SUSPICIOUS_CAP, st.suspicious_patterns * SUSPICIOUS_SCORE)
            factors.append(f"{st.suspicious_patterns} suspicious pattern(s)")

        if now.hour in LATE_NIGHT_HOURS:
            score += LATE_NIGHT_SCORE
            factors.append("late-night activity")

        return score, factors


__all__ = ["RiskModel"]
