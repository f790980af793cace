"""Tests for the utility helpers."""

import logging
import random

import pytest

from slotwatch.config import LoggingConfig
from slotwatch.utils import async_retry, jitter_delay, setup_logging, wait_until


class TestJitterDelay:
    def test_no_variation(self):
        assert jitter_delay(30, 0) == 30.0

    def test_within_bounds(self):
        for _ in range(100):
            assert 25 <= jitter_delay(30, 5) <= 35

    def test_never_below_one_second(self):
        for _ in range(100):
            assert jitter_delay(1, 10) >= 1.0

    def test_seeded_generator_is_reproducible(self):
        expected = 30 + random.Random(7).uniform(-5, 5)
        assert jitter_delay(30, 5, rng=random.Random(7)) == pytest.approx(expected)

    def test_custom_floor(self):
        assert jitter_delay(0, 1, floor=10.0) == 10.0


class TestWaitUntil:
    @pytest.mark.asyncio
    async def test_returns_true_once_predicate_holds(self):
        calls = []

        async def ready():
            calls.append(1)
            return len(calls) >= 3

        assert await wait_until(ready, timeout=1, interval=0.001) is True
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_times_out(self):
        async def never():
            return False

        assert await wait_until(never, timeout=0.02, interval=0.005) is False

    @pytest.mark.asyncio
    async def test_predicate_errors_propagate(self):
        async def broken():
            raise ValueError("detached")

        with pytest.raises(ValueError):
            await wait_until(broken, timeout=1)


class TestAsyncRetry:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        attempts = []

        @async_retry(attempts=3, base_delay=0)
        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("reset")
            return "ok"

        assert await flaky() == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up(self):
        @async_retry(attempts=2, base_delay=0)
        async def down():
            raise ConnectionError("reset")

        with pytest.raises(ConnectionError):
            await down()

    @pytest.mark.asyncio
    async def test_other_exceptions_are_not_retried(self):
        attempts = []

        @async_retry(attempts=3, base_delay=0, exceptions=(ConnectionError,))
        async def bad():
            attempts.append(1)
            raise KeyError("x")

        with pytest.raises(KeyError):
            await bad()
        assert attempts == [1]


class TestSetupLogging:
    def test_creates_log_file_handler(self, tmp_path):
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            setup_logging(LoggingConfig(logs_dir=tmp_path / "logs", log_level="debug"))
            assert (tmp_path / "logs").is_dir()
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 2
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])
