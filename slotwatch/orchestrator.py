"""
Orchestrator: monitor list, periodic checks, quota gate, command surface.

Оркестратор является единственным владельцем состояния:
- циклические проверки (первая сразу, дальше по интервалу из настроек)
- одна проверка одновременно; медленная проверка не накладывается на следующую
- дедупликация слотов по монитору, статистика, уведомления, модель риска
- экстренная остановка ставит все мониторы на паузу и отключает автозапуск
- все записи в хранилище идут только через `_persist`
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from .behavior import BackoffPolicy, BehaviorPolicy
from .config import MonitorDefaults
from .driver import ContextProvider
from .errors import BookingInProgress, MonitorNotFound, QuotaExceeded, SlotwatchError, UnknownCommand
from .models import (
    Monitor,
    MonitorPatch,
    MonitorStatus,
    RiskState,
    SettingsPatch,
    Slot,
    Stats,
    Subscription,
    UserSettings,
)
from .notifications import NotificationDispatcher, SystemNotifier
from .protocol import (
    COMMAND_TYPES,
    AddMonitor,
    AutoBook,
    BookingReply,
    BookSlot,
    Channel,
    CheckConnection,
    CheckReply,
    Command,
    DeleteMonitor,
    EmergencyStop,
    GetMonitors,
    GetRisk,
    GetSettings,
    GetStats,
    ManualCheck,
    PerformCheck,
    Response,
    StartMonitoring,
    StopMonitoring,
    ToggleMonitor,
    UpdateMonitor,
    UpdateSettings,
    describe_validation_error,
    parse_command,
)
from .risk import RiskModel
from .storage import KeyValueStore
from .utils import jitter_delay

logger = logging.getLogger(__name__)


QUOTA_MESSAGE = "No rebooks remaining. Please upgrade your plan."

Sleep = Callable[[float], Awaitable[None]]


class Phase(str, Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    EMERGENCY_STOPPED = "emergency-stopped"


@dataclass
class CheckOutcome:
    success: bool
    skipped: bool = False
    blocked: bool = False
    checked: int = 0
    new_slots: int = 0
    error: Optional[str] = None


class Orchestrator:
    def __init__(
        self,
        store: KeyValueStore,
        channel: Channel,
        contexts: ContextProvider,
        notifier: NotificationDispatcher,
        system: SystemNotifier,
        behavior: BehaviorPolicy,
        *,
        risk: Optional[RiskModel] = None,
        backoff: Optional[BackoffPolicy] = None,
        defaults: Optional[MonitorDefaults] = None,
        subscription: Optional[Subscription] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.channel = channel
        self.contexts = contexts
        self.notifier = notifier
        self.system = system
        self.behavior = behavior
        self.risk = risk or RiskModel(clock=clock)
        self.backoff = backoff or BackoffPolicy()
        self.defaults = defaults or MonitorDefaults()
        self._clock = clock
        self._sleep = sleep

        self.monitors: list[Monitor] = []
        self.settings = UserSettings(check_interval=self.defaults.check_interval)
        self.stats = Stats()
        self.subscription = subscription or Subscription()
        self._plan_configured = subscription is not None
        self.stats.rebooks_total = self.subscription.rebooks_total
        self.phase = Phase.IDLE

        self._timer: Optional[asyncio.Task[None]] = None
        self._risk_task: Optional[asyncio.Task[None]] = None
        self._check_lock = asyncio.Lock()
        self._booking_locks: dict[str, asyncio.Lock] = {}
        # Записи, которые уже идут, но ещё не списаны из квоты
        self._rebooks_reserved = 0
        # Интервал, с которым запущен текущий таймер
        self.timer_interval: Optional[float] = None

        self._handlers: dict[type, Callable[[Any], Awaitable[Response]]] = {
            StartMonitoring: lambda _: self.start(),
            StopMonitoring: lambda _: self.stop(),
            EmergencyStop: lambda _: self.emergency_stop(),
            ManualCheck: lambda _: self.manual_check(),
            AddMonitor: lambda c: self.add_monitor(c.monitor),
            UpdateMonitor: lambda c: self.update_monitor(c.monitor_id, c.updates),
            DeleteMonitor: lambda c: self.delete_monitor(c.monitor_id),
            ToggleMonitor: lambda c: self.toggle_monitor(c.monitor_id, c.status),
            UpdateSettings: lambda c: self.update_settings(c.settings),
            GetMonitors: lambda _: self.get_monitors(),
            GetStats: lambda _: self.get_stats(),
            GetRisk: lambda _: self.get_risk(),
            GetSettings: lambda _: self.get_settings(),
            CheckConnection: lambda _: self.check_connection(),
            BookSlot: lambda c: self.book_slot(c.slot, c.monitor_id),
        }
        missing = [t.__name__ for t in COMMAND_TYPES if t not in self._handlers]
        if missing:
            raise TypeError(f"Commands without handler: {', '.join(missing)}")

    # region lifecycle
    async def open(self) -> None:
        """Load persisted state, start risk refresh, resume monitoring if allowed."""
        self._load()
        await self.behavior.initialize()
        self._risk_task = asyncio.create_task(self._risk_loop(), name="slotwatch-risk-refresh")

        if self.phase is Phase.EMERGENCY_STOPPED:
            logger.warning("Emergency stop is active, monitoring will not resume automatically")
            return
        if self.settings.auto_check and any(m.is_active for m in self.monitors):
            logger.info("Resuming monitoring for %s active monitor(s)", self._active_count())
            await self.start()

    async def close(self) -> None:
        await self._cancel_timer()
        if self._risk_task:
            self._risk_task.cancel()
            try:
                await self._risk_task
            except asyncio.CancelledError:
                pass
            self._risk_task = None
        self._persist("monitors", "settings", "stats", "riskLevel", "riskState", "subscription")

    def _load(self) -> None:
        monitors: list[Monitor] = []
        for raw in self.store.get("monitors", []) or []:
            try:
                monitors.append(Monitor.model_validate(raw))
            except ValidationError as e:
                logger.warning("Skipping invalid stored monitor: %s", e)
        self.monitors = monitors

        try:
            settings = self.store.get("settings")
            if settings:
                self.settings = UserSettings.model_validate(settings)
            stats = self.store.get("stats")
            if stats:
                self.stats = Stats.model_validate(stats)
            subscription = self.store.get("subscription")
            if subscription and not self._plan_configured:
                self.subscription = Subscription.model_validate(subscription)
            risk_state = self.store.get("riskState")
            if risk_state:
                # Тот же объект модели: политика поведения держит ссылку на него
                self.risk.state = RiskState.model_validate(risk_state)
        except ValidationError as e:
            logger.warning("Stored state is invalid, using defaults: %s", e)

        self.stats.monitors_count = len(self.monitors)
        self.stats.rebooks_total = self.subscription.rebooks_total
        if self.store.get("emergencyStopped", False):
            self.phase = Phase.EMERGENCY_STOPPED
        logger.info("Loaded %s monitor(s)", len(self.monitors))

    # endregion

    # region scheduling
    @property
    def is_monitoring(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def start(self, *, immediate: bool = True) -> Response:
        if self.is_monitoring:
            return Response.ok("Monitoring already running")
        if self.phase is Phase.EMERGENCY_STOPPED:
            logger.info("Clearing emergency stop on explicit start")
        self.phase = Phase.MONITORING
        self._persist("emergencyStopped")

        interval = float(self.settings.check_interval)
        self.timer_interval = interval
        self._timer = asyncio.create_task(self._run_loop(interval, immediate), name="slotwatch-check-loop")
        logger.info("Monitoring started, interval %ss", self.settings.check_interval)
        return Response.ok("Monitoring started", interval=self.settings.check_interval)

    async def stop(self) -> Response:
        await self._cancel_timer()
        if self.phase is Phase.MONITORING:
            self.phase = Phase.IDLE
        logger.info("Monitoring stopped")
        return Response.ok("Monitoring stopped")

    async def _cancel_timer(self) -> None:
        task, self._timer = self._timer, None
        self.timer_interval = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _next_delay(self, interval: float) -> float:
        base = interval
        if self.defaults.adaptive_timing:
            base = self.behavior.adaptive_interval(base, self.risk.success_rate)
        delay = jitter_delay(base, self.defaults.check_interval_variation)
        # Увеличиваем интервал при частых ошибках, чтобы не флудить сайт
        return self.backoff.next_delay(delay)

    async def _run_loop(self, interval: float, immediate: bool) -> None:
        loop = asyncio.get_running_loop()
        if not immediate:
            await self._sleep(self._next_delay(interval))

        while True:
            started = loop.time()
            try:
                # Отмена таймера не прерывает уже идущую проверку
                await asyncio.shield(self.perform_check())
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                logger.exception("Unexpected error in check loop: %s", e)

            elapsed = loop.time() - started
            await self._sleep(max(0.0, self._next_delay(interval) - elapsed))

    async def _risk_loop(self) -> None:
        while True:
            await self._sleep(self.defaults.risk_refresh_seconds)
            assessment = self.risk.recompute()
            logger.debug("Risk recomputed: %s %s%%", assessment.level.value, assessment.percentage)
            self._persist("riskLevel")

    # endregion

    # region checks
    async def perform_check(self) -> CheckOutcome:
        if self._check_lock.locked():
            logger.info("Previous check still running, skipping this tick")
            return CheckOutcome(success=False, skipped=True, error="A check is already running")

        async with self._check_lock:
            active = [m for m in self.monitors if m.is_active]
            if not active:
                logger.info("No active monitors, nothing to check")
                return CheckOutcome(success=True)

            logger.info("Checking %s active monitor(s)", len(active))
            reply = await self._request_check(active)
            if reply is None:
                return CheckOutcome(success=False, blocked=True, checked=len(active), error="Check blocked by risk policy")

            now = self._clock()
            new_total = 0
            if reply.success:
                for group in reply.slots_found:
                    monitor = self._find(group.monitor_id)
                    if monitor is None:
                        logger.warning("Slots reported for unknown monitor %s", group.monitor_id)
                        continue
                    added = monitor.merge_slots(group.slots, now)
                    if not added:
                        continue
                    new_total += len(added)
                    self.stats.slots_found += len(added)
                    logger.info("Monitor %s: %s new slot(s)", monitor.name, len(added))
                    for slot in added:
                        await self._notify_slot(monitor, slot)
            else:
                logger.warning("Check failed: %s", reply.error)

            self.stats.last_check = now
            self.stats.monitors_count = len(self.monitors)
            self.risk.record_check(reply.success, now)
            self.backoff.record(reply.success)
            self._persist("monitors", "stats", "riskLevel", "riskState")

            return CheckOutcome(
                success=reply.success,
                checked=len(active),
                new_slots=new_total,
                error=reply.error,
            )

    async def _request_check(self, active: list[Monitor]) -> Optional[CheckReply]:
        """Send the check to the detector; None means the behavior policy blocked it."""
        try:
            driver = await self.contexts.acquire()
        except Exception as e:  # noqa: BLE001
            logger.error("Could not obtain a page context: %s", e)
            return CheckReply(success=False, error=f"Browser unavailable: {e}")

        request = PerformCheck(monitors=[m.model_copy(deep=True) for m in active])
        try:
            op = await self.behavior.execute_operation(
                "slot_check",
                lambda: self.channel.perform_check(driver, request),
                {"monitors": len(active)},
            )
        except SlotwatchError as e:
            return CheckReply(success=False, error=str(e))

        if op.blocked:
            logger.warning("Check blocked: risk level %s", op.risk_level.value)
            return None
        if not op.success:
            return CheckReply(success=False, error=op.error)
        return op.result

    async def _notify_slot(self, monitor: Monitor, slot: Slot) -> None:
        try:
            result = await self.notifier.send_slot_found(
                monitor,
                slot,
                self.subscription,
                sound=self.settings.sound_alerts,
                push_enabled=self.settings.push_notifications,
            )
        except Exception as e:  # noqa: BLE001
            logger.warning("Notification dispatch failed: %s", e)
            await self._system_notify(f"Slot found for {monitor.name}", slot.summary())
            return
        if result.errors and not result.delivered:
            await self._system_notify(f"Slot found for {monitor.name}", slot.summary())

    async def _system_notify(self, title: str, message: str) -> None:
        try:
            await self.system.notify(title, message)
        except Exception as e:  # noqa: BLE001
            logger.warning("System notification failed: %s", e)

    async def manual_check(self) -> Response:
        outcome = await self.perform_check()
        if outcome.skipped or outcome.blocked or not outcome.success:
            return Response.fail(outcome.error or "Check failed")
        if not outcome.checked:
            return Response.ok("No active monitors to check", slotsFound=0)
        return Response.ok("Check complete", slotsFound=outcome.new_slots)

    # endregion

    async def emergency_stop(self) -> Response:
        """Stop the timer and pause every monitor. Always succeeds."""
        await self._cancel_timer()
        for monitor in self.monitors:
            monitor.status = MonitorStatus.PAUSED
        self.phase = Phase.EMERGENCY_STOPPED
        self._persist("monitors", "emergencyStopped")

        logger.warning("EMERGENCY STOP: %s monitor(s) paused", len(self.monitors))
        await self._system_notify(
            "Emergency stop",
            f"All monitoring stopped, {len(self.monitors)} monitor(s) paused.",
        )
        return Response.ok("Emergency stop activated", monitorsPaused=len(self.monitors))

    # region monitors
    def _find(self, monitor_id: str) -> Optional[Monitor]:
        return next((m for m in self.monitors if m.id == monitor_id), None)

    def _get(self, monitor_id: str) -> Monitor:
        monitor = self._find(monitor_id)
        if monitor is None:
            raise MonitorNotFound(monitor_id)
        return monitor

    def _active_count(self) -> int:
        return sum(1 for m in self.monitors if m.is_active)

    async def _auto_start(self) -> None:
        if (
            self.settings.auto_check
            and self.phase is not Phase.EMERGENCY_STOPPED
            and not self.is_monitoring
            and self._active_count()
        ):
            await self.start()

    async def add_monitor(self, monitor: Monitor) -> Response:
        if self._find(monitor.id) is not None:
            monitor = monitor.model_copy(update={"id": uuid.uuid4().hex[:12]})
        self.monitors.append(monitor)
        self.stats.monitors_count = len(self.monitors)
        self._persist("monitors", "stats")
        logger.info("Monitor added: %s (%s)", monitor.name, ", ".join(monitor.test_centres))

        await self._auto_start()
        return Response.ok(f"Monitor added for {monitor.name}", monitor=self._dump(monitor))

    async def update_monitor(self, monitor_id: str, updates: dict[str, Any]) -> Response:
        monitor = self._get(monitor_id)
        patched = MonitorPatch.model_validate(updates).apply(monitor)
        self.monitors[self.monitors.index(monitor)] = patched
        self._persist("monitors")
        return Response.ok("Monitor updated", monitor=self._dump(patched))

    async def delete_monitor(self, monitor_id: str) -> Response:
        monitor = self._get(monitor_id)
        self.monitors.remove(monitor)
        self._booking_locks.pop(monitor_id, None)
        self.stats.monitors_count = len(self.monitors)
        self._persist("monitors", "stats")
        return Response.ok("Monitor deleted")

    async def toggle_monitor(self, monitor_id: str, status: MonitorStatus) -> Response:
        monitor = self._get(monitor_id)
        monitor.status = MonitorStatus(status)
        self._persist("monitors")
        if monitor.is_active:
            await self._auto_start()
        return Response.ok(f"Monitor {monitor.status.value}")

    # endregion

    async def update_settings(self, patch: dict[str, Any]) -> Response:
        self.settings = SettingsPatch.model_validate(patch).apply(self.settings)
        self._persist("settings")

        # Перезапуск таймера, чтобы новый интервал действовал сразу
        if self.is_monitoring:
            await self._cancel_timer()
            if self.settings.auto_check:
                await self.start(immediate=False)
            else:
                self.phase = Phase.IDLE
        return Response.ok("Settings updated", settings=self._dump(self.settings))

    def _rebooks_left(self) -> Optional[int]:
        """Rebooks still available, counting hand-offs in flight; None when unlimited."""
        if self.subscription.unlimited:
            return None
        return max(0, self.subscription.rebooks_total - self.stats.rebooks_used - self._rebooks_reserved)

    async def book_slot(self, slot: Slot, monitor_id: str) -> Response:
        monitor = self._get(monitor_id)

        # Проверка и резерв без await между ними: параллельные записи не превысят квоту
        if self._rebooks_left() == 0:
            raise QuotaExceeded(QUOTA_MESSAGE)

        lock = self._booking_locks.setdefault(monitor_id, asyncio.Lock())
        if lock.locked():
            raise BookingInProgress(f"A booking is already in progress for {monitor.name}")

        self._rebooks_reserved += 1
        try:
            async with lock:
                logger.info("Booking %s for %s", slot.summary(), monitor.name)
                reply = await self._request_booking(slot, monitor)
                if not reply.success:
                    return Response.fail(reply.error or "Auto-booking failed")

                self.stats.rebooks_used += 1
                self._persist("stats")
        finally:
            self._rebooks_reserved -= 1

        try:
            await self.notifier.send_booking_confirmation(
                monitor,
                slot,
                self.subscription,
                push_enabled=self.settings.push_notifications,
            )
        except Exception as e:  # noqa: BLE001
            logger.warning("Booking confirmation notification failed: %s", e)

        return Response.ok(
            reply.message or "Booking form filled - please review and confirm",
            rebooksRemaining=self._rebooks_left(),
        )

    async def _request_booking(self, slot: Slot, monitor: Monitor) -> BookingReply:
        try:
            driver = await self.contexts.open_booking()
        except Exception as e:  # noqa: BLE001
            logger.error("Could not open booking page: %s", e)
            return BookingReply(success=False, error=f"Could not open booking page: {e}")

        request = AutoBook(slot=slot, monitor=monitor.model_copy(deep=True))
        try:
            op = await self.behavior.execute_operation(
                "auto_book",
                lambda: self.channel.auto_book(driver, request),
                {"monitor": monitor.id},
            )
        except SlotwatchError as e:
            return BookingReply(success=False, error=str(e))

        if op.blocked:
            return BookingReply(
                success=False,
                error=f"Booking blocked: detection risk is {op.risk_level.value}, try again later",
            )
        if not op.success:
            return BookingReply(success=False, error=op.error)
        return op.result

    # region read accessors
    @staticmethod
    def _dump(model: Any) -> Any:
        return model.model_dump(mode="json", by_alias=True)

    async def get_monitors(self) -> Response:
        return Response.ok(monitors=[self._dump(m) for m in self.monitors])

    async def get_stats(self) -> Response:
        return Response.ok(stats=self._dump(self.stats))

    async def get_risk(self) -> Response:
        return Response.ok(risk=self._dump(self.risk.recompute()))

    async def get_settings(self) -> Response:
        return Response.ok(settings=self._dump(self.settings))

    async def check_connection(self) -> Response:
        return Response.ok(
            "Connected",
            phase=self.phase.value,
            monitoring=self.is_monitoring,
            activeMonitors=self._active_count(),
        )

    # endregion

    # region commands
    async def handle(self, command: Command) -> Response:
        handler = self._handlers.get(type(command))
        if handler is None:
            return Response.fail(f"Unknown action: {type(command).__name__}")
        try:
            return await handler(command)
        except SlotwatchError as e:
            logger.warning("%s failed: %s", command.action, e)
            return Response.fail(str(e))
        except ValidationError as e:
            return Response.fail(describe_validation_error(e))
        except Exception as e:  # noqa: BLE001
            logger.exception("Unexpected error handling %s: %s", command.action, e)
            return Response.fail(f"Internal error: {e}")

    async def handle_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Entry point for raw action-tagged dicts."""
        try:
            command = parse_command(payload)
        except UnknownCommand as e:
            return Response.fail(str(e)).to_dict()
        except ValidationError as e:
            return Response.fail(describe_validation_error(e)).to_dict()
        return (await self.handle(command)).to_dict()

    # endregion

    def _persist(self, *keys: str) -> None:
        values: dict[str, Any] = {}
        for key in keys:
            if key == "monitors":
                values[key] = [self._dump(m) for m in self.monitors]
            elif key == "settings":
                values[key] = self._dump(self.settings)
            elif key == "stats":
                values[key] = self._dump(self.stats)
            elif key == "riskLevel":
                values[key] = {
                    "level": self.risk.state.level.value,
                    "percentage": self.risk.state.percentage,
                }
            elif key == "riskState":
                values[key] = self._dump(self.risk.state)
            elif key == "subscription":
                values[key] = self._dump(self.subscription)
            elif key == "emergencyStopped":
                values[key] = self.phase is Phase.EMERGENCY_STOPPED
            else:
                raise KeyError(key)
        try:
            self.store.set_many(values)
        except Exception as e:  # noqa: BLE001
            logger.exception("Failed to persist %s: %s", ", ".join(keys), e)


__all__ = ["Orchestrator", "Phase", "CheckOutcome", "QUOTA_MESSAGE"]
