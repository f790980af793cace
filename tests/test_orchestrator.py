"""Tests for the orchestrator: checks, scheduling, quota and the command surface."""

import asyncio
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from slotwatch.detector import MonitorSlots
from slotwatch.models import Monitor, MonitorStatus, RiskLevel, RiskState, Slot, Subscription, SubscriptionTier
from slotwatch.notifications import NotificationResult
from slotwatch.orchestrator import QUOTA_MESSAGE, Orchestrator, Phase
from slotwatch.protocol import BookingReply, BookSlot, CheckReply, EmergencyStop
from slotwatch.storage import MemoryStore

NOW = datetime(2029, 12, 1, 12, 0)


class ParkedSleep:
    """Records requested delays and parks the loop until it is cancelled."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self.called = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.called.set()
        await asyncio.Event().wait()


class StepSleep:
    """Lets the first `steps` sleeps return at once, then parks like ParkedSleep."""

    def __init__(self, steps: int) -> None:
        self.steps = steps
        self.delays: list[float] = []
        self.parked = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if len(self.delays) <= self.steps:
            await asyncio.sleep(0)
            return
        self.parked.set()
        await asyncio.Event().wait()


def _slots(*times: str, location: str = "Manchester") -> list[Slot]:
    return [Slot(date=date(2030, 1, 15), time=t, location=location) for t in times]


def make_orchestrator(behavior, store=None, subscription=None, sleep=None) -> Orchestrator:
    channel = MagicMock()
    channel.perform_check = AsyncMock(return_value=CheckReply(success=True))
    channel.auto_book = AsyncMock(return_value=BookingReply(success=True, message="Booking form filled"))

    contexts = MagicMock()
    contexts.acquire = AsyncMock(return_value=MagicMock(name="driver"))
    contexts.open_booking = AsyncMock(return_value=MagicMock(name="booking-driver"))

    notifier = MagicMock()
    notifier.send_slot_found = AsyncMock(return_value=NotificationResult(push=True))
    notifier.send_booking_confirmation = AsyncMock(return_value=NotificationResult(push=True))

    system = MagicMock()
    system.notify = AsyncMock()

    return Orchestrator(
        store=store if store is not None else MemoryStore(),
        channel=channel,
        contexts=contexts,
        notifier=notifier,
        system=system,
        behavior=behavior,
        subscription=subscription,
        clock=lambda: NOW,
        sleep=sleep or ParkedSleep(),
    )


async def _add_sarah(orch: Orchestrator) -> str:
    await orch.update_settings({"autoCheck": False})
    response = await orch.add_monitor(Monitor(name="Sarah", test_centres=["Manchester"]))
    return response.data["monitor"]["id"]


class TestPerformCheck:
    @pytest.mark.asyncio
    async def test_two_slots_for_one_monitor(self, behavior):
        orch = make_orchestrator(behavior)
        monitor_id = await _add_sarah(orch)
        orch.channel.perform_check.return_value = CheckReply(
            success=True,
            slots_found=[MonitorSlots(monitor_id=monitor_id, slots=_slots("08:10", "10:30"))],
        )

        outcome = await orch.perform_check()

        assert outcome.success is True
        assert outcome.new_slots == 2
        assert orch.stats.slots_found == 2
        assert orch.monitors[0].slots_found == 2
        assert orch.notifier.send_slot_found.await_count == 2
        assert orch.stats.last_check == NOW
        assert orch.risk.state.successful_checks == 1

    @pytest.mark.asyncio
    async def test_repeated_results_are_deduplicated(self, behavior):
        orch = make_orchestrator(behavior)
        monitor_id = await _add_sarah(orch)
        orch.channel.perform_check.return_value = CheckReply(
            success=True,
            slots_found=[MonitorSlots(monitor_id=monitor_id, slots=_slots("08:10", "10:30"))],
        )
        await orch.perform_check()
        orch.channel.perform_check.return_value = CheckReply(
            success=True,
            slots_found=[MonitorSlots(monitor_id=monitor_id, slots=_slots("10:30", "12:00"))],
        )

        await orch.perform_check()

        keys = [s.key for s in orch.monitors[0].found_slots]
        assert len(keys) == len(set(keys)) == 3
        assert orch.stats.slots_found == 3
        assert orch.notifier.send_slot_found.await_count == 3

    @pytest.mark.asyncio
    async def test_no_active_monitors_is_a_noop(self, behavior):
        orch = make_orchestrator(behavior)
        monitor_id = await _add_sarah(orch)
        await orch.toggle_monitor(monitor_id, MonitorStatus.PAUSED)

        outcome = await orch.perform_check()

        assert outcome.success is True
        assert outcome.checked == 0
        orch.channel.perform_check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_check_is_recorded_and_does_not_raise(self, behavior):
        orch = make_orchestrator(behavior)
        await _add_sarah(orch)
        orch.channel.perform_check.side_effect = RuntimeError("context crashed")

        outcome = await orch.perform_check()

        assert outcome.success is False
        assert "context crashed" in outcome.error
        assert orch.risk.state.failed_checks == 1
        assert orch.backoff.failures == 1

    @pytest.mark.asyncio
    async def test_failed_reply_is_recorded(self, behavior):
        orch = make_orchestrator(behavior)
        await _add_sarah(orch)
        orch.channel.perform_check.return_value = CheckReply(success=False, error="Check timed out after 120s")

        outcome = await orch.perform_check()

        assert outcome.success is False
        assert orch.risk.state.failed_checks == 1

    @pytest.mark.asyncio
    async def test_overlapping_check_is_skipped(self, behavior):
        orch = make_orchestrator(behavior)
        await _add_sarah(orch)
        release = asyncio.Event()

        async def slow_check(driver, request):
            await release.wait()
            return CheckReply(success=True)

        orch.channel.perform_check.side_effect = slow_check
        first = asyncio.create_task(orch.perform_check())
        await asyncio.sleep(0.01)

        second = await orch.perform_check()
        release.set()
        await first

        assert second.skipped is True
        assert orch.channel.perform_check.await_count == 1

    @pytest.mark.asyncio
    async def test_blocked_check_does_not_touch_risk(self, behavior):
        behavior.block = True
        orch = make_orchestrator(behavior)
        await _add_sarah(orch)

        outcome = await orch.perform_check()

        assert outcome.blocked is True
        assert orch.risk.state.total_checks == 0

    @pytest.mark.asyncio
    async def test_failed_notification_falls_back_to_system(self, behavior):
        orch = make_orchestrator(behavior)
        monitor_id = await _add_sarah(orch)
        orch.notifier.send_slot_found.return_value = NotificationResult(
            errors=[{"channel": "push", "error": "network down"}]
        )
        orch.channel.perform_check.return_value = CheckReply(
            success=True,
            slots_found=[MonitorSlots(monitor_id=monitor_id, slots=_slots("08:10"))],
        )

        await orch.perform_check()

        orch.system.notify.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_store_failure_does_not_break_the_check(self, behavior):
        store = MagicMock()
        store.get.side_effect = lambda key, default=None: default
        store.set_many.side_effect = OSError("disk full")
        orch = make_orchestrator(behavior, store=store)
        await _add_sarah(orch)

        outcome = await orch.perform_check()

        assert outcome.success is True


class TestScheduling:
    @pytest.mark.asyncio
    async def test_start_checks_immediately_then_waits_interval(self, behavior):
        sleep = ParkedSleep()
        orch = make_orchestrator(behavior, sleep=sleep)
        await _add_sarah(orch)

        await orch.start()
        await asyncio.wait_for(sleep.called.wait(), timeout=1)

        assert orch.phase is Phase.MONITORING
        assert orch.channel.perform_check.await_count == 1
        assert sleep.delays == [pytest.approx(30, abs=0.5)]
        await orch.stop()
        assert orch.is_monitoring is False

    @pytest.mark.asyncio
    async def test_interval_change_restarts_timer(self, behavior):
        sleep = ParkedSleep()
        orch = make_orchestrator(behavior, sleep=sleep)

        await orch.start()
        await asyncio.wait_for(sleep.called.wait(), timeout=1)
        sleep.called.clear()

        response = await orch.update_settings({"checkInterval": 45})
        await asyncio.wait_for(sleep.called.wait(), timeout=1)

        assert response.success is True
        assert orch.timer_interval == 45
        assert sleep.delays[-1] == 45
        assert orch.is_monitoring is True
        await orch.stop()

    @pytest.mark.asyncio
    async def test_backoff_stretches_the_next_delay(self, behavior):
        sleep = ParkedSleep()
        orch = make_orchestrator(behavior, sleep=sleep)
        await _add_sarah(orch)
        orch.channel.perform_check.return_value = CheckReply(success=False, error="boom")

        await orch.start()
        await asyncio.wait_for(sleep.called.wait(), timeout=1)

        assert sleep.delays[0] == pytest.approx(60, abs=0.5)
        await orch.stop()

    @pytest.mark.asyncio
    async def test_add_monitor_auto_starts(self, behavior):
        orch = make_orchestrator(behavior)

        await orch.add_monitor(Monitor(name="Sarah", test_centres=["Manchester"]))

        assert orch.is_monitoring is True
        await orch.stop()

    @pytest.mark.asyncio
    async def test_open_resumes_active_monitors(self, behavior):
        monitor = Monitor(name="Sarah", test_centres=["Manchester"])
        store = MemoryStore({"monitors": [monitor.model_dump(mode="json", by_alias=True)]})
        orch = make_orchestrator(behavior, store=store)

        await orch.open()

        assert behavior.initialized is True
        assert orch.is_monitoring is True
        await orch.close()

    @pytest.mark.asyncio
    async def test_open_after_emergency_stop_does_not_resume(self, behavior):
        monitor = Monitor(name="Sarah", test_centres=["Manchester"])
        store = MemoryStore(
            {"monitors": [monitor.model_dump(mode="json", by_alias=True)], "emergencyStopped": True}
        )
        orch = make_orchestrator(behavior, store=store)

        await orch.open()

        assert orch.phase is Phase.EMERGENCY_STOPPED
        assert orch.is_monitoring is False
        await orch.close()


class TestRiskRefresh:
    @pytest.mark.asyncio
    async def test_idle_refresh_lowers_stored_risk(self, behavior):
        stale = RiskState(
            total_checks=3,
            successful_checks=3,
            last_check_at=NOW - timedelta(hours=1),
            level=RiskLevel.HIGH,
            percentage=75,
        )
        store = MemoryStore(
            {
                "riskState": stale.model_dump(mode="json", by_alias=True),
                "riskLevel": {"level": "high", "percentage": 75},
            }
        )
        sleep = StepSleep(steps=1)
        orch = make_orchestrator(behavior, store=store, sleep=sleep)

        await orch.open()
        await asyncio.wait_for(sleep.parked.wait(), timeout=1)

        assert sleep.delays == [60, 60]
        assert orch.is_monitoring is False
        assert store.get("riskLevel") == {"level": "low", "percentage": 0}
        orch.channel.perform_check.assert_not_awaited()
        await orch.close()


class TestEmergencyStop:
    @pytest.mark.asyncio
    async def test_pauses_everything_and_is_idempotent(self, behavior):
        store = MemoryStore()
        orch = make_orchestrator(behavior, store=store)
        await orch.add_monitor(Monitor(name="Sarah", test_centres=["Manchester"]))
        await orch.add_monitor(Monitor(name="Tom", test_centres=["Leeds"]))
        assert orch.is_monitoring is True

        first = await orch.handle(EmergencyStop())
        state_after_first = [m.model_dump() for m in orch.monitors]
        second = await orch.handle(EmergencyStop())

        assert first.success is True and second.success is True
        assert all(m.status is MonitorStatus.PAUSED for m in orch.monitors)
        assert [m.model_dump() for m in orch.monitors] == state_after_first
        assert orch.phase is Phase.EMERGENCY_STOPPED
        assert orch.is_monitoring is False
        assert store.get("emergencyStopped") is True

    @pytest.mark.asyncio
    async def test_resuming_a_monitor_does_not_auto_start(self, behavior):
        orch = make_orchestrator(behavior)
        response = await orch.add_monitor(Monitor(name="Sarah", test_centres=["Manchester"]))
        await orch.emergency_stop()

        await orch.toggle_monitor(response.data["monitor"]["id"], MonitorStatus.ACTIVE)

        assert orch.is_monitoring is False


class TestBookSlot:
    @pytest.mark.asyncio
    async def test_quota_exhausted_fails_without_booking(self, behavior):
        orch = make_orchestrator(behavior, subscription=Subscription(tier=SubscriptionTier.STARTER, rebooks_total=1))
        monitor_id = await _add_sarah(orch)
        orch.stats.rebooks_used = 1

        response = await orch.handle(BookSlot(slot=_slots("08:10")[0], monitor_id=monitor_id))

        assert response.success is False
        assert response.error == QUOTA_MESSAGE
        assert orch.stats.rebooks_used == 1
        orch.channel.auto_book.assert_not_awaited()
        orch.contexts.open_booking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unlimited_tier_ignores_quota(self, behavior):
        orch = make_orchestrator(behavior, subscription=Subscription(tier=SubscriptionTier.PROFESSIONAL, rebooks_total=0))
        monitor_id = await _add_sarah(orch)

        response = await orch.handle(BookSlot(slot=_slots("08:10")[0], monitor_id=monitor_id))

        assert response.success is True
        assert orch.stats.rebooks_used == 1
        orch.channel.auto_book.assert_awaited_once()
        orch.notifier.send_booking_confirmation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_successful_handoff_counts_one_rebook(self, behavior):
        orch = make_orchestrator(behavior)
        monitor_id = await _add_sarah(orch)

        response = await orch.book_slot(_slots("08:10")[0], monitor_id)

        assert response.success is True
        assert response.data["rebooksRemaining"] == 4
        assert orch.stats.rebooks_used == 1

    @pytest.mark.asyncio
    async def test_failed_booking_does_not_count(self, behavior):
        orch = make_orchestrator(behavior)
        monitor_id = await _add_sarah(orch)
        orch.channel.auto_book.return_value = BookingReply(success=False, error='Test centre "Manchester" not found in dropdown')

        response = await orch.book_slot(_slots("08:10")[0], monitor_id)

        assert response.success is False
        assert "not found in dropdown" in response.error
        assert orch.stats.rebooks_used == 0
        orch.notifier.send_booking_confirmation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_booking_for_same_monitor_is_rejected(self, behavior):
        orch = make_orchestrator(behavior)
        monitor_id = await _add_sarah(orch)
        release = asyncio.Event()

        async def slow_booking(driver, request):
            await release.wait()
            return BookingReply(success=True)

        orch.channel.auto_book.side_effect = slow_booking
        slot = _slots("08:10")[0]
        first = asyncio.create_task(orch.handle(BookSlot(slot=slot, monitor_id=monitor_id)))
        await asyncio.sleep(0.01)

        second = await orch.handle(BookSlot(slot=slot, monitor_id=monitor_id))
        release.set()
        first_response = await first

        assert second.success is False
        assert "already in progress" in second.error
        assert first_response.success is True
        assert orch.stats.rebooks_used == 1

    @pytest.mark.asyncio
    async def test_parallel_bookings_share_the_last_rebook(self, behavior):
        orch = make_orchestrator(behavior, subscription=Subscription(tier=SubscriptionTier.STARTER, rebooks_total=1))
        sarah = await _add_sarah(orch)
        tom = (await orch.add_monitor(Monitor(name="Tom", test_centres=["Leeds"]))).data["monitor"]["id"]
        release = asyncio.Event()

        async def slow_booking(driver, request):
            await release.wait()
            return BookingReply(success=True)

        orch.channel.auto_book.side_effect = slow_booking
        slot = _slots("08:10")[0]
        first = asyncio.create_task(orch.handle(BookSlot(slot=slot, monitor_id=sarah)))
        await asyncio.sleep(0.01)

        second = await orch.handle(BookSlot(slot=slot, monitor_id=tom))
        release.set()
        first_response = await first

        assert first_response.success is True
        assert first_response.data["rebooksRemaining"] == 0
        assert second.success is False
        assert second.error == QUOTA_MESSAGE
        assert orch.stats.rebooks_used == 1
        orch.channel.auto_book.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_booking_releases_the_reservation(self, behavior):
        orch = make_orchestrator(behavior, subscription=Subscription(tier=SubscriptionTier.STARTER, rebooks_total=1))
        monitor_id = await _add_sarah(orch)
        orch.channel.auto_book.return_value = BookingReply(success=False, error="Calendar did not load")

        failed = await orch.book_slot(_slots("08:10")[0], monitor_id)
        orch.channel.auto_book.return_value = BookingReply(success=True)
        retried = await orch.book_slot(_slots("08:10")[0], monitor_id)

        assert failed.success is False
        assert retried.success is True
        assert orch.stats.rebooks_used == 1

    @pytest.mark.asyncio
    async def test_unknown_monitor(self, behavior):
        orch = make_orchestrator(behavior)

        response = await orch.handle(BookSlot(slot=_slots("08:10")[0], monitor_id="missing"))

        assert response.success is False
        assert response.error == "Monitor not found: missing"


class TestCommandSurface:
    @pytest.mark.asyncio
    async def test_unknown_action(self, behavior):
        orch = make_orchestrator(behavior)
        result = await orch.handle_payload({"action": "selfDestruct"})
        assert result == {"success": False, "error": "Unknown action: 'selfDestruct'"}

    @pytest.mark.asyncio
    async def test_add_and_list_monitors_from_payloads(self, behavior):
        orch = make_orchestrator(behavior)
        await orch.handle_payload({"action": "updateSettings", "settings": {"autoCheck": False}})

        added = await orch.handle_payload(
            {
                "action": "addMonitor",
                "monitor": {"name": "Sarah", "testCentres": ["Manchester"], "status": "active"},
            }
        )
        listed = await orch.handle_payload({"action": "getMonitors"})

        assert added["success"] is True
        assert added["message"] == "Monitor added for Sarah"
        assert [m["name"] for m in listed["monitors"]] == ["Sarah"]
        assert listed["monitors"][0]["testCentres"] == ["Manchester"]

    @pytest.mark.asyncio
    async def test_invalid_monitor_is_rejected(self, behavior):
        orch = make_orchestrator(behavior)
        result = await orch.handle_payload({"action": "addMonitor", "monitor": {"name": "", "testCentres": []}})
        assert result["success"] is False
        assert result["error"].startswith("Invalid request")

    @pytest.mark.asyncio
    async def test_update_and_delete_monitor(self, behavior):
        orch = make_orchestrator(behavior)
        monitor_id = await _add_sarah(orch)

        updated = await orch.handle_payload(
            {"action": "updateMonitor", "monitorId": monitor_id, "updates": {"testCentres": ["Leeds"]}}
        )
        deleted = await orch.handle_payload({"action": "deleteMonitor", "monitorId": monitor_id})
        missing = await orch.handle_payload({"action": "deleteMonitor", "monitorId": monitor_id})

        assert updated["monitor"]["testCentres"] == ["Leeds"]
        assert deleted["success"] is True
        assert orch.stats.monitors_count == 0
        assert missing == {"success": False, "error": f"Monitor not found: {monitor_id}"}

    @pytest.mark.asyncio
    async def test_read_commands(self, behavior):
        orch = make_orchestrator(behavior)

        stats = await orch.handle_payload({"action": "getStats"})
        risk = await orch.handle_payload({"action": "getRisk"})
        settings = await orch.handle_payload({"action": "getSettings"})
        connection = await orch.handle_payload({"action": "checkConnection"})

        assert stats["stats"]["rebooksTotal"] == 5
        assert risk["risk"]["level"] == "low"
        assert settings["settings"]["checkIntervalSeconds"] == 30
        assert connection["phase"] == "idle"

    @pytest.mark.asyncio
    async def test_manual_check_reports_new_slots(self, behavior):
        orch = make_orchestrator(behavior)
        monitor_id = await _add_sarah(orch)
        orch.channel.perform_check.return_value = CheckReply(
            success=True,
            slots_found=[MonitorSlots(monitor_id=monitor_id, slots=_slots("08:10"))],
        )

        result = await orch.handle_payload({"action": "manualCheck"})

        assert result == {"success": True, "message": "Check complete", "slotsFound": 1}

    @pytest.mark.asyncio
    async def test_state_is_persisted_in_camel_case(self, behavior):
        store = MemoryStore()
        orch = make_orchestrator(behavior, store=store)
        await _add_sarah(orch)

        assert store.get("settings")["checkIntervalSeconds"] == 30
        assert store.get("stats")["monitorsCount"] == 1
        assert store.get("monitors")[0]["testCentres"] == ["Manchester"]
