"""
Tests for the adaptive poller (campreg/watch/poller.py)
"""
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from campreg.common.config import ExecutorConfig, WindowConfig
from campreg.common.executor import LoggingExecutor, build_executor
from campreg.common.models import (
    RegistrationPlan,
    PlanStatus,
    OpenStrategy,
    DetectionLogEntry,
    DetectionSignal,
    Verdict,
)
from campreg.watch.classifier import OpenSignalClassifier, ProbeError
from campreg.watch.poller import AdaptivePoller, select_interval
from campreg.watch.window import SeasonCalendar, TargetWindowResolver

DETECT_URL = "https://camp.example.com/register"


@pytest.fixture()
def classifier():
    classifier = MagicMock(spec=OpenSignalClassifier)
    classifier.probe = AsyncMock(return_value=Verdict(is_open=False, negative=["coming soon"]))
    return classifier


@pytest.fixture()
def poller(store, classifier, executor, clock):
    resolver = TargetWindowResolver(SeasonCalendar(WindowConfig().season_guesses))
    return AdaptivePoller(store, resolver, classifier, executor, clock=clock)


async def add_plan(store, clock, **overrides):
    data = dict(
        user_id="user-1",
        target_session_id="session-1",
        detect_url=DETECT_URL,
        manual_open_at=clock.now + timedelta(minutes=30),
    )
    data.update(overrides)
    return await store.add_plan(RegistrationPlan(**data))


class TestSelectInterval:
    @pytest.mark.parametrize("until_start,since_end,expected", [
        (2881, -3001, 15),
        (2880, -3000, 5),
        (61, -181, 5),
        (60, -180, 1),
        (0, -120, 1),
        (-59, -61, 1),
        (-60, -60, 5),
        (-179, 59, 5),
        (-239, 119, 5),
        (-240, 120, 15),
        (-10000, 9880, 15),
    ])
    def test_tier_boundaries(self, until_start, since_end, expected):
        interval, reason = select_interval(until_start, since_end)
        assert interval == expected
        assert reason

    def test_interval_never_shrinks_moving_away_from_window(self):
        # Approaching from far out, intervals only tighten
        previous = None
        for until_start in range(5000, -60, -10):
            interval, _ = select_interval(until_start, -(until_start + 120))
            if previous is not None:
                assert interval <= previous
            previous = interval


class TestDecide:
    @pytest.mark.asyncio
    async def test_first_poll_always_runs(self, poller, store, clock):
        plan = await add_plan(store, clock)
        decision = await poller.decide(plan)
        assert decision.should_poll is True
        assert decision.interval_minutes == 1

    @pytest.mark.asyncio
    async def test_recent_entry_skips(self, poller, store, clock):
        plan = await add_plan(store, clock, manual_open_at=clock.now + timedelta(hours=10))
        await store.append_detection(DetectionLogEntry(
            plan_id=plan.id, seen_at=clock.now, signal=DetectionSignal.CLOSED_DETECTED
        ))

        clock.advance(minutes=4)
        decision = await poller.decide(plan)
        assert decision.interval_minutes == 5
        assert decision.should_poll is False

        clock.advance(minutes=1)
        assert (await poller.decide(plan)).should_poll is True

    @pytest.mark.asyncio
    async def test_error_entries_count_as_checks(self, poller, store, clock):
        plan = await add_plan(store, clock, manual_open_at=clock.now + timedelta(days=5))
        await store.append_detection(DetectionLogEntry(
            plan_id=plan.id, seen_at=clock.now, signal=DetectionSignal.ERROR
        ))
        clock.advance(minutes=10)
        decision = await poller.decide(plan)
        assert decision.interval_minutes == 15
        assert decision.should_poll is False


class TestTick:
    @pytest.mark.asyncio
    async def test_open_verdict_dispatches_once(self, poller, store, classifier, executor, clock):
        plan = await add_plan(store, clock)
        classifier.probe.return_value = Verdict(is_open=True, positive=["register now"])

        summary = await poller.tick()
        assert summary.polled == 1
        assert summary.dispatched == 1
        executor.dispatch.assert_awaited_once()
        assert executor.dispatch.await_args.args[0] == plan.id

        clock.advance(minutes=1)
        summary = await poller.tick()
        assert summary.polled == 1
        assert summary.dispatched == 0
        executor.dispatch.assert_awaited_once()

        history = await store.detection_history(plan.id)
        assert len(history) == 2
        assert "Already dispatched" in history[-1].note

    @pytest.mark.asyncio
    async def test_unconfigured_executor_is_not_recorded_as_dispatched(self, store, classifier, clock):
        executor = build_executor(ExecutorConfig())
        assert isinstance(executor, LoggingExecutor)
        resolver = TargetWindowResolver(SeasonCalendar(WindowConfig().season_guesses))
        poller = AdaptivePoller(store, resolver, classifier, executor, clock=clock)
        plan = await add_plan(store, clock)
        classifier.probe.return_value = Verdict(is_open=True, positive=["register now"])

        summary = await poller.tick()

        assert summary.dispatched == 0
        assert await store.has_dispatched(plan.id) is False
        assert "failed" in (await store.latest_detection(plan.id)).note

    @pytest.mark.asyncio
    async def test_probe_error_is_logged_not_closed(self, poller, store, classifier, clock):
        plan = await add_plan(store, clock)
        classifier.probe.side_effect = ProbeError("Fetch failed: ConnectError")

        summary = await poller.tick()
        latest = await store.latest_detection(plan.id)
        assert summary.errors == 1
        assert latest.signal == DetectionSignal.ERROR
        assert latest.note.startswith("Polling error")

    @pytest.mark.asyncio
    async def test_unexpected_failure_does_not_abort_tick(self, poller, store, classifier, clock):
        first = await add_plan(store, clock)
        second = await add_plan(store, clock)
        classifier.probe.side_effect = [RuntimeError("bug"), Verdict(is_open=False)]

        summary = await poller.tick()
        assert summary.errors == 1
        assert summary.polled == 1
        assert await store.latest_detection(first.id) is None
        assert await store.latest_detection(second.id) is not None

    @pytest.mark.asyncio
    async def test_filters_plans(self, poller, store, classifier, clock):
        await add_plan(store, clock, open_strategy=OpenStrategy.MANUAL)
        await add_plan(store, clock, status=PlanStatus.DONE)
        broken = await add_plan(store, clock, detect_url=None)

        summary = await poller.tick()
        assert summary.total == 1
        assert summary.misconfigured == [broken.id]
        classifier.probe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_manual_open_in_thirty_minutes_scenario(self, poller, store, classifier, clock):
        plan = await add_plan(store, clock)

        decision = await poller.decide(plan)
        assert decision.interval_minutes == 1

        classifier.probe.return_value = Verdict(is_open=True, positive=["register now"])
        await poller.tick()

        # Window ends 90 minutes from the start of the scenario
        clock.advance(minutes=91)
        decision = await poller.decide(plan)
        assert decision.interval_minutes == 5

        clock.advance(minutes=120)
        decision = await poller.decide(plan)
        assert decision.interval_minutes == 15


class TestRetire:
    @pytest.mark.asyncio
    async def test_retired_plan_is_no_longer_polled(self, poller, store, classifier, clock):
        plan = await add_plan(store, clock)
        await poller.retire(plan.id)

        summary = await poller.tick()
        assert summary.total == 0
        assert (await store.get_plan(plan.id)).status == PlanStatus.DONE

    @pytest.mark.asyncio
    async def test_cannot_retire_to_active(self, poller, store, clock):
        plan = await add_plan(store, clock)
        with pytest.raises(ValueError):
            await poller.retire(plan.id, PlanStatus.ACTIVE)
