"""
Adaptive poller

Woken by an external timer (every minute or so). For each watchable plan it
picks a re-check interval from how close the plan is to its target window,
then probes only if the latest detection log entry is older than that
interval. The log is the only coordination between overlapping ticks: two
ticks racing on the same plan cost one extra request, nothing more.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple
from uuid import uuid4

from ..common.executor import AttemptExecutor
from ..common.models import (
    RegistrationPlan,
    PlanStatus,
    DetectionLogEntry,
    DetectionSignal,
    PollDecision,
    TickSummary,
    utcnow,
)
from ..common.store import StateStore
from .classifier import OpenSignalClassifier, ProbeError
from .window import TargetWindowResolver

logger = logging.getLogger(__name__)

# (minutes) tier edges, relative to window start / window end
FAR_BEFORE = 48 * 60
NEAR_BEFORE = 60
NEAR_AFTER_START = -60
RECENT_AFTER_END = 120

SLOW_INTERVAL = 15
MEDIUM_INTERVAL = 5
FAST_INTERVAL = 1


def select_interval(minutes_until_start: float, minutes_since_end: float) -> Tuple[int, str]:
    """
    Required minutes between probes for a plan at this distance from its window.

    Returns (interval_minutes, reason).
    """
    if minutes_until_start > FAR_BEFORE:
        return SLOW_INTERVAL, f"Outside target window ({minutes_until_start / 60:.0f}h until window)"
    if minutes_until_start > NEAR_BEFORE:
        return MEDIUM_INTERVAL, f"Within 48h of window ({minutes_until_start / 60:.1f}h until window)"
    if minutes_until_start > NEAR_AFTER_START:
        direction = "until" if minutes_until_start > 0 else "past"
        return FAST_INTERVAL, f"Within 1h of window ({abs(minutes_until_start):.0f}min {direction} start)"
    if minutes_since_end < RECENT_AFTER_END:
        return MEDIUM_INTERVAL, f"Recent window ({minutes_since_end:.0f}min past end)"
    return SLOW_INTERVAL, f"Past target window ({minutes_since_end / 60:.1f}h past end)"


class AdaptivePoller:
    """Runs one poll tick over all watchable plans"""

    def __init__(
        self,
        store: StateStore,
        resolver: TargetWindowResolver,
        classifier: OpenSignalClassifier,
        executor: AttemptExecutor,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.resolver = resolver
        self.classifier = classifier
        self.executor = executor
        self.clock = clock

    async def decide(self, plan: RegistrationPlan, now: Optional[datetime] = None) -> PollDecision:
        now = now or self.clock()
        window = self.resolver.resolve(plan, now)
        minutes_until_start = (window.start - now).total_seconds() / 60
        minutes_since_end = (now - window.end).total_seconds() / 60
        interval, reason = select_interval(minutes_until_start, minutes_since_end)

        latest = await self.store.latest_detection(plan.id)
        if latest is None:
            should_poll = True
            next_check_at = now
        else:
            next_check_at = latest.seen_at + timedelta(minutes=interval)
            should_poll = now >= next_check_at

        return PollDecision(
            should_poll=should_poll,
            interval_minutes=interval,
            reason=reason,
            next_check_at=next_check_at,
            minutes_until_start=minutes_until_start,
            minutes_since_end=minutes_since_end,
            window=window,
        )

    async def tick(self) -> TickSummary:
        """One timer wake-up. Per-plan failures are logged and never abort the tick."""
        plans = [p for p in await self.store.list_plans(PlanStatus.ACTIVE) if p.is_watchable]
        summary = TickSummary(total=len(plans))

        if not plans:
            logger.info("No active plans to watch")
            return summary

        for plan in plans:
            if not plan.detect_url:
                logger.error(f"Plan {plan.id} uses {plan.open_strategy.value} strategy but has no detection URL")
                summary.misconfigured.append(plan.id)
                continue

            try:
                decision = await self.decide(plan)
                if not decision.should_poll:
                    summary.skipped += 1
                    logger.debug(
                        f"Skipped plan {plan.id}: {decision.reason}, "
                        f"next check at {decision.next_check_at.isoformat()}"
                    )
                    continue

                entry = await self.poll_plan(plan, decision)
                summary.polled += 1
                if entry.signal == DetectionSignal.ERROR:
                    summary.errors += 1
                if entry.dispatched:
                    summary.dispatched += 1
                logger.info(f"Polled plan {plan.id}: {decision.reason} -> {entry.signal.value}")
            except Exception as e:
                summary.errors += 1
                logger.exception(f"Error processing plan {plan.id}: {e}")

        logger.info(
            f"Poll tick: {summary.polled} polled, {summary.skipped} skipped, "
            f"{summary.dispatched} dispatched, {summary.errors} errors"
        )
        return summary

    async def poll_plan(self, plan: RegistrationPlan, decision: PollDecision) -> DetectionLogEntry:
        """Probe once and record exactly one detection log entry"""
        seen_at = self.clock()

        try:
            verdict = await self.classifier.probe(plan.detect_url, plan.timezone)
        except ProbeError as e:
            logger.warning(f"Probe failed for plan {plan.id}: {e}")
            return await self.store.append_detection(DetectionLogEntry(
                plan_id=plan.id,
                seen_at=seen_at,
                signal=DetectionSignal.ERROR,
                note=f"Polling error: {e}",
            ))

        note = f"{decision.reason}. {verdict.evidence()}"
        dispatched = False

        if verdict.is_open:
            if await self.store.has_dispatched(plan.id):
                note += ". Already dispatched"
            else:
                logger.info(f"🎯 Registration open detected for plan {plan.id}")
                session_id = uuid4().hex
                try:
                    dispatched = await self.executor.dispatch(plan.id, session_id)
                except Exception as e:
                    logger.error(f"Dispatch failed for plan {plan.id}: {e}")
                note += f". Dispatch session {session_id}: {'accepted' if dispatched else 'failed'}"

        return await self.store.append_detection(DetectionLogEntry(
            plan_id=plan.id,
            seen_at=seen_at,
            signal=verdict.signal,
            note=note,
            dispatched=dispatched,
        ))

    async def retire(self, plan_id: str, status: PlanStatus = PlanStatus.DONE) -> RegistrationPlan:
        """Archive a plan so it is no longer watched"""
        if status == PlanStatus.ACTIVE:
            raise ValueError("Retiring a plan needs a terminal status")
        plan = await self.store.set_plan_status(plan_id, status)
        logger.info(f"Plan {plan_id} retired as {status.value}")
        return plan
