"""
Tests for the state store (campreg/common/store.py)
"""
import asyncio
import pytest
from datetime import datetime, timedelta

import pytz

from campreg.common.models import (
    RegistrationPlan,
    PlanStatus,
    DetectionLogEntry,
    DetectionSignal,
    ChallengeTicket,
    TicketStatus,
    Reservation,
    ReservationStatus,
    ChargeStatus,
    UserProfile,
)
from campreg.common.store import StateStore, mask_phone

NOW = datetime(2030, 6, 1, 15, 0, tzinfo=pytz.UTC)


def make_ticket(**overrides):
    data = dict(
        user_id="user-1",
        session_id="session-1",
        provider="campminder",
        resume_token="tok-1",
        magic_url="https://campreg.test/assist/captcha?token=tok-1",
        created_at=NOW,
        expires_at=NOW + timedelta(minutes=10),
    )
    data.update(overrides)
    return ChallengeTicket(**data)


def test_mask_phone():
    assert mask_phone("+15551234567") == "+1•••67"
    assert mask_phone(None) == "<none>"


class TestDetectionLog:
    @pytest.mark.asyncio
    async def test_latest_detection(self, store):
        await store.append_detection(DetectionLogEntry(plan_id="p", seen_at=NOW, signal=DetectionSignal.CLOSED_DETECTED))
        later = NOW + timedelta(minutes=5)
        await store.append_detection(DetectionLogEntry(plan_id="p", seen_at=later, signal=DetectionSignal.ERROR))

        latest = await store.latest_detection("p")
        assert latest.seen_at == later
        assert latest.signal == DetectionSignal.ERROR
        assert await store.latest_detection("other") is None

    @pytest.mark.asyncio
    async def test_out_of_order_entry_is_clamped(self, store):
        await store.append_detection(DetectionLogEntry(plan_id="p", seen_at=NOW, signal=DetectionSignal.CLOSED_DETECTED))
        entry = await store.append_detection(
            DetectionLogEntry(plan_id="p", seen_at=NOW - timedelta(seconds=3), signal=DetectionSignal.OPEN_DETECTED)
        )
        assert entry.seen_at == NOW
        history = await store.detection_history("p")
        assert [e.seen_at for e in history] == [NOW, NOW]

    @pytest.mark.asyncio
    async def test_has_dispatched(self, store):
        await store.append_detection(DetectionLogEntry(plan_id="p", seen_at=NOW, signal=DetectionSignal.OPEN_DETECTED))
        assert await store.has_dispatched("p") is False
        await store.append_detection(
            DetectionLogEntry(plan_id="p", seen_at=NOW, signal=DetectionSignal.OPEN_DETECTED, dispatched=True)
        )
        assert await store.has_dispatched("p") is True


class TestTickets:
    @pytest.mark.asyncio
    async def test_only_one_transition_wins(self, store):
        ticket = await store.add_ticket(make_ticket())

        results = await asyncio.gather(
            store.transition_ticket(ticket.id, TicketStatus.COMPLETED, NOW),
            store.transition_ticket(ticket.id, TicketStatus.EXPIRED, NOW),
        )
        winners = [won for won, _ in results]
        assert winners.count(True) == 1
        assert (await store.get_ticket(ticket.id)).status == TicketStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_claim_notification_throttles(self, store):
        ticket = await store.add_ticket(make_ticket())
        interval = timedelta(minutes=2)

        claimed, _, previous = await store.claim_notification(ticket.id, NOW, interval)
        assert claimed is True
        assert previous is None

        claimed, _, _ = await store.claim_notification(ticket.id, NOW + timedelta(seconds=30), interval)
        assert claimed is False

        claimed, _, previous = await store.claim_notification(ticket.id, NOW + timedelta(minutes=2), interval)
        assert claimed is True
        assert previous == NOW

    @pytest.mark.asyncio
    async def test_claim_refused_for_closed_ticket(self, store):
        ticket = await store.add_ticket(make_ticket(status=TicketStatus.EXPIRED))
        claimed, _, _ = await store.claim_notification(ticket.id, NOW, None)
        assert claimed is False

    @pytest.mark.asyncio
    async def test_release_restores_previous(self, store):
        ticket = await store.add_ticket(make_ticket())
        await store.claim_notification(ticket.id, NOW, None)
        await store.release_notification(ticket.id, NOW, None)
        assert (await store.get_ticket(ticket.id)).last_notified_at is None

    @pytest.mark.asyncio
    async def test_stale_and_live_tickets(self, store):
        old = await store.add_ticket(make_ticket(resume_token="old"))
        fresh = await store.add_ticket(make_ticket(
            resume_token="fresh",
            created_at=NOW + timedelta(minutes=8),
            expires_at=NOW + timedelta(minutes=18),
        ))
        later = NOW + timedelta(minutes=11)

        assert [t.id for t in await store.stale_tickets(later)] == [old.id]
        assert (await store.latest_live_ticket("user-1", later)).id == fresh.id
        assert (await store.ticket_by_token("fresh")).id == fresh.id


class TestReservations:
    @pytest.mark.asyncio
    async def test_transition_is_one_way(self, store):
        reservation = await store.add_reservation(Reservation(payment_intent_id="pi_1"))

        won, updated = await store.transition_reservation(reservation.id, ReservationStatus.CONFIRMED, {"ok": True})
        assert won is True
        assert updated.status == ReservationStatus.CONFIRMED

        won, updated = await store.transition_reservation(reservation.id, ReservationStatus.FAILED, {"error": "x"})
        assert won is False
        assert updated.status == ReservationStatus.CONFIRMED
        assert updated.provider_response == {"ok": True}

    @pytest.mark.asyncio
    async def test_update_charge(self, store):
        reservation = await store.add_reservation(Reservation())
        updated = await store.update_charge(reservation.id, ChargeStatus.ERROR, "declined")
        assert updated.charge_status == ChargeStatus.ERROR
        assert updated.charge_error == "declined"


class TestConsent:
    @pytest.mark.asyncio
    async def test_unknown_number_counts_as_opted_in(self, store):
        assert await store.is_opted_in("+15550000000") is True

    @pytest.mark.asyncio
    async def test_opt_out_then_in(self, store):
        await store.set_consent("+15550000000", opted_in=False, now=NOW)
        assert await store.is_opted_in("+15550000000") is False

        entry = await store.set_consent("+15550000000", opted_in=True, now=NOW)
        assert entry.last_opt_in_at == NOW
        assert await store.is_opted_in("+15550000000") is True

    @pytest.mark.asyncio
    async def test_verified_user_by_phone(self, store):
        await store.add_user(UserProfile(user_id="a", phone_e164="+15550000000"))
        assert await store.verified_user_by_phone("+15550000000") is None
        await store.add_user(UserProfile(user_id="b", phone_e164="+15550000000", phone_verified=True))
        assert (await store.verified_user_by_phone("+15550000000")).user_id == "b"


class TestPersistence:
    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        path = tmp_path / "state.json"
        store = StateStore(str(path))
        plan = await store.add_plan(RegistrationPlan(user_id="u", target_session_id="s"))
        await store.append_detection(DetectionLogEntry(plan_id=plan.id, seen_at=NOW, signal=DetectionSignal.CLOSED_DETECTED))
        await store.add_ticket(make_ticket())
        await store.set_consent("+15550000000", opted_in=False, now=NOW)
        await store.set_plan_status(plan.id, PlanStatus.DONE)

        reloaded = StateStore(str(path))
        assert reloaded.load() is True
        assert reloaded.plans[plan.id].status == PlanStatus.DONE
        assert (await reloaded.latest_detection(plan.id)).seen_at == NOW
        assert await reloaded.ticket_by_token("tok-1") is not None
        assert await reloaded.is_opted_in("+15550000000") is False

    def test_load_without_file(self, tmp_path):
        assert StateStore(str(tmp_path / "missing.json")).load() is False
