"""
State store for the registration coordinator

Holds plans, the detection log, challenge tickets, reservations, the consent
ledger and the user directory view. Every mutation happens under one asyncio
lock, so each compare-and-set below is a single read-check-write.
Optionally snapshots itself to a JSON file after each mutation.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, List, Tuple, Any

from .models import (
    RegistrationPlan,
    PlanStatus,
    DetectionLogEntry,
    ChallengeTicket,
    TicketStatus,
    Reservation,
    ReservationStatus,
    ChargeStatus,
    ConsentLedgerEntry,
    UserProfile,
    utcnow,
)

logger = logging.getLogger(__name__)


def mask_phone(phone: Optional[str]) -> str:
    """+15551234567 -> +1•••67"""
    if not phone:
        return "<none>"
    return f"{phone[:2]}•••{phone[-2:]}"


class StateStore:
    """
    In-process store with optional JSON-file persistence.
    """

    def __init__(self, state_file: Optional[str] = None):
        self.state_file = Path(state_file) if state_file else None
        self._lock = asyncio.Lock()
        self.plans: Dict[str, RegistrationPlan] = {}
        self.detections: Dict[str, List[DetectionLogEntry]] = {}
        self.tickets: Dict[str, ChallengeTicket] = {}
        self.reservations: Dict[str, Reservation] = {}
        self.consent: Dict[str, ConsentLedgerEntry] = {}
        self.users: Dict[str, UserProfile] = {}

    # ========================================
    # Persistence
    # ========================================

    def save(self):
        """Save state to file"""
        if not self.state_file:
            return

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "plans": [p.model_dump(mode="json") for p in self.plans.values()],
            "detections": [
                e.model_dump(mode="json")
                for entries in self.detections.values()
                for e in entries
            ],
            "tickets": [t.model_dump(mode="json") for t in self.tickets.values()],
            "reservations": [r.model_dump(mode="json") for r in self.reservations.values()],
            "consent": [c.model_dump(mode="json") for c in self.consent.values()],
            "users": [u.model_dump(mode="json") for u in self.users.values()],
        }
        tmp = self.state_file.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.state_file)
        logger.debug(f"State saved to {self.state_file}")

    def load(self) -> bool:
        """Load state from file"""
        if not self.state_file or not self.state_file.exists():
            return False

        with open(self.state_file) as f:
            data = json.load(f)

        self.plans = {p["id"]: RegistrationPlan(**p) for p in data.get("plans", [])}
        self.detections = {}
        for raw in data.get("detections", []):
            entry = DetectionLogEntry(**raw)
            self.detections.setdefault(entry.plan_id, []).append(entry)
        self.tickets = {t["id"]: ChallengeTicket(**t) for t in data.get("tickets", [])}
        self.reservations = {r["id"]: Reservation(**r) for r in data.get("reservations", [])}
        self.consent = {c["phone_e164"]: ConsentLedgerEntry(**c) for c in data.get("consent", [])}
        self.users = {u["user_id"]: UserProfile(**u) for u in data.get("users", [])}

        logger.info(f"State loaded from {self.state_file}")
        return True

    # ========================================
    # Plans and detection log
    # ========================================

    async def add_plan(self, plan: RegistrationPlan) -> RegistrationPlan:
        async with self._lock:
            self.plans[plan.id] = plan
            self.save()
        return plan

    async def get_plan(self, plan_id: str) -> Optional[RegistrationPlan]:
        return self.plans.get(plan_id)

    async def list_plans(self, status: Optional[PlanStatus] = None) -> List[RegistrationPlan]:
        return [p for p in self.plans.values() if status is None or p.status == status]

    async def set_plan_status(self, plan_id: str, status: PlanStatus) -> RegistrationPlan:
        async with self._lock:
            plan = self.plans[plan_id].model_copy(update={"status": status})
            self.plans[plan_id] = plan
            self.save()
        return plan

    async def append_detection(self, entry: DetectionLogEntry) -> DetectionLogEntry:
        async with self._lock:
            entries = self.detections.setdefault(entry.plan_id, [])
            if entries and entry.seen_at < entries[-1].seen_at:
                # Overlapping ticks can finish out of order; keep the log non-decreasing
                logger.debug(f"Clamping out-of-order detection for plan {entry.plan_id}")
                entry = entry.model_copy(update={"seen_at": entries[-1].seen_at})
            entries.append(entry)
            self.save()
        return entry

    async def latest_detection(self, plan_id: str) -> Optional[DetectionLogEntry]:
        entries = self.detections.get(plan_id)
        return entries[-1] if entries else None

    async def detection_history(self, plan_id: str) -> List[DetectionLogEntry]:
        return list(self.detections.get(plan_id, []))

    async def has_dispatched(self, plan_id: str) -> bool:
        return any(e.dispatched for e in self.detections.get(plan_id, []))

    # ========================================
    # Challenge tickets
    # ========================================

    async def add_ticket(self, ticket: ChallengeTicket) -> ChallengeTicket:
        async with self._lock:
            self.tickets[ticket.id] = ticket
            self.save()
        return ticket

    async def get_ticket(self, ticket_id: str) -> Optional[ChallengeTicket]:
        return self.tickets.get(ticket_id)

    async def ticket_by_token(self, token: str) -> Optional[ChallengeTicket]:
        return next((t for t in self.tickets.values() if t.resume_token == token), None)

    async def latest_live_ticket(self, user_id: str, now: datetime) -> Optional[ChallengeTicket]:
        live = [t for t in self.tickets.values() if t.user_id == user_id and t.is_live(now)]
        return max(live, key=lambda t: t.created_at) if live else None

    async def stale_tickets(self, now: datetime) -> List[ChallengeTicket]:
        return [
            t for t in self.tickets.values()
            if t.status == TicketStatus.PENDING and t.is_expired(now)
        ]

    async def transition_ticket(
        self,
        ticket_id: str,
        status: TicketStatus,
        now: datetime,
        failure_reason: Optional[str] = None,
    ) -> Tuple[bool, ChallengeTicket]:
        """
        Move a pending ticket to a terminal status.

        Returns (won, ticket). Only the caller that observes `pending` wins;
        everyone else gets the ticket as it already is.
        """
        async with self._lock:
            ticket = self.tickets[ticket_id]
            if ticket.status != TicketStatus.PENDING:
                return False, ticket
            ticket = ticket.model_copy(update={
                "status": status,
                "resolved_at": now,
                "failure_reason": failure_reason,
            })
            self.tickets[ticket_id] = ticket
            self.save()
        return True, ticket

    async def claim_notification(
        self,
        ticket_id: str,
        now: datetime,
        min_interval: Optional[timedelta],
    ) -> Tuple[bool, ChallengeTicket, Optional[datetime]]:
        """
        Compare-and-set on last_notified_at.

        Returns (claimed, ticket, previous_last_notified_at). The claim fails
        when the ticket is no longer pending or was notified within
        min_interval; pass None to skip the throttle (first notification).
        """
        async with self._lock:
            ticket = self.tickets[ticket_id]
            previous = ticket.last_notified_at
            if ticket.status != TicketStatus.PENDING:
                return False, ticket, previous
            if min_interval is not None and ticket.throttled(now, min_interval):
                return False, ticket, previous
            ticket = ticket.model_copy(update={"last_notified_at": now})
            self.tickets[ticket_id] = ticket
            self.save()
        return True, ticket, previous

    async def record_delivery(self, ticket_id: str, channel: str) -> ChallengeTicket:
        async with self._lock:
            ticket = self.tickets[ticket_id].model_copy(update={"notification_channel": channel})
            self.tickets[ticket_id] = ticket
            self.save()
        return ticket

    async def release_notification(
        self,
        ticket_id: str,
        claimed_at: datetime,
        previous: Optional[datetime],
    ) -> ChallengeTicket:
        """Undo a claim whose send reached no channel, unless someone re-claimed since"""
        async with self._lock:
            ticket = self.tickets[ticket_id]
            if ticket.last_notified_at == claimed_at:
                ticket = ticket.model_copy(update={"last_notified_at": previous})
                self.tickets[ticket_id] = ticket
                self.save()
        return ticket

    # ========================================
    # Reservations
    # ========================================

    async def add_reservation(self, reservation: Reservation) -> Reservation:
        async with self._lock:
            self.reservations[reservation.id] = reservation
            self.save()
        return reservation

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        return self.reservations.get(reservation_id)

    async def transition_reservation(
        self,
        reservation_id: str,
        status: ReservationStatus,
        provider_response: Optional[Dict[str, Any]],
        failure_reason: Optional[str] = None,
    ) -> Tuple[bool, Reservation]:
        """One-way pending -> terminal transition. Returns (won, reservation)."""
        async with self._lock:
            reservation = self.reservations[reservation_id]
            if reservation.status.is_terminal:
                return False, reservation
            reservation = reservation.model_copy(update={
                "status": status,
                "provider_response": provider_response,
                "failure_reason": failure_reason,
                "updated_at": utcnow(),
            })
            self.reservations[reservation_id] = reservation
            self.save()
        return True, reservation

    async def update_charge(
        self,
        reservation_id: str,
        charge_status: ChargeStatus,
        charge_error: Optional[str] = None,
    ) -> Reservation:
        async with self._lock:
            reservation = self.reservations[reservation_id].model_copy(update={
                "charge_status": charge_status,
                "charge_error": charge_error,
                "updated_at": utcnow(),
            })
            self.reservations[reservation_id] = reservation
            self.save()
        return reservation

    # ========================================
    # Consent ledger and users
    # ========================================

    async def get_consent(self, phone_e164: str) -> Optional[ConsentLedgerEntry]:
        return self.consent.get(phone_e164)

    async def is_opted_in(self, phone_e164: str) -> bool:
        # A verified number with no ledger entry has never opted out
        entry = self.consent.get(phone_e164)
        return entry is None or entry.opted_in

    async def set_consent(self, phone_e164: str, opted_in: bool, now: datetime) -> ConsentLedgerEntry:
        async with self._lock:
            entry = self.consent.get(phone_e164) or ConsentLedgerEntry(phone_e164=phone_e164)
            update: Dict[str, Any] = {"opted_in": opted_in, "updated_at": now}
            if opted_in:
                update["last_opt_in_at"] = now
            entry = entry.model_copy(update=update)
            self.consent[phone_e164] = entry
            self.save()
        logger.info(f"Consent for {mask_phone(phone_e164)} set to {'in' if opted_in else 'out'}")
        return entry

    async def add_user(self, user: UserProfile) -> UserProfile:
        async with self._lock:
            self.users[user.user_id] = user
            self.save()
        return user

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self.users.get(user_id)

    async def verified_user_by_phone(self, phone_e164: str) -> Optional[UserProfile]:
        return next(
            (u for u in self.users.values() if u.phone_e164 == phone_e164 and u.phone_verified),
            None,
        )
