"""
Interruption broker

Turns a bot challenge hit by the executor into a ten-minute ticket, gets the
magic link to the user (SMS, else email), and drives the ticket through
pending -> completed | failed | expired. Re-sends are throttled per ticket with
a compare-and-set on last_notified_at.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..api.auth import SecurityError
from ..common.config import ChallengeConfig
from ..common.executor import AttemptExecutor
from ..common.models import (
    ChallengeTicket,
    TicketStatus,
    DeliveryResult,
    ResolveResult,
    UserProfile,
    utcnow,
)
from ..common.notifications import NotificationManager
from ..common.store import StateStore
from .checkpoints import CheckpointStore
from .links import MagicLinkSigner

logger = logging.getLogger(__name__)


class TicketNotFound(LookupError):
    pass


def _mask_token(token: str) -> str:
    return f"...{token[-4:]}" if len(token) > 4 else token


class InterruptionBroker:

    def __init__(
        self,
        config: ChallengeConfig,
        store: StateStore,
        notifications: NotificationManager,
        signer: MagicLinkSigner,
        checkpoints: CheckpointStore,
        executor: AttemptExecutor,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ttl = timedelta(minutes=config.ticket_ttl_minutes)
        self.resend_interval = timedelta(seconds=config.resend_interval_seconds)
        self.store = store
        self.notifications = notifications
        self.signer = signer
        self.checkpoints = checkpoints
        self.executor = executor
        self.clock = clock

    # ========================================
    # Create and notify
    # ========================================

    async def create_ticket(
        self,
        user_id: str,
        session_id: str,
        provider: str,
        registration_id: Optional[str] = None,
    ) -> tuple[ChallengeTicket, DeliveryResult]:
        """Record a new challenge and send the first notification"""
        now = self.clock()
        expires_at = now + self.ttl
        token = self.signer.mint_token()

        ticket = await self.store.add_ticket(ChallengeTicket(
            user_id=user_id,
            session_id=session_id,
            registration_id=registration_id,
            provider=provider,
            resume_token=token,
            magic_url=self.signer.build_url(token, expires_at),
            created_at=now,
            expires_at=expires_at,
        ))
        logger.info(
            f"Challenge ticket {ticket.id} for session {session_id} ({provider}), "
            f"token {_mask_token(token)}, expires {expires_at.isoformat()}"
        )

        delivery = await self.notify(ticket.id, throttle=False)
        return ticket, delivery

    async def notify(self, ticket_id: str, throttle: bool = True) -> DeliveryResult:
        """
        Send the ticket's magic link.

        The throttle is claimed before sending; if the send reaches no channel
        the claim is released so a later resend is not blocked.
        """
        now = self.clock()
        claimed, ticket, previous = await self.store.claim_notification(
            ticket_id, now, self.resend_interval if throttle else None
        )
        if not claimed:
            logger.info(f"Not notifying ticket {ticket_id}: status {ticket.status.value}, "
                        f"last notified {ticket.last_notified_at}")
            return DeliveryResult(delivered=False, throttled=ticket.status == TicketStatus.PENDING)

        user = await self._user(ticket.user_id)
        delivery = await self.notifications.notify_challenge(user, ticket)

        if delivery.delivered:
            await self.store.record_delivery(ticket.id, delivery.channel)
        else:
            await self.store.release_notification(ticket.id, now, previous)
        return delivery

    async def resend(self, ticket_id: str) -> DeliveryResult:
        """Manual or reply-triggered resend, at most once per throttle window"""
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        if not ticket.is_live(self.clock()):
            logger.info(f"Ticket {ticket_id} is not live, not resending")
            return DeliveryResult(delivered=False)
        return await self.notify(ticket_id, throttle=True)

    # ========================================
    # Resolution
    # ========================================

    async def _authenticate(self, token: str, signature: str) -> ChallengeTicket:
        ticket = await self.store.ticket_by_token(token or "")
        if ticket is None:
            logger.warning(f"Unknown resume token {_mask_token(token or '')}")
            raise SecurityError("Invalid or expired token")
        if not self.signer.verify(token, signature, ticket.expires_at):
            logger.warning(f"Bad link signature for ticket {ticket.id}")
            raise SecurityError("Invalid or expired token")
        return ticket

    async def resolve(self, token: str, signature: str) -> ResolveResult:
        """
        The human finished the challenge. Flip the ticket to completed and
        resume the executor from the session's latest checkpoint.
        """
        ticket = await self._authenticate(token, signature)
        now = self.clock()

        if ticket.status != TicketStatus.PENDING:
            return self._closed_result(ticket)

        if ticket.is_expired(now):
            await self._close(ticket, TicketStatus.EXPIRED, "expired")
            ticket = await self.store.get_ticket(ticket.id)
            return self._closed_result(ticket)

        won, ticket = await self.store.transition_ticket(ticket.id, TicketStatus.COMPLETED, now)
        if not won:
            return self._closed_result(ticket)

        checkpoint = self.checkpoints.restore(ticket.session_id)
        if checkpoint is None:
            logger.warning(f"No recoverable checkpoint for session {ticket.session_id}; executor restarts")
        try:
            await self.executor.resume(ticket.session_id, checkpoint)
        except Exception as e:
            logger.error(f"Resume of session {ticket.session_id} failed: {e}")

        logger.info(f"Challenge ticket {ticket.id} completed")
        return ResolveResult(
            ticket_id=ticket.id,
            status=ticket.status,
            resolved=True,
            message="Verification complete. Your registration will continue.",
            checkpoint_id=checkpoint.id if checkpoint else None,
        )

    async def fail(self, token: str, signature: str, reason: str) -> ResolveResult:
        """The challenge UI reports the challenge cannot be solved"""
        ticket = await self._authenticate(token, signature)
        if ticket.status != TicketStatus.PENDING:
            return self._closed_result(ticket)

        status = TicketStatus.EXPIRED if ticket.is_expired(self.clock()) else TicketStatus.FAILED
        await self._close(ticket, status, reason)
        ticket = await self.store.get_ticket(ticket.id)
        return self._closed_result(ticket)

    async def expire_stale(self) -> List[ChallengeTicket]:
        """Timeout sweep: pending tickets past their expiry become expired"""
        now = self.clock()
        expired = []
        for ticket in await self.store.stale_tickets(now):
            if await self._close(ticket, TicketStatus.EXPIRED, "expired"):
                expired.append(await self.store.get_ticket(ticket.id))

        if expired:
            logger.info(f"Expired {len(expired)} challenge tickets")
        return expired

    async def _close(self, ticket: ChallengeTicket, status: TicketStatus, reason: str) -> bool:
        won, ticket = await self.store.transition_ticket(
            ticket.id, status, self.clock(), failure_reason=reason
        )
        if not won:
            return False

        logger.warning(f"Challenge ticket {ticket.id} {status.value}: {reason}")
        try:
            await self.executor.abort(ticket.session_id, f"challenge {status.value}: {reason}")
        except Exception as e:
            logger.error(f"Abort of session {ticket.session_id} failed: {e}")
        self.checkpoints.discard(ticket.session_id)

        user = await self._user(ticket.user_id)
        await self.notifications.notify_challenge_closed(user, ticket)
        return True

    def _closed_result(self, ticket: ChallengeTicket) -> ResolveResult:
        messages = {
            TicketStatus.COMPLETED: "This verification was already completed.",
            TicketStatus.FAILED: "This verification could not be completed. The registration was stopped.",
            TicketStatus.EXPIRED: "This verification link expired. The registration was stopped.",
        }
        return ResolveResult(
            ticket_id=ticket.id,
            status=ticket.status,
            resolved=False,
            message=messages.get(ticket.status, "This verification is still pending."),
        )

    async def _user(self, user_id: str) -> UserProfile:
        user = await self.store.get_user(user_id)
        if user is None:
            logger.warning(f"No profile for user {user_id}; notifications limited")
            return UserProfile(user_id=user_id)
        return user
