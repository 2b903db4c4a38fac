"""
Inbound SMS reply router

Carrier-style keywords first (opt-out, opt-in, help), then any other message
is taken as a request to re-send the sender's live challenge link.
"""
import logging
import re
from datetime import datetime
from typing import Callable

from ..common.models import ReplyOutcome, utcnow
from ..common.store import StateStore, mask_phone
from .broker import InterruptionBroker

logger = logging.getLogger(__name__)

OPT_OUT_KEYWORDS = ("STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT")
OPT_IN_KEYWORDS = ("START", "SUBSCRIBE", "UNSTOP", "YES")
HELP_KEYWORDS = ("HELP", "INFO")

OPT_OUT_MESSAGE = "You've been opted out. Reply START to resubscribe."
OPT_IN_MESSAGE = "You're opted back in."
HELP_MESSAGE = "We send one-time links to finish signups. Reply STOP to opt-out."
RESENT_MESSAGE = "Here's your verification link again. Check your messages for the link."
GUIDANCE_MESSAGE = "We didn't understand your message. Reply HELP for assistance or STOP to opt-out."


def _keyword_pattern(keywords) -> re.Pattern:
    return re.compile(r"\b(" + "|".join(keywords) + r")\b", re.IGNORECASE)


OPT_OUT_RE = _keyword_pattern(OPT_OUT_KEYWORDS)
OPT_IN_RE = _keyword_pattern(OPT_IN_KEYWORDS)
HELP_RE = _keyword_pattern(HELP_KEYWORDS)


class InboundReplyRouter:

    def __init__(
        self,
        store: StateStore,
        broker: InterruptionBroker,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.broker = broker
        self.clock = clock

    async def handle(self, phone_e164: str, text: str) -> ReplyOutcome:
        """
        Route one inbound message.

        Consent changes are written before the reply is returned, so a STOP
        takes effect for any send that starts after this call.
        """
        text = (text or "").strip()
        now = self.clock()
        logger.info(f"Inbound SMS from {mask_phone(phone_e164)}")

        if OPT_OUT_RE.search(text):
            await self.store.set_consent(phone_e164, opted_in=False, now=now)
            return ReplyOutcome(kind="opt_out", message=OPT_OUT_MESSAGE)

        if OPT_IN_RE.search(text):
            await self.store.set_consent(phone_e164, opted_in=True, now=now)
            return ReplyOutcome(kind="opt_in", message=OPT_IN_MESSAGE)

        if HELP_RE.search(text):
            return ReplyOutcome(kind="help", message=HELP_MESSAGE)

        user = await self.store.verified_user_by_phone(phone_e164)
        if user is not None:
            ticket = await self.store.latest_live_ticket(user.user_id, now)
            if ticket is not None:
                delivery = await self.broker.resend(ticket.id)
                if delivery.delivered:
                    return ReplyOutcome(kind="resent", message=RESENT_MESSAGE)
                if delivery.throttled:
                    logger.info(f"Resend for ticket {ticket.id} throttled")
                else:
                    logger.warning(f"Resend for ticket {ticket.id} reached no channel")

        return ReplyOutcome(kind="guidance", message=GUIDANCE_MESSAGE)
