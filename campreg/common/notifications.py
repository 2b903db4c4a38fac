"""
Notification services for the registration coordinator
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional
import httpx

from .models import NotificationPayload, DeliveryResult, UserProfile, ChallengeTicket, TicketStatus
from .config import NotificationsConfig
from .store import StateStore, mask_phone

logger = logging.getLogger(__name__)


class NotificationProvider(ABC):
    """Base class for notification providers"""

    channel = "unknown"

    @abstractmethod
    async def send(self, payload: NotificationPayload, recipient: str) -> bool:
        """Send notification, return True if successful"""
        pass

    async def aclose(self):
        pass


class EmailNotifier(NotificationProvider):
    """SendGrid email notifications"""

    channel = "email"

    def __init__(self, api_key: str, from_address: str = "noreply@campreg.local", timeout: float = 10.0):
        self.api_key = api_key
        self.from_address = from_address
        self.client = httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        await self.client.aclose()

    async def send(self, payload: NotificationPayload, recipient: str) -> bool:
        try:
            response = await self.client.post(
                "https://api.sendgrid.com/v3/mail/send",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json"
                },
                json={
                    "personalizations": [{"to": [{"email": recipient}]}],
                    "from": {"email": self.from_address, "name": "Camp Registration"},
                    "subject": payload.title,
                    "content": [
                        {
                            "type": "text/html",
                            "value": self._format_html(payload)
                        }
                    ]
                }
            )
            success = response.status_code in (200, 202)
            if not success:
                logger.error(f"Email send failed: {response.status_code} - {response.text}")
            return success
        except Exception as e:
            logger.error(f"Email send error: {e}")
            return False

    def _format_html(self, payload: NotificationPayload) -> str:
        color = "#ef4444" if payload.urgency == "high" else "#2563eb"
        html = f"""
        <html>
        <body style="font-family: Arial, sans-serif; padding: 20px;">
            <h1 style="color: {color};">
                {payload.title}
            </h1>
            <p style="font-size: 16px;">{payload.message}</p>
        """
        if payload.url:
            html += f"""
            <p style="margin-top: 20px;">
                <a href="{payload.url}"
                   style="background: #2563eb; color: white; padding: 12px 24px;
                          text-decoration: none; border-radius: 6px; font-weight: bold;">
                    Continue Registration →
                </a>
            </p>
            <p style="color: #666; font-size: 14px; margin-top: 20px;">
                This link works once and expires in 10 minutes.
            </p>
            """
        html += """
        </body>
        </html>
        """
        return html


class SMSNotifier(NotificationProvider):
    """Twilio SMS notifications"""

    channel = "sms"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, timeout: float = 10.0):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.client = httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        await self.client.aclose()

    async def send(self, payload: NotificationPayload, recipient: str) -> bool:
        try:
            response = await self.client.post(
                f"https://api.twilio.com/2010-04-01/Accounts/{self.account_sid}/Messages.json",
                auth=(self.account_sid, self.auth_token),
                data={
                    "From": self.from_number,
                    "To": recipient,
                    "Body": self._format_sms(payload)
                }
            )
            success = response.status_code == 201
            if not success:
                logger.error(f"SMS send failed: {response.status_code} - {response.text}")
            return success
        except Exception as e:
            logger.error(f"SMS send error: {e}")
            return False

    def _format_sms(self, payload: NotificationPayload) -> str:
        msg = f"{payload.title}\n\n{payload.message}"
        if payload.url:
            msg += f"\n\n{payload.url}"
        msg += "\n\nReply STOP to opt out."
        return msg[:1600]  # SMS length limit


class ConsoleNotifier(NotificationProvider):
    """Console output for local runs without an email provider"""

    channel = "console"

    async def send(self, payload: NotificationPayload, recipient: str) -> bool:
        print("\n" + "=" * 60)
        print(f"📢 {payload.title}  (to {recipient})")
        print("-" * 60)
        print(payload.message)
        if payload.url:
            print(f"\n🔗 {payload.url}")
        print("=" * 60 + "\n")
        return True


class NotificationManager:
    """
    Delivers user notifications: SMS first, then email.

    SMS is only attempted for a verified phone whose consent ledger entry is
    opted in. Any SMS miss falls through to email, so a caller always gets at
    least one fallback attempt.
    """

    def __init__(
        self,
        config: NotificationsConfig,
        store: StateStore,
        sms: Optional[NotificationProvider] = None,
        email: Optional[NotificationProvider] = None,
    ):
        self.store = store
        self.sms = sms
        self.email = email

        if self.sms is None and config.sms.enabled:
            if (
                config.sms.twilio_account_sid
                and config.sms.twilio_auth_token
                and config.sms.twilio_from_number
            ):
                self.sms = SMSNotifier(
                    account_sid=config.sms.twilio_account_sid,
                    auth_token=config.sms.twilio_auth_token,
                    from_number=config.sms.twilio_from_number,
                    timeout=config.timeout,
                )
                logger.info("SMS notifications enabled")
            else:
                logger.warning("SMS notifications enabled but missing Twilio config")

        if self.email is None:
            if config.email.enabled and config.email.sendgrid_api_key:
                self.email = EmailNotifier(
                    api_key=config.email.sendgrid_api_key,
                    from_address=config.email.from_address,
                    timeout=config.timeout,
                )
                logger.info("Email notifications enabled")
            else:
                if config.email.enabled:
                    logger.warning("Email notifications enabled but missing API key")
                self.email = ConsoleNotifier()

    async def aclose(self):
        for provider in (self.sms, self.email):
            if provider is not None:
                await provider.aclose()

    async def deliver(self, user: UserProfile, payload: NotificationPayload) -> DeliveryResult:
        """Send to the user's preferred channel with email fallback"""
        attempted = []

        if self.sms and user.can_receive_sms:
            if await self.store.is_opted_in(user.phone_e164):
                attempted.append(self.sms.channel)
                if await self.sms.send(payload, user.phone_e164):
                    logger.info(f"Notified {user.user_id} by SMS at {mask_phone(user.phone_e164)}")
                    return DeliveryResult(delivered=True, channel=self.sms.channel, attempted=attempted)
                logger.warning(f"SMS to {mask_phone(user.phone_e164)} failed, falling back to email")
            else:
                logger.info(f"{mask_phone(user.phone_e164)} opted out, skipping SMS")

        if self.email and user.email:
            attempted.append(self.email.channel)
            if await self.email.send(payload, user.email):
                logger.info(f"Notified {user.user_id} by {self.email.channel}")
                return DeliveryResult(delivered=True, channel=self.email.channel, attempted=attempted)

        logger.error(f"Could not notify user {user.user_id} (tried: {attempted or 'nothing'})")
        return DeliveryResult(delivered=False, attempted=attempted)

    async def notify_challenge(self, user: UserProfile, ticket: ChallengeTicket) -> DeliveryResult:
        """Ask the user to clear a bot challenge"""
        payload = NotificationPayload(
            title="Action needed: finish your registration",
            message=(
                f"{ticket.provider} is asking for a quick human check before we can "
                f"continue your registration. Tap the link to solve it; "
                f"it expires in 10 minutes."
            ),
            url=ticket.magic_url,
            urgency="high",
        )
        return await self.deliver(user, payload)

    async def notify_challenge_closed(self, user: UserProfile, ticket: ChallengeTicket) -> DeliveryResult:
        """Tell the user a challenge ended without a resolution"""
        if ticket.status == TicketStatus.EXPIRED:
            reason = "The verification link expired before it was completed."
        else:
            reason = f"The verification could not be completed ({ticket.failure_reason or 'unknown reason'})."
        payload = NotificationPayload(
            title="Registration stopped",
            message=(
                f"{reason} Your registration with {ticket.provider} was not finished "
                f"and will not be retried automatically."
            ),
            urgency="normal",
        )
        return await self.deliver(user, payload)
