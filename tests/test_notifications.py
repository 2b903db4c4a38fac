"""
Tests for notification services (campreg/common/notifications.py)
"""
import pytest
from unittest.mock import AsyncMock, MagicMock
from datetime import datetime, timedelta

import pytz

from campreg.common.notifications import (
    EmailNotifier,
    SMSNotifier,
    ConsoleNotifier,
    NotificationManager,
)
from campreg.common.models import (
    NotificationPayload,
    ChallengeTicket,
    TicketStatus,
    UserProfile,
)
from campreg.common.config import NotificationsConfig, EmailConfig, SMSConfig

NOW = datetime(2030, 6, 1, 15, 0, tzinfo=pytz.UTC)


def make_ticket(**overrides):
    data = dict(
        user_id="user-1",
        session_id="session-1",
        provider="CampMinder",
        resume_token="tok",
        magic_url="https://campreg.test/assist/captcha?token=tok&sig=abc",
        created_at=NOW,
        expires_at=NOW + timedelta(minutes=10),
    )
    data.update(overrides)
    return ChallengeTicket(**data)


class TestConsoleNotifier:
    @pytest.mark.asyncio
    async def test_send_payload_with_url(self, capsys):
        notifier = ConsoleNotifier()
        payload = NotificationPayload(
            title="Action needed",
            message="Solve the challenge",
            url="https://campreg.test/assist/captcha?token=tok",
        )

        result = await notifier.send(payload, "camper@example.com")

        assert result is True
        captured = capsys.readouterr()
        assert "Action needed" in captured.out
        assert "https://campreg.test/assist/captcha?token=tok" in captured.out


class TestEmailNotifier:
    @pytest.mark.asyncio
    async def test_send_success(self):
        notifier = EmailNotifier(api_key="SG.test_key")

        mock_response = MagicMock()
        mock_response.status_code = 202
        notifier.client.post = AsyncMock(return_value=mock_response)

        result = await notifier.send(NotificationPayload(title="Test", message="Test"), "user@example.com")
        assert result is True
        body = notifier.client.post.call_args.kwargs["json"]
        assert body["personalizations"][0]["to"][0]["email"] == "user@example.com"

    @pytest.mark.asyncio
    async def test_send_failure(self):
        notifier = EmailNotifier(api_key="SG.test_key")

        mock_response = MagicMock()
        mock_response.status_code = 401
        mock_response.text = "Unauthorized"
        notifier.client.post = AsyncMock(return_value=mock_response)

        assert await notifier.send(NotificationPayload(title="Test", message="Test"), "user@example.com") is False

    @pytest.mark.asyncio
    async def test_send_network_error(self):
        notifier = EmailNotifier(api_key="SG.test_key")
        notifier.client.post = AsyncMock(side_effect=Exception("Network error"))

        assert await notifier.send(NotificationPayload(title="Test", message="Test"), "user@example.com") is False

    def test_format_html_urgent_with_link(self):
        notifier = EmailNotifier(api_key="SG.test_key")
        payload = NotificationPayload(
            title="Action needed",
            message="Solve the challenge",
            url="https://campreg.test/assist/captcha?token=tok",
            urgency="high",
        )

        html = notifier._format_html(payload)

        assert "Action needed" in html
        assert "https://campreg.test/assist/captcha?token=tok" in html
        assert "#ef4444" in html
        assert "expires in 10 minutes" in html


class TestSMSNotifier:
    @pytest.mark.asyncio
    async def test_send_success(self):
        notifier = SMSNotifier(account_sid="AC123", auth_token="token123", from_number="+10987654321")

        mock_response = MagicMock()
        mock_response.status_code = 201
        notifier.client.post = AsyncMock(return_value=mock_response)

        result = await notifier.send(NotificationPayload(title="Test", message="Test"), "+11234567890")

        assert result is True
        call_args = notifier.client.post.call_args
        assert "twilio.com" in call_args[0][0]
        assert call_args.kwargs["data"]["To"] == "+11234567890"

    @pytest.mark.asyncio
    async def test_send_failure(self):
        notifier = SMSNotifier(account_sid="AC123", auth_token="token123", from_number="+10987654321")

        mock_response = MagicMock()
        mock_response.status_code = 400
        mock_response.text = "Bad Request"
        notifier.client.post = AsyncMock(return_value=mock_response)

        assert await notifier.send(NotificationPayload(title="Test", message="Test"), "+11234567890") is False

    def test_format_sms_includes_opt_out_and_truncates(self):
        notifier = SMSNotifier(account_sid="AC123", auth_token="token123", from_number="+10987654321")

        short = notifier._format_sms(NotificationPayload(title="Hi", message="Msg", url="https://x.test"))
        assert "https://x.test" in short
        assert short.endswith("Reply STOP to opt out.")

        long = notifier._format_sms(NotificationPayload(title="Hi", message="x" * 2000))
        assert len(long) == 1600


class TestNotificationManager:
    def test_builds_providers_from_config(self, store):
        config = NotificationsConfig(
            email=EmailConfig(enabled=True, sendgrid_api_key="SG.key"),
            sms=SMSConfig(
                enabled=True,
                twilio_account_sid="AC1",
                twilio_auth_token="tok",
                twilio_from_number="+15550000000",
            ),
        )
        manager = NotificationManager(config, store)
        assert isinstance(manager.sms, SMSNotifier)
        assert isinstance(manager.email, EmailNotifier)

    @pytest.mark.asyncio
    async def test_aclose_closes_provider_clients(self, store):
        config = NotificationsConfig(
            email=EmailConfig(enabled=True, sendgrid_api_key="SG.key"),
            sms=SMSConfig(
                enabled=True,
                twilio_account_sid="AC1",
                twilio_auth_token="tok",
                twilio_from_number="+15550000000",
            ),
        )
        manager = NotificationManager(config, store)

        await manager.aclose()

        assert manager.sms.client.is_closed
        assert manager.email.client.is_closed

    def test_console_fallback_without_email(self, store):
        manager = NotificationManager(NotificationsConfig(), store)
        assert manager.sms is None
        assert isinstance(manager.email, ConsoleNotifier)

    @pytest.mark.asyncio
    async def test_opted_out_number_gets_email(self, notifications, store, sms_user, sms, email):
        await store.set_consent(sms_user.phone_e164, opted_in=False, now=NOW)

        result = await notifications.notify_challenge(sms_user, make_ticket())

        assert result.channel == "email"
        assert result.attempted == ["email"]
        assert sms.sent == []

    @pytest.mark.asyncio
    async def test_no_channel_available(self, notifications, sms, email):
        result = await notifications.deliver(
            UserProfile(user_id="ghost"),
            NotificationPayload(title="t", message="m"),
        )
        assert result.delivered is False
        assert result.attempted == []

    @pytest.mark.asyncio
    async def test_challenge_message(self, notifications, sms_user, sms):
        await notifications.notify_challenge(sms_user, make_ticket())

        recipient, payload = sms.sent[0]
        assert recipient == sms_user.phone_e164
        assert payload.urgency == "high"
        assert payload.url.startswith("https://campreg.test/assist/captcha")
        assert "CampMinder" in payload.message

    @pytest.mark.asyncio
    async def test_closed_message_is_terminal(self, notifications, sms_user, sms):
        ticket = make_ticket(status=TicketStatus.EXPIRED)
        await notifications.notify_challenge_closed(sms_user, ticket)

        _, payload = sms.sent[0]
        assert "expired" in payload.message
        assert "will not be retried" in payload.message
        assert payload.url is None
