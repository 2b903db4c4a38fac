from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytz

from campreg.common.config import Config, AppConfig, StorageConfig, NotificationsConfig
from campreg.common.executor import AttemptExecutor
from campreg.common.models import UserProfile, NotificationPayload
from campreg.common.notifications import NotificationProvider, NotificationManager
from campreg.common.store import StateStore


class FakeClock:
    """Settable clock passed wherever components take `clock=`"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier(NotificationProvider):
    """Provider that records sends instead of calling an API"""

    def __init__(self, channel: str, succeed: bool = True):
        self.channel = channel
        self.succeed = succeed
        self.sent = []

    async def send(self, payload: NotificationPayload, recipient: str) -> bool:
        self.sent.append((recipient, payload))
        return self.succeed


@pytest.fixture()
def clock():
    return FakeClock(datetime(2030, 6, 1, 15, 0, tzinfo=pytz.UTC))


@pytest.fixture()
def config():
    return Config(
        app=AppConfig(
            base_url="https://campreg.test",
            callback_secret="callback-secret",
            link_signing_secret="link-secret",
        ),
        storage=StorageConfig(state_file=None),
    )


@pytest.fixture()
def store():
    return StateStore()


@pytest.fixture()
def sms():
    return RecordingNotifier("sms")


@pytest.fixture()
def email():
    return RecordingNotifier("email")


@pytest.fixture()
def notifications(store, sms, email):
    return NotificationManager(NotificationsConfig(), store, sms=sms, email=email)


@pytest.fixture()
def executor():
    executor = AsyncMock(spec=AttemptExecutor)
    executor.dispatch.return_value = True
    executor.resume.return_value = True
    executor.abort.return_value = True
    return executor


@pytest.fixture()
def sms_user(store):
    user = UserProfile(
        user_id="user-1",
        email="camper@example.com",
        phone_e164="+15551234567",
        phone_verified=True,
    )
    store.users[user.user_id] = user
    return user
