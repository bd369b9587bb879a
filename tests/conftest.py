"""
Shared fixtures for the DeskAuth test suite.
"""

import pytest
import pytest_asyncio

from deskauth.auth.lifecycle import AuthLifecycleController, LifecycleSettings
from deskauth.auth.session import LoginSessionFactory
from deskauth.auth.token_storage import MemoryTokenStore
from deskauth.notifications import RecordingNotificationSink
from deskauth.retry import RetryPolicy, fixed_delay

from helpers import DEVICE_ID, FakeIdentityClient


@pytest.fixture
def fast_settings():
    return LifecycleSettings(
        poll_interval=0.01,
        max_poll_attempts=5,
        status_poll_interval=0.01,
        max_status_poll_attempts=3,
        refresh_retry_attempts=3,
        startup_check_attempts=2,
        startup_check_delay=0.0,
        min_refresh_delay_ms=20,
    )


@pytest.fixture
def identity_client():
    return FakeIdentityClient()


@pytest.fixture
def token_store():
    return MemoryTokenStore()


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest_asyncio.fixture
async def controller(identity_client, token_store, sink, fast_settings):
    browser_opener = lambda url: None
    controller = AuthLifecycleController(
        identity_client=identity_client,
        token_store=token_store,
        notification_sink=sink,
        browser_opener=browser_opener,
        session_factory=LoginSessionFactory(device_id=DEVICE_ID),
        settings=fast_settings,
        retry_policy=RetryPolicy(max_attempts=3, delay=fixed_delay(0)),
    )
    yield controller
    await controller.shutdown()
