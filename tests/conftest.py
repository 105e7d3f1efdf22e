"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.notifications.config import NotificationConfig, Platform, UserType  # noqa: E402
from src.notifications.directory import InMemoryRecipientDirectory  # noqa: E402
from src.notifications.gateway import MockPushGateway  # noqa: E402
from src.notifications.models import PushToken  # noqa: E402
from src.notifications.token_store import InMemoryTokenStore  # noqa: E402

CLIENT_ID = "client-1"
PROJECT_ID = "project-1"


def expo_token(suffix: str) -> str:
    """A well-formed legacy Expo token."""
    return f"ExponentPushToken[{suffix}]"


def make_token(user_id: str, token: str, **kwargs) -> PushToken:
    kwargs.setdefault("platform", Platform.IOS)
    kwargs.setdefault("user_type", UserType.STAFF)
    return PushToken(user_id=user_id, token=token, **kwargs)


@pytest.fixture
def store():
    return InMemoryTokenStore()


@pytest.fixture
def directory():
    return InMemoryRecipientDirectory()


@pytest.fixture
def gateway():
    return MockPushGateway()


@pytest.fixture
def config():
    return NotificationConfig(chunk_delay_seconds=0.0)


@pytest.fixture
def site(store, directory):
    """One client with an admin and three project staff, each with a token."""
    directory.add_admin(CLIENT_ID, "admin-1", first_name="Ada", last_name="Admin")
    store.register(make_token("admin-1", expo_token("admin1token"), user_type=UserType.ADMIN))
    for i in range(1, 4):
        directory.add_staff(CLIENT_ID, f"staff-{i}", project_ids=[PROJECT_ID], first_name=f"Staff{i}")
        store.register(make_token(f"staff-{i}", expo_token(f"staff{i}token")))
    return directory
