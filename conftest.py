"""
Pytest configuration and shared fixtures.

Points the service at a throwaway SQLite file and disables the
inter-message delay before any relaydesk module is imported, then clears
the settings cache so those values are used.
"""

import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_relaydesk.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("RELAY_API_URL", "http://relay.test/bot123")
os.environ.setdefault("SEND_DELAY_SECONDS", "0")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from relaydesk.config import get_settings
get_settings.cache_clear()

from relaydesk.schemas import MessageCreate
from relaydesk.storage import Base, MessageStore, engine
import relaydesk.models  # noqa: F401  (registers the messages table)


BASE_TIME = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    """Scheduled time `minutes` after BASE_TIME."""
    return BASE_TIME + timedelta(minutes=minutes)


def new_message(sender: str, receiver: str, minutes: int, content: str) -> MessageCreate:
    return MessageCreate(sender=sender, receiver=receiver, scheduled_time=at(minutes), content=content)


@pytest.fixture
def store():
    """Message store on fresh tables for each test."""
    Base.metadata.create_all(bind=engine)
    yield MessageStore(default_timezone="UTC")
    Base.metadata.drop_all(bind=engine)
