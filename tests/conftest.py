"""
Pytest configuration and fixtures for the onboarding engine tests.
"""

import json
import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

# Settings are read at import time; set required env before importing careflow
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("ENVIRONMENT", "test")

from careflow.domain.schemas import Identity, ProfileSnapshot  # noqa: E402
from careflow.services.onboarding.draft_store import DraftStore  # noqa: E402


class FakeRedis:
    """In-memory stand-in for RedisClient with the same best-effort API."""

    def __init__(self):
        self.store = {}
        self.expiry = {}
        self.set_calls = 0

    async def get(self, key):
        raw = self.store.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    async def set(self, key, value, expire=3600):
        self.set_calls += 1
        self.store[key] = json.dumps(value)
        self.expiry[key] = expire
        return True

    async def exists(self, key):
        return key in self.store

    async def delete(self, key):
        self.store.pop(key, None)
        self.expiry.pop(key, None)
        return True

    async def ttl(self, key):
        return self.expiry.get(key)

    def put_raw(self, key, raw):
        self.store[key] = raw


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def draft_now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def draft_store(fake_redis, draft_now):
    return DraftStore(redis=fake_redis, scope="test", clock=lambda: draft_now)


@pytest.fixture
def identity():
    return Identity(id="user-1", email="pat@example.com")


@pytest.fixture
def mock_gateway():
    """Identity gateway with no signed-in user."""
    gateway = AsyncMock()
    gateway.current_user.return_value = None
    return gateway


@pytest.fixture
def mock_db():
    """Service client with an existing-account-free database."""
    db = AsyncMock()
    db.ensure_account.return_value = {"id": "acct-1", "display_name": None}
    db.create_profile.return_value = "profile-new"
    db.update_profile.return_value = {}
    db.update_account.return_value = {}
    db.upsert_membership.return_value = None
    db.search_unclaimed_organizations.return_value = []
    return db


@pytest.fixture
def sunrise_listing():
    """Unclaimed organization listing that already has city and care types."""
    return ProfileSnapshot(
        id="profile-sunrise",
        slug="sunrise-care-austin-tx-a1b2",
        type="organization",
        category="assisted_living",
        display_name="Sunrise Care",
        description="",
        phone=None,
        city="Austin",
        state="TX",
        zip="",
        care_types=["Assisted Living"],
        claim_state="unclaimed",
    )
