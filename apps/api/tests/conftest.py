"""
Pytest configuration and fixtures

Every test gets a fresh in-memory SQLite database built from the models,
a FakeRedis for the look-aside cache, recording fake providers and a
controllable clock. Nothing touches Postgres, Redis or the network.
"""
import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from uuid import uuid4

# Must be set before core.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6399/15"
os.environ["PLAN_PROVIDER_MOCK_MODE"] = "true"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_FORMAT"] = "text"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from core.database import Base, build_engine, build_session_factory
from models import User
from services.plan_cache import PlanCache
from services.plan_coordinator import PlanCacheCoordinator
from services.plan_providers import DietPlanningProvider, WorkoutPlanningProvider
from services.plan_types import DIET, WORKOUT

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRedis:
    """Minimal in-memory Redis mock for unit tests."""

    def __init__(self):
        self._store: dict = {}
        self._ttls: dict = {}

    def get(self, key):
        return self._store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self._store:
            return False
        self._store[key] = value
        if ex:
            self._ttls[key] = ex
        return True

    def setex(self, key, ttl, value):
        self._store[key] = value
        self._ttls[key] = ttl

    def delete(self, *keys):
        for k in keys:
            self._store.pop(k, None)
            self._ttls.pop(k, None)

    def eval(self, script, numkeys, *args):
        # Only the compare-and-delete latch release script is supported
        key, token = args[0], args[numkeys]
        if self._store.get(key) == token:
            self.delete(key)
            return 1
        return 0

    def exists(self, key):
        return key in self._store

    def dbsize(self):
        return len(self._store)

    def ping(self):
        return True


class FakeProvider:
    """
    Provider double that records calls.

    By default answers with the real mock payload for its kind. Set
    `error` to make calls raise, or `block` (an Event) to hold them.
    """

    def __init__(self, kind):
        self.kind = kind
        self.name = f"fake-{kind.name}-provider"
        self.calls = []
        self.error = None
        self.block = None
        self.payload = None
        self._lock = threading.Lock()

    def generate(self, user_id, profile, preferences=None):
        with self._lock:
            self.calls.append({"user_id": user_id, "profile": dict(profile), "preferences": preferences})
        if self.block is not None:
            self.block.wait(5)
        if self.error is not None:
            raise self.error
        if self.payload is not None:
            return self.payload
        if self.kind is WORKOUT:
            return WorkoutPlanningProvider.mock_plan(profile)
        return DietPlanningProvider.mock_plan(profile)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def make_user(session_factory):
    """Create a user with a complete profile; keyword overrides win."""

    def _make_user(**overrides):
        fields = dict(
            id=uuid4(),
            email=f"user_{uuid4()}@example.com",
            display_name="Test User",
            age=30,
            height_cm=175.0,
            weight_kg=80.0,
            target_weight_kg=75.0,
            gender="Male",
            activity_level="moderately_active",
            fitness_level="beginner",
            goal="weight_loss",
            allergies=[],
            health_conditions=[],
            diet_preferences={"cuisine_preferences": {"Indian": ["Vegetarian"]}},
        )
        fields.update(overrides)
        session = session_factory()
        try:
            user = User(**fields)
            session.add(user)
            session.commit()
            return user
        finally:
            session.close()

    return _make_user


def _coordinator(kind, session_factory, redis, clock, provider, timeout_s=5.0):
    return PlanCacheCoordinator(
        kind,
        session_factory,
        PlanCache(kind.cache_prefix, 86400, redis=redis),
        provider,
        provider_timeout_s=timeout_s,
        clock=clock,
    )


@pytest.fixture
def workout_provider():
    return FakeProvider(WORKOUT)


@pytest.fixture
def diet_provider():
    return FakeProvider(DIET)


@pytest.fixture
def workout_coordinator(session_factory, fake_redis, clock, workout_provider):
    return _coordinator(WORKOUT, session_factory, fake_redis, clock, workout_provider)


@pytest.fixture
def diet_coordinator(session_factory, fake_redis, clock, diet_provider):
    return _coordinator(DIET, session_factory, fake_redis, clock, diet_provider)


@pytest.fixture
def build_coordinator(session_factory, fake_redis, clock):
    """Factory for coordinators with a custom provider/cache/timeout."""

    def _build(kind, provider, redis=None, timeout_s=5.0):
        return _coordinator(kind, session_factory, redis if redis is not None else fake_redis, clock, provider, timeout_s)

    return _build
