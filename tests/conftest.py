from datetime import datetime, timedelta, timezone

import pytest

from db import make_engine, make_session_factory
from issuance import IssuanceService
from models import Base
from rate_limit import MemoryBucketBackend, RateLimiter
from redemption import RedemptionService
from store import RecordStore

SECRET = "test-master-key"


class FakeClock:
    """Callable returning a controllable aware UTC datetime."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTime:
    """Callable returning a controllable epoch timestamp, like time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'codes.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return RecordStore(session_factory)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def limiter():
    # Permissive; the limiter has its own tests.
    return RateLimiter(MemoryBucketBackend(), threshold=1000)


@pytest.fixture
def issuance(store, clock):
    return IssuanceService(store, secret_key=SECRET, clock=clock)


@pytest.fixture
def audit_events():
    return []


@pytest.fixture
def redemption(store, limiter, clock, audit_events):
    return RedemptionService(
        store,
        limiter,
        secret_key=SECRET,
        clock=clock,
        audit_sink=audit_events.append,
    )
