import pytest

from models import RateLimitBucket
from rate_limit import MemoryBucketBackend, RateLimiter, SqlBucketBackend
from tests.conftest import FakeTime


def test_threshold_within_one_bucket():
    clock = FakeTime(1000.0)
    limiter = RateLimiter(MemoryBucketBackend(), threshold=5, window_seconds=10, clock=clock)

    assert [limiter.admit("dev-1") for _ in range(7)] == [True] * 5 + [False] * 2


def test_identities_are_counted_separately():
    limiter = RateLimiter(MemoryBucketBackend(), threshold=1, clock=FakeTime(1000.0))

    assert limiter.admit("dev-1")
    assert not limiter.admit("dev-1")
    assert limiter.admit("dev-2")


def test_next_bucket_admits_again():
    clock = FakeTime(1009.0)
    limiter = RateLimiter(MemoryBucketBackend(), threshold=2, window_seconds=10, clock=clock)
    for _ in range(4):
        limiter.admit("dev-1")
    assert not limiter.admit("dev-1")

    clock.advance(1)
    assert limiter.current_bucket() == 101
    assert limiter.admit("dev-1")


def test_fail_open_when_backend_breaks():
    class BrokenBackend:
        def increment(self, identity, bucket):
            raise OSError("disk gone")

    limiter = RateLimiter(BrokenBackend(), threshold=1)
    assert all(limiter.admit("dev-1") for _ in range(10))


def test_invalid_configuration():
    with pytest.raises(ValueError):
        RateLimiter(MemoryBucketBackend(), threshold=0)
    with pytest.raises(ValueError):
        RateLimiter(MemoryBucketBackend(), window_seconds=0)


def test_memory_backend_is_bounded():
    backend = MemoryBucketBackend(max_keys=3)
    for i in range(3):
        backend.increment(f"dev-{i}", 1)
    backend.increment("dev-new", 2)

    # Every stale bucket is dropped to make room.
    assert len(backend) == 1
    assert backend.increment("dev-new", 2) == 2


def test_sql_backend_counts_per_bucket(session_factory):
    backend = SqlBucketBackend(session_factory)

    assert [backend.increment("dev-1", 50) for _ in range(3)] == [1, 2, 3]
    assert backend.increment("dev-1", 51) == 1
    assert backend.increment("dev-2", 51) == 1


def test_sql_backend_prunes_old_buckets(session_factory):
    backend = SqlBucketBackend(session_factory, retention_buckets=2)
    backend.increment("dev-1", 10)
    backend.increment("dev-1", 11)
    backend.increment("dev-1", 20)

    with session_factory() as db:
        buckets = sorted(b for (b,) in db.query(RateLimitBucket.bucket).all())
    assert buckets == [20]


def test_sql_backend_with_limiter_fails_open_without_tables(tmp_path):
    from db import make_engine, make_session_factory

    engine = make_engine(f"sqlite:///{tmp_path / 'nolimits.db'}")
    limiter = RateLimiter(SqlBucketBackend(make_session_factory(engine)), threshold=1)
    assert limiter.admit("dev-1")
    assert limiter.admit("dev-1")
    engine.dispose()
