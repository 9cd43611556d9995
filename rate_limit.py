# rate_limit.py
import logging
import threading
import time
from typing import Callable, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from models import RateLimitBucket

logger = logging.getLogger(__name__)


class BucketBackend(Protocol):
    def increment(self, identity: str, bucket: int) -> int:
        """Count one attempt and return the bucket's new total."""
        ...


class MemoryBucketBackend:
    """Process-local counters.

    Only the current bucket of each identity is ever kept; an attempt in a
    newer bucket replaces the old count. ``max_keys`` bounds the table, and
    when it is full the counters of past buckets are dropped first.
    """

    def __init__(self, *, max_keys: int = 100_000) -> None:
        self._max_keys = max(1, int(max_keys))
        self._lock = threading.Lock()
        self._counts: dict[str, tuple[int, int]] = {}

    def increment(self, identity: str, bucket: int) -> int:
        with self._lock:
            current = self._counts.get(identity)
            if current is None:
                self._evict_if_needed(bucket)
                attempts = 1
            elif current[0] != bucket:
                attempts = 1
            else:
                attempts = current[1] + 1
            self._counts[identity] = (bucket, attempts)
            return attempts

    def _evict_if_needed(self, bucket: int) -> None:
        if len(self._counts) < self._max_keys:
            return
        for key in [k for k, (b, _) in self._counts.items() if b < bucket]:
            del self._counts[key]
        while len(self._counts) >= self._max_keys:
            self._counts.pop(next(iter(self._counts)))

    def __len__(self) -> int:
        return len(self._counts)


class SqlBucketBackend:
    """Counters shared by every process using the same database."""

    def __init__(self, session_factory: sessionmaker, *, retention_buckets: int = 6) -> None:
        self._session_factory = session_factory
        self._retention_buckets = max(1, int(retention_buckets))

    def increment(self, identity: str, bucket: int) -> int:
        with self._session_factory() as db:
            bumped = db.execute(
                update(RateLimitBucket)
                .where(RateLimitBucket.identity == identity, RateLimitBucket.bucket == bucket)
                .values(attempts=RateLimitBucket.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            if bumped.rowcount == 0:
                db.add(RateLimitBucket(identity=identity, bucket=bucket, attempts=1))
                try:
                    db.commit()
                except IntegrityError:
                    # Another request created the row first.
                    db.rollback()
                    return self.increment(identity, bucket)
                self._prune(db, bucket)
                return 1

            db.commit()
            attempts = db.scalar(
                select(RateLimitBucket.attempts).where(
                    RateLimitBucket.identity == identity, RateLimitBucket.bucket == bucket
                )
            )
            return int(attempts or 0)

    def _prune(self, db, bucket: int) -> None:
        db.execute(
            delete(RateLimitBucket)
            .where(RateLimitBucket.bucket < bucket - self._retention_buckets)
            .execution_options(synchronize_session=False)
        )
        db.commit()


class RateLimiter:
    def __init__(
        self,
        backend: BucketBackend,
        *,
        threshold: int = 5,
        window_seconds: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if threshold < 1 or window_seconds < 1:
            raise ValueError("threshold and window_seconds must be positive")
        self._backend = backend
        self._threshold = threshold
        self._window_seconds = window_seconds
        self._clock = clock

    def current_bucket(self) -> int:
        return int(self._clock() // self._window_seconds)

    def admit(self, identity: str) -> bool:
        try:
            attempts = self._backend.increment(identity, self.current_bucket())
        except Exception:
            # Limiter storage trouble must never block redemption.
            logger.warning("Rate limiter unavailable, admitting %r", identity, exc_info=True)
            return True

        if attempts > self._threshold:
            logger.info("Rate limited %r (%d attempts)", identity, attempts)
            return False
        return True
