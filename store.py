# store.py
"""Durable record store for premium codes.

Every mutation of a code goes through :meth:`RecordStore.try_redeem`, which
runs read -> validate -> write -> commit as one unit per code string:

* an in-process lock per code serializes requests for the same code while
  leaving other codes free,
* ``SELECT ... FOR UPDATE`` holds the row on databases that support it,
* the UPDATE is guarded on the ``current_uses`` value that was read, so a
  writer in another process that slipped in between is detected and the whole
  unit is retried.

Nothing is reported as successful before the transaction has committed.
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Literal

from pydantic import BaseModel, ConfigDict
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from code_format import CodeType
from errors import DuplicateCodeError, Exhausted, InvalidCode, StorageUnavailable
from models import PremiumCode, PremiumCodeDevice

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CodeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    payload_key: str
    type: CodeType
    status: Literal["unused", "used"] = "unused"
    features: tuple[str, ...]
    expires_at: datetime
    max_uses: int
    current_uses: int = 0
    devices: frozenset[str] = frozenset()
    # device id -> when that device was bound
    bindings: dict[str, datetime] = {}
    created_at: datetime
    last_used: datetime | None = None
    batch: str | None = None
    notes: str | None = None
    email: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_exhausted(self) -> bool:
        return self.current_uses >= self.max_uses

    def is_bound(self, device_id: str) -> bool:
        return device_id in self.devices

    def bound_at(self, device_id: str) -> datetime | None:
        return self.bindings.get(device_id, self.last_used if self.is_bound(device_id) else None)


class StoreSummary(BaseModel):
    last_updated: datetime | None
    total_codes: int
    total_used: int


UpdateFn = Callable[[CodeRecord], CodeRecord]


class _ConcurrentUpdate(Exception):
    pass


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    waiters: int = 0


class _KeyedLocks:
    """One lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry()
            entry.waiters += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.waiters -= 1
                if entry.waiters == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def _to_record(row: PremiumCode) -> CodeRecord:
    return CodeRecord(
        code=row.code,
        payload_key=row.payload_key,
        type=CodeType(row.code_type),
        status=row.status,
        features=tuple(row.features or ()),
        expires_at=as_utc(row.expires_at),
        max_uses=row.max_uses,
        current_uses=row.current_uses,
        devices=frozenset(d.device_id for d in row.devices),
        bindings={d.device_id: as_utc(d.bound_at) for d in row.devices},
        created_at=as_utc(row.created_at),
        last_used=as_utc(row.last_used),
        batch=row.batch,
        notes=row.notes,
        email=row.email,
    )


def _check_transition(before: CodeRecord, after: CodeRecord, device_id: str) -> None:
    frozen_fields = ("code", "payload_key", "type", "features", "expires_at", "max_uses", "created_at")
    for name in frozen_fields:
        if getattr(before, name) != getattr(after, name):
            raise ValueError(f"{name} is immutable")
    if not before.devices <= after.devices:
        raise ValueError("bound devices cannot be removed")
    if after.devices - before.devices - {device_id}:
        raise ValueError(f"only {device_id!r} may be bound by this redemption")
    if after.current_uses != len(after.devices):
        raise ValueError("current_uses must equal the number of bound devices")
    if after.current_uses > after.max_uses:
        raise Exhausted()


class RecordStore:
    def __init__(self, session_factory: sessionmaker, *, max_retries: int = 3):
        self._session_factory = session_factory
        self._max_retries = max_retries
        self._locks = _KeyedLocks()

    # ----------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------

    def get(self, code: str) -> CodeRecord | None:
        return self._fetch_one(PremiumCode.code == code)

    def get_by_payload(self, payload_key: str) -> CodeRecord | None:
        return self._fetch_one(PremiumCode.payload_key == payload_key)

    def _fetch_one(self, criterion) -> CodeRecord | None:
        try:
            with self._session_factory() as db:
                row = db.execute(select(PremiumCode).where(criterion)).scalar_one_or_none()
                return _to_record(row) if row is not None else None
        except SQLAlchemyError as exc:
            logger.exception("Record store read failed")
            raise StorageUnavailable() from exc

    def summary(self) -> StoreSummary:
        try:
            with self._session_factory() as db:
                total_codes = db.scalar(select(func.count(PremiumCode.id)))
                total_used = db.scalar(
                    select(func.count(PremiumCode.id)).where(PremiumCode.current_uses > 0)
                )
                last_created = db.scalar(select(func.max(PremiumCode.created_at)))
                last_used = db.scalar(select(func.max(PremiumCode.last_used)))
        except SQLAlchemyError as exc:
            logger.exception("Record store summary failed")
            raise StorageUnavailable() from exc

        stamps = [as_utc(s) for s in (last_created, last_used) if s is not None]
        return StoreSummary(
            last_updated=max(stamps) if stamps else None,
            total_codes=total_codes or 0,
            total_used=total_used or 0,
        )

    # ----------------------------------------------------------------
    # Writes
    # ----------------------------------------------------------------

    def insert(self, record: CodeRecord) -> None:
        if record.current_uses != len(record.devices):
            raise ValueError("current_uses must equal the number of bound devices")

        with self._locks.hold(record.code):
            try:
                with self._session_factory() as db:
                    row = PremiumCode(
                        code=record.code,
                        payload_key=record.payload_key,
                        code_type=record.type.value,
                        status=record.status,
                        features=list(record.features),
                        expires_at=record.expires_at,
                        max_uses=record.max_uses,
                        current_uses=record.current_uses,
                        created_at=record.created_at,
                        last_used=record.last_used,
                        batch=record.batch,
                        notes=record.notes,
                        email=record.email,
                    )
                    db.add(row)
                    db.flush()
                    for device_id in sorted(record.devices):
                        db.add(
                            PremiumCodeDevice(
                                premium_code_id=row.id,
                                device_id=device_id,
                                bound_at=record.bindings.get(device_id) or record.last_used or record.created_at,
                            )
                        )
                    db.commit()
            except IntegrityError as exc:
                if self._exists(record.code, record.payload_key):
                    raise DuplicateCodeError(record.code) from exc
                # NOT NULL, FK or other schema faults are not collisions.
                logger.exception("Record store rejected %s", record.code)
                raise StorageUnavailable() from exc
            except SQLAlchemyError as exc:
                logger.exception("Record store insert failed for %s", record.code)
                raise StorageUnavailable() from exc

    def _exists(self, code: str, payload_key: str) -> bool:
        try:
            with self._session_factory() as db:
                found = db.scalar(
                    select(PremiumCode.id).where(
                        (PremiumCode.code == code) | (PremiumCode.payload_key == payload_key)
                    )
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailable() from exc
        return found is not None

    def try_redeem(self, code: str, device_id: str, update_fn: UpdateFn) -> tuple[CodeRecord, bool]:
        """Apply ``update_fn`` to the stored record for ``code`` atomically.

        ``update_fn`` receives the current record and either raises a
        ``RedeemError``, returns the record unchanged (nothing is written), or
        returns the new record. Returns the resulting record and whether it
        was written.
        """
        with self._locks.hold(code):
            for attempt in range(1, self._max_retries + 1):
                try:
                    return self._redeem_once(code, device_id, update_fn)
                except _ConcurrentUpdate:
                    logger.warning(
                        "Concurrent update on %s, retrying (%d/%d)", code, attempt, self._max_retries
                    )
                except SQLAlchemyError as exc:
                    logger.exception("Record store write failed for %s", code)
                    raise StorageUnavailable() from exc

        raise StorageUnavailable(f"gave up on {code} after {self._max_retries} conflicting updates")

    def _redeem_once(self, code: str, device_id: str, update_fn: UpdateFn) -> tuple[CodeRecord, bool]:
        with self._session_factory() as db:
            stmt = select(PremiumCode).where(PremiumCode.code == code).with_for_update()
            row = db.execute(stmt).scalar_one_or_none()
            if row is None:
                raise InvalidCode()

            before = _to_record(row)
            after = update_fn(before)
            if after == before:
                return before, False
            _check_transition(before, after, device_id)

            result = db.execute(
                update(PremiumCode)
                .where(
                    PremiumCode.id == row.id,
                    PremiumCode.current_uses == before.current_uses,
                )
                .values(
                    current_uses=after.current_uses,
                    status=after.status,
                    last_used=after.last_used,
                    email=after.email,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise _ConcurrentUpdate()

            for new_device in sorted(after.devices - before.devices):
                db.add(
                    PremiumCodeDevice(
                        premium_code_id=row.id,
                        device_id=new_device,
                        bound_at=after.bindings.get(new_device) or after.last_used or utcnow(),
                    )
                )
            try:
                db.commit()
            except IntegrityError:
                # Same device bound by another process in the meantime.
                db.rollback()
                raise _ConcurrentUpdate() from None

            return after, True
