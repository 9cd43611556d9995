# redemption.py
import logging
from datetime import datetime
from typing import Callable

from pydantic import BaseModel, Field

from audit import ActivationEvent, AuditSink
from code_format import DEFAULT_PREFIX, CodeType, FormatError, canonicalize, decode
from errors import Exhausted, Expired, InvalidCode, InvalidInput, RateLimited, TamperedCode
from models import MAX_DEVICE_ID_LENGTH, MAX_EMAIL_LENGTH
from rate_limit import RateLimiter
from store import CodeRecord, RecordStore, utcnow

logger = logging.getLogger(__name__)


class RedeemResult(BaseModel):
    success: bool = True
    already_activated: bool
    features: list[str]
    type: CodeType
    activated_at: datetime | None
    # Set on a new binding; the caller delivers it once the response is out.
    activation: ActivationEvent | None = Field(default=None, exclude=True)


class RedemptionService:
    def __init__(
        self,
        store: RecordStore,
        limiter: RateLimiter,
        *,
        secret_key: str,
        prefix: str = DEFAULT_PREFIX,
        audit_sink: AuditSink | None = None,
        grandfather_expired: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._limiter = limiter
        self._secret_key = secret_key
        self._prefix = prefix.upper()
        self._audit_sink = audit_sink
        self._grandfather_expired = grandfather_expired
        self._clock = clock

    def redeem(
        self,
        code: str,
        device_id: str,
        email: str | None = None,
        network_info: dict[str, str | None] | None = None,
    ) -> RedeemResult:
        if not self._limiter.admit(device_id or ""):
            raise RateLimited()

        if not code or not code.strip() or not device_id or not device_id.strip():
            raise InvalidInput("code and device id are required")
        if len(device_id) > MAX_DEVICE_ID_LENGTH:
            raise InvalidInput(f"device id longer than {MAX_DEVICE_ID_LENGTH} characters")
        if email and len(email) > MAX_EMAIL_LENGTH:
            raise InvalidInput(f"email longer than {MAX_EMAIL_LENGTH} characters")

        stored = self._lookup(code)

        def bind(record: CodeRecord) -> CodeRecord:
            now = self._clock()
            if record.is_expired(now):
                raise Expired()
            if record.is_bound(device_id):
                return record
            if record.is_exhausted():
                raise Exhausted()
            return record.model_copy(
                update={
                    "current_uses": record.current_uses + 1,
                    "devices": record.devices | {device_id},
                    "bindings": {**record.bindings, device_id: now},
                    "status": "used",
                    "last_used": now,
                    "email": email or record.email,
                }
            )

        record, changed = self._store.try_redeem(stored.code, device_id, bind)

        activation = None
        if changed:
            logger.info("Activated %s on device %s", record.code, device_id)
            activation = ActivationEvent(
                code=record.code,
                device_id=device_id,
                timestamp=record.bound_at(device_id) or self._clock(),
                network_info=network_info or {},
            )

        return RedeemResult(
            already_activated=not changed,
            features=list(record.features),
            type=record.type,
            activated_at=record.bound_at(device_id),
            activation=activation,
        )

    def entitlements(self, code: str, device_id: str) -> list[str]:
        """Features ``device_id`` may use through ``code``.

        Empty when the device was never bound. Devices bound before expiry
        keep their features unless ``grandfather_expired`` is off.
        """
        if not code or not device_id:
            return []
        try:
            record = self._lookup(code)
        except (InvalidCode, TamperedCode):
            return []
        if not record.is_bound(device_id):
            return []
        if not self._grandfather_expired and record.is_expired(self._clock()):
            return []
        return list(record.features)

    def _lookup(self, code: str) -> CodeRecord:
        try:
            parsed = decode(code, prefix=self._prefix)
        except FormatError as exc:
            raise InvalidCode(str(exc)) from exc

        record = self._store.get_by_payload(parsed.payload_key)
        if record is None:
            raise InvalidCode()

        # Both the presented code and the stored key have to carry the tag
        # this server would have minted.
        if not parsed.verify(self._secret_key) or canonicalize(record.code) != parsed.code:
            raise TamperedCode()
        return record

    def deliver(self, event: ActivationEvent | None) -> None:
        """Hand an activation event to the audit sink. Never raises."""
        if event is None or self._audit_sink is None:
            return
        try:
            self._audit_sink(event)
        except Exception:
            logger.warning("Failed to log activation of %s", event.code, exc_info=True)
