# issuance.py
import logging
import time
from datetime import datetime
from typing import Callable

from code_format import DEFAULT_PREFIX, CodeType, encode, random_payload
from errors import DuplicateCodeError, ExhaustedEntropyError
from policies import policy_for
from store import CodeRecord, RecordStore, utcnow

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_PER_CODE = 50


class IssuanceService:
    def __init__(
        self,
        store: RecordStore,
        *,
        secret_key: str,
        prefix: str = DEFAULT_PREFIX,
        max_attempts: int = MAX_ATTEMPTS_PER_CODE,
        clock: Callable[[], datetime] = utcnow,
        payload_source: Callable[[], str] = random_payload,
    ) -> None:
        self._store = store
        self._secret_key = secret_key
        self._prefix = prefix.upper()
        self._max_attempts = max_attempts
        self._clock = clock
        self._payload_source = payload_source

    def issue_batch(
        self,
        count: int,
        code_type: CodeType,
        *,
        notes: str | None = None,
        batch: str | None = None,
    ) -> list[str]:
        code_type = CodeType(code_type)
        if count < 1:
            raise ValueError("count must be positive")

        batch_id = batch or f"BATCH_{int(time.time() * 1000)}"
        notes = notes or f"Generated {code_type.value} code"

        codes = [self._issue_one(code_type, batch_id, notes) for _ in range(count)]
        logger.info("Issued %d %s codes in batch %s", len(codes), code_type.value, batch_id)
        return codes

    def _issue_one(self, code_type: CodeType, batch_id: str, notes: str) -> str:
        policy = policy_for(code_type)

        for _ in range(self._max_attempts):
            payload = self._payload_source()
            code = encode(self._prefix, code_type, payload, self._secret_key)
            now = self._clock()
            record = CodeRecord(
                code=code,
                payload_key=f"{self._prefix}-{code_type.tag}-{payload}",
                type=code_type,
                status="unused",
                features=policy.features,
                expires_at=policy.expires_at(now),
                max_uses=policy.max_uses,
                current_uses=0,
                devices=frozenset(),
                created_at=now,
                batch=batch_id,
                notes=notes,
            )
            try:
                self._store.insert(record)
            except DuplicateCodeError:
                logger.warning("Code collision on %s, regenerating", code)
                continue
            return code

        raise ExhaustedEntropyError(
            f"could not mint a unique {code_type.value} code in {self._max_attempts} attempts"
        )
