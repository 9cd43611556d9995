# audit.py
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from pydantic import BaseModel, Field
from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker

from models import ActivationLog
from store import utcnow

logger = logging.getLogger(__name__)


class ActivationEvent(BaseModel):
    code: str
    device_id: str
    timestamp: datetime
    network_info: dict[str, str | None] = Field(default_factory=dict)


AuditSink = Callable[[ActivationEvent], None]


def network_info_from_headers(headers, client_host: str | None = None) -> dict[str, str | None]:
    forwarded = headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else client_host
    return {
        "ip": ip,
        "user_agent": headers.get("user-agent"),
        # Cloudflare header
        "country": headers.get("cf-ipcountry") or "unknown",
    }


class ActivationLogSink:
    """Writes activation events to ``activation_logs``.

    Rows older than ``retention_days`` are deleted every ``prune_every``
    writes, so the table stays bounded without a background job.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        retention_days: int = 365,
        prune_every: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._retention = timedelta(days=retention_days)
        self._prune_every = max(1, prune_every)
        self._clock = clock
        self._writes = 0
        self._lock = threading.Lock()

    def __call__(self, event: ActivationEvent) -> None:
        info = event.network_info
        with self._session_factory() as db:
            db.add(
                ActivationLog(
                    code=event.code,
                    device_id=event.device_id,
                    timestamp=event.timestamp,
                    ip=info.get("ip"),
                    user_agent=(info.get("user_agent") or "")[:255] or None,
                    country=info.get("country"),
                )
            )
            db.commit()

        with self._lock:
            self._writes += 1
            due = self._writes % self._prune_every == 0
        if due:
            self.prune()

    def prune(self) -> int:
        cutoff = self._clock() - self._retention
        with self._session_factory() as db:
            result = db.execute(
                delete(ActivationLog)
                .where(ActivationLog.timestamp < cutoff)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        if result.rowcount:
            logger.info("Pruned %d activation log rows older than %s", result.rowcount, cutoff.isoformat())
        return result.rowcount
