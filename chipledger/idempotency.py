"""
Idempotency Cache

Deduplicates retried mutating requests by a caller-supplied key. The first
caller reserves the key and runs the operation; any caller arriving with the
same key while it runs blocks until the result is stored and then receives
that same result.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .errors import IdempotencyConflictError

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyRecord:
    key: str
    fingerprint: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    result: Any = None
    resolved: threading.Event = field(default_factory=threading.Event)

    @property
    def pending(self) -> bool:
        return not self.resolved.is_set()


@dataclass(frozen=True)
class IdempotencyBegin:
    is_new: bool
    cached_result: Any = None


class IdempotencyCache:
    def __init__(
        self,
        clock: Callable[[], datetime],
        ttl: timedelta = timedelta(hours=24),
        wait_timeout: float = 10.0,
    ):
        self.clock = clock
        self.ttl = ttl
        self.wait_timeout = wait_timeout
        self._records: dict[str, IdempotencyRecord] = {}
        self._lock = threading.Lock()

    def begin(self, key: str, fingerprint: str = "") -> IdempotencyBegin:
        deadline = time.monotonic() + self.wait_timeout
        while True:
            with self._lock:
                self._evict_expired()
                record = self._records.get(key)
                if record is None:
                    self._records[key] = IdempotencyRecord(key=key, fingerprint=fingerprint, created_at=self.clock())
                    return IdempotencyBegin(is_new=True)
                if record.fingerprint != fingerprint:
                    raise IdempotencyConflictError(
                        "Idempotency key was already used for a different request", key=key
                    )
                if not record.pending:
                    return IdempotencyBegin(is_new=False, cached_result=record.result)
                resolved = record.resolved

            remaining = deadline - time.monotonic()
            if remaining <= 0 or not resolved.wait(remaining):
                raise IdempotencyConflictError(
                    "A request with this idempotency key is still in progress; retry later", key=key
                )
            # Either completed (cached result on next pass) or abandoned (key free again).

    def complete(self, key: str, result: Any) -> None:
        with self._lock:
            record = self._records[key]
            record.result = result
            record.expires_at = self.clock() + self.ttl
            record.resolved.set()

    def abandon(self, key: str) -> None:
        with self._lock:
            record = self._records.pop(key, None)
        if record is not None:
            record.resolved.set()

    def run(self, key: Optional[str], fingerprint: str, operation: Callable[[], Any]) -> Any:
        if key is None:
            return operation()
        started = self.begin(key, fingerprint)
        if not started.is_new:
            logger.info("Replaying stored result for idempotency key %s", key)
            return started.cached_result
        try:
            result = operation()
        except BaseException:
            self.abandon(key)
            raise
        self.complete(key, result)
        return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _evict_expired(self) -> None:
        now = self.clock()
        expired = [
            key for key, record in self._records.items()
            if not record.pending and record.expires_at is not None and record.expires_at <= now
        ]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug("Evicted %d expired idempotency records", len(expired))
