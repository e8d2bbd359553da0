from __future__ import annotations

import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from ditto.logging import get_logger
from ditto.service.clock import Clock, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockState:
    remaining_seconds: int = 0

    @property
    def locked(self) -> bool:
        return self.remaining_seconds > 0

    @property
    def remaining_minutes(self) -> int:
        return math.ceil(self.remaining_seconds / 60)


OPEN = LockState()


@dataclass
class LockoutRecord:
    failed_attempts: int
    last_attempt_at: datetime
    locked_until: Optional[datetime] = None

    def lock_active(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class _KeyGuard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class LockoutTracker:
    """Counts failed code attempts per key and locks the key after too many."""

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        lock_minutes: int = 15,
        clock: Optional[Clock] = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.lock_duration = timedelta(minutes=lock_minutes)
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._records: dict[str, LockoutRecord] = {}
        self._guards: dict[str, _KeyGuard] = {}

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _remaining(record: LockoutRecord, now: datetime) -> LockState:
        seconds = math.ceil((record.locked_until - now).total_seconds())
        return LockState(remaining_seconds=max(seconds, 1))

    @contextmanager
    def attempt(self, key: str):
        """Serialize one check-then-record sequence for ``key``.

        Attempts on the same key run one at a time so a lock check, the code
        check and the resulting record are never interleaved with another
        attempt. Different keys do not block each other.
        """
        with self._lock:
            guard = self._guards.get(key)
            if guard is None:
                guard = self._guards[key] = _KeyGuard()
            guard.holders += 1
        guard.lock.acquire()
        try:
            yield
        finally:
            guard.lock.release()
            with self._lock:
                guard.holders -= 1
                if guard.holders == 0:
                    self._guards.pop(key, None)

    def check_locked(self, key: str) -> LockState:
        now = self._now()
        with self._lock:
            record = self._records.get(key)
            if record is None or record.locked_until is None:
                return OPEN
            if record.lock_active(now):
                return self._remaining(record, now)
            # Lock elapsed: next attempt starts from a clean slate
            self._records.pop(key, None)
            return OPEN

    def record_failure(self, key: str) -> LockState:
        now = self._now()
        with self._lock:
            record = self._records.get(key)
            if record is not None and record.lock_active(now):
                # Already locked by a concurrent attempt; do not extend
                return self._remaining(record, now)
            if record is None or record.locked_until is not None:
                record = LockoutRecord(failed_attempts=0, last_attempt_at=now)
                self._records[key] = record
            record.failed_attempts += 1
            record.last_attempt_at = now
            if record.failed_attempts < self.max_attempts:
                return OPEN
            record.locked_until = now + self.lock_duration
            state = self._remaining(record, now)
        logger.warning(
            "lockout_triggered",
            phone=key,
            attempts=record.failed_attempts,
            locked_minutes=state.remaining_minutes,
        )
        return state

    def record_success(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def attempts(self, key: str) -> int:
        with self._lock:
            record = self._records.get(key)
            return record.failed_attempts if record else 0

    def sweep(self) -> int:
        """Remove records whose lock has expired. Returns how many were removed."""
        now = self._now()
        with self._lock:
            expired = [
                key
                for key, record in self._records.items()
                if record.locked_until is not None and record.locked_until <= now
            ]
            for key in expired:
                self._records.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
