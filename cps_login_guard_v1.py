"""
Chhaya Printing Solution (CPS) - Login Attempt Guard
Version: 1.0.0

Tracks failed admin logins per client address and enforces the lockout
policy:

    CLEAR (no record) -> WARNING(n), n < max_attempts -> LOCKED

LOCKED either expires on its own (LockoutPolicy.TIMED, lazily, on the next
check) or stays until an explicit unlock (LockoutPolicy.PERMANENT).

Records live behind an AttemptStore. InMemoryAttemptStore keeps them in
process memory, so every worker process has its own view of who is locked
out. Deployments with more than one process need a shared AttemptStore.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional
import asyncio
import functools
import logging
import math
import threading

logger = logging.getLogger("CPS.LoginGuard")

MAX_ATTEMPTS = 3
LOCKOUT_DURATION = timedelta(minutes=30)
IDLE_RECORD_TTL = timedelta(hours=1)

PERMANENT_BLOCK_MESSAGE = "Access permanently blocked. Contact developer to unlock."

class LockoutPolicy(Enum):
    TIMED = "timed"
    PERMANENT = "permanent"

# ============================================
# DATA MODELS
# ============================================

@dataclass(frozen=True)
class AttemptRecord:
    """Failed-login state for one client address."""
    ip: str
    failed_attempts: int
    last_attempt_time: datetime
    blocked_until: Optional[datetime] = None
    is_permanently_blocked: bool = False

    def is_locked(self, now: datetime) -> bool:
        if self.is_permanently_blocked:
            return True
        return self.blocked_until is not None and now <= self.blocked_until

    def lock_expired(self, now: datetime) -> bool:
        return self.blocked_until is not None and now > self.blocked_until

@dataclass(frozen=True)
class BlockStatus:
    """Result of LoginAttemptGuard.check_block."""
    blocked: bool
    message: Optional[str] = None
    attempts_left: Optional[int] = None
    permanent: bool = False
    retry_after_seconds: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'blocked': self.blocked}
        if self.message is not None:
            data['message'] = self.message
        if self.attempts_left is not None:
            data['attemptsLeft'] = self.attempts_left
        if self.blocked:
            data['permanent'] = self.permanent
        if self.retry_after_seconds is not None:
            data['retryAfterSeconds'] = self.retry_after_seconds
        return data

@dataclass(frozen=True)
class AttemptOutcome:
    """Result of LoginAttemptGuard.record_attempt."""
    should_block: bool
    attempts_left: int
    message: Optional[str] = None
    permanent: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'shouldBlock': self.should_block,
            'attemptsLeft': self.attempts_left,
        }
        if self.message is not None:
            data['message'] = self.message
        if self.should_block:
            data['permanent'] = self.permanent
        return data

# ============================================
# STORAGE LAYER
# ============================================

class AttemptStore(ABC):
    """Keyed storage for attempt records."""

    @abstractmethod
    def get(self, ip: str) -> Optional[AttemptRecord]:
        pass

    @abstractmethod
    def set(self, record: AttemptRecord) -> None:
        pass

    @abstractmethod
    def delete(self, ip: str) -> None:
        pass

    @abstractmethod
    def sweep(self, should_evict: Callable[[AttemptRecord], bool]) -> int:
        """Delete every record for which should_evict is true. Returns the count."""
        pass

class InMemoryAttemptStore(AttemptStore):
    """Process-local store guarded by a lock."""

    def __init__(self):
        self._records: Dict[str, AttemptRecord] = {}
        self._lock = threading.Lock()

    def get(self, ip: str) -> Optional[AttemptRecord]:
        with self._lock:
            return self._records.get(ip)

    def set(self, record: AttemptRecord) -> None:
        with self._lock:
            self._records[record.ip] = record

    def delete(self, ip: str) -> None:
        with self._lock:
            self._records.pop(ip, None)

    def sweep(self, should_evict: Callable[[AttemptRecord], bool]) -> int:
        with self._lock:
            stale = [ip for ip, record in self._records.items() if should_evict(record)]
            for ip in stale:
                del self._records[ip]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

# ============================================
# LOGIN ATTEMPT GUARD
# ============================================

def _serialized(method):
    """Run a guard method under the guard's lock."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper

class LoginAttemptGuard:
    """
    Per-address failed-login counter with lockout.

    check_block, record_attempt, unlock and sweep each read a record and
    write it back; they are serialized on one lock so concurrent threads of
    this process cannot lose an increment. Several processes sharing one
    store are not covered by this lock.
    """

    def __init__(
        self,
        store: AttemptStore,
        policy: LockoutPolicy = LockoutPolicy.TIMED,
        max_attempts: int = MAX_ATTEMPTS,
        lockout_duration: timedelta = LOCKOUT_DURATION,
        idle_ttl: timedelta = IDLE_RECORD_TTL,
        clock: Callable[[], datetime] = datetime.now
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.policy = policy
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self.idle_ttl = idle_ttl
        self.clock = clock
        self._lock = threading.RLock()

    def get_record(self, ip: str) -> Optional[AttemptRecord]:
        return self.store.get(ip)

    @_serialized
    def check_block(self, ip: str) -> BlockStatus:
        """
        Report whether ip may try to log in.

        Read-only except for lazy expiry: a timed lock whose blocked_until has
        passed is cleared here.
        """
        now = self.clock()
        record = self.store.get(ip)

        if record is None:
            return BlockStatus(blocked=False, attempts_left=self.max_attempts)

        if record.lock_expired(now) and not record.is_permanently_blocked:
            self.store.delete(ip)
            logger.info(f"Lockout expired for {ip}, record cleared")
            return BlockStatus(blocked=False, attempts_left=self.max_attempts)

        if record.is_locked(now):
            return self._blocked_status(record, now)

        return BlockStatus(
            blocked=False,
            attempts_left=max(0, self.max_attempts - record.failed_attempts)
        )

    @_serialized
    def record_attempt(self, ip: str, success: bool) -> AttemptOutcome:
        """Count a login attempt. A success clears the record."""
        now = self.clock()
        record = self.store.get(ip)

        if record is not None and record.is_locked(now):
            # Attempts made while locked out are refused, not counted
            status = self._blocked_status(record, now)
            logger.warning(f"Attempt from locked address {ip} refused")
            return AttemptOutcome(
                should_block=True,
                attempts_left=0,
                message=status.message,
                permanent=status.permanent
            )

        if success:
            if record is not None:
                self.store.delete(ip)
            logger.info(f"Successful login from {ip}, attempt record cleared")
            return AttemptOutcome(should_block=False, attempts_left=self.max_attempts)

        if record is None or record.lock_expired(now):
            record = AttemptRecord(ip=ip, failed_attempts=0, last_attempt_time=now)

        failed_attempts = record.failed_attempts + 1
        record = replace(record, failed_attempts=failed_attempts, last_attempt_time=now)

        if failed_attempts >= self.max_attempts:
            record = self._apply_lock(record, now)
            self.store.set(record)
            status = self._blocked_status(record, now)
            logger.warning(
                f"LOCKOUT: {ip} locked after {failed_attempts} failed attempts "
                f"(policy={self.policy.value})"
            )
            return AttemptOutcome(
                should_block=True,
                attempts_left=0,
                message=status.message,
                permanent=status.permanent
            )

        self.store.set(record)
        attempts_left = self.max_attempts - failed_attempts
        logger.info(f"Failed login from {ip}: {failed_attempts}/{self.max_attempts}")
        return AttemptOutcome(
            should_block=False,
            attempts_left=attempts_left,
            message=f"Invalid access code. {attempts_left} attempt(s) left."
        )

    @_serialized
    def unlock(self, ip: str) -> None:
        """Force ip back to CLEAR whatever its current state."""
        self.store.delete(ip)
        logger.warning(f"UNLOCK: attempt record for {ip} reset")

    @_serialized
    def sweep(self) -> int:
        """Drop idle records; permanent and still-active locks are kept."""
        now = self.clock()
        cutoff = now - self.idle_ttl

        def should_evict(record: AttemptRecord) -> bool:
            if record.is_locked(now):
                return False
            return record.last_attempt_time < cutoff

        removed = self.store.sweep(should_evict)
        if removed:
            logger.info(f"Swept {removed} idle attempt record(s)")
        return removed

    def _apply_lock(self, record: AttemptRecord, now: datetime) -> AttemptRecord:
        if self.policy is LockoutPolicy.PERMANENT:
            return replace(record, is_permanently_blocked=True)
        return replace(record, blocked_until=now + self.lockout_duration)

    def _blocked_status(self, record: AttemptRecord, now: datetime) -> BlockStatus:
        if record.is_permanently_blocked:
            return BlockStatus(
                blocked=True,
                message=PERMANENT_BLOCK_MESSAGE,
                attempts_left=0,
                permanent=True
            )

        seconds_left = max(0.0, (record.blocked_until - now).total_seconds())
        minutes_left = max(1, math.ceil(seconds_left / 60))
        return BlockStatus(
            blocked=True,
            message=f"Too many failed attempts. Please try again in {minutes_left} minute(s).",
            attempts_left=0,
            retry_after_seconds=math.ceil(seconds_left)
        )

# ============================================
# BACKGROUND SWEEP
# ============================================

async def sweep_periodically(guard: LoginAttemptGuard, interval_seconds: float,
                             on_sweep: Optional[Callable[[int], None]] = None):
    """Run guard.sweep() every interval until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = guard.sweep()
        except Exception as e:
            logger.error(f"Attempt record sweep failed: {e}", exc_info=e)
            continue
        if on_sweep is not None:
            on_sweep(removed)
