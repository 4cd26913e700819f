"""
Chhaya Printing Solution (CPS) - Login Attempt Guard Tests
Version: 1.0.0

CLEAR -> WARNING -> LOCKED transitions for both lockout policies, lazy
expiry, admin unlock and idle-record sweeping.
"""

import asyncio
import threading
import time
from datetime import datetime, timedelta

import pytest

from cps_login_guard_v1 import (
    PERMANENT_BLOCK_MESSAGE,
    AttemptRecord,
    InMemoryAttemptStore,
    LockoutPolicy,
    LoginAttemptGuard,
    sweep_periodically,
)

IP = "1.2.3.4"

# ============================================
# FIXTURES
# ============================================

class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 10, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def store():
    return InMemoryAttemptStore()

@pytest.fixture
def timed_guard(store, clock):
    return LoginAttemptGuard(store, policy=LockoutPolicy.TIMED, clock=clock)

@pytest.fixture
def permanent_guard(store, clock):
    return LoginAttemptGuard(store, policy=LockoutPolicy.PERMANENT, clock=clock)

def fail(guard, times, ip=IP):
    outcome = None
    for _ in range(times):
        outcome = guard.record_attempt(ip, success=False)
    return outcome

# ============================================
# WARNING STATE
# ============================================

class TestFailedAttempts:

    def test_clear_address_is_not_blocked(self, timed_guard):
        status = timed_guard.check_block(IP)

        assert status.blocked is False
        assert status.attempts_left == 3
        assert timed_guard.get_record(IP) is None

    def test_two_failures_leave_one_attempt(self, timed_guard):
        outcome = fail(timed_guard, 2)

        assert outcome.should_block is False
        assert outcome.attempts_left == 1

        status = timed_guard.check_block(IP)
        assert status.blocked is False
        assert status.attempts_left == 1

    def test_failures_are_tracked_per_address(self, timed_guard):
        fail(timed_guard, 2)
        fail(timed_guard, 1, ip="5.6.7.8")

        assert timed_guard.get_record(IP).failed_attempts == 2
        assert timed_guard.get_record("5.6.7.8").failed_attempts == 1

    def test_success_resets_to_clear(self, timed_guard):
        fail(timed_guard, 2)
        outcome = timed_guard.record_attempt(IP, success=True)

        assert outcome.should_block is False
        assert outcome.attempts_left == 3
        assert timed_guard.get_record(IP) is None
        assert timed_guard.check_block(IP).attempts_left == 3

    def test_max_attempts_must_be_positive(self, store):
        with pytest.raises(ValueError):
            LoginAttemptGuard(store, max_attempts=0)

# ============================================
# TIMED LOCKOUT
# ============================================

class TestTimedLockout:

    def test_third_failure_locks(self, timed_guard, clock):
        outcome = fail(timed_guard, 3)

        assert outcome.should_block is True
        assert outcome.attempts_left == 0
        assert outcome.permanent is False

        record = timed_guard.get_record(IP)
        assert record.blocked_until == clock.now + timedelta(minutes=30)
        assert record.is_permanently_blocked is False

        status = timed_guard.check_block(IP)
        assert status.blocked is True
        assert status.message == "Too many failed attempts. Please try again in 30 minute(s)."
        assert status.retry_after_seconds == 30 * 60

    def test_attempt_while_locked_is_not_counted(self, timed_guard):
        fail(timed_guard, 3)
        outcome = timed_guard.record_attempt(IP, success=False)

        assert outcome.should_block is True
        assert timed_guard.get_record(IP).failed_attempts == 3

    def test_correct_code_while_locked_is_refused(self, timed_guard):
        fail(timed_guard, 3)
        outcome = timed_guard.record_attempt(IP, success=True)

        assert outcome.should_block is True
        assert timed_guard.check_block(IP).blocked is True

    def test_remaining_minutes_round_up(self, timed_guard, clock):
        fail(timed_guard, 3)
        clock.advance(minutes=29, seconds=30)

        status = timed_guard.check_block(IP)
        assert status.blocked is True
        assert "1 minute(s)" in status.message
        assert status.retry_after_seconds == 30

    def test_lock_still_active_at_exact_expiry(self, timed_guard, clock):
        fail(timed_guard, 3)
        clock.advance(minutes=30)

        assert timed_guard.check_block(IP).blocked is True

    def test_expired_lock_is_cleared_lazily(self, timed_guard, clock):
        fail(timed_guard, 3)
        clock.advance(minutes=30, seconds=1)

        status = timed_guard.check_block(IP)

        assert status.blocked is False
        assert status.attempts_left == 3
        assert timed_guard.get_record(IP) is None

    def test_failure_after_expiry_starts_fresh(self, timed_guard, clock):
        fail(timed_guard, 3)
        clock.advance(minutes=31)

        outcome = timed_guard.record_attempt(IP, success=False)

        assert outcome.should_block is False
        assert outcome.attempts_left == 2
        assert timed_guard.get_record(IP).failed_attempts == 1

    def test_custom_duration_and_limit(self, store, clock):
        guard = LoginAttemptGuard(store, max_attempts=5, lockout_duration=timedelta(minutes=5), clock=clock)

        assert fail(guard, 4).attempts_left == 1
        assert fail(guard, 1).should_block is True
        assert guard.get_record(IP).blocked_until == clock.now + timedelta(minutes=5)

# ============================================
# PERMANENT LOCKOUT
# ============================================

class TestPermanentLockout:

    def test_third_failure_locks_permanently(self, permanent_guard):
        outcome = fail(permanent_guard, 3)

        assert outcome.should_block is True
        assert outcome.permanent is True

        record = permanent_guard.get_record(IP)
        assert record.is_permanently_blocked is True
        assert record.blocked_until is None

    def test_permanent_lock_never_expires(self, permanent_guard, clock):
        fail(permanent_guard, 3)
        clock.advance(days=30)

        status = permanent_guard.check_block(IP)
        assert status.blocked is True
        assert status.permanent is True
        assert status.message == PERMANENT_BLOCK_MESSAGE
        assert status.retry_after_seconds is None

    def test_unlock_clears_permanent_lock(self, permanent_guard):
        fail(permanent_guard, 3)
        permanent_guard.unlock(IP)

        assert permanent_guard.get_record(IP) is None
        assert permanent_guard.check_block(IP).blocked is False
        assert fail(permanent_guard, 1).attempts_left == 2

    def test_unlock_on_clear_address_is_harmless(self, permanent_guard):
        permanent_guard.unlock("9.9.9.9")
        assert permanent_guard.check_block("9.9.9.9").blocked is False

# ============================================
# SWEEPING
# ============================================

class TestSweep:

    def test_idle_records_are_removed(self, timed_guard, clock, store):
        fail(timed_guard, 1)
        clock.advance(hours=1, seconds=1)

        assert timed_guard.sweep() == 1
        assert len(store) == 0

    def test_recent_records_are_kept(self, timed_guard, clock, store):
        fail(timed_guard, 1)
        clock.advance(minutes=59)

        assert timed_guard.sweep() == 0
        assert len(store) == 1

    def test_permanent_locks_survive_sweep(self, permanent_guard, clock, store):
        fail(permanent_guard, 3)
        fail(permanent_guard, 1, ip="5.6.7.8")
        clock.advance(hours=5)

        assert permanent_guard.sweep() == 1
        assert permanent_guard.get_record(IP) is not None
        assert permanent_guard.get_record("5.6.7.8") is None

    def test_active_timed_lock_survives_sweep(self, store, clock):
        guard = LoginAttemptGuard(store, lockout_duration=timedelta(hours=3), clock=clock)
        fail(guard, 3)
        clock.advance(hours=2)

        assert guard.sweep() == 0
        assert guard.check_block(IP).blocked is True

    def test_sweep_periodically_runs_until_cancelled(self, timed_guard, clock):
        fail(timed_guard, 1)
        clock.advance(hours=2)
        swept = []

        async def run():
            task = asyncio.create_task(sweep_periodically(timed_guard, 0.01, on_sweep=swept.append))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run())

        assert swept[0] == 1
        assert timed_guard.get_record(IP) is None

# ============================================
# STORE AND WIRE FORMAT
# ============================================

class TestInMemoryAttemptStore:

    def test_set_get_delete(self, store):
        record = AttemptRecord(ip=IP, failed_attempts=1, last_attempt_time=datetime(2026, 1, 1))
        store.set(record)

        assert store.get(IP) == record
        store.delete(IP)
        assert store.get(IP) is None
        store.delete(IP)

    def test_sweep_with_predicate(self, store):
        for i in range(4):
            store.set(AttemptRecord(ip=f"10.0.0.{i}", failed_attempts=i, last_attempt_time=datetime(2026, 1, 1)))

        removed = store.sweep(lambda record: record.failed_attempts % 2 == 0)

        assert removed == 2
        assert store.get("10.0.0.1") is not None
        assert store.get("10.0.0.2") is None

class SlowStore(InMemoryAttemptStore):
    """Yields between read and write to widen any race window."""

    def get(self, ip):
        record = super().get(ip)
        time.sleep(0)
        return record

class TestConcurrency:

    def test_concurrent_failures_are_all_counted(self):
        guard = LoginAttemptGuard(SlowStore(), max_attempts=10_000)

        def hammer():
            for _ in range(200):
                guard.record_attempt(IP, success=False)

        threads = [threading.Thread(target=hammer) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert guard.get_record(IP).failed_attempts == 1600

    def test_lock_reached_exactly_once_under_contention(self):
        guard = LoginAttemptGuard(SlowStore(), max_attempts=50)
        outcomes = []

        def hammer():
            for _ in range(20):
                outcomes.append(guard.record_attempt(IP, success=False))

        threads = [threading.Thread(target=hammer) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert guard.get_record(IP).failed_attempts == 50
        assert sum(1 for o in outcomes if not o.should_block) == 49

class TestWireFormat:

    def test_block_status_dict(self, timed_guard):
        assert timed_guard.check_block(IP).to_dict() == {'blocked': False, 'attemptsLeft': 3}

        fail(timed_guard, 3)
        data = timed_guard.check_block(IP).to_dict()
        assert data['blocked'] is True
        assert data['permanent'] is False
        assert data['attemptsLeft'] == 0
        assert 'message' in data
        assert data['retryAfterSeconds'] == 1800

    def test_attempt_outcome_dict(self, permanent_guard):
        data = fail(permanent_guard, 1).to_dict()
        assert data['shouldBlock'] is False
        assert data['attemptsLeft'] == 2

        data = fail(permanent_guard, 2).to_dict()
        assert data == {
            'shouldBlock': True,
            'attemptsLeft': 0,
            'message': PERMANENT_BLOCK_MESSAGE,
            'permanent': True,
        }

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
