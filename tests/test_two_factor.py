import unittest
from datetime import datetime, timedelta, timezone

from maiagent.services.errors import LockedOut
from maiagent.services.rate_limiter import InMemoryCounterStore, RateLimiter
from maiagent.services.security_prefs_repo import InMemorySecurityPreferencesRepository
from maiagent.services.two_factor import CODE_LENGTH, StepUpAuth, hash_code
from maiagent.services.verification_code_repo import InMemoryVerificationCodeRepository


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class _RecordingDelivery:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def deliver(self, user_id, action_type, code, expires_at):
        _ = expires_at
        self.sent.append((user_id, action_type, code))


def _step_up():
    clock = _Clock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))
    codes = InMemoryVerificationCodeRepository()
    prefs = InMemorySecurityPreferencesRepository()
    delivery = _RecordingDelivery()
    auth = StepUpAuth(codes, prefs, pepper="pepper", delivery=delivery, clock=clock)
    return auth, codes, prefs, delivery, clock


class VerificationCodeLifecycleTests(unittest.TestCase):
    def test_code_verifies_once(self):
        auth, codes, _, delivery, _ = _step_up()
        issued = auth.create_code("user-1", "account.delete_account")

        self.assertEqual(len(issued.code), CODE_LENGTH)
        self.assertTrue(issued.code.isdigit())
        self.assertEqual(delivery.sent, [("user-1", "account.delete_account", issued.code)])
        self.assertTrue(auth.verify_code("user-1", "account.delete_account", issued.code))
        self.assertFalse(auth.verify_code("user-1", "account.delete_account", issued.code))
        self.assertIsNone(codes.get("user-1", "account.delete_account"))

    def test_only_hash_is_stored(self):
        auth, codes, _, _, _ = _step_up()
        issued = auth.create_code("user-1", "account.change_security_phrase")
        row = codes.get("user-1", "account.change_security_phrase")
        self.assertNotEqual(row.code_hash, issued.code)
        self.assertEqual(row.code_hash, hash_code(issued.code, row.salt, "pepper"))

    def test_new_code_invalidates_previous(self):
        auth, _, _, _, _ = _step_up()
        first = auth.create_code("user-1", "account.delete_account")
        second = auth.create_code("user-1", "account.delete_account")
        if first.code != second.code:
            self.assertFalse(auth.verify_code("user-1", "account.delete_account", first.code))
        self.assertTrue(auth.verify_code("user-1", "account.delete_account", second.code))

    def test_codes_are_scoped_to_action_type(self):
        auth, _, _, _, _ = _step_up()
        issued = auth.create_code("user-1", "account.delete_account")
        self.assertFalse(
            auth.verify_code("user-1", "account.disconnect_integration", issued.code)
        )

    def test_expired_code_fails_and_is_purged(self):
        auth, codes, prefs, _, clock = _step_up()
        issued = auth.create_code("user-1", "account.delete_account")
        clock.advance(minutes=11)

        self.assertFalse(auth.verify_code("user-1", "account.delete_account", issued.code))
        self.assertIsNone(codes.get("user-1", "account.delete_account"))
        self.assertEqual(prefs.get("user-1").failed_security_attempts, 1)


class LockoutTests(unittest.TestCase):
    def test_three_failures_lock_for_fifteen_minutes(self):
        auth, _, _, _, clock = _step_up()
        for _ in range(2):
            auth.record_failure("user-1")
        self.assertFalse(auth.check_rate_limit("user-1").is_locked)

        status = auth.record_failure("user-1")

        self.assertTrue(status.is_locked)
        self.assertEqual(status.lockout_until, clock.now + timedelta(minutes=15))
        self.assertEqual(status.minutes_left(clock.now), 15)

    def test_locked_user_cannot_verify(self):
        auth, _, _, _, _ = _step_up()
        issued = auth.create_code("user-1", "account.delete_account")
        for _ in range(3):
            auth.record_failure("user-1")
        with self.assertRaises(LockedOut):
            auth.verify_code("user-1", "account.delete_account", issued.code)

    def test_success_before_third_failure_resets_counter(self):
        auth, _, prefs, _, _ = _step_up()
        auth.record_failure("user-1")
        auth.record_failure("user-1")
        auth.record_success("user-1")
        auth.record_failure("user-1")
        auth.record_failure("user-1")

        self.assertFalse(auth.check_rate_limit("user-1").is_locked)
        self.assertEqual(prefs.get("user-1").failed_security_attempts, 2)

    def test_lockout_expires(self):
        auth, _, _, _, clock = _step_up()
        for _ in range(3):
            auth.record_failure("user-1")
        clock.advance(minutes=16)
        self.assertFalse(auth.check_rate_limit("user-1").is_locked)

        status = auth.record_failure("user-1")
        self.assertFalse(status.is_locked)
        self.assertEqual(status.failed_attempts, 1)


class RateLimiterTests(unittest.TestCase):
    def test_fixed_window_limit_and_retry_after(self):
        now = [1000.0]
        limiter = RateLimiter(
            InMemoryCounterStore(), limit=2, window_seconds=60, clock=lambda: now[0]
        )
        self.assertTrue(limiter.allow("1.2.3.4"))
        self.assertTrue(limiter.allow("1.2.3.4"))
        self.assertFalse(limiter.allow("1.2.3.4"))
        self.assertTrue(limiter.allow("5.6.7.8"))
        self.assertEqual(limiter.retry_after_seconds("1.2.3.4"), 60)

        now[0] += 61
        self.assertTrue(limiter.allow("1.2.3.4"))
        self.assertEqual(limiter.retry_after_seconds("9.9.9.9"), 0)


if __name__ == "__main__":
    unittest.main()
