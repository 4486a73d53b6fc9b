"""Step-up verification codes and the failed-attempt lockout.

Per user the state is ``unlocked -> (3 consecutive failures) -> locked for 15
minutes -> unlocked``. The counter and lockout live in the user's preference
row so they survive restarts and are shared by every process. Codes are
6 digits, valid for 10 minutes, single-use, and only their salted hash is
stored.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .errors import LockedOut
from .security_tiers import UserSecurityPreferences
from .verification_code_repo import VerificationCodeRow


logger = logging.getLogger(__name__)

CODE_LENGTH = 6
CODE_EXPIRY_MINUTES = 10


@dataclass(frozen=True)
class IssuedCode:
    code: str
    action_type: str
    expires_at: datetime


@dataclass(frozen=True)
class RateLimitStatus:
    is_locked: bool
    lockout_until: datetime | None
    failed_attempts: int

    def minutes_left(self, now: datetime) -> int:
        if not self.is_locked or self.lockout_until is None:
            return 0
        seconds = (self.lockout_until - now).total_seconds()
        return max(1, int(-(-seconds // 60)))


class LoggingCodeDelivery:
    """Default delivery: records that a code was issued without printing it."""

    def deliver(self, user_id: str, action_type: str, code: str, expires_at: datetime) -> None:
        _ = code
        logger.info(
            "Verification code issued for user %s action %s (expires %s)",
            user_id,
            action_type,
            expires_at.isoformat(),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_code(code: str, salt: str, pepper: str) -> str:
    return hashlib.sha256(f"{code.strip()}{salt}{pepper}".encode("utf-8")).hexdigest()


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


class StepUpAuth:
    def __init__(
        self,
        codes_repo: Any,
        preferences_repo: Any,
        pepper: str,
        delivery: Any | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.codes_repo = codes_repo
        self.preferences_repo = preferences_repo
        self.pepper = pepper or ""
        self.delivery = delivery or LoggingCodeDelivery()
        self._clock = clock or _utc_now

    def create_code(self, user_id: str, action_type: str) -> IssuedCode:
        code = generate_code()
        salt = secrets.token_hex(16)
        expires_at = self._clock() + timedelta(minutes=CODE_EXPIRY_MINUTES)
        # replace() drops any live code for the same (user, action_type).
        self.codes_repo.replace(
            VerificationCodeRow(
                user_id=user_id,
                action_type=action_type,
                code_hash=hash_code(code, salt, self.pepper),
                salt=salt,
                expires_at=expires_at,
            )
        )
        self.delivery.deliver(user_id, action_type, code, expires_at)
        return IssuedCode(code=code, action_type=action_type, expires_at=expires_at)

    def verify_code(self, user_id: str, action_type: str, candidate: str) -> bool:
        status = self.check_rate_limit(user_id)
        if status.is_locked:
            raise LockedOut(
                "Too many failed security attempts. Try again after the lockout period.",
                lockout_until=status.lockout_until.isoformat() if status.lockout_until else None,
            )

        row = self.codes_repo.get(user_id, action_type)
        if row is None:
            logger.info("No verification code for user %s action %s", user_id, action_type)
            self.record_failure(user_id)
            return False
        if row.expires_at <= self._clock():
            logger.info("Verification code expired for user %s action %s", user_id, action_type)
            self.codes_repo.delete(user_id, action_type)
            self.record_failure(user_id)
            return False

        expected = row.code_hash
        actual = hash_code(candidate or "", row.salt, self.pepper)
        if not hmac.compare_digest(expected, actual):
            logger.info("Verification code mismatch for user %s action %s", user_id, action_type)
            self.record_failure(user_id)
            return False

        self.codes_repo.delete(user_id, action_type)
        self.record_success(user_id)
        logger.info("Verification succeeded for user %s action %s", user_id, action_type)
        return True

    def check_rate_limit(self, user_id: str) -> RateLimitStatus:
        prefs: UserSecurityPreferences = self.preferences_repo.get(user_id)
        return RateLimitStatus(
            is_locked=prefs.is_locked_out(self._clock()),
            lockout_until=prefs.security_lockout_until,
            failed_attempts=prefs.failed_security_attempts,
        )

    def record_failure(self, user_id: str) -> RateLimitStatus:
        prefs = self.preferences_repo.record_failed_attempt(user_id, now=self._clock())
        return RateLimitStatus(
            is_locked=prefs.is_locked_out(self._clock()),
            lockout_until=prefs.security_lockout_until,
            failed_attempts=prefs.failed_security_attempts,
        )

    def record_success(self, user_id: str) -> None:
        self.preferences_repo.reset_failed_attempts(user_id)
