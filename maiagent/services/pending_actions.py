from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .security_tiers import SecurityTier


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingAction:
    id: str
    user_id: str
    tool_name: str
    action_id: str
    tier: SecurityTier
    args: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool_name": self.tool_name,
            "action_id": self.action_id,
            "tier": self.tier,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryPendingActionStore:
    """Server-held proposals awaiting the user's confirmation reply.

    Records are scoped to a user and expire after ``ttl_seconds``. Expired
    records are dropped lazily on read.
    """

    def __init__(
        self,
        ttl_seconds: int = 600,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.ttl_seconds = max(1, int(ttl_seconds))
        self._clock = clock or _utc_now
        self._records: dict[str, PendingAction] = {}
        self._lock = threading.Lock()

    def create(
        self,
        user_id: str,
        tool_name: str,
        action_id: str,
        tier: SecurityTier,
        args: dict[str, Any],
    ) -> PendingAction:
        """Hold a proposed call. Re-proposing an identical live call returns
        the existing record with a renewed expiry instead of a second hold.
        """
        now = self._clock()
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        with self._lock:
            for key, held in list(self._records.items()):
                if held.is_expired(now):
                    del self._records[key]
                elif (
                    held.user_id == user_id
                    and held.tool_name == tool_name
                    and held.action_id == action_id
                    and held.args == args
                ):
                    renewed = replace(held, expires_at=expires_at)
                    self._records[key] = renewed
                    logger.info("Pending %s re-proposed for user %s", key, user_id)
                    return renewed
            record = PendingAction(
                id=f"pa_{uuid.uuid4().hex}",
                user_id=user_id,
                tool_name=tool_name,
                action_id=action_id,
                tier=tier,
                args=dict(args),
                created_at=now,
                expires_at=expires_at,
            )
            self._records[record.id] = record
        logger.info(
            "Pending %s (tier %s) created for user %s: %s",
            action_id,
            tier,
            user_id,
            record.id,
        )
        return record

    def get(self, user_id: str, pending_id: str) -> PendingAction | None:
        with self._lock:
            record = self._records.get(pending_id)
            if record is None or record.user_id != user_id:
                return None
            if record.is_expired(self._clock()):
                del self._records[pending_id]
                return None
            return record

    def live_for_user(self, user_id: str) -> list[PendingAction]:
        now = self._clock()
        with self._lock:
            for key in [k for k, r in self._records.items() if r.is_expired(now)]:
                del self._records[key]
            live = [r for r in self._records.values() if r.user_id == user_id]
        return sorted(live, key=lambda r: r.created_at or now)

    def discard(self, user_id: str, pending_id: str) -> bool:
        with self._lock:
            record = self._records.get(pending_id)
            if record is None or record.user_id != user_id:
                return False
            del self._records[pending_id]
            return True
