from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

from .security_tiers import (
    LOCKOUT_MINUTES,
    MAX_FAILED_ATTEMPTS,
    SecurityTier,
    UserSecurityPreferences,
    coerce_tier,
)
from .supabase_rest import SupabaseRestClient, eq, opt_str, parse_time, to_iso


logger = logging.getLogger(__name__)

PREFERENCE_COLUMNS = (
    "user_id,emoji_confirmations_enabled,security_phrase_color,security_phrase_object,"
    "security_phrase_emoji,action_security_overrides,failed_security_attempts,"
    "security_lockout_until"
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def apply_failed_attempt(
    prefs: UserSecurityPreferences, now: datetime
) -> UserSecurityPreferences:
    attempts = prefs.failed_security_attempts + 1
    lockout_until = prefs.security_lockout_until
    if lockout_until is not None and lockout_until <= now:
        # An elapsed lockout starts a fresh count.
        attempts = 1
        lockout_until = None
    if attempts >= MAX_FAILED_ATTEMPTS:
        lockout_until = now + timedelta(minutes=LOCKOUT_MINUTES)
    return replace(
        prefs,
        failed_security_attempts=attempts,
        security_lockout_until=lockout_until,
    )


class SupabaseSecurityPreferencesRepository:
    """One ``user_preferences`` row per user. A missing row reads as defaults."""

    def __init__(self, client: SupabaseRestClient, table: str = "user_preferences") -> None:
        self.client = client
        self.table = (table or "user_preferences").strip()

    def is_configured(self) -> bool:
        return self.client.is_configured()

    def get(self, user_id: str) -> UserSecurityPreferences:
        rows = self.client.select(
            self.table,
            filters={"user_id": eq(user_id)},
            columns=PREFERENCE_COLUMNS,
            limit=1,
        )
        if not rows:
            return UserSecurityPreferences(user_id=user_id)
        return _to_preferences(user_id, rows[0])

    def record_failed_attempt(
        self, user_id: str, now: datetime | None = None
    ) -> UserSecurityPreferences:
        current = self.get(user_id)
        updated = apply_failed_attempt(current, now or _utc_now())
        self._upsert(
            user_id,
            {
                "failed_security_attempts": updated.failed_security_attempts,
                "security_lockout_until": to_iso(updated.security_lockout_until),
            },
        )
        if updated.security_lockout_until != current.security_lockout_until:
            logger.warning(
                "User %s locked out of security confirmations until %s",
                user_id,
                to_iso(updated.security_lockout_until),
            )
        return updated

    def reset_failed_attempts(self, user_id: str) -> None:
        self._upsert(
            user_id,
            {"failed_security_attempts": 0, "security_lockout_until": None},
        )

    def update_settings(
        self,
        user_id: str,
        emoji_confirmations_enabled: bool | None = None,
        action_security_overrides: dict[str, SecurityTier] | None = None,
    ) -> UserSecurityPreferences:
        patch: dict[str, Any] = {}
        if emoji_confirmations_enabled is not None:
            patch["emoji_confirmations_enabled"] = bool(emoji_confirmations_enabled)
        if action_security_overrides is not None:
            patch["action_security_overrides"] = dict(action_security_overrides)
        if patch:
            self._upsert(user_id, patch)
        return self.get(user_id)

    def set_security_phrase(
        self, user_id: str, color: str, obj: str, emoji: str | None = None
    ) -> UserSecurityPreferences:
        self._upsert(
            user_id,
            {
                "security_phrase_color": color.strip(),
                "security_phrase_object": obj.strip(),
                "security_phrase_emoji": (emoji or "").strip() or None,
            },
        )
        return self.get(user_id)

    def _upsert(self, user_id: str, patch: dict[str, Any]) -> None:
        self.client.insert(
            self.table,
            body={"user_id": user_id, **patch},
            on_conflict="user_id",
        )


class InMemorySecurityPreferencesRepository:
    def __init__(self, initial: list[UserSecurityPreferences] | None = None) -> None:
        self._rows: dict[str, UserSecurityPreferences] = {
            prefs.user_id: prefs for prefs in (initial or [])
        }
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return True

    def get(self, user_id: str) -> UserSecurityPreferences:
        return self._rows.get(user_id) or UserSecurityPreferences(user_id=user_id)

    def record_failed_attempt(
        self, user_id: str, now: datetime | None = None
    ) -> UserSecurityPreferences:
        with self._lock:
            updated = apply_failed_attempt(self.get(user_id), now or _utc_now())
            self._rows[user_id] = updated
        return updated

    def reset_failed_attempts(self, user_id: str) -> None:
        with self._lock:
            self._rows[user_id] = replace(
                self.get(user_id),
                failed_security_attempts=0,
                security_lockout_until=None,
            )

    def update_settings(
        self,
        user_id: str,
        emoji_confirmations_enabled: bool | None = None,
        action_security_overrides: dict[str, SecurityTier] | None = None,
    ) -> UserSecurityPreferences:
        with self._lock:
            current = self.get(user_id)
            if emoji_confirmations_enabled is not None:
                current = replace(
                    current, emoji_confirmations_enabled=bool(emoji_confirmations_enabled)
                )
            if action_security_overrides is not None:
                current = replace(
                    current, action_security_overrides=dict(action_security_overrides)
                )
            self._rows[user_id] = current
        return current

    def set_security_phrase(
        self, user_id: str, color: str, obj: str, emoji: str | None = None
    ) -> UserSecurityPreferences:
        with self._lock:
            current = replace(
                self.get(user_id),
                security_phrase_color=color.strip(),
                security_phrase_object=obj.strip(),
                security_phrase_emoji=(emoji or "").strip() or None,
            )
            self._rows[user_id] = current
        return current


def _to_overrides(raw: Any) -> dict[str, SecurityTier]:
    if not isinstance(raw, dict):
        return {}
    out: dict[str, SecurityTier] = {}
    for action_id, tier in raw.items():
        coerced = coerce_tier(tier)
        if isinstance(action_id, str) and coerced is not None:
            out[action_id] = coerced
    return out


def _to_preferences(user_id: str, row: dict[str, Any]) -> UserSecurityPreferences:
    emoji_enabled = row.get("emoji_confirmations_enabled")
    attempts = row.get("failed_security_attempts")
    return UserSecurityPreferences(
        user_id=str(row.get("user_id") or user_id),
        emoji_confirmations_enabled=emoji_enabled if isinstance(emoji_enabled, bool) else True,
        security_phrase_color=opt_str(row.get("security_phrase_color")),
        security_phrase_object=opt_str(row.get("security_phrase_object")),
        security_phrase_emoji=opt_str(row.get("security_phrase_emoji")),
        action_security_overrides=_to_overrides(row.get("action_security_overrides")),
        failed_security_attempts=attempts if isinstance(attempts, int) else 0,
        security_lockout_until=parse_time(row.get("security_lockout_until")),
    )
