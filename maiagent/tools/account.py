from __future__ import annotations

from typing import Any

from maiagent.services.security_tiers import UserSecurityPreferences

from .base import Tool, ToolContext


class AccountTool(Tool):
    """Read-only view of the caller's security settings. Never returns the phrase."""

    name = "account"
    provider = "account"

    def handlers(self):
        return {"get_user_preferences": self.get_user_preferences}

    def get_user_preferences(self, context: ToolContext) -> dict[str, Any]:
        prefs = context.preferences or UserSecurityPreferences(user_id=context.user_id)
        return {
            "success": True,
            "preferences": {
                "emoji_confirmations_enabled": prefs.emoji_confirmations_enabled,
                "has_security_phrase": prefs.has_security_phrase,
                "has_security_emoji": bool((prefs.security_phrase_emoji or "").strip()),
                "action_security_overrides": dict(prefs.action_security_overrides),
                "locked_out": prefs.is_locked_out(),
            },
        }
