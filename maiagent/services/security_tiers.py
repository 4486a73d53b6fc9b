"""Five-tier confirmation policy.

Tier 1 and ``"blocked"`` actions are never executed from a conversation.
Tier 2 needs the user's two-part security phrase (or its glyph), tier 3 a
per-action keyword (or its glyph), tier 4 any affirmative reply and tier 5
nothing at all. Everything here is a pure function of the action id, the
reply text and the user's stored preferences.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union


BLOCKED = "blocked"
SecurityTier = Union[int, str]
VALID_TIERS: tuple[SecurityTier, ...] = (1, 2, 3, 4, 5, BLOCKED)

MAX_FAILED_ATTEMPTS = 3
LOCKOUT_MINUTES = 15

_VARIATION_SELECTORS = {"\ufe0e", "\ufe0f"}


@dataclass(frozen=True)
class ActionDescriptor:
    id: str
    default_tier: SecurityTier
    keyword: str | None = None
    glyph: str | None = None

    @property
    def platform(self) -> str:
        return self.id.split(".", 1)[0]


@dataclass(frozen=True)
class UserSecurityPreferences:
    user_id: str
    emoji_confirmations_enabled: bool = True
    security_phrase_color: str | None = None
    security_phrase_object: str | None = None
    security_phrase_emoji: str | None = None
    action_security_overrides: dict[str, SecurityTier] = field(default_factory=dict)
    failed_security_attempts: int = 0
    security_lockout_until: datetime | None = None

    @property
    def has_security_phrase(self) -> bool:
        return bool(
            (self.security_phrase_color or "").strip()
            and (self.security_phrase_object or "").strip()
        )

    def is_locked_out(self, now: datetime | None = None) -> bool:
        if self.security_lockout_until is None:
            return False
        current = now or datetime.now(timezone.utc)
        return self.security_lockout_until > current


TIER_3_CONFIRMATIONS: dict[str, tuple[str, str]] = {
    "delete": ("delete", "\U0001F5D1\ufe0f"),
    "archive": ("archive", "\U0001F4E6"),
    "cancel": ("cancel", "\u274c"),
    "send": ("send", "\U0001F4E4"),
    "merge": ("merge", "\U0001F517"),
    "remove": ("remove", "\u2796"),
}

TIER_4_POSITIVE_RESPONSES = (
    "yes", "yep", "yeah", "yup", "ya", "y",
    "ok", "okay", "k", "kk",
    "sure", "surely",
    "go", "go ahead", "go for it",
    "do it", "proceed",
    "confirmed", "confirm",
    "approved", "approve",
    "yalla", "let's go", "lets go",
    "affirmative", "aye",
    "absolutely", "definitely",
    "please", "pls",
    "\U0001F44D", "\u2705", "\U0001F44C",
)


def _action(action_id: str, tier: SecurityTier, keyword: str | None = None) -> ActionDescriptor:
    glyph = TIER_3_CONFIRMATIONS[keyword][1] if keyword else None
    return ActionDescriptor(id=action_id, default_tier=tier, keyword=keyword, glyph=glyph)


ACTION_DEFAULTS: dict[str, ActionDescriptor] = {
    descriptor.id: descriptor
    for descriptor in (
        # Mail
        _action("gmail.get_email", 5),
        _action("gmail.list_emails", 5),
        _action("gmail.search_emails", 5),
        _action("gmail.get_labels", 5),
        _action("gmail.create_draft", 5),
        _action("gmail.mark_read", 4),
        _action("gmail.mark_unread", 4),
        _action("gmail.apply_label", 4),
        _action("gmail.remove_label", 4),
        _action("gmail.update_draft", 4),
        _action("gmail.send_to_self", 4),
        _action("gmail.delete_email", 3, "delete"),
        _action("gmail.archive_email", 3, "archive"),
        _action("gmail.send_external", 2),
        _action("gmail.reply_external", 2),
        _action("gmail.forward_external", 2),
        _action("gmail.empty_trash", BLOCKED),
        # Calendar
        _action("calendar.get_event", 5),
        _action("calendar.list_events", 5),
        _action("calendar.list_calendars", 5),
        _action("calendar.get_freebusy", 5),
        _action("calendar.find_slots", 5),
        _action("calendar.create_event_self", 4),
        _action("calendar.update_event", 4),
        _action("calendar.rsvp", 4),
        _action("calendar.create_event_external", 3, "send"),
        _action("calendar.add_attendee", 3, "send"),
        _action("calendar.cancel_event", 3, "cancel"),
        _action("calendar.delete_event", 3, "delete"),
        _action("calendar.share_external", 2),
        # Contacts
        _action("contacts.get_contact", 5),
        _action("contacts.list_contacts", 5),
        _action("contacts.search_contacts", 5),
        _action("contacts.create_contact", 5),
        _action("contacts.update_contact", 4),
        _action("contacts.add_to_group", 4),
        _action("contacts.remove_from_group", 4),
        _action("contacts.delete_contact", 3, "delete"),
        _action("contacts.merge_contacts", 3, "merge"),
        _action("contacts.export_contacts", BLOCKED),
        # Task board
        _action("monday.get_boards", 5),
        _action("monday.get_items", 5),
        _action("monday.add_comment", 5),
        _action("monday.create_item", 4),
        _action("monday.update_item", 4),
        _action("monday.change_status", 4),
        _action("monday.assign_item", 4),
        _action("monday.move_item", 4),
        _action("monday.delete_item", 3, "delete"),
        _action("monday.archive_item", 3, "archive"),
        _action("monday.delete_board", BLOCKED),
        # Account
        _action("account.view_settings", 5),
        _action("account.update_preferences", 4),
        _action("account.change_security_phrase", 1),
        _action("account.disconnect_integration", 1),
        _action("account.delete_account", 1),
    )
}


def coerce_tier(raw: Any) -> SecurityTier | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int) and raw in VALID_TIERS:
        return raw
    if isinstance(raw, str):
        text = raw.strip().lower()
        if text == BLOCKED:
            return BLOCKED
        if text.isdigit() and int(text) in VALID_TIERS:
            return int(text)
    return None


def is_never_executable(tier: SecurityTier) -> bool:
    return tier == BLOCKED or tier == 1


def get_effective_tier(
    action_id: str, overrides: dict[str, SecurityTier] | None
) -> SecurityTier:
    descriptor = ACTION_DEFAULTS.get(action_id)
    default: SecurityTier = descriptor.default_tier if descriptor else 5
    # Blocked and tier-1 defaults cannot be relaxed by a user override.
    if is_never_executable(default):
        return default
    if overrides and action_id in overrides:
        override = coerce_tier(overrides[action_id])
        if override is not None:
            return override
    return default


def normalize_reply(text: str) -> str:
    return unicodedata.normalize("NFC", (text or "").strip())


def _strip_variation_selectors(text: str) -> str:
    return "".join(ch for ch in text if ch not in _VARIATION_SELECTORS)


def is_valid_tier4_response(response: str) -> bool:
    normalized = normalize_reply(response).lower()
    if not normalized:
        return False
    return any(
        normalized == candidate or candidate in normalized
        for candidate in (r.lower() for r in TIER_4_POSITIVE_RESPONSES)
    )


def is_valid_tier3_response(response: str, action_id: str, emoji_enabled: bool) -> bool:
    descriptor = ACTION_DEFAULTS.get(action_id)
    if descriptor is None:
        return False
    # Actions raised to tier 3 by an override have no keyword of their own.
    word, glyph = TIER_3_CONFIRMATIONS.get(descriptor.keyword or "", ("confirm", ""))

    normalized = normalize_reply(response)
    lowered = normalized.lower()
    if lowered == word or word in lowered:
        return True
    if emoji_enabled:
        bare_glyph = _strip_variation_selectors(unicodedata.normalize("NFC", glyph))
        if bare_glyph and bare_glyph in _strip_variation_selectors(normalized):
            return True
    return False


def is_valid_tier2_response(
    response: str,
    phrase_color: str | None,
    phrase_object: str | None,
    phrase_emoji: str | None,
    emoji_enabled: bool,
) -> bool:
    color = (phrase_color or "").strip()
    obj = (phrase_object or "").strip()
    if not color or not obj:
        return False

    # NFC keeps multi-codepoint glyphs (ZWJ sequences) comparable.
    normalized = normalize_reply(response)
    lowered = normalized.lower()
    phrase_text = unicodedata.normalize("NFC", f"{color} {obj}").lower()

    if lowered == phrase_text:
        return True

    emoji = unicodedata.normalize("NFC", (phrase_emoji or "").strip())
    if emoji_enabled and emoji:
        if normalized == emoji:
            return True
        if lowered in {f"{phrase_text} {emoji}", f"{emoji} {phrase_text}"}:
            return True
        if emoji in normalized and phrase_text in lowered:
            return True

    return phrase_text in lowered


def is_confirmed(
    action_id: str, reply: str, preferences: UserSecurityPreferences | None
) -> bool:
    prefs = preferences or UserSecurityPreferences(user_id="")
    tier = get_effective_tier(action_id, prefs.action_security_overrides)
    if is_never_executable(tier):
        return False
    if tier == 5:
        return True
    if tier == 4:
        return is_valid_tier4_response(reply)
    if tier == 3:
        return is_valid_tier3_response(reply, action_id, prefs.emoji_confirmations_enabled)
    return is_valid_tier2_response(
        reply,
        prefs.security_phrase_color,
        prefs.security_phrase_object,
        prefs.security_phrase_emoji,
        prefs.emoji_confirmations_enabled,
    )


def confirmation_instructions(
    action_id: str, tier: SecurityTier, preferences: UserSecurityPreferences | None
) -> str:
    prefs = preferences or UserSecurityPreferences(user_id="")
    label = action_label(action_id)
    if tier == BLOCKED:
        return (
            f"'{label}' is blocked for security reasons and cannot be performed by the "
            "assistant. Please contact your administrator if you need it done."
        )
    if tier == 1:
        return (
            f"'{label}' is a critical action. It can only be done from Settings with "
            "a verification code, not from chat."
        )
    if tier == 2:
        if not prefs.has_security_phrase:
            return (
                f"'{label}' requires your security phrase, but you have not set one. "
                "Please set up a security phrase in Settings first."
            )
        return f"To {label}, reply with your security phrase."
    if tier == 3:
        descriptor = ACTION_DEFAULTS.get(action_id)
        keyword = descriptor.keyword if descriptor and descriptor.keyword else "confirm"
        hint = f"To {label}, reply with '{keyword}'"
        if prefs.emoji_confirmations_enabled and descriptor and descriptor.glyph:
            hint += f" or {descriptor.glyph}"
        return hint + "."
    if tier == 4:
        return f"Should I {label}? Reply 'yes' to proceed."
    return ""


def action_label(action_id: str) -> str:
    _, _, name = action_id.partition(".")
    return (name or action_id).replace("_", " ")
