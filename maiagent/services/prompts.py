from __future__ import annotations

from .security_tiers import (
    ACTION_DEFAULTS,
    BLOCKED,
    UserSecurityPreferences,
    action_label,
    get_effective_tier,
)

PLATFORM_NAMES = {
    "gmail": "Gmail",
    "calendar": "Google Calendar",
    "contacts": "Google Contacts",
    "monday": "Monday.com",
    "account": "Account",
}

SUMMARIZE_INSTRUCTION = (
    "You have received tool results above. Summarize them clearly and concisely for "
    "the user. Present the information directly instead of asking what to do next. "
    "If a result reports confirmation_required, relay its instructions word for word. "
    "No emojis."
)

_RULES = """## SECURITY TIERS (mandatory)

Behavior:
1. Keep a professional tone and do not use emojis.
2. Answer greetings and small talk directly. Do not ask for confirmation.
3. Tier 5 actions (reading mail, calendar, contacts, boards) run immediately.
4. For any other action, show the user exactly what will happen, then call the
   tool. The server holds the action until the user gives the required reply.
5. When a tool returns data, present it. Never return an empty answer.

Never invent data:
- If a tool fails or returns nothing, say so and quote the error it gave.
- Do not create placeholder people, emails, events or companies.

Tier rules:
- Tier 5: no confirmation.
- Tier 4: any clear yes (yes, ok, sure, go ahead, do it).
- Tier 3: the action keyword (delete, archive, send, cancel, merge, remove){glyph_note}.
- Tier 2: {tier2_note}
- Tier 1: only from Settings with a verification code. Never from chat.
- BLOCKED: explain that it cannot be done for security reasons.

Always:
- Never reveal or repeat the user's security phrase.
- Never skip or downgrade a tier.
- Three failed security phrase attempts lock confirmations for 15 minutes.
"""


def build_security_prompt(preferences: UserSecurityPreferences | None) -> str:
    prefs = preferences or UserSecurityPreferences(user_id="")
    glyph_note = " or its glyph" if prefs.emoji_confirmations_enabled else ""
    tier2_note = (
        "the user's security phrase."
        if prefs.has_security_phrase
        else "no security phrase is set. Tell the user to set one in Settings."
    )
    lines = [_RULES.format(glyph_note=glyph_note, tier2_note=tier2_note), "Action tiers:"]

    by_platform: dict[str, list[str]] = {}
    for action_id, descriptor in ACTION_DEFAULTS.items():
        tier = get_effective_tier(action_id, prefs.action_security_overrides)
        tier_label = "BLOCKED" if tier == BLOCKED else f"Tier {tier}"
        entry = f"- {action_label(action_id)}: {tier_label}"
        if tier == 3 and descriptor.keyword:
            entry += f' (keyword "{descriptor.keyword}")'
        by_platform.setdefault(descriptor.platform, []).append(entry)

    for platform, entries in by_platform.items():
        lines.append("")
        lines.append(f"{PLATFORM_NAMES.get(platform, platform)}:")
        lines.extend(entries)
    return "\n".join(lines)


def with_security_prompt(
    messages: list[dict[str, object]], security_prompt: str
) -> list[dict[str, object]]:
    """Prepend the security prompt to the first system message, or add one."""
    out = [dict(m) for m in messages]
    for message in out:
        if message.get("role") == "system":
            message["content"] = f"{security_prompt}\n\n{message.get('content') or ''}"
            return out
    return [{"role": "system", "content": security_prompt}, *out]
