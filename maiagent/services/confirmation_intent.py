from __future__ import annotations

from dataclasses import dataclass

from .security_tiers import TIER_4_POSITIVE_RESPONSES

_CANCEL_TOKENS = {"cancel", "stop", "no", "nope", "nah", "abort", "nevermind", "never"}
_NEGATION_TOKENS = {"don't", "dont", "do not"}
_PAUSE_TOKENS = {"pause", "later", "wait", "hold"}
_EDIT_TOKENS = {"edit", "change", "update", "move", "shift", "instead", "actually"}
_QUESTION_TOKENS = {"what", "when", "where", "who", "why", "how", "which"}


@dataclass(frozen=True)
class ConfirmationIntent:
    intent: str
    normalized_text: str
    reason: str

    @property
    def word_count(self) -> int:
        return len(self.normalized_text.split())


def classify_confirmation_reply(text: str) -> ConfirmationIntent:
    """Sort a reply to a pending action into cancel, pause, question, edit,
    confirm or unknown.

    Whether the reply actually proves confirmation is decided by the tier
    rules, not here. ``confirm`` only means an affirmative word stands on its
    own in the reply, not inside another word.
    """
    normalized = _normalize_reply_text(text)
    if not normalized:
        return ConfirmationIntent(intent="unknown", normalized_text="", reason="empty_reply")

    tokens = [token for token in normalized.split(" ") if token]
    token_set = set(tokens)
    padded = f" {normalized} "

    if token_set.intersection(_CANCEL_TOKENS):
        return ConfirmationIntent(
            intent="cancel", normalized_text=normalized, reason="cancel_token"
        )
    if any(f" {negation} " in padded for negation in _NEGATION_TOKENS):
        return ConfirmationIntent(
            intent="cancel", normalized_text=normalized, reason="negation"
        )
    if token_set.intersection(_PAUSE_TOKENS):
        return ConfirmationIntent(
            intent="pause", normalized_text=normalized, reason="pause_token"
        )
    if "?" in (text or "") or tokens[0] in _QUESTION_TOKENS:
        return ConfirmationIntent(
            intent="question", normalized_text=normalized, reason="question"
        )
    if token_set.intersection(_EDIT_TOKENS):
        return ConfirmationIntent(intent="edit", normalized_text=normalized, reason="edit_token")
    if _has_affirmative(text, padded):
        return ConfirmationIntent(
            intent="confirm", normalized_text=normalized, reason="affirmative"
        )
    return ConfirmationIntent(
        intent="unknown", normalized_text=normalized, reason="no_clear_intent"
    )


def _has_affirmative(raw: str, padded: str) -> bool:
    for candidate in TIER_4_POSITIVE_RESPONSES:
        lowered = candidate.lower()
        if lowered.isascii():
            if f" {lowered} " in padded:
                return True
        elif candidate in (raw or ""):
            return True
    return False


def _normalize_reply_text(text: str) -> str:
    raw = (text or "").strip().lower()
    if not raw:
        return ""
    raw = raw.replace("\u2019", "'")
    for ch in ".!?,;:":
        raw = raw.replace(ch, " ")
    while "  " in raw:
        raw = raw.replace("  ", " ")
    return raw.strip()
