from __future__ import annotations

import re
from typing import Any

from maiagent.services.errors import ValidationError


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_RE.match((value or "").strip()))


def parse_email_list(raw: Any, field_name: str) -> list[str]:
    """Split a comma list (or list of strings) into addresses, naming any bad ones."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        candidates = raw.split(",")
    elif isinstance(raw, list):
        candidates = [str(item) for item in raw]
    else:
        raise ValidationError(f"'{field_name}' must be an email address or a list of them.")

    emails = [c.strip() for c in candidates if c and c.strip()]
    invalid = [email for email in emails if not is_valid_email(email)]
    if invalid:
        raise ValidationError(
            f"Invalid email address in '{field_name}': {', '.join(invalid)}",
            field=field_name,
            invalid=invalid,
        )
    return emails


def clamp_int(raw: Any, default: int, minimum: int, maximum: int) -> int:
    try:
        value = int(raw) if raw is not None else default
    except (TypeError, ValueError):
        value = default
    return min(maximum, max(minimum, value))
