from __future__ import annotations

import re

from .supabase_rest import SupabaseRestClient


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 320


def extract_domain(email: str) -> str:
    """Return the lowercased domain of a plausible address, or raise ``ValueError``."""
    value = (email or "").strip()
    if not value:
        raise ValueError("Email is required")
    if len(value) > MAX_EMAIL_LENGTH:
        raise ValueError("Email too long")
    if not EMAIL_PATTERN.match(value):
        raise ValueError("Invalid email format")
    domain = value.rsplit("@", 1)[1].lower()
    if not domain:
        raise ValueError("Invalid email format")
    return domain


class SupabaseAllowedDomainsRepository:
    def __init__(self, client: SupabaseRestClient, table: str = "allowed_domains") -> None:
        self.client = client
        self.table = (table or "allowed_domains").strip()

    def is_configured(self) -> bool:
        return self.client.is_configured()

    def is_allowed(self, domain: str) -> bool:
        # ilike without wildcards is a case-insensitive equality.
        escaped = domain.replace("%", r"\%").replace("_", r"\_")
        rows = self.client.select(
            self.table,
            filters={"domain": f"ilike.{escaped}"},
            columns="domain",
            limit=1,
        )
        return bool(rows)


class InMemoryAllowedDomainsRepository:
    def __init__(self, domains: list[str] | None = None) -> None:
        self._domains = {d.strip().lower() for d in (domains or []) if d.strip()}

    def is_configured(self) -> bool:
        return True

    def is_allowed(self, domain: str) -> bool:
        return domain.strip().lower() in self._domains
