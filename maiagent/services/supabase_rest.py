from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import requests

from .token_security import redact_sensitive_text


logger = logging.getLogger(__name__)


class SupabaseRestClient:
    """Thin PostgREST client used by every repository with the service-role key."""

    def __init__(
        self,
        supabase_url: str | None,
        supabase_service_role_key: str | None,
        timeout_seconds: int = 8,
    ) -> None:
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.supabase_service_role_key = (supabase_service_role_key or "").strip()
        self.timeout_seconds = max(1, int(timeout_seconds))

    def is_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    def select(
        self,
        table: str,
        filters: dict[str, str],
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self._ensure_configured()
        params = {"select": columns, **filters}
        if order:
            params["order"] = order
        if isinstance(limit, int) and limit > 0:
            params["limit"] = str(limit)
        response = requests.get(
            self._table_url(table),
            headers=self._headers(),
            params=params,
            timeout=self.timeout_seconds,
        )
        self._raise_for_error(response, f"read {table}")
        return _rows(response, table)

    def insert(
        self,
        table: str,
        body: dict[str, Any],
        on_conflict: str | None = None,
    ) -> list[dict[str, Any]]:
        self._ensure_configured()
        prefer = "return=representation"
        params: dict[str, str] = {}
        if on_conflict:
            prefer = "resolution=merge-duplicates,return=representation"
            params["on_conflict"] = on_conflict
        response = requests.post(
            self._table_url(table),
            headers=self._headers(prefer=prefer),
            params=params,
            json=body,
            timeout=self.timeout_seconds,
        )
        self._raise_for_error(response, f"write {table}")
        return _rows(response, table)

    def update(
        self,
        table: str,
        filters: dict[str, str],
        patch: dict[str, Any],
    ) -> list[dict[str, Any]]:
        self._ensure_configured()
        response = requests.patch(
            self._table_url(table),
            headers=self._headers(prefer="return=representation"),
            params=filters,
            json=patch,
            timeout=self.timeout_seconds,
        )
        self._raise_for_error(response, f"update {table}")
        return _rows(response, table)

    def delete(self, table: str, filters: dict[str, str]) -> None:
        self._ensure_configured()
        response = requests.delete(
            self._table_url(table),
            headers=self._headers(),
            params=filters,
            timeout=self.timeout_seconds,
        )
        self._raise_for_error(response, f"delete from {table}")

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self.supabase_service_role_key,
            "Authorization": f"Bearer {self.supabase_service_role_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _table_url(self, table: str) -> str:
        return f"{self.supabase_url}/rest/v1/{table}"

    def _ensure_configured(self) -> None:
        if self.is_configured():
            return
        raise RuntimeError(
            "Supabase is not configured. Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY."
        )

    @staticmethod
    def _raise_for_error(response: requests.Response, action: str) -> None:
        if response.ok:
            return
        detail = redact_sensitive_text(response.text.strip())
        logger.error("Supabase %s failed: HTTP %s", action, response.status_code)
        raise RuntimeError(
            f"Failed to {action}: HTTP {response.status_code} {detail or 'request failed'}"
        )


def eq(value: object) -> str:
    return f"eq.{value}"


def _rows(response: requests.Response, table: str) -> list[dict[str, Any]]:
    if not response.content:
        return []
    payload = response.json()
    if not isinstance(payload, list):
        raise RuntimeError(f"Unexpected {table} response payload.")
    return [row for row in payload if isinstance(row, dict)]


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value != "" else None
