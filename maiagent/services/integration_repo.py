from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from .supabase_rest import SupabaseRestClient, eq, opt_str, parse_time, to_iso


ACCESS_TOKEN = "access_token"
REFRESH_TOKEN = "refresh_token"
TOKEN_TYPES = (ACCESS_TOKEN, REFRESH_TOKEN)


@dataclass(frozen=True)
class IntegrationRecord:
    user_id: str
    provider: str
    token_expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)
    provider_email: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class EncryptedTokenRow:
    user_id: str
    provider: str
    token_type: str
    encrypted_value: str
    updated_at: datetime | None = None


class SupabaseIntegrationRepository:
    """Credential rows: one metadata row per (user, provider) and one sealed
    token row per (user, provider, token_type)."""

    def __init__(
        self,
        client: SupabaseRestClient,
        integrations_table: str = "user_integrations",
        tokens_table: str = "encrypted_integration_tokens",
    ) -> None:
        self.client = client
        self.integrations_table = (integrations_table or "user_integrations").strip()
        self.tokens_table = (tokens_table or "encrypted_integration_tokens").strip()

    def is_configured(self) -> bool:
        return self.client.is_configured()

    def get_integration(self, user_id: str, provider: str) -> IntegrationRecord | None:
        rows = self.client.select(
            self.integrations_table,
            filters={"user_id": eq(user_id), "provider": eq(_norm(provider))},
            columns="user_id,provider,token_expires_at,scopes,provider_email,updated_at",
            limit=1,
        )
        if not rows:
            return None
        return _to_integration(rows[0])

    def upsert_integration(self, record: IntegrationRecord) -> IntegrationRecord:
        rows = self.client.insert(
            self.integrations_table,
            body={
                "user_id": record.user_id,
                "provider": _norm(record.provider),
                "token_expires_at": to_iso(record.token_expires_at),
                "scopes": list(record.scopes),
                "provider_email": record.provider_email,
            },
            on_conflict="user_id,provider",
        )
        if not rows:
            raise RuntimeError("Upsert integration returned no rows.")
        return _to_integration(rows[0])

    def update_expiry(
        self, user_id: str, provider: str, token_expires_at: datetime | None
    ) -> None:
        self.client.update(
            self.integrations_table,
            filters={"user_id": eq(user_id), "provider": eq(_norm(provider))},
            patch={"token_expires_at": to_iso(token_expires_at)},
        )

    def get_encrypted_token(
        self, user_id: str, provider: str, token_type: str
    ) -> EncryptedTokenRow | None:
        _check_token_type(token_type)
        rows = self.client.select(
            self.tokens_table,
            filters={
                "user_id": eq(user_id),
                "provider": eq(_norm(provider)),
                "token_type": eq(token_type),
            },
            columns="user_id,provider,token_type,encrypted_value,updated_at",
            limit=1,
        )
        if not rows:
            return None
        return _to_token_row(rows[0])

    def upsert_encrypted_token(
        self, user_id: str, provider: str, token_type: str, encrypted_value: str
    ) -> None:
        _check_token_type(token_type)
        self.client.insert(
            self.tokens_table,
            body={
                "user_id": user_id,
                "provider": _norm(provider),
                "token_type": token_type,
                "encrypted_value": encrypted_value,
                "updated_at": to_iso(datetime.now(timezone.utc)),
            },
            on_conflict="user_id,provider,token_type",
        )


class InMemoryIntegrationRepository:
    def __init__(self) -> None:
        self._integrations: dict[tuple[str, str], IntegrationRecord] = {}
        self._tokens: dict[tuple[str, str, str], EncryptedTokenRow] = {}
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return True

    def get_integration(self, user_id: str, provider: str) -> IntegrationRecord | None:
        return self._integrations.get((user_id, _norm(provider)))

    def upsert_integration(self, record: IntegrationRecord) -> IntegrationRecord:
        stored = replace(
            record,
            provider=_norm(record.provider),
            updated_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._integrations[(record.user_id, stored.provider)] = stored
        return stored

    def update_expiry(
        self, user_id: str, provider: str, token_expires_at: datetime | None
    ) -> None:
        key = (user_id, _norm(provider))
        with self._lock:
            current = self._integrations.get(key)
            if current is None:
                return
            self._integrations[key] = replace(
                current,
                token_expires_at=token_expires_at,
                updated_at=datetime.now(timezone.utc),
            )

    def get_encrypted_token(
        self, user_id: str, provider: str, token_type: str
    ) -> EncryptedTokenRow | None:
        _check_token_type(token_type)
        return self._tokens.get((user_id, _norm(provider), token_type))

    def upsert_encrypted_token(
        self, user_id: str, provider: str, token_type: str, encrypted_value: str
    ) -> None:
        _check_token_type(token_type)
        row = EncryptedTokenRow(
            user_id=user_id,
            provider=_norm(provider),
            token_type=token_type,
            encrypted_value=encrypted_value,
            updated_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._tokens[(user_id, row.provider, token_type)] = row


def _norm(provider: str) -> str:
    return (provider or "").strip().lower()


def _check_token_type(token_type: str) -> None:
    if token_type not in TOKEN_TYPES:
        raise ValueError("token_type must be one of: access_token, refresh_token")


def _to_integration(row: dict[str, Any]) -> IntegrationRecord:
    raw_scopes = row.get("scopes")
    if isinstance(raw_scopes, str):
        scopes = [part for part in raw_scopes.replace(",", " ").split(" ") if part]
    elif isinstance(raw_scopes, list):
        scopes = [str(part) for part in raw_scopes if part]
    else:
        scopes = []
    return IntegrationRecord(
        user_id=str(row.get("user_id", "")),
        provider=str(row.get("provider", "")),
        token_expires_at=parse_time(row.get("token_expires_at")),
        scopes=scopes,
        provider_email=opt_str(row.get("provider_email")),
        updated_at=parse_time(row.get("updated_at")),
    )


def _to_token_row(row: dict[str, Any]) -> EncryptedTokenRow:
    return EncryptedTokenRow(
        user_id=str(row.get("user_id", "")),
        provider=str(row.get("provider", "")),
        token_type=str(row.get("token_type", "")),
        encrypted_value=str(row.get("encrypted_value", "")),
        updated_at=parse_time(row.get("updated_at")),
    )
