from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import requests

from .errors import AssistantError
from .integration_repo import ACCESS_TOKEN, REFRESH_TOKEN, IntegrationRecord
from .token_security import TokenCipher, redact_sensitive_text


logger = logging.getLogger(__name__)

REFRESH_BUFFER = timedelta(minutes=5)
DEFAULT_GRANT_LIFETIME_SECONDS = 3600


@dataclass(frozen=True)
class VaultLookup:
    provider: str
    connected: bool
    access_token: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)
    provider_email: str | None = None
    refreshed: bool = False
    stale: bool = False

    def has_scope(self, fragment: str) -> bool:
        return any(fragment in scope for scope in self.scopes)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenVault:
    """Per-(user, provider) credential access with refresh-before-expiry.

    A refresh is attempted when fewer than five minutes remain. When the
    refresh cannot happen (no refresh token, no refresher, provider refusal)
    the stored access token is handed back as-is and marked ``stale`` so the
    caller can still try the call and react to a 401. Decryption failures are
    never softened; they propagate as ``CredentialDecryptError``.
    """

    def __init__(
        self,
        repo: Any,
        cipher: TokenCipher,
        refreshers: dict[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repo = repo
        self.cipher = cipher
        self.refreshers = {k.lower(): v for k, v in (refreshers or {}).items()}
        self._clock = clock or _utc_now

    def get_valid_access_token(
        self, user_id: str, provider: str, force_refresh: bool = False
    ) -> str | None:
        return self.lookup(user_id, provider, force_refresh=force_refresh).access_token

    def lookup(
        self, user_id: str, provider: str, force_refresh: bool = False
    ) -> VaultLookup:
        provider = provider.strip().lower()
        integration = self.repo.get_integration(user_id, provider)
        if integration is None:
            logger.info("No %s integration for user %s", provider, user_id)
            return VaultLookup(provider=provider, connected=False)

        access_row = self.repo.get_encrypted_token(user_id, provider, ACCESS_TOKEN)
        access_token = self.cipher.decrypt(access_row.encrypted_value) if access_row else None
        base = VaultLookup(
            provider=provider,
            connected=True,
            access_token=access_token,
            expires_at=integration.token_expires_at,
            scopes=list(integration.scopes),
            provider_email=integration.provider_email,
        )

        if not (force_refresh or access_token is None or self.needs_refresh(integration)):
            return base

        logger.info(
            "Refreshing %s token for user %s (forced=%s)", provider, user_id, force_refresh
        )
        refreshed = self._refresh(user_id, provider, integration)
        if refreshed is None:
            return VaultLookup(
                provider=base.provider,
                connected=True,
                access_token=base.access_token,
                expires_at=base.expires_at,
                scopes=base.scopes,
                provider_email=base.provider_email,
                stale=True,
            )
        return refreshed

    def needs_refresh(self, integration: IntegrationRecord) -> bool:
        if integration.token_expires_at is None:
            return False
        return integration.token_expires_at - self._clock() < REFRESH_BUFFER

    def store_credentials(
        self,
        user_id: str,
        provider: str,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: int | None = None,
        scopes: list[str] | None = None,
        provider_email: str | None = None,
    ) -> VaultLookup:
        provider = provider.strip().lower()
        existing = self.repo.get_integration(user_id, provider)
        expires_at = None
        if isinstance(expires_in, int) and expires_in > 0:
            expires_at = self._clock() + timedelta(seconds=expires_in)

        self.repo.upsert_encrypted_token(
            user_id, provider, ACCESS_TOKEN, self.cipher.encrypt(access_token)
        )
        # Providers only send a refresh token on first consent; keep the old one.
        if refresh_token:
            self.repo.upsert_encrypted_token(
                user_id, provider, REFRESH_TOKEN, self.cipher.encrypt(refresh_token)
            )
        record = self.repo.upsert_integration(
            IntegrationRecord(
                user_id=user_id,
                provider=provider,
                token_expires_at=expires_at,
                scopes=list(scopes or (existing.scopes if existing else [])),
                provider_email=provider_email or (existing.provider_email if existing else None),
            )
        )
        logger.info("Stored %s credentials for user %s", provider, user_id)
        return VaultLookup(
            provider=provider,
            connected=True,
            access_token=access_token,
            expires_at=record.token_expires_at,
            scopes=list(record.scopes),
            provider_email=record.provider_email,
        )

    def _refresh(
        self, user_id: str, provider: str, integration: IntegrationRecord
    ) -> VaultLookup | None:
        refresher = self.refreshers.get(provider)
        if refresher is None:
            logger.info("No refresher for %s; using stored token", provider)
            return None
        refresh_row = self.repo.get_encrypted_token(user_id, provider, REFRESH_TOKEN)
        if refresh_row is None:
            logger.warning(
                "No %s refresh token for user %s; using stored access token", provider, user_id
            )
            return None
        refresh_token = self.cipher.decrypt(refresh_row.encrypted_value)
        try:
            grant = refresher.refresh_access_token(refresh_token)
        except (AssistantError, RuntimeError, requests.RequestException) as exc:
            logger.warning(
                "%s refresh failed for user %s: %s",
                provider,
                user_id,
                redact_sensitive_text(str(exc)),
            )
            return None

        lifetime = DEFAULT_GRANT_LIFETIME_SECONDS
        if isinstance(grant.expires_in, int) and grant.expires_in > 0:
            lifetime = grant.expires_in
        expires_at = self._clock() + timedelta(seconds=lifetime)
        self.repo.upsert_encrypted_token(
            user_id, provider, ACCESS_TOKEN, self.cipher.encrypt(grant.access_token)
        )
        if grant.refresh_token:
            self.repo.upsert_encrypted_token(
                user_id, provider, REFRESH_TOKEN, self.cipher.encrypt(grant.refresh_token)
            )
        self.repo.update_expiry(user_id, provider, expires_at)
        logger.info("Refreshed %s token for user %s", provider, user_id)
        return VaultLookup(
            provider=provider,
            connected=True,
            access_token=grant.access_token,
            expires_at=expires_at,
            scopes=list(integration.scopes),
            provider_email=integration.provider_email,
            refreshed=True,
        )
