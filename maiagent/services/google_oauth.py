from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs

import requests

from .errors import TokenRejected, UpstreamError
from .token_security import redact_sensitive_text

if TYPE_CHECKING:
    from .token_vault import TokenVault, VaultLookup


logger = logging.getLogger(__name__)

# Google answers a revoked or expired refresh token with one of these error codes.
REJECTED_GRANT_ERRORS = frozenset({"invalid_grant", "unauthorized_client"})


@dataclass(frozen=True)
class OAuthGrant:
    access_token: str
    refresh_token: str | None = None
    scopes: tuple[str, ...] = field(default_factory=tuple)
    expires_in: int | None = None


class GoogleOAuthService:
    """Authorization-code exchange and refresh for the shared Google credential.

    Calendar, mail and contacts all ride on the one ``google`` integration, so
    the vault only ever holds a single grant per user for these tools.
    """

    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str | None = None,
        timeout_seconds: int = 8,
    ) -> None:
        self.client_id = (client_id or "").strip()
        self.client_secret = (client_secret or "").strip()
        self.redirect_uri = (redirect_uri or "").strip()
        self.timeout_seconds = max(1, timeout_seconds)

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def connect_account(
        self,
        vault: "TokenVault",
        user_id: str,
        code: str,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
    ) -> "VaultLookup":
        grant = self.exchange_code(code, redirect_uri=redirect_uri, code_verifier=code_verifier)
        profile = self.fetch_user_info(grant.access_token)
        email = profile.get("email")
        logger.info("Google account connected for user %s", user_id)
        return vault.store_credentials(
            user_id=user_id,
            provider="google",
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_in=grant.expires_in,
            scopes=list(grant.scopes),
            provider_email=email.strip() if isinstance(email, str) and email.strip() else None,
        )

    def exchange_code(
        self,
        code: str,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
    ) -> OAuthGrant:
        fields = {
            "code": code.strip(),
            "redirect_uri": (redirect_uri or self.redirect_uri).strip(),
        }
        if code_verifier:
            fields["code_verifier"] = code_verifier.strip()
        return self._grant("authorization_code", fields)

    def refresh_access_token(self, refresh_token: str) -> OAuthGrant:
        return self._grant("refresh_token", {"refresh_token": refresh_token.strip()})

    def fetch_user_info(self, access_token: str) -> dict[str, Any]:
        response = requests.get(
            self.USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self.timeout_seconds,
        )
        if not response.ok:
            raise UpstreamError(
                "Could not read the Google profile for this account.",
                status_code=response.status_code,
            )
        payload = response.json()
        return payload if isinstance(payload, dict) else {}

    def _grant(self, grant_type: str, fields: dict[str, str]) -> OAuthGrant:
        if not self.is_configured():
            raise RuntimeError(
                "Google OAuth is not configured. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
            )
        body = dict(fields)
        body.update(
            client_id=self.client_id,
            client_secret=self.client_secret,
            grant_type=grant_type,
        )
        response = requests.post(
            self.TOKEN_URL,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=self.timeout_seconds,
        )
        try:
            payload: Any = response.json()
        except ValueError:
            payload = None
        error_code, detail = _google_error(response, payload)
        if error_code or not isinstance(payload, dict):
            logger.warning("Google %s grant refused: %s", grant_type, detail)
            if error_code in REJECTED_GRANT_ERRORS:
                raise TokenRejected(
                    "Google no longer accepts this grant. Reconnect Google in Settings.",
                    provider="google",
                )
            raise UpstreamError(
                f"Google {grant_type} grant failed: {detail}", status_code=response.status_code
            )

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise UpstreamError(f"Google {grant_type} grant returned no access token.")
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = None
        return OAuthGrant(
            access_token=access_token.strip(),
            refresh_token=refresh_token,
            scopes=tuple(_split_scope(payload.get("scope"))),
            expires_in=_coerce_seconds(payload.get("expires_in")),
        )


def _coerce_seconds(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _split_scope(scope: Any) -> list[str]:
    if not isinstance(scope, str):
        return []
    return [part for part in scope.replace(",", " ").split() if part]


def _google_error(response: requests.Response, payload: Any) -> tuple[str | None, str]:
    """Return ``(error_code, readable_detail)`` for a token endpoint reply."""
    if response.ok and isinstance(payload, dict) and not isinstance(payload.get("error"), str):
        return None, ""
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        err = payload["error"]
        desc = payload.get("error_description")
        return err, f"{err}: {desc}" if isinstance(desc, str) else err

    text = redact_sensitive_text(response.text.strip())
    # Older endpoints reply form-encoded.
    if "error=" in text:
        parsed = parse_qs(text, keep_blank_values=True)
        err = parsed.get("error", [""])[0] or None
        desc = parsed.get("error_description", [""])[0]
        return err, f"{err}: {desc}" if err and desc else text
    return "http_error", text or f"HTTP {response.status_code}"
