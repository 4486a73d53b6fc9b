from __future__ import annotations

import logging

import requests

from .token_security import redact_sensitive_text


logger = logging.getLogger(__name__)


def extract_bearer_token(authorization: str | None) -> str | None:
    scheme, _, token = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class SupabaseAuth:
    """Maps a Supabase session bearer to the user id it was issued for.

    ``ValueError`` means the caller is not authenticated; ``RuntimeError``
    means the auth provider could not answer.
    """

    def __init__(
        self,
        supabase_url: str | None,
        anon_key: str | None,
        timeout_seconds: int = 5,
    ) -> None:
        self.base_url = (supabase_url or "").strip().rstrip("/")
        self.anon_key = (anon_key or "").strip()
        self.timeout_seconds = max(1, timeout_seconds)

    def is_configured(self) -> bool:
        return bool(self.base_url and self.anon_key)

    def require_user_id(self, authorization: str | None) -> str:
        token = extract_bearer_token(authorization)
        if not token:
            raise ValueError("Bearer token required.")
        return self.user_id_for(token)

    def optional_user_id(self, authorization: str | None) -> str | None:
        """Anonymous (``None``) on a missing, invalid or unverifiable bearer."""
        if not extract_bearer_token(authorization):
            return None
        try:
            return self.require_user_id(authorization)
        except (ValueError, RuntimeError) as exc:
            logger.warning("Treating request as anonymous: %s", exc)
            return None

    def user_id_for(self, access_token: str) -> str:
        if not self.is_configured():
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_ANON_KEY are required to validate bearer auth."
            )
        try:
            response = requests.get(
                f"{self.base_url}/auth/v1/user",
                headers={"Authorization": f"Bearer {access_token}", "apikey": self.anon_key},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise RuntimeError(f"Auth provider unreachable: {exc}") from exc

        if response.status_code in {401, 403}:
            raise ValueError("Invalid or expired access token.")
        if not response.ok:
            detail = redact_sensitive_text(response.text.strip())[:200]
            raise RuntimeError(f"Auth provider unavailable: HTTP {response.status_code} {detail}")

        user = response.json()
        subject = (user.get("id") or user.get("sub")) if isinstance(user, dict) else None
        if not isinstance(subject, str) or not subject.strip():
            raise ValueError("Access token missing user id.")
        return subject.strip()
