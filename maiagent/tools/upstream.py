from __future__ import annotations

import json
import logging
from typing import Any
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

from maiagent.services.errors import MissingScope, NotConnected, TokenRejected, UpstreamError
from maiagent.services.token_security import redact_sensitive_text

from .base import ToolContext


logger = logging.getLogger(__name__)


class UpstreamSession:
    """Authorized JSON calls to one provider on behalf of one user.

    The access token comes from the vault. A 401 triggers exactly one forced
    refresh and retry; a second 401 is ``TokenRejected``. Any other non-2xx
    becomes ``UpstreamError`` carrying the status and a short message.
    """

    def __init__(
        self,
        context: ToolContext,
        provider: str,
        service_name: str,
        auth_scheme: str | None = "Bearer",
        required_scope: str | None = None,
    ) -> None:
        self.context = context
        self.provider = provider
        self.service_name = service_name
        self.auth_scheme = auth_scheme
        self.required_scope = required_scope
        self._token: str | None = None

    def access_token(self, force_refresh: bool = False) -> str:
        if self._token and not force_refresh:
            return self._token
        vault = self.context.vault
        if vault is None:
            raise NotConnected(f"{self.service_name} is not connected.", provider=self.provider)
        lookup = vault.lookup(self.context.user_id, self.provider, force_refresh=force_refresh)
        if not lookup.connected:
            raise NotConnected(
                f"{self.service_name} is not connected. Please connect it from the "
                "Integrations page.",
                provider=self.provider,
            )
        if self.required_scope and not lookup.has_scope(self.required_scope):
            raise MissingScope(
                f"{self.service_name} access was not granted. Please update your Google "
                "permissions to include it.",
                provider=self.provider,
            )
        if not lookup.access_token:
            raise NotConnected(
                f"{self.service_name} token not found. Please reconnect from Integrations.",
                provider=self.provider,
            )
        if force_refresh and not lookup.refreshed:
            raise TokenRejected(
                f"{self.service_name} rejected the stored credentials. Please reconnect.",
                provider=self.provider,
            )
        self._token = lookup.access_token
        return self._token

    def request_json(
        self,
        url: str,
        method: str = "GET",
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        if params:
            clean = {k: v for k, v in params.items() if v is not None}
            url = f"{url}?{urlparse.urlencode(clean, doseq=True)}"
        try:
            return self._send(url, method, body, headers, self.access_token())
        except urlerror.HTTPError as exc:
            if exc.code != 401:
                raise self._to_upstream_error(exc) from exc
            logger.info(
                "%s returned 401 for user %s; forcing refresh",
                self.service_name,
                self.context.user_id,
            )
        token = self.access_token(force_refresh=True)
        try:
            return self._send(url, method, body, headers, token)
        except urlerror.HTTPError as exc:
            if exc.code == 401:
                raise TokenRejected(
                    f"{self.service_name} authorization failed. Please reconnect.",
                    provider=self.provider,
                ) from exc
            raise self._to_upstream_error(exc) from exc

    def _send(
        self,
        url: str,
        method: str,
        body: dict[str, Any] | None,
        headers: dict[str, str] | None,
        token: str,
    ) -> dict[str, Any]:
        encoded = None if body is None else json.dumps(body).encode("utf-8")
        request_headers = {"Accept": "application/json"}
        request_headers["Authorization"] = (
            f"{self.auth_scheme} {token}" if self.auth_scheme else token
        )
        if body is not None:
            request_headers["Content-Type"] = "application/json"
        request_headers.update(headers or {})
        req = urlrequest.Request(url, data=encoded, method=method, headers=request_headers)
        try:
            with urlrequest.urlopen(req, timeout=self.context.timeout_seconds) as res:
                raw = res.read()
        except urlerror.HTTPError:
            raise
        except (urlerror.URLError, TimeoutError, OSError) as exc:
            raise UpstreamError(f"{self.service_name} is unreachable: {exc}") from exc
        if not raw:
            return {}
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise UpstreamError(f"{self.service_name} returned an unreadable payload.") from exc
        if not isinstance(payload, dict):
            raise UpstreamError(f"{self.service_name} returned an unexpected payload.")
        return payload

    def _to_upstream_error(self, exc: urlerror.HTTPError) -> UpstreamError:
        detail = _http_error_detail(exc)
        logger.warning(
            "%s API error %s for user %s: %s",
            self.service_name,
            exc.code,
            self.context.user_id,
            detail,
        )
        if exc.code == 404:
            message = f"{self.service_name} could not find the requested resource."
        elif exc.code == 403:
            message = f"{self.service_name} denied access to that resource."
        else:
            message = f"{self.service_name} API failed ({exc.code})"
            if detail:
                message += f": {detail}"
        return UpstreamError(message, status_code=exc.code)


def _http_error_detail(exc: urlerror.HTTPError) -> str:
    try:
        raw = exc.read().decode("utf-8", errors="replace")
    except (OSError, AttributeError):
        return ""
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return redact_sensitive_text(raw.strip())[:200]
    if isinstance(parsed, dict):
        nested = parsed.get("error")
        if isinstance(nested, dict) and isinstance(nested.get("message"), str):
            return nested["message"].strip()[:200]
        errors = parsed.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("message") or "").strip()[:200]
        if isinstance(parsed.get("error_message"), str):
            return parsed["error_message"].strip()[:200]
    return ""
