from __future__ import annotations

from typing import Any


class AssistantError(Exception):
    code = "assistant_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_result(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        for key, value in self.details.items():
            if value is not None:
                out[key] = value
        return out


class NotConnected(AssistantError):
    code = "not_connected"


class MissingScope(NotConnected):
    code = "missing_scope"


class TokenRejected(AssistantError):
    code = "token_rejected"


class CredentialDecryptError(AssistantError):
    code = "credential_unreadable"


class ValidationError(AssistantError):
    code = "validation_error"


class UpstreamError(AssistantError):
    code = "upstream_error"

    def __init__(self, message: str, status_code: int | None = None, **details: Any) -> None:
        super().__init__(message, status_code=status_code, **details)
        self.status_code = status_code


class SecurityDenied(AssistantError):
    code = "security_denied"


class LockedOut(SecurityDenied):
    code = "locked_out"


class ToolNotFound(AssistantError):
    code = "unknown_tool"


class ToolProtocolError(AssistantError):
    code = "tool_protocol_error"


class ProviderExhausted(AssistantError):
    code = "provider_exhausted"

    def __init__(self, message: str, kind: str = "unknown") -> None:
        super().__init__(message, kind=kind)
        self.kind = kind
