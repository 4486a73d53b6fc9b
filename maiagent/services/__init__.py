from .errors import (
    AssistantError,
    LockedOut,
    NotConnected,
    ProviderExhausted,
    SecurityDenied,
    TokenRejected,
    UpstreamError,
    ValidationError,
)
from .google_oauth import GoogleOAuthService
from .supabase_auth import SupabaseAuth

__all__ = [
    "AssistantError",
    "LockedOut",
    "NotConnected",
    "ProviderExhausted",
    "SecurityDenied",
    "TokenRejected",
    "UpstreamError",
    "ValidationError",
    "GoogleOAuthService",
    "SupabaseAuth",
    "AssistantOrchestrator",
    "ChatOutcome",
]


def __getattr__(name: str):
    if name in {"AssistantOrchestrator", "ChatOutcome"}:
        from .orchestrator import AssistantOrchestrator, ChatOutcome

        return {
            "AssistantOrchestrator": AssistantOrchestrator,
            "ChatOutcome": ChatOutcome,
        }[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
