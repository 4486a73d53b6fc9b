from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from maiagent.services.security_tiers import ACTION_DEFAULTS, coerce_tier, is_never_executable


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system", "tool"]
    content: str = Field(default="", max_length=50000)
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = Field(default=None, max_length=200)


class AssistantChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1, max_length=100)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1, le=16000)
    stream: bool = False
    provider: str | None = Field(default=None, max_length=32)
    pending_action_id: str | None = Field(default=None, max_length=100)


class PendingActionView(BaseModel):
    id: str
    tool_name: str
    action_id: str
    tier: int | str
    expires_at: str | None = None


class AssistantChatResponse(BaseModel):
    content: str
    model_used: str
    provider_used: str
    latency_ms: int
    fallback_used: bool
    tool_calls_made: int = 0
    pending_action: PendingActionView | None = None


class SecurityPreferencesResponse(BaseModel):
    emoji_confirmations_enabled: bool
    has_security_phrase: bool
    has_security_emoji: bool
    action_security_overrides: dict[str, int | str] = Field(default_factory=dict)
    failed_security_attempts: int = 0
    security_lockout_until: str | None = None


class SecurityPreferencesUpdate(BaseModel):
    emoji_confirmations_enabled: bool | None = None
    action_security_overrides: dict[str, int | str] | None = None

    @field_validator("action_security_overrides")
    @classmethod
    def _check_overrides(
        cls, value: dict[str, int | str] | None
    ) -> dict[str, int | str] | None:
        if value is None:
            return None
        clean: dict[str, int | str] = {}
        for action_id, raw_tier in value.items():
            descriptor = ACTION_DEFAULTS.get(action_id)
            if descriptor is None:
                raise ValueError(f"Unknown action: {action_id}")
            if is_never_executable(descriptor.default_tier):
                raise ValueError(f"{action_id} cannot be overridden")
            tier = coerce_tier(raw_tier)
            if tier is None:
                raise ValueError(f"Invalid tier for {action_id}: {raw_tier!r}")
            clean[action_id] = tier
        return clean


class VerificationCodeRequest(BaseModel):
    action_type: str = Field(min_length=1, max_length=100)


class VerificationCodeResponse(BaseModel):
    action_type: str
    expires_at: str
    sent: bool = True


class VerifyCodeRequest(BaseModel):
    action_type: str = Field(min_length=1, max_length=100)
    code: str = Field(min_length=1, max_length=12)


class VerifyCodeResponse(BaseModel):
    verified: bool
    failed_attempts: int = 0
    locked: bool = False


class SecurityPhraseRequest(BaseModel):
    phrase_color: str = Field(min_length=1, max_length=40)
    phrase_object: str = Field(min_length=1, max_length=40)
    phrase_emoji: str | None = Field(default=None, max_length=32)
    code: str = Field(min_length=1, max_length=12)


class DomainCheckRequest(BaseModel):
    email: str = Field(default="", max_length=1000)


class DomainCheckResponse(BaseModel):
    allowed: bool
    domain: str | None = None


class GoogleConnectRequest(BaseModel):
    code: str = Field(min_length=1, max_length=4096)
    code_verifier: str | None = Field(default=None, min_length=16, max_length=2048)
    redirect_uri: str | None = Field(default=None, max_length=2048)


class MondayConnectRequest(BaseModel):
    api_token: str = Field(min_length=1, max_length=4096)


class IntegrationStatusResponse(BaseModel):
    provider: str
    connected: bool
    scopes: list[str] = Field(default_factory=list)
    provider_email: str | None = None
    expires_at: str | None = None
