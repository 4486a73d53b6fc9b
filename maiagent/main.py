from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Iterator

import requests
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from maiagent.config import settings
from maiagent.models import (
    AssistantChatRequest,
    AssistantChatResponse,
    DomainCheckRequest,
    DomainCheckResponse,
    GoogleConnectRequest,
    IntegrationStatusResponse,
    MondayConnectRequest,
    PendingActionView,
    SecurityPhraseRequest,
    SecurityPreferencesResponse,
    SecurityPreferencesUpdate,
    VerificationCodeRequest,
    VerificationCodeResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from maiagent.services.allowed_domains_repo import (
    InMemoryAllowedDomainsRepository,
    SupabaseAllowedDomainsRepository,
    extract_domain,
)
from maiagent.services.errors import (
    AssistantError,
    LockedOut,
    ProviderExhausted,
    ToolProtocolError,
    ValidationError,
)
from maiagent.services.executor import ToolExecutor
from maiagent.services.google_oauth import GoogleOAuthService
from maiagent.services.integration_repo import (
    InMemoryIntegrationRepository,
    SupabaseIntegrationRepository,
)
from maiagent.services.llm_router import LlmRouter, ProviderConfig
from maiagent.services.orchestrator import AssistantOrchestrator, ConfirmationGate
from maiagent.services.pending_actions import InMemoryPendingActionStore
from maiagent.services.prompts import build_security_prompt, with_security_prompt
from maiagent.services.rate_limiter import InMemoryCounterStore, RateLimiter
from maiagent.services.security_prefs_repo import (
    InMemorySecurityPreferencesRepository,
    SupabaseSecurityPreferencesRepository,
)
from maiagent.services.security_tiers import ACTION_DEFAULTS
from maiagent.services.supabase_auth import SupabaseAuth
from maiagent.services.supabase_rest import SupabaseRestClient, to_iso
from maiagent.services.token_security import build_token_cipher_from_env
from maiagent.services.token_vault import TokenVault
from maiagent.services.two_factor import StepUpAuth
from maiagent.services.verification_code_repo import (
    InMemoryVerificationCodeRepository,
    SupabaseVerificationCodeRepository,
)
from maiagent.tools import build_default_registry

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="mai Assistant API", version="0.3.0")

INTEGRATION_PROVIDERS = ("google", "monday")
PHRASE_CHANGE_ACTION = "account.change_security_phrase"


def _build_llm_router() -> LlmRouter:
    configs = {
        "groq": ProviderConfig(
            provider="groq",
            model=settings.groq_model,
            api_key=settings.groq_api_key,
            timeout_seconds=settings.groq_timeout_seconds,
        ),
        "openai": ProviderConfig(
            provider="openai",
            model=settings.openai_model,
            api_key=settings.openai_api_key,
            timeout_seconds=settings.openai_timeout_seconds,
            api_base_url=settings.openai_api_base_url,
        ),
        "gemini": ProviderConfig(
            provider="gemini",
            model=settings.gemini_model,
            api_key=settings.gemini_api_key,
            timeout_seconds=settings.gemini_timeout_seconds,
        ),
    }
    return LlmRouter(
        configs,
        default_provider=settings.llm_provider,
        default_max_tokens=settings.llm_default_max_tokens,
    )


supabase = SupabaseRestClient(
    supabase_url=settings.supabase_url,
    supabase_service_role_key=settings.supabase_service_role_key,
    timeout_seconds=settings.supabase_timeout_seconds,
)
if supabase.is_configured():
    integration_repo: Any = SupabaseIntegrationRepository(
        supabase, settings.integrations_table, settings.integration_tokens_table
    )
    preferences_repo: Any = SupabaseSecurityPreferencesRepository(
        supabase, settings.user_preferences_table
    )
    codes_repo: Any = SupabaseVerificationCodeRepository(
        supabase, settings.verification_codes_table
    )
    allowed_domains: Any = SupabaseAllowedDomainsRepository(
        supabase, settings.allowed_domains_table
    )
else:
    logger.warning("Supabase is not configured; using process-local in-memory storage")
    integration_repo = InMemoryIntegrationRepository()
    preferences_repo = InMemorySecurityPreferencesRepository()
    codes_repo = InMemoryVerificationCodeRepository()
    allowed_domains = InMemoryAllowedDomainsRepository()

auth = SupabaseAuth(settings.supabase_url, settings.supabase_anon_key)
google_oauth = GoogleOAuthService(
    client_id=settings.google_client_id,
    client_secret=settings.google_client_secret,
    timeout_seconds=settings.google_oauth_timeout_seconds,
)
vault = TokenVault(
    integration_repo,
    build_token_cipher_from_env(),
    refreshers={"google": google_oauth},
)
step_up = StepUpAuth(codes_repo, preferences_repo, pepper=settings.verification_code_salt)
llm_router = _build_llm_router()
tool_registry = build_default_registry()
orchestrator = AssistantOrchestrator(
    router=llm_router,
    tool_registry=tool_registry,
    executor=ToolExecutor(
        tool_registry,
        vault=vault,
        timeout_seconds=settings.tool_http_timeout_seconds,
        max_workers=4 if settings.parallel_tool_calls else 1,
    ),
    preferences_repo=preferences_repo,
    pending_store=InMemoryPendingActionStore(ttl_seconds=settings.pending_action_ttl_seconds),
    gate=ConfirmationGate(step_up),
    max_tool_calls=settings.max_tool_calls,
)
domain_check_limiter = RateLimiter(
    InMemoryCounterStore(),
    limit=settings.domain_check_rate_limit,
    window_seconds=settings.domain_check_window_seconds,
)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/assistant/chat", response_model=AssistantChatResponse)
def chat_route(
    payload: AssistantChatRequest,
    authorization: str | None = Header(default=None),
) -> Any:
    user_id = auth.optional_user_id(authorization)
    messages = [m.model_dump(exclude_none=True) for m in payload.messages]
    logger.info(
        "Chat request: messages=%d stream=%s tools_enabled=%s",
        len(messages),
        payload.stream,
        bool(user_id),
    )
    if payload.stream:
        return _stream_response(payload, messages, user_id)

    try:
        outcome = orchestrator.handle_chat(
            messages=messages,
            user_id=user_id,
            temperature=payload.temperature,
            max_tokens=payload.max_tokens,
            provider=payload.provider,
            pending_action_id=payload.pending_action_id,
        )
    except (ValidationError, ToolProtocolError) as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except ProviderExhausted as exc:
        logger.error("LLM routing failed (%s): %s", exc.kind, exc.message)
        return JSONResponse(
            status_code=_exhausted_status(exc.kind),
            content={"error": exc.message, "kind": exc.kind},
        )
    except Exception as exc:
        logger.exception("Chat request failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    pending = PendingActionView(**outcome.pending_action) if outcome.pending_action else None
    return AssistantChatResponse(
        content=outcome.content,
        model_used=outcome.model_used,
        provider_used=outcome.provider_used,
        latency_ms=outcome.latency_ms,
        fallback_used=outcome.fallback_used,
        tool_calls_made=outcome.tool_calls_made,
        pending_action=pending,
    )


def _exhausted_status(kind: str) -> int:
    if kind == "rate_limit":
        return 429
    if kind == "quota":
        return 402
    return 500


def _stream_response(
    payload: AssistantChatRequest,
    messages: list[dict[str, Any]],
    user_id: str | None,
) -> StreamingResponse:
    if user_id:
        prompt = build_security_prompt(preferences_repo.get(user_id))
        messages = with_security_prompt(messages, prompt)
    # Streaming never offers tools, so tool turns are flattened to text.
    plain = [
        {"role": m["role"] if m["role"] != "tool" else "user", "content": m.get("content", "")}
        for m in messages
    ]
    chunks = llm_router.stream(
        plain,
        temperature=payload.temperature,
        max_tokens=payload.max_tokens,
        provider=payload.provider,
    )
    try:
        first = next(chunks)
    except StopIteration:
        first = None
    except (RuntimeError, requests.RequestException) as exc:
        logger.error("Streaming request failed: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return StreamingResponse(_sse_events(first, chunks), media_type="text/event-stream")


def _sse_events(first: Any, rest: Iterator[Any]) -> Iterator[str]:
    stream_id = f"chatcmpl-{uuid.uuid4().hex[:24]}"
    created = int(time.time())

    def frame(text: str, finish_reason: str | None, model: str | None) -> str:
        chunk = {
            "id": stream_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model or "",
            "choices": [
                {
                    "index": 0,
                    "delta": {"content": text} if text else {},
                    "finish_reason": finish_reason,
                }
            ],
        }
        return f"data: {json.dumps(chunk)}\n\n"

    head = [first] if first is not None else []
    try:
        for chunk in _chain(head, rest):
            if chunk.text:
                yield frame(chunk.text, None, chunk.model_used)
            if chunk.done:
                yield frame("", "stop", chunk.model_used)
    except (RuntimeError, requests.RequestException) as exc:
        logger.error("Stream interrupted: %s", exc)
        yield f"data: {json.dumps({'error': str(exc)})}\n\n"
    yield "data: [DONE]\n\n"


def _chain(head: list[Any], tail: Iterator[Any]) -> Iterator[Any]:
    yield from head
    yield from tail


@app.get("/v1/integrations/{provider}/status", response_model=IntegrationStatusResponse)
def integration_status(
    provider: str,
    authorization: str | None = Header(default=None),
) -> IntegrationStatusResponse:
    user_id = _resolve_user_id(authorization)
    name = provider.strip().lower()
    if name not in INTEGRATION_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
    record = integration_repo.get_integration(user_id, name)
    if record is None:
        return IntegrationStatusResponse(provider=name, connected=False)
    return IntegrationStatusResponse(
        provider=name,
        connected=True,
        scopes=list(record.scopes),
        provider_email=record.provider_email,
        expires_at=to_iso(record.token_expires_at),
    )


@app.post("/v1/integrations/google/connect", response_model=IntegrationStatusResponse)
def google_connect(
    payload: GoogleConnectRequest,
    authorization: str | None = Header(default=None),
) -> IntegrationStatusResponse:
    user_id = _resolve_user_id(authorization)
    if not google_oauth.is_configured():
        raise HTTPException(
            status_code=503,
            detail="Google OAuth is not configured. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET.",
        )
    try:
        lookup = google_oauth.connect_account(
            vault,
            user_id=user_id,
            code=payload.code,
            redirect_uri=payload.redirect_uri,
            code_verifier=payload.code_verifier,
        )
    except (AssistantError, RuntimeError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return IntegrationStatusResponse(
        provider="google",
        connected=True,
        scopes=lookup.scopes,
        provider_email=lookup.provider_email,
        expires_at=to_iso(lookup.expires_at),
    )


@app.post("/v1/integrations/monday/connect", response_model=IntegrationStatusResponse)
def monday_connect(
    payload: MondayConnectRequest,
    authorization: str | None = Header(default=None),
) -> IntegrationStatusResponse:
    user_id = _resolve_user_id(authorization)
    try:
        vault.store_credentials(user_id=user_id, provider="monday", access_token=payload.api_token)
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return IntegrationStatusResponse(provider="monday", connected=True)


@app.get("/v1/security/preferences", response_model=SecurityPreferencesResponse)
def get_security_preferences(
    authorization: str | None = Header(default=None),
) -> SecurityPreferencesResponse:
    user_id = _resolve_user_id(authorization)
    return _preferences_view(preferences_repo.get(user_id))


@app.patch("/v1/security/preferences", response_model=SecurityPreferencesResponse)
def update_security_preferences(
    payload: SecurityPreferencesUpdate,
    authorization: str | None = Header(default=None),
) -> SecurityPreferencesResponse:
    user_id = _resolve_user_id(authorization)
    prefs = preferences_repo.update_settings(
        user_id,
        emoji_confirmations_enabled=payload.emoji_confirmations_enabled,
        action_security_overrides=payload.action_security_overrides,
    )
    logger.info("Security preferences updated for user %s", user_id)
    return _preferences_view(prefs)


@app.post("/v1/security/verification-codes", response_model=VerificationCodeResponse)
def create_verification_code(
    payload: VerificationCodeRequest,
    authorization: str | None = Header(default=None),
) -> VerificationCodeResponse:
    user_id = _resolve_user_id(authorization)
    action_type = _known_action(payload.action_type)
    status = step_up.check_rate_limit(user_id)
    if status.is_locked:
        raise HTTPException(
            status_code=429,
            detail="Too many failed security attempts. Try again after the lockout period.",
        )
    issued = step_up.create_code(user_id, action_type)
    return VerificationCodeResponse(
        action_type=issued.action_type, expires_at=issued.expires_at.isoformat()
    )


@app.post("/v1/security/verification-codes/verify", response_model=VerifyCodeResponse)
def verify_verification_code(
    payload: VerifyCodeRequest,
    authorization: str | None = Header(default=None),
) -> VerifyCodeResponse:
    user_id = _resolve_user_id(authorization)
    action_type = _known_action(payload.action_type)
    verified = _verify_or_429(user_id, action_type, payload.code)
    status = step_up.check_rate_limit(user_id)
    return VerifyCodeResponse(
        verified=verified,
        failed_attempts=status.failed_attempts,
        locked=status.is_locked,
    )


@app.put("/v1/security/phrase", response_model=SecurityPreferencesResponse)
def set_security_phrase(
    payload: SecurityPhraseRequest,
    authorization: str | None = Header(default=None),
) -> SecurityPreferencesResponse:
    user_id = _resolve_user_id(authorization)
    if not _verify_or_429(user_id, PHRASE_CHANGE_ACTION, payload.code):
        raise HTTPException(status_code=403, detail="Invalid or expired verification code.")
    prefs = preferences_repo.set_security_phrase(
        user_id, payload.phrase_color, payload.phrase_object, payload.phrase_emoji
    )
    logger.info("Security phrase changed for user %s", user_id)
    return _preferences_view(prefs)


@app.post("/v1/auth/check-domain", response_model=DomainCheckResponse)
def check_domain(payload: DomainCheckRequest, request: Request) -> Any:
    client_ip = _client_ip(request)
    if not domain_check_limiter.allow(client_ip):
        logger.warning("Domain check rate limit hit for %s", client_ip)
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests. Please try again later.", "allowed": False},
            headers={"Retry-After": str(domain_check_limiter.retry_after_seconds(client_ip))},
        )
    try:
        domain = extract_domain(payload.email)
    except ValueError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc), "allowed": False})
    try:
        allowed = allowed_domains.is_allowed(domain)
    except RuntimeError as exc:
        logger.error("Allowed-domain lookup failed: %s", exc)
        return JSONResponse(
            status_code=500, content={"error": "Failed to check domain", "allowed": False}
        )
    return DomainCheckResponse(allowed=allowed, domain=domain)


def _client_ip(request: Request) -> str:
    cf_ip = (request.headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client else "unknown"


def _known_action(action_type: str) -> str:
    value = action_type.strip()
    if value not in ACTION_DEFAULTS:
        raise HTTPException(status_code=400, detail=f"Unknown action type: {value}")
    return value


def _verify_or_429(user_id: str, action_type: str, code: str) -> bool:
    try:
        return step_up.verify_code(user_id, action_type, code)
    except LockedOut as exc:
        raise HTTPException(status_code=429, detail=exc.message) from exc
    except AssistantError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc


def _preferences_view(prefs: Any) -> SecurityPreferencesResponse:
    return SecurityPreferencesResponse(
        emoji_confirmations_enabled=prefs.emoji_confirmations_enabled,
        has_security_phrase=prefs.has_security_phrase,
        has_security_emoji=bool((prefs.security_phrase_emoji or "").strip()),
        action_security_overrides=dict(prefs.action_security_overrides),
        failed_security_attempts=prefs.failed_security_attempts,
        security_lockout_until=to_iso(prefs.security_lockout_until),
    )


def _resolve_user_id(authorization: str | None) -> str:
    try:
        return auth.require_user_id(authorization)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except Exception as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
