import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv(override=False)


def _as_bool(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    supabase_url: str | None
    supabase_anon_key: str | None
    supabase_service_role_key: str | None
    supabase_timeout_seconds: int
    integrations_table: str
    integration_tokens_table: str
    user_preferences_table: str
    verification_codes_table: str
    allowed_domains_table: str
    encryption_key: str | None
    google_client_id: str | None
    google_client_secret: str | None
    google_oauth_timeout_seconds: int
    llm_provider: str
    groq_api_key: str | None
    groq_model: str
    groq_timeout_seconds: int
    openai_api_key: str | None
    openai_model: str
    openai_api_base_url: str | None
    openai_timeout_seconds: int
    gemini_api_key: str | None
    gemini_model: str
    gemini_timeout_seconds: int
    llm_default_max_tokens: int
    max_tool_calls: int
    tool_http_timeout_seconds: int
    parallel_tool_calls: bool
    pending_action_ttl_seconds: int
    verification_code_salt: str
    domain_check_rate_limit: int
    domain_check_window_seconds: int
    log_level: str


def load_settings() -> Settings:
    return Settings(
        supabase_url=(os.getenv("SUPABASE_URL") or None),
        supabase_anon_key=(os.getenv("SUPABASE_ANON_KEY") or None),
        supabase_service_role_key=(os.getenv("SUPABASE_SERVICE_ROLE_KEY") or None),
        supabase_timeout_seconds=_as_int(os.getenv("SUPABASE_TIMEOUT_SECONDS"), 8),
        integrations_table=os.getenv("INTEGRATIONS_TABLE", "user_integrations"),
        integration_tokens_table=os.getenv(
            "INTEGRATION_TOKENS_TABLE", "encrypted_integration_tokens"
        ),
        user_preferences_table=os.getenv("USER_PREFERENCES_TABLE", "user_preferences"),
        verification_codes_table=os.getenv(
            "VERIFICATION_CODES_TABLE", "verification_codes"
        ),
        allowed_domains_table=os.getenv("ALLOWED_DOMAINS_TABLE", "allowed_domains"),
        encryption_key=(os.getenv("ENCRYPTION_KEY") or None),
        google_client_id=(os.getenv("GOOGLE_CLIENT_ID") or None),
        google_client_secret=(os.getenv("GOOGLE_CLIENT_SECRET") or None),
        google_oauth_timeout_seconds=_as_int(
            os.getenv("GOOGLE_OAUTH_TIMEOUT_SECONDS"), 8
        ),
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=(os.getenv("GROQ_API_KEY") or None),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        groq_timeout_seconds=_as_int(os.getenv("GROQ_TIMEOUT_SECONDS"), 10),
        openai_api_key=(os.getenv("OPENAI_API_KEY") or None),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        openai_api_base_url=(os.getenv("OPENAI_API_BASE_URL") or None),
        openai_timeout_seconds=_as_int(os.getenv("OPENAI_TIMEOUT_SECONDS"), 15),
        gemini_api_key=(os.getenv("GEMINI_API_KEY") or None),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-1.5-flash"),
        gemini_timeout_seconds=_as_int(os.getenv("GEMINI_TIMEOUT_SECONDS"), 15),
        llm_default_max_tokens=max(
            1, min(16000, _as_int(os.getenv("LLM_DEFAULT_MAX_TOKENS"), 2048))
        ),
        max_tool_calls=max(1, min(20, _as_int(os.getenv("MAX_TOOL_CALLS"), 5))),
        tool_http_timeout_seconds=_as_int(os.getenv("TOOL_HTTP_TIMEOUT_SECONDS"), 10),
        parallel_tool_calls=_as_bool(os.getenv("PARALLEL_TOOL_CALLS"), True),
        pending_action_ttl_seconds=max(
            30, _as_int(os.getenv("PENDING_ACTION_TTL_SECONDS"), 600)
        ),
        verification_code_salt=os.getenv("VERIFICATION_CODE_SALT", "mai_2fa_salt"),
        domain_check_rate_limit=max(
            1, _as_int(os.getenv("DOMAIN_CHECK_RATE_LIMIT"), 20)
        ),
        domain_check_window_seconds=max(
            1, _as_int(os.getenv("DOMAIN_CHECK_WINDOW_SECONDS"), 3600)
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


settings = load_settings()
