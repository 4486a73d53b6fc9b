from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import requests

from .token_security import redact_sensitive_text


logger = logging.getLogger(__name__)

PROVIDER_ORDER = ("groq", "openai", "gemini")
DEFAULT_BASE_URLS = {
    "groq": "https://api.groq.com/openai/v1",
    "openai": "https://api.openai.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
}
# Providers whose wire format has no structured tool calls.
TOOLLESS_PROVIDERS = frozenset({"gemini"})


@dataclass(frozen=True)
class ProviderConfig:
    provider: str
    model: str
    api_key: str | None
    timeout_seconds: int
    api_base_url: str | None = None

    @property
    def base_url(self) -> str:
        base = (self.api_base_url or "").strip() or DEFAULT_BASE_URLS.get(self.provider, "")
        return base.rstrip("/")


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class CompletionResult:
    content: str
    model_used: str
    provider_used: str
    latency_ms: int
    fallback_used: bool
    tool_calls: list[ToolCall] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    attempted: tuple[str, ...] = ()


@dataclass(frozen=True)
class StreamChunk:
    text: str
    done: bool
    model_used: str | None = None
    provider_used: str | None = None


class ProviderCallError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.kind = classify_failure(status_code, body)


def classify_failure(status_code: int | None, body: str = "") -> str:
    lowered = (body or "").lower()
    if status_code == 402 or "insufficient_quota" in lowered or "quota" in lowered:
        return "quota"
    if status_code == 429 or "rate limit" in lowered or "rate_limit" in lowered:
        return "rate_limit"
    return "unknown"


class LlmRouter:
    """Priority-ordered chat completion across providers with failover.

    The configured default provider goes first, the rest follow in
    ``PROVIDER_ORDER``. Every provider failure is logged and the next one is
    tried; exhausting the chain is reported as a result with ``error`` set,
    never raised.
    """

    def __init__(
        self,
        configs: dict[str, ProviderConfig],
        default_provider: str = "groq",
        default_max_tokens: int = 2048,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.configs = {name.lower(): cfg for name, cfg in configs.items()}
        default = (default_provider or "").strip().lower()
        self.default_provider = default if default in self.configs else "groq"
        self.default_max_tokens = max(1, int(default_max_tokens))
        self._clock = clock or time.monotonic

    def chain(self, provider: str | None = None) -> list[str]:
        first = (provider or "").strip().lower()
        if first not in self.configs:
            first = self.default_provider
        rest = [p for p in PROVIDER_ORDER if p != first and p in self.configs]
        return [first, *rest]

    def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = "auto",
        temperature: float | None = None,
        max_tokens: int | None = None,
        provider: str | None = None,
    ) -> CompletionResult:
        started = self._clock()
        chain = self.chain(provider)
        attempted: list[str] = []
        failures: list[ProviderCallError] = []
        logger.info(
            "LLM request: chain=%s messages=%d tools=%d",
            ",".join(chain),
            len(messages),
            len(tools or []),
        )

        for name in chain:
            attempted.append(name)
            cfg = self.configs[name]
            try:
                if name in TOOLLESS_PROVIDERS:
                    content, model, tool_calls = self._call_gemini(
                        cfg, messages, temperature, max_tokens
                    )
                else:
                    content, model, tool_calls = self._call_openai_compatible(
                        cfg, messages, tools, tool_choice, temperature, max_tokens
                    )
            except ProviderCallError as exc:
                failures.append(exc)
                logger.warning("LLM provider %s failed: %s; trying next", name, exc)
                continue
            latency_ms = int((self._clock() - started) * 1000)
            logger.info(
                "LLM success with %s (%s) in %dms, tool_calls=%d",
                name,
                model,
                latency_ms,
                len(tool_calls),
            )
            return CompletionResult(
                content=content,
                model_used=model,
                provider_used=name,
                latency_ms=latency_ms,
                fallback_used=len(attempted) > 1,
                tool_calls=tool_calls,
                attempted=tuple(attempted),
            )

        latency_ms = int((self._clock() - started) * 1000)
        last = failures[-1] if failures else None
        logger.error(
            "All LLM providers failed after %dms. Attempted: %s",
            latency_ms,
            ", ".join(attempted),
        )
        return CompletionResult(
            content="",
            model_used="",
            provider_used=chain[0],
            latency_ms=latency_ms,
            fallback_used=len(attempted) > 1,
            error=f"All providers failed. Last error: {last}",
            error_kind=_summarize_kinds(failures),
            attempted=tuple(attempted),
        )

    def stream(
        self,
        messages: list[dict[str, Any]],
        temperature: float | None = None,
        max_tokens: int | None = None,
        provider: str | None = None,
    ) -> Iterator[StreamChunk]:
        name = self.chain(provider)[0]
        cfg = self.configs[name]
        if name in TOOLLESS_PROVIDERS:
            result = self.complete(
                messages, tools=None, temperature=temperature, max_tokens=max_tokens, provider=name
            )
            if result.error:
                raise RuntimeError(result.error)
            yield StreamChunk(
                text=result.content,
                done=True,
                model_used=result.model_used,
                provider_used=result.provider_used,
            )
            return

        api_key = _require_key(cfg)
        body = self._openai_body(cfg, messages, None, None, temperature, max_tokens)
        body["stream"] = True
        with requests.post(
            f"{cfg.base_url}/chat/completions",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json=body,
            timeout=cfg.timeout_seconds,
            stream=True,
        ) as response:
            if not response.ok:
                raise RuntimeError(f"{name} streaming error: {response.status_code}")
            for raw_line in response.iter_lines(decode_unicode=True):
                line = (raw_line or "").strip()
                if not line.startswith("data: "):
                    continue
                data = line[6:]
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                text = _stream_delta_text(parsed)
                if text:
                    yield StreamChunk(text=text, done=False)
        yield StreamChunk(text="", done=True, model_used=cfg.model, provider_used=name)

    def _openai_body(
        self,
        cfg: ProviderConfig,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        tool_choice: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": cfg.model,
            "messages": messages,
            "max_tokens": max_tokens or self.default_max_tokens,
            "stream": False,
        }
        if temperature is not None:
            body["temperature"] = temperature
        if tools:
            body["tools"] = tools
            body["tool_choice"] = tool_choice or "auto"
        return body

    def _call_openai_compatible(
        self,
        cfg: ProviderConfig,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        tool_choice: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> tuple[str, str, list[ToolCall]]:
        api_key = _require_key(cfg)
        logger.info("Calling %s with model %s", cfg.provider, cfg.model)
        try:
            response = requests.post(
                f"{cfg.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json",
                },
                json=self._openai_body(cfg, messages, tools, tool_choice, temperature, max_tokens),
                timeout=cfg.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderCallError(f"{cfg.provider} request failed: {exc}") from exc
        if not response.ok:
            detail = redact_sensitive_text(response.text.strip())
            logger.warning("%s error: %s - %s", cfg.provider, response.status_code, detail[:400])
            raise ProviderCallError(
                f"{cfg.provider} API error: {response.status_code}",
                status_code=response.status_code,
                body=detail,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderCallError(f"{cfg.provider} returned malformed JSON") from exc

        message = _first_message(body)
        if message is None:
            raise ProviderCallError(f"{cfg.provider} returned no choices")
        content = message.get("content")
        text = content.strip() if isinstance(content, str) else ""
        tool_calls = _parse_tool_calls(message.get("tool_calls"))
        if not text and not tool_calls:
            raise ProviderCallError(f"{cfg.provider} returned empty content")
        model = body.get("model") if isinstance(body.get("model"), str) else cfg.model
        return text, model, tool_calls

    def _call_gemini(
        self,
        cfg: ProviderConfig,
        messages: list[dict[str, Any]],
        temperature: float | None,
        max_tokens: int | None,
    ) -> tuple[str, str, list[ToolCall]]:
        api_key = _require_key(cfg)
        logger.info("Calling gemini with model %s (tools unavailable)", cfg.model)
        system_text, contents = to_gemini_contents(messages)
        generation: dict[str, Any] = {"maxOutputTokens": max_tokens or self.default_max_tokens}
        if temperature is not None:
            generation["temperature"] = temperature
        body: dict[str, Any] = {"contents": contents, "generationConfig": generation}
        if system_text:
            body["systemInstruction"] = {"parts": [{"text": system_text}]}
        try:
            response = requests.post(
                f"{cfg.base_url}/models/{cfg.model}:generateContent",
                params={"key": api_key},
                headers={"Content-Type": "application/json"},
                json=body,
                timeout=cfg.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderCallError(
                f"gemini request failed: {redact_sensitive_text(str(exc)).replace(api_key, '[REDACTED]')}"
            ) from exc
        if not response.ok:
            detail = redact_sensitive_text(response.text.strip())
            logger.warning("gemini error: %s - %s", response.status_code, detail[:400])
            raise ProviderCallError(
                f"Gemini API error: {response.status_code}",
                status_code=response.status_code,
                body=detail,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderCallError("gemini returned malformed JSON") from exc
        text = _gemini_text(payload)
        if not text:
            raise ProviderCallError("Gemini returned empty content")
        return text, cfg.model, []


def to_gemini_contents(
    messages: list[dict[str, Any]],
) -> tuple[str, list[dict[str, Any]]]:
    """Fold a chat-completions transcript into Gemini's two-role shape.

    Tool requests and tool results have no native form there, so they are
    rendered as plain text turns.
    """
    system_parts: list[str] = []
    contents: list[dict[str, Any]] = []
    for message in messages:
        role = message.get("role")
        content = message.get("content") if isinstance(message.get("content"), str) else ""
        if role == "system":
            if content:
                system_parts.append(content)
            continue
        if role == "tool":
            text = f"Tool result ({message.get('tool_call_id', '')}): {content}"
            contents.append({"role": "user", "parts": [{"text": text}]})
            continue
        if role == "assistant":
            lines = [content] if content else []
            for call in message.get("tool_calls") or []:
                function = call.get("function", {}) if isinstance(call, dict) else {}
                lines.append(
                    f"[Requested tool {function.get('name')} with {function.get('arguments')}]"
                )
            if lines:
                contents.append({"role": "model", "parts": [{"text": "\n".join(lines)}]})
            continue
        if content:
            contents.append({"role": "user", "parts": [{"text": content}]})
    return "\n\n".join(system_parts), contents


def _require_key(cfg: ProviderConfig) -> str:
    key = (cfg.api_key or "").strip()
    if not key:
        raise ProviderCallError(f"{cfg.provider.upper()}_API_KEY not configured")
    return key


def _first_message(body: Any) -> dict[str, Any] | None:
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    return message if isinstance(message, dict) else None


def _parse_tool_calls(raw: Any) -> list[ToolCall]:
    if not isinstance(raw, list):
        return []
    out: list[ToolCall] = []
    for index, row in enumerate(raw):
        if not isinstance(row, dict):
            continue
        function = row.get("function")
        if not isinstance(function, dict) or not isinstance(function.get("name"), str):
            continue
        arguments = function.get("arguments")
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        call_id = row.get("id") if isinstance(row.get("id"), str) else f"call_{index}"
        out.append(
            ToolCall(id=call_id, name=function["name"], arguments=arguments or "{}")
        )
    return out


def _gemini_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return ""
    texts = [p.get("text") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
    return "".join(texts).strip()


def _stream_delta_text(parsed: Any) -> str:
    if not isinstance(parsed, dict):
        return ""
    choices = parsed.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def _summarize_kinds(failures: list[ProviderCallError]) -> str:
    kinds = {failure.kind for failure in failures}
    if "rate_limit" in kinds:
        return "rate_limit"
    if "quota" in kinds:
        return "quota"
    return "unknown"
