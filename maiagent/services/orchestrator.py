from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from maiagent.tools.registry import ToolRegistry

from .confirmation_intent import ConfirmationIntent, classify_confirmation_reply
from .errors import (
    LockedOut,
    ProviderExhausted,
    SecurityDenied,
    ToolNotFound,
    ToolProtocolError,
    ValidationError,
)
from .executor import ExecutedCall, ToolExecutor, ToolRequest
from .llm_router import CompletionResult, LlmRouter, ToolCall
from .pending_actions import PendingAction
from .prompts import SUMMARIZE_INSTRUCTION, build_security_prompt, with_security_prompt
from .security_tiers import (
    MAX_FAILED_ATTEMPTS,
    SecurityTier,
    UserSecurityPreferences,
    action_label,
    confirmation_instructions,
    get_effective_tier,
    is_confirmed,
    is_never_executable,
)


logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_CALLS = 5
# Unbound replies longer than this are treated as a new request, not a confirmation.
MAX_IMPLICIT_REPLY_WORDS = 4


@dataclass(frozen=True)
class ChatOutcome:
    content: str
    model_used: str
    provider_used: str
    latency_ms: int
    fallback_used: bool
    tool_calls_made: int
    pending_action: dict[str, Any] | None = None
    executed: list[ExecutedCall] = field(default_factory=list)


@dataclass(frozen=True)
class GateDecision:
    confirmed: bool
    tier: SecurityTier
    message: str = ""
    locked_out: bool = False
    attempts_left: int | None = None


class Conversation:
    """Append-only transcript that enforces tool-call/tool-result pairing.

    Every tool turn must answer an invocation issued by the assistant turn
    directly before it, and every such invocation must be answered before
    anything else is appended.
    """

    def __init__(self, messages: list[dict[str, Any]]) -> None:
        self.messages: list[dict[str, Any]] = []
        self._open_calls: list[str] = []
        for message in messages:
            self._append_existing(message)
        # A history that ends mid-round cannot be continued.
        self.ensure_closed()

    def _append_existing(self, message: dict[str, Any]) -> None:
        role = message.get("role")
        if role == "tool":
            self.add_tool_result(str(message.get("tool_call_id") or ""), message.get("content"))
            return
        self.ensure_closed()
        if role == "assistant" and message.get("tool_calls"):
            self.messages.append(dict(message))
            self._open_calls = [
                str(call.get("id"))
                for call in message["tool_calls"]
                if isinstance(call, dict) and call.get("id")
            ]
            return
        self.messages.append({"role": role, "content": message.get("content") or ""})

    @property
    def open_calls(self) -> list[str]:
        return list(self._open_calls)

    def add_assistant_tool_calls(self, content: str, tool_calls: list[ToolCall]) -> None:
        self.ensure_closed()
        self.messages.append(
            {
                "role": "assistant",
                "content": content or "",
                "tool_calls": [call.to_wire() for call in tool_calls],
            }
        )
        self._open_calls = [call.id for call in tool_calls]

    def add_tool_result(self, call_id: str, payload: Any) -> None:
        if call_id not in self._open_calls:
            raise ToolProtocolError(
                f"Tool result '{call_id or '?'}' does not answer a pending tool call.",
                call_id=call_id or None,
            )
        self._open_calls.remove(call_id)
        content = payload if isinstance(payload, str) else json.dumps(payload, default=str)
        self.messages.append({"role": "tool", "tool_call_id": call_id, "content": content})

    def add_system(self, content: str) -> None:
        self.ensure_closed()
        self.messages.append({"role": "system", "content": content})

    def ensure_closed(self) -> None:
        if self._open_calls:
            raise ToolProtocolError(
                "Tool calls were left without results: " + ", ".join(self._open_calls),
                call_ids=list(self._open_calls),
            )

    def last_user_text(self) -> str:
        for message in reversed(self.messages):
            if message.get("role") == "user":
                return str(message.get("content") or "")
        return ""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConfirmationGate:
    """Decides whether a reply proves confirmation for a held action.

    Tier-2 attempts go through the step-up rate limiter: a failure counts
    toward the lockout and a success clears the counter.
    """

    def __init__(self, step_up: Any, clock: Callable[[], datetime] | None = None) -> None:
        self.step_up = step_up
        self._clock = clock or _utc_now

    def evaluate(
        self,
        user_id: str,
        action_id: str,
        reply: str,
        preferences: UserSecurityPreferences,
    ) -> GateDecision:
        tier = get_effective_tier(action_id, preferences.action_security_overrides)
        if is_never_executable(tier):
            return GateDecision(
                confirmed=False,
                tier=tier,
                message=confirmation_instructions(action_id, tier, preferences),
            )
        if tier != 2:
            return GateDecision(confirmed=is_confirmed(action_id, reply, preferences), tier=tier)

        if not preferences.has_security_phrase:
            return GateDecision(
                confirmed=False,
                tier=tier,
                message=confirmation_instructions(action_id, tier, preferences),
            )
        status = self.step_up.check_rate_limit(user_id)
        if status.is_locked:
            return GateDecision(
                confirmed=False,
                tier=tier,
                locked_out=True,
                message=_lockout_message(status.minutes_left(self._clock())),
            )
        if is_confirmed(action_id, reply, preferences):
            self.step_up.record_success(user_id)
            return GateDecision(confirmed=True, tier=tier)

        status = self.step_up.record_failure(user_id)
        logger.warning(
            "Security phrase mismatch for user %s on %s (%d failed)",
            user_id,
            action_id,
            status.failed_attempts,
        )
        if status.is_locked:
            return GateDecision(
                confirmed=False,
                tier=tier,
                locked_out=True,
                message=_lockout_message(status.minutes_left(self._clock())),
            )
        attempts_left = max(0, MAX_FAILED_ATTEMPTS - status.failed_attempts)
        return GateDecision(
            confirmed=False,
            tier=tier,
            attempts_left=attempts_left,
            message=(
                "That security phrase did not match. "
                f"{attempts_left} attempt(s) left before a temporary lockout."
            ),
        )


def _lockout_message(minutes_left: int) -> str:
    return (
        "Security lockout active after too many failed confirmation attempts. "
        f"Try again after the lockout period ({minutes_left} minute(s))."
    )


class AssistantOrchestrator:
    def __init__(
        self,
        *,
        router: LlmRouter,
        tool_registry: ToolRegistry,
        executor: ToolExecutor,
        preferences_repo: Any,
        pending_store: Any,
        gate: ConfirmationGate,
        max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
    ) -> None:
        self.router = router
        self.tool_registry = tool_registry
        self.executor = executor
        self.preferences_repo = preferences_repo
        self.pending_store = pending_store
        self.gate = gate
        self.max_tool_calls = max(1, int(max_tool_calls))

    def handle_chat(
        self,
        *,
        messages: list[dict[str, Any]],
        user_id: str | None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        provider: str | None = None,
        pending_action_id: str | None = None,
    ) -> ChatOutcome:
        if not messages:
            raise ValidationError("messages array is required")

        if not user_id:
            # Anonymous sessions get plain chat with no tools.
            result = self.router.complete(
                [dict(m) for m in messages],
                tools=None,
                temperature=temperature,
                max_tokens=max_tokens,
                provider=provider,
            )
            _raise_if_exhausted(result)
            return _outcome(result, tool_calls_made=0)

        preferences = self.preferences_repo.get(user_id)
        conversation = Conversation(
            with_security_prompt(messages, build_security_prompt(preferences))
        )
        tools = self.tool_registry.to_openai_tools()
        executed: list[ExecutedCall] = []
        calls_made = 0

        settled, held = self._settle_pending(
            user_id, pending_action_id, conversation, preferences
        )
        if settled is not None:
            executed.append(settled)
            calls_made += 1
        latest_pending: PendingAction | None = held

        logger.info(
            "Chat for user %s: messages=%d tools=%d",
            user_id,
            len(conversation.messages),
            len(tools),
        )
        result = self.router.complete(
            conversation.messages,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            provider=provider,
        )
        fallback_used = result.fallback_used
        latency_ms = result.latency_ms
        while True:
            _raise_if_exhausted(result)
            if not result.tool_calls:
                break
            if calls_made >= self.max_tool_calls:
                logger.warning(
                    "Tool call budget (%d) reached for user %s", self.max_tool_calls, user_id
                )
                break

            conversation.add_assistant_tool_calls(result.content, result.tool_calls)
            payloads: dict[str, dict[str, Any]] = {}
            approved: list[ToolRequest] = []
            for call in result.tool_calls:
                if calls_made >= self.max_tool_calls:
                    payloads[call.id] = {
                        "success": False,
                        "error": (
                            f"Tool call limit of {self.max_tool_calls} reached for this "
                            "request. This call was not executed."
                        ),
                        "code": "tool_budget_exhausted",
                    }
                    continue
                calls_made += 1
                request, payload, minted = self._admit(user_id, call, preferences)
                if request is not None:
                    approved.append(request)
                else:
                    payloads[call.id] = payload or {}
                if minted is not None:
                    latest_pending = minted

            for done in self.executor.execute(
                user_id=user_id, requests=approved, preferences=preferences
            ):
                executed.append(done)
                payloads[done.call_id] = done.payload

            # Results go back in the order the calls were issued.
            for call in result.tool_calls:
                conversation.add_tool_result(call.id, payloads[call.id])
            conversation.add_system(SUMMARIZE_INSTRUCTION)

            result = self.router.complete(
                conversation.messages,
                tools=tools,
                temperature=temperature,
                max_tokens=max_tokens,
                provider=provider,
            )
            fallback_used = fallback_used or result.fallback_used
            latency_ms += result.latency_ms

        return _outcome(
            result,
            tool_calls_made=calls_made,
            fallback_used=fallback_used,
            latency_ms=latency_ms,
            pending=latest_pending,
            executed=executed,
        )

    def _admit(
        self, user_id: str, call: ToolCall, preferences: UserSecurityPreferences
    ) -> tuple[ToolRequest | None, dict[str, Any] | None, PendingAction | None]:
        """Return (runnable request, or failure payload, plus any minted pending record)."""
        try:
            args = _decode_arguments(call)
            if not self.tool_registry.has(call.name):
                raise ToolNotFound(f"Unknown tool: {call.name}")
            definition = self.tool_registry.get_definition(call.name)
            action_id = definition.action_for(args)
            tier = get_effective_tier(action_id, preferences.action_security_overrides)

            if is_never_executable(tier):
                logger.warning("Refused %s (tier %s) for user %s", action_id, tier, user_id)
                raise SecurityDenied(
                    confirmation_instructions(action_id, tier, preferences),
                    action=action_id,
                    tier=tier,
                )
            if tier == 5:
                return ToolRequest(call_id=call.id, name=call.name, args=args), None, None

            clean_args = definition.validate_args(args)
            if tier == 2:
                if not preferences.has_security_phrase:
                    raise SecurityDenied(
                        confirmation_instructions(action_id, tier, preferences),
                        action=action_id,
                        tier=tier,
                    )
                if preferences.is_locked_out():
                    raise LockedOut(
                        "Security lockout active after too many failed confirmation "
                        "attempts. Try again after the lockout period.",
                        action=action_id,
                    )
        except (ToolNotFound, SecurityDenied, ValidationError) as exc:
            logger.info("Tool call %s rejected for user %s: %s", call.name, user_id, exc.code)
            return None, exc.to_result(), None

        record = self.pending_store.create(user_id, call.name, action_id, tier, clean_args)
        instructions = confirmation_instructions(action_id, tier, preferences)
        payload = {
            "success": False,
            "code": "confirmation_required",
            "confirmation_required": True,
            "error": f"Not executed yet. {instructions}",
            "instructions": instructions,
            "pending_action_id": record.id,
            "action": action_id,
            "tier": tier,
            "details": clean_args,
        }
        return None, payload, record

    def _settle_pending(
        self,
        user_id: str,
        pending_action_id: str | None,
        conversation: Conversation,
        preferences: UserSecurityPreferences,
    ) -> tuple[ExecutedCall | None, PendingAction | None]:
        """Resolve a held action against the latest user reply.

        Returns the executed call when the reply confirmed it, and the record
        that is still held (a tier-2 retry) if any.
        """
        explicit = bool(pending_action_id)
        if explicit:
            record = self.pending_store.get(user_id, pending_action_id)
            if record is None:
                conversation.add_system(
                    "The action the user is replying to has expired or no longer exists. "
                    "Nothing was executed. Offer to start it again."
                )
                return None, None
        else:
            live = self.pending_store.live_for_user(user_id)
            if len(live) != 1:
                return None, None
            record = live[0]

        reply = conversation.last_user_text()
        label = action_label(record.action_id)
        intent = classify_confirmation_reply(reply)
        tier = get_effective_tier(record.action_id, preferences.action_security_overrides)
        # A correct phrase wins even when it happens to contain a cancel or edit word.
        proves_phrase = tier == 2 and is_confirmed(record.action_id, reply, preferences)

        if intent.intent == "cancel" and not proves_phrase:
            self.pending_store.discard(user_id, record.id)
            logger.info("User %s cancelled pending %s", user_id, record.id)
            conversation.add_system(
                f"The user cancelled the pending '{label}'. It was not executed."
            )
            return None, None
        if intent.intent == "pause":
            conversation.add_system(
                f"The pending '{label}' is still on hold and has not been executed."
            )
            return None, record
        if intent.intent == "edit" and not proves_phrase:
            self.pending_store.discard(user_id, record.id)
            logger.info("User %s asked to change pending %s; discarded", user_id, record.id)
            conversation.add_system(
                f"The user wants to change the pending '{label}', so it was discarded and "
                "not executed. Propose it again with the new details."
            )
            return None, None
        if intent.intent == "question" and not proves_phrase:
            return None, record
        if not explicit and not _reads_as_confirmation(intent, tier, proves_phrase):
            # Looks like a new request, not an answer to the held action; keep the hold.
            return None, record

        decision = self.gate.evaluate(user_id, record.action_id, reply, preferences)
        if decision.confirmed:
            self.pending_store.discard(user_id, record.id)
            logger.info("Pending %s confirmed by user %s; executing", record.id, user_id)
            call = ToolCall(
                id=f"call_{record.id}",
                name=record.tool_name,
                arguments=json.dumps(record.args),
            )
            done = self.executor.execute_one(
                user_id=user_id,
                request=ToolRequest(call_id=call.id, name=call.name, args=dict(record.args)),
                preferences=preferences,
            )
            conversation.add_assistant_tool_calls("", [call])
            conversation.add_tool_result(call.id, done.payload)
            conversation.add_system(SUMMARIZE_INSTRUCTION)
            return done, None

        if decision.tier == 2 and not decision.locked_out and decision.attempts_left:
            conversation.add_system(
                f"The pending '{label}' was not executed. {decision.message}"
            )
            return None, record

        self.pending_store.discard(user_id, record.id)
        message = decision.message or (
            f"The reply did not confirm the pending '{label}', so it was discarded."
        )
        logger.info("Pending %s discarded for user %s", record.id, user_id)
        conversation.add_system(f"The pending '{label}' was not executed. {message}")
        return None, None


def _reads_as_confirmation(
    intent: ConfirmationIntent, tier: SecurityTier, proves_phrase: bool
) -> bool:
    """Whether a reply not tied to a pending id may be checked against the held action."""
    if proves_phrase:
        return True
    if intent.word_count > MAX_IMPLICIT_REPLY_WORDS:
        return False
    if tier == 4:
        return intent.intent == "confirm"
    return intent.intent in {"confirm", "unknown"}


def _decode_arguments(call: ToolCall) -> dict[str, Any]:
    raw = (call.arguments or "").strip() or "{}"
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Tool '{call.name}' arguments are not valid JSON.") from exc
    if not isinstance(parsed, dict):
        raise ValidationError(f"Tool '{call.name}' arguments must be an object.")
    return parsed


def _raise_if_exhausted(result: CompletionResult) -> None:
    if result.error:
        raise ProviderExhausted(result.error, kind=result.error_kind or "unknown")


def _outcome(
    result: CompletionResult,
    tool_calls_made: int,
    fallback_used: bool | None = None,
    latency_ms: int | None = None,
    pending: PendingAction | None = None,
    executed: list[ExecutedCall] | None = None,
) -> ChatOutcome:
    return ChatOutcome(
        content=result.content,
        model_used=result.model_used,
        provider_used=result.provider_used,
        latency_ms=result.latency_ms if latency_ms is None else latency_ms,
        fallback_used=result.fallback_used if fallback_used is None else fallback_used,
        tool_calls_made=tool_calls_made,
        pending_action=pending.to_public() if pending is not None else None,
        executed=list(executed or []),
    )
