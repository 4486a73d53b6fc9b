from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from maiagent.tools import ToolContext
from maiagent.tools.registry import ToolRegistry

from .errors import AssistantError
from .security_tiers import UserSecurityPreferences
from .token_security import redact_sensitive_text


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolRequest:
    call_id: str
    name: str
    args: dict[str, Any]


@dataclass(frozen=True)
class ExecutedCall:
    call_id: str
    name: str
    action_id: str | None
    payload: dict[str, Any]

    @property
    def success(self) -> bool:
        return bool(self.payload.get("success"))


class ToolExecutor:
    """Runs already-approved tool calls and never lets an exception escape.

    Calls from one model round run concurrently; results come back in the
    order the calls were issued.
    """

    def __init__(
        self,
        tool_registry: ToolRegistry,
        vault: Any = None,
        timeout_seconds: int = 10,
        max_workers: int = 4,
    ) -> None:
        self._tool_registry = tool_registry
        self._vault = vault
        self._timeout_seconds = timeout_seconds
        self._max_workers = max(1, max_workers)

    def execute(
        self,
        *,
        user_id: str,
        requests: list[ToolRequest],
        preferences: UserSecurityPreferences | None = None,
    ) -> list[ExecutedCall]:
        if not requests:
            return []
        if len(requests) == 1:
            return [self.execute_one(user_id=user_id, request=requests[0], preferences=preferences)]
        workers = min(self._max_workers, len(requests))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tool") as pool:
            futures = [
                pool.submit(
                    self.execute_one, user_id=user_id, request=request, preferences=preferences
                )
                for request in requests
            ]
            return [future.result() for future in futures]

    def execute_one(
        self,
        *,
        user_id: str,
        request: ToolRequest,
        preferences: UserSecurityPreferences | None = None,
    ) -> ExecutedCall:
        action_id: str | None = None
        try:
            tool_def = self._tool_registry.get_definition(request.name)
            action_id = tool_def.action_for(request.args)
            validated_args = tool_def.validate_args(request.args)
            payload = tool_def.tool.run(
                ToolContext(
                    user_id=user_id,
                    tool_name=tool_def.name,
                    args=validated_args,
                    vault=self._vault,
                    preferences=preferences,
                    timeout_seconds=self._timeout_seconds,
                )
            )
        except AssistantError as exc:
            logger.info("Tool %s failed for user %s: %s", request.name, user_id, exc.code)
            payload = exc.to_result()
        except Exception as exc:
            logger.exception("Tool %s crashed for user %s", request.name, user_id)
            payload = {
                "success": False,
                "error": f"Tool execution failed: {redact_sensitive_text(str(exc))}",
                "code": "tool_failed",
            }
        else:
            logger.info("Tool %s succeeded for user %s", request.name, user_id)
        return ExecutedCall(
            call_id=request.call_id,
            name=request.name,
            action_id=action_id,
            payload=payload,
        )
