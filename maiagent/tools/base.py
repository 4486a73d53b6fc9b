from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from maiagent.services.security_tiers import UserSecurityPreferences
    from maiagent.services.token_vault import TokenVault


@dataclass(frozen=True)
class ToolContext:
    user_id: str
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    vault: "TokenVault | None" = None
    preferences: "UserSecurityPreferences | None" = None
    timeout_seconds: int = 10


class Tool(ABC):
    """One integration. Each exposed tool name maps to a handler method."""

    name: str
    provider: str

    @abstractmethod
    def handlers(self) -> dict[str, Callable[[ToolContext], dict[str, Any]]]:
        raise NotImplementedError

    def check_args(self, tool_name: str, args: dict[str, Any]) -> None:
        """Checks that need no upstream call. Raise ``ValidationError`` to reject."""

    def supports(self, tool_name: str) -> bool:
        return tool_name in self.handlers()

    def run(self, context: ToolContext) -> dict[str, Any]:
        handler = self.handlers().get(context.tool_name)
        if handler is None:
            raise NotImplementedError(f"{self.name} has no handler for '{context.tool_name}'.")
        return handler(context)
