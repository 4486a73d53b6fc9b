from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from maiagent.services.errors import ToolNotFound, ValidationError
from maiagent.services.security_tiers import ACTION_DEFAULTS, is_never_executable

from .base import Tool


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    action_id: str
    label: str
    description: str
    tool: Tool
    schema: dict[str, object]
    # When this argument is non-empty the call is classified as escalated_action_id.
    escalate_on: str | None = None
    escalated_action_id: str | None = None

    def action_for(self, args: dict[str, Any]) -> str:
        if self.escalate_on and self.escalated_action_id and args.get(self.escalate_on):
            return self.escalated_action_id
        return self.action_id

    def validate_args(self, args: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(args, dict):
            raise ValidationError(f"Tool '{self.name}' args must be an object.")

        required = self.schema.get("required")
        required_fields = required if isinstance(required, list) else []
        missing = [
            field
            for field in required_fields
            if isinstance(field, str) and (field not in args or args[field] in (None, ""))
        ]
        if missing:
            raise ValidationError(
                f"Tool '{self.name}' missing required arg(s): {', '.join(missing)}.",
                missing=missing,
            )

        properties = self.schema.get("properties")
        if not isinstance(properties, dict):
            clean = dict(args)
            self.tool.check_args(self.name, clean)
            return clean

        clean: dict[str, Any] = {}
        for key, value in args.items():
            prop = properties.get(key)
            if not isinstance(prop, dict) or value is None:
                continue
            clean[key] = _check_type(self.name, key, prop, value)
        self.tool.check_args(self.name, clean)
        return clean

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.schema,
            },
        }


def _check_type(tool_name: str, key: str, prop: dict[str, Any], value: Any) -> Any:
    expected = prop.get("type")
    if expected == "string":
        if not isinstance(value, str):
            raise ValidationError(f"Tool '{tool_name}' arg '{key}' must be a string.")
        return value
    if expected == "integer":
        if isinstance(value, bool) or not isinstance(value, int):
            if isinstance(value, float) and value.is_integer():
                return int(value)
            raise ValidationError(f"Tool '{tool_name}' arg '{key}' must be an integer.")
        return value
    if expected == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"Tool '{tool_name}' arg '{key}' must be a number.")
        return value
    if expected == "boolean":
        if not isinstance(value, bool):
            raise ValidationError(f"Tool '{tool_name}' arg '{key}' must be a boolean.")
        return value
    if expected == "object":
        if not isinstance(value, dict):
            raise ValidationError(f"Tool '{tool_name}' arg '{key}' must be an object.")
        return value
    if expected == "array":
        if not isinstance(value, list):
            raise ValidationError(f"Tool '{tool_name}' arg '{key}' must be an array.")
        items = prop.get("items")
        if isinstance(items, dict) and items.get("type") == "string":
            if not all(isinstance(item, str) for item in value):
                raise ValidationError(
                    f"Tool '{tool_name}' arg '{key}' must be an array of strings."
                )
        return value
    return value


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(
        self,
        *,
        tool: Tool,
        name: str,
        action_id: str,
        label: str,
        description: str,
        schema: dict[str, object],
        escalate_on: str | None = None,
        escalated_action_id: str | None = None,
    ) -> None:
        for candidate in filter(None, (action_id, escalated_action_id)):
            descriptor = ACTION_DEFAULTS.get(candidate)
            if descriptor is None:
                raise ValueError(f"Tool '{name}' maps to unknown action '{candidate}'.")
            if is_never_executable(descriptor.default_tier):
                raise ValueError(
                    f"Tool '{name}' maps to '{candidate}', which can never run from chat."
                )
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered.")
        self._tools[name] = ToolDefinition(
            name=name,
            action_id=action_id,
            label=label,
            description=description,
            tool=tool,
            schema=schema,
            escalate_on=escalate_on,
            escalated_action_id=escalated_action_id,
        )

    def get_definition(self, name: str) -> ToolDefinition:
        try:
            return self._tools[name]
        except KeyError as exc:
            raise ToolNotFound(f"Unknown tool: {name}") from exc

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def to_openai_tools(self) -> list[dict[str, Any]]:
        return [definition.to_openai_tool() for definition in self._tools.values()]

    def validate(self, expected_actions: dict[str, str]) -> None:
        """Fail fast when catalog entries, handlers and action mappings disagree."""
        problems: list[str] = []
        for name, definition in self._tools.items():
            if not definition.tool.supports(name):
                problems.append(f"'{name}' has no handler in {definition.tool.name}")
            expected = expected_actions.get(name)
            if expected is None:
                problems.append(f"'{name}' is missing from the tool action map")
            elif expected != definition.action_id:
                problems.append(
                    f"'{name}' is registered as {definition.action_id} but mapped to {expected}"
                )
        for name in expected_actions:
            if name not in self._tools:
                problems.append(f"'{name}' is mapped to an action but not registered")
        seen_tools = {id(d.tool): d.tool for d in self._tools.values()}
        for tool in seen_tools.values():
            for handler_name in tool.handlers():
                if handler_name not in self._tools:
                    problems.append(
                        f"{tool.name} handles '{handler_name}' but it is not in the catalog"
                    )
        if problems:
            raise RuntimeError("Tool catalog drift: " + "; ".join(sorted(problems)))
