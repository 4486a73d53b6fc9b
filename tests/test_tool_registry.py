import unittest

from maiagent.services.errors import ToolNotFound, UpstreamError, ValidationError
from maiagent.services.executor import ToolExecutor, ToolRequest
from maiagent.services.security_tiers import ACTION_DEFAULTS
from maiagent.tools import TOOL_ACTIONS, Tool, ToolRegistry, build_default_registry


class _EchoTool(Tool):
    name = "echo"
    provider = "test"

    def handlers(self):
        return {"echo": self.echo, "explode": self.explode, "upstream": self.upstream}

    def echo(self, context):
        return {"success": True, "args": context.args, "user": context.user_id}

    def explode(self, context):
        raise KeyError("boom")

    def upstream(self, context):
        raise UpstreamError("Service is down", status_code=503)


def _schema(required=None, **properties):
    return {"type": "object", "properties": properties, "required": required or []}


def _echo_registry() -> ToolRegistry:
    registry = ToolRegistry()
    tool = _EchoTool()
    registry.register(
        tool=tool,
        name="echo",
        action_id="calendar.list_events",
        label="Echo",
        description="Echo args back.",
        schema=_schema(
            ["text"],
            text={"type": "string"},
            count={"type": "integer"},
            tags={"type": "array", "items": {"type": "string"}},
        ),
    )
    for name in ("explode", "upstream"):
        registry.register(
            tool=tool,
            name=name,
            action_id="calendar.list_events",
            label="Echo",
            description=name,
            schema=_schema(),
        )
    return registry


class DefaultCatalogTests(unittest.TestCase):
    def test_default_catalog_matches_action_map(self):
        registry = build_default_registry()
        self.assertEqual(sorted(registry.list_tools()), sorted(TOOL_ACTIONS))
        for name, action_id in TOOL_ACTIONS.items():
            with self.subTest(name=name):
                self.assertIn(action_id, ACTION_DEFAULTS)
                self.assertEqual(registry.get_definition(name).action_id, action_id)

    def test_openai_tool_shape(self):
        tools = build_default_registry().to_openai_tools()
        self.assertTrue(all(t["type"] == "function" for t in tools))
        names = {t["function"]["name"] for t in tools}
        self.assertIn("send_email", names)
        self.assertIn("monday_get_boards", names)

    def test_calendar_create_escalates_with_attendees(self):
        definition = build_default_registry().get_definition("create_calendar_event")
        self.assertEqual(definition.action_for({}), "calendar.create_event_self")
        self.assertEqual(
            definition.action_for({"attendees": ["a@example.com"]}),
            "calendar.create_event_external",
        )


class ToolRegistryTests(unittest.TestCase):
    def test_unknown_tool(self):
        with self.assertRaises(ToolNotFound):
            ToolRegistry().get_definition("nope")

    def test_rejects_blocked_or_unknown_actions(self):
        registry = ToolRegistry()
        for action_id in ("gmail.empty_trash", "account.delete_account", "made.up"):
            with self.subTest(action_id=action_id):
                with self.assertRaises(ValueError):
                    registry.register(
                        tool=_EchoTool(),
                        name="echo",
                        action_id=action_id,
                        label="Echo",
                        description="",
                        schema=_schema(),
                    )

    def test_rejects_duplicate_names(self):
        registry = _echo_registry()
        with self.assertRaises(ValueError):
            registry.register(
                tool=_EchoTool(),
                name="echo",
                action_id="calendar.list_events",
                label="Echo",
                description="",
                schema=_schema(),
            )

    def test_drift_is_reported(self):
        registry = _echo_registry()
        with self.assertRaises(RuntimeError) as ctx:
            registry.validate({"echo": "calendar.list_events", "ghost": "gmail.list_emails"})
        message = str(ctx.exception)
        self.assertIn("Tool catalog drift", message)
        self.assertIn("'ghost' is mapped to an action but not registered", message)
        self.assertIn("'explode' is missing from the tool action map", message)

    def test_recipients_are_checked_with_the_arguments(self):
        registry = build_default_registry()
        with self.assertRaises(ValidationError) as ctx:
            registry.get_definition("send_email").validate_args(
                {"to": "ana@example.com, bad", "subject": "Hi", "body": "x"}
            )
        self.assertEqual(ctx.exception.details["invalid"], ["bad"])
        with self.assertRaises(ValidationError):
            registry.get_definition("create_calendar_event").validate_args(
                {
                    "summary": "Lunch",
                    "start_time": "2026-03-02",
                    "end_time": "2026-03-02",
                    "attendees": ["nope"],
                }
            )
        clean = registry.get_definition("send_email").validate_args(
            {"to": "ana@example.com", "subject": "Hi", "body": "x"}
        )
        self.assertEqual(clean["to"], "ana@example.com")

    def test_validate_args(self):
        definition = _echo_registry().get_definition("echo")
        clean = definition.validate_args(
            {"text": "hi", "count": 2.0, "tags": ["a"], "extra": 1, "skip": None}
        )
        self.assertEqual(clean, {"text": "hi", "count": 2, "tags": ["a"]})

        with self.assertRaises(ValidationError) as ctx:
            definition.validate_args({"count": 1})
        self.assertEqual(ctx.exception.details["missing"], ["text"])
        with self.assertRaises(ValidationError):
            definition.validate_args({"text": "hi", "count": True})
        with self.assertRaises(ValidationError):
            definition.validate_args({"text": "hi", "tags": [1]})


class ToolExecutorTests(unittest.TestCase):
    def test_results_keep_call_order_and_failures_become_payloads(self):
        executor = ToolExecutor(_echo_registry(), max_workers=3)
        results = executor.execute(
            user_id="user-1",
            requests=[
                ToolRequest("c1", "echo", {"text": "one"}),
                ToolRequest("c2", "explode", {}),
                ToolRequest("c3", "upstream", {}),
                ToolRequest("c4", "ghost", {}),
                ToolRequest("c5", "echo", {}),
            ],
        )

        self.assertEqual([r.call_id for r in results], ["c1", "c2", "c3", "c4", "c5"])
        self.assertTrue(results[0].success)
        self.assertEqual(results[0].payload["args"], {"text": "one"})
        self.assertEqual(results[1].payload["code"], "tool_failed")
        self.assertEqual(results[2].payload["code"], "upstream_error")
        self.assertEqual(results[2].payload["status_code"], 503)
        self.assertEqual(results[3].payload["code"], "unknown_tool")
        self.assertEqual(results[4].payload["code"], "validation_error")
        self.assertEqual(results[0].action_id, "calendar.list_events")


if __name__ == "__main__":
    unittest.main()
