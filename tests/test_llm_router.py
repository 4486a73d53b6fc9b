import unittest
from unittest.mock import MagicMock, patch

import requests

from maiagent.services.llm_router import (
    LlmRouter,
    ProviderConfig,
    classify_failure,
    to_gemini_contents,
)


def _response(status: int, payload=None, text: str = ""):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.text = text
    response.json.return_value = payload
    return response


def _router(default: str = "groq") -> LlmRouter:
    return LlmRouter(
        {
            "groq": ProviderConfig("groq", "llama", "groq-key", 5),
            "openai": ProviderConfig("openai", "gpt", "openai-key", 5),
            "gemini": ProviderConfig("gemini", "gemini-flash", "gemini-key", 5),
        },
        default_provider=default,
    )


def _chat_payload(content="hi", tool_calls=None, model="llama"):
    message = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {"model": model, "choices": [{"message": message}]}


class LlmRouterTests(unittest.TestCase):
    def test_chain_puts_requested_provider_first(self):
        router = _router()
        self.assertEqual(router.chain(), ["groq", "openai", "gemini"])
        self.assertEqual(router.chain("openai"), ["openai", "groq", "gemini"])
        self.assertEqual(router.chain("nope"), ["groq", "openai", "gemini"])

    @patch("maiagent.services.llm_router.requests.post")
    def test_primary_success_is_not_a_fallback(self, mock_post):
        mock_post.return_value = _response(200, _chat_payload("Hello there"))
        result = _router().complete([{"role": "user", "content": "hi"}])

        self.assertIsNone(result.error)
        self.assertEqual(result.content, "Hello there")
        self.assertEqual(result.provider_used, "groq")
        self.assertFalse(result.fallback_used)
        self.assertEqual(mock_post.call_count, 1)

    @patch("maiagent.services.llm_router.requests.post")
    def test_timeout_falls_back_to_next_provider(self, mock_post):
        mock_post.side_effect = [
            requests.Timeout("read timed out"),
            _response(200, _chat_payload("From openai", model="gpt")),
        ]
        result = _router().complete([{"role": "user", "content": "hi"}])

        self.assertEqual(result.provider_used, "openai")
        self.assertTrue(result.fallback_used)
        self.assertEqual(result.attempted, ("groq", "openai"))

    @patch("maiagent.services.llm_router.requests.post")
    def test_exhaustion_tries_every_provider_and_reports_kind(self, mock_post):
        mock_post.side_effect = [
            _response(429, text="rate limit reached"),
            _response(500, text="boom"),
            _response(503, text="unavailable"),
        ]
        result = _router().complete([{"role": "user", "content": "hi"}])

        self.assertIsNotNone(result.error)
        self.assertEqual(result.error_kind, "rate_limit")
        self.assertEqual(result.attempted, ("groq", "openai", "gemini"))
        self.assertTrue(result.fallback_used)
        self.assertEqual(mock_post.call_count, 3)

    @patch("maiagent.services.llm_router.requests.post")
    def test_tool_calls_are_parsed(self, mock_post):
        mock_post.return_value = _response(
            200,
            _chat_payload(
                "",
                tool_calls=[
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "get_emails", "arguments": '{"max_results": 3}'},
                    }
                ],
            ),
        )
        tools = [{"type": "function", "function": {"name": "get_emails"}}]
        result = _router().complete([{"role": "user", "content": "mail?"}], tools=tools)

        self.assertEqual(len(result.tool_calls), 1)
        self.assertEqual(result.tool_calls[0].name, "get_emails")
        self.assertEqual(mock_post.call_args.kwargs["json"]["tools"], tools)

    @patch("maiagent.services.llm_router.requests.post")
    def test_gemini_is_called_without_tools(self, mock_post):
        mock_post.return_value = _response(
            200, {"candidates": [{"content": {"parts": [{"text": "Gemini says hi"}]}}]}
        )
        tools = [{"type": "function", "function": {"name": "get_emails"}}]
        result = _router("gemini").complete(
            [{"role": "system", "content": "be nice"}, {"role": "user", "content": "hi"}],
            tools=tools,
        )

        self.assertEqual(result.content, "Gemini says hi")
        self.assertEqual(result.tool_calls, [])
        body = mock_post.call_args.kwargs["json"]
        self.assertNotIn("tools", body)
        self.assertEqual(body["systemInstruction"]["parts"][0]["text"], "be nice")

    def test_missing_key_counts_as_provider_failure(self):
        router = LlmRouter({"groq": ProviderConfig("groq", "llama", None, 5)})
        result = router.complete([{"role": "user", "content": "hi"}])
        self.assertIn("GROQ_API_KEY", result.error)

    def test_classify_failure(self):
        self.assertEqual(classify_failure(402), "quota")
        self.assertEqual(classify_failure(400, "insufficient_quota"), "quota")
        self.assertEqual(classify_failure(429), "rate_limit")
        self.assertEqual(classify_failure(500, "oops"), "unknown")

    def test_gemini_contents_flatten_tool_turns(self):
        system, contents = to_gemini_contents(
            [
                {"role": "system", "content": "rules"},
                {"role": "user", "content": "send it"},
                {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [
                        {"id": "c1", "function": {"name": "send_email", "arguments": "{}"}}
                    ],
                },
                {"role": "tool", "tool_call_id": "c1", "content": '{"success": true}'},
            ]
        )
        self.assertEqual(system, "rules")
        self.assertEqual([c["role"] for c in contents], ["user", "model", "user"])
        self.assertIn("send_email", contents[1]["parts"][0]["text"])


if __name__ == "__main__":
    unittest.main()
