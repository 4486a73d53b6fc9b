import unittest
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from maiagent import main
from maiagent.services.allowed_domains_repo import InMemoryAllowedDomainsRepository
from maiagent.services.errors import ProviderExhausted
from maiagent.services.orchestrator import ChatOutcome
from maiagent.services.rate_limiter import InMemoryCounterStore, RateLimiter
from maiagent.services.supabase_auth import SupabaseAuth, extract_bearer_token


def _outcome(content="Hi there"):
    return ChatOutcome(
        content=content,
        model_used="llama",
        provider_used="groq",
        latency_ms=12,
        fallback_used=False,
        tool_calls_made=0,
    )


class HealthAndDomainCheckTests(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(main.app)

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_domain_check(self):
        repo = InMemoryAllowedDomainsRepository(["example.com"])
        limiter = RateLimiter(InMemoryCounterStore(), limit=10, window_seconds=60)
        with patch.object(main, "allowed_domains", repo), patch.object(
            main, "domain_check_limiter", limiter
        ):
            allowed = self.client.post("/v1/auth/check-domain", json={"email": "Ana@Example.com"})
            denied = self.client.post("/v1/auth/check-domain", json={"email": "ana@other.org"})
            invalid = self.client.post("/v1/auth/check-domain", json={"email": "nope"})

        self.assertEqual(allowed.json(), {"allowed": True, "domain": "example.com"})
        self.assertEqual(denied.json(), {"allowed": False, "domain": "other.org"})
        self.assertEqual(invalid.status_code, 400)
        self.assertFalse(invalid.json()["allowed"])

    def test_domain_check_rate_limit_uses_forwarded_ip(self):
        limiter = RateLimiter(InMemoryCounterStore(), limit=1, window_seconds=60)
        headers = {"x-forwarded-for": "203.0.113.9, 10.0.0.1"}
        with patch.object(main, "domain_check_limiter", limiter):
            first = self.client.post(
                "/v1/auth/check-domain", json={"email": "a@example.com"}, headers=headers
            )
            second = self.client.post(
                "/v1/auth/check-domain", json={"email": "a@example.com"}, headers=headers
            )

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 429)
        self.assertFalse(second.json()["allowed"])
        self.assertIn("Retry-After", second.headers)
        self.assertGreater(limiter.retry_after_seconds("203.0.113.9"), 0)


class ChatRouteTests(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(main.app)

    def test_anonymous_chat(self):
        with patch.object(main.orchestrator, "handle_chat", return_value=_outcome()) as handle:
            response = self.client.post(
                "/v1/assistant/chat", json={"messages": [{"role": "user", "content": "hi"}]}
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["content"], "Hi there")
        self.assertIsNone(handle.call_args.kwargs["user_id"])

    def test_provider_exhaustion_maps_to_status(self):
        for kind, status in (("rate_limit", 429), ("quota", 402), ("unknown", 500)):
            with self.subTest(kind=kind):
                with patch.object(
                    main.orchestrator,
                    "handle_chat",
                    side_effect=ProviderExhausted("All providers failed.", kind=kind),
                ):
                    response = self.client.post(
                        "/v1/assistant/chat",
                        json={"messages": [{"role": "user", "content": "hi"}]},
                    )
                self.assertEqual(response.status_code, status)
                self.assertEqual(response.json()["kind"], kind)

    def test_request_validation(self):
        response = self.client.post("/v1/assistant/chat", json={"messages": []})
        self.assertEqual(response.status_code, 422)
        response = self.client.post(
            "/v1/assistant/chat",
            json={"messages": [{"role": "user", "content": "hi"}], "temperature": 3},
        )
        self.assertEqual(response.status_code, 422)


class SecuritySettingsRouteTests(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(main.app)

    def test_preferences_require_auth(self):
        response = self.client.get("/v1/security/preferences")
        self.assertEqual(response.status_code, 401)

    def test_override_update_rejects_blocked_defaults(self):
        with patch.object(main, "_resolve_user_id", return_value="api-user-1"):
            response = self.client.patch(
                "/v1/security/preferences",
                json={"action_security_overrides": {"gmail.empty_trash": 5}},
            )
        self.assertEqual(response.status_code, 422)

    def test_override_update_round_trip(self):
        with patch.object(main, "_resolve_user_id", return_value="api-user-2"):
            response = self.client.patch(
                "/v1/security/preferences",
                json={
                    "emoji_confirmations_enabled": False,
                    "action_security_overrides": {"calendar.update_event": "blocked"},
                },
            )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertFalse(body["emoji_confirmations_enabled"])
        self.assertEqual(body["action_security_overrides"], {"calendar.update_event": "blocked"})

    def test_phrase_change_requires_valid_code(self):
        user_id = "api-user-3"
        payload = {"phrase_color": "purple", "phrase_object": "elephant", "code": "000000"}
        with patch.object(main, "_resolve_user_id", return_value=user_id):
            rejected = self.client.put("/v1/security/phrase", json=payload)
            issued = main.step_up.create_code(user_id, "account.change_security_phrase")
            accepted = self.client.put(
                "/v1/security/phrase", json=dict(payload, code=issued.code)
            )

        self.assertEqual(rejected.status_code, 403)
        self.assertEqual(accepted.status_code, 200)
        self.assertTrue(accepted.json()["has_security_phrase"])
        self.assertNotIn("purple", accepted.text)

    def test_unknown_integration_provider(self):
        with patch.object(main, "_resolve_user_id", return_value="api-user-4"):
            response = self.client.get("/v1/integrations/dropbox/status")
            status = self.client.get("/v1/integrations/monday/status")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(status.json()["connected"], False)


class SupabaseAuthTests(unittest.TestCase):
    def test_extract_bearer_token(self):
        self.assertEqual(extract_bearer_token("Bearer abc"), "abc")
        self.assertEqual(extract_bearer_token("bearer  abc "), "abc")
        self.assertIsNone(extract_bearer_token("Basic abc"))
        self.assertIsNone(extract_bearer_token("Bearer "))
        self.assertIsNone(extract_bearer_token(None))

    @patch("maiagent.services.supabase_auth.requests.get")
    def test_user_id_comes_from_auth_endpoint(self, mock_get):
        mock_get.return_value = MagicMock(
            ok=True, status_code=200, json=MagicMock(return_value={"id": " user-9 "})
        )
        auth = SupabaseAuth("https://proj.supabase.co/", "anon")

        self.assertEqual(auth.require_user_id("Bearer session"), "user-9")
        self.assertEqual(mock_get.call_args.args[0], "https://proj.supabase.co/auth/v1/user")
        self.assertEqual(mock_get.call_args.kwargs["headers"]["apikey"], "anon")

    @patch("maiagent.services.supabase_auth.requests.get")
    def test_rejected_bearer_is_anonymous_for_chat(self, mock_get):
        mock_get.return_value = MagicMock(ok=False, status_code=401, text="")
        auth = SupabaseAuth("https://proj.supabase.co", "anon")

        with self.assertRaises(ValueError):
            auth.require_user_id("Bearer expired")
        self.assertIsNone(auth.optional_user_id("Bearer expired"))
        self.assertIsNone(auth.optional_user_id(None))

    def test_unconfigured_auth_is_a_provider_error(self):
        with self.assertRaises(RuntimeError):
            SupabaseAuth(None, None).require_user_id("Bearer session")


if __name__ == "__main__":
    unittest.main()
