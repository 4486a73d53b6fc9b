import base64
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from maiagent.services.errors import CredentialDecryptError, TokenRejected
from maiagent.services.google_oauth import GoogleOAuthService, OAuthGrant
from maiagent.services.integration_repo import (
    ACCESS_TOKEN,
    InMemoryIntegrationRepository,
)
from maiagent.services.token_security import TokenCipher, redact_sensitive_text
from maiagent.services.token_vault import TokenVault


KEY_A = base64.b64encode(b"a" * 32).decode("ascii")
KEY_B = base64.b64encode(b"b" * 32).decode("ascii")
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _FakeRefresher:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[str] = []
        self.error = error

    def refresh_access_token(self, refresh_token):
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        return OAuthGrant(
            access_token="fresh-access",
            refresh_token=None,
            expires_in=3600,
        )


def _vault(refresher=None, key=KEY_A, repo=None):
    return TokenVault(
        repo or InMemoryIntegrationRepository(),
        TokenCipher(key),
        refreshers={"google": refresher} if refresher else None,
        clock=lambda: NOW,
    )


class TokenCipherTests(unittest.TestCase):
    def test_round_trip_and_unique_nonces(self):
        cipher = TokenCipher(KEY_A)
        for value in ["ya29.token", "", "päss/wörd+=="]:
            with self.subTest(value=value):
                first = cipher.encrypt(value)
                second = cipher.encrypt(value)
                self.assertNotEqual(first, second)
                self.assertEqual(cipher.decrypt(first), value)
                self.assertEqual(cipher.decrypt(second), value)

    def test_wrong_key_raises_decrypt_error(self):
        sealed = TokenCipher(KEY_A).encrypt("secret")
        with self.assertRaises(CredentialDecryptError):
            TokenCipher(KEY_B).decrypt(sealed)

    def test_tampered_or_truncated_value_raises(self):
        cipher = TokenCipher(KEY_A)
        with self.assertRaises(CredentialDecryptError):
            cipher.decrypt("not base64!!")
        with self.assertRaises(CredentialDecryptError):
            cipher.decrypt(base64.b64encode(b"short").decode("ascii"))

    def test_key_must_be_32_bytes(self):
        with self.assertRaises(RuntimeError):
            TokenCipher(base64.b64encode(b"x" * 16).decode("ascii"))

    def test_missing_key_disables_cipher(self):
        cipher = TokenCipher(None)
        self.assertFalse(cipher.enabled())
        with self.assertRaises(RuntimeError):
            cipher.encrypt("value")

    def test_redacts_bearer_and_token_fields(self):
        text = redact_sensitive_text("Authorization: Bearer abc.def refresh_token=xyz")
        self.assertNotIn("abc.def", text)
        self.assertNotIn("xyz", text)


class TokenVaultTests(unittest.TestCase):
    def test_token_close_to_expiry_is_refreshed_first(self):
        refresher = _FakeRefresher()
        vault = _vault(refresher)
        vault.store_credentials("user-1", "google", "old-access", "refresh-1", expires_in=120)

        lookup = vault.lookup("user-1", "google")

        self.assertEqual(refresher.calls, ["refresh-1"])
        self.assertTrue(lookup.refreshed)
        self.assertEqual(lookup.access_token, "fresh-access")
        self.assertEqual(lookup.expires_at, NOW + timedelta(hours=1))

    def test_token_with_an_hour_left_is_not_refreshed(self):
        refresher = _FakeRefresher()
        vault = _vault(refresher)
        vault.store_credentials("user-1", "google", "old-access", "refresh-1", expires_in=3600)

        token = vault.get_valid_access_token("user-1", "google")

        self.assertEqual(token, "old-access")
        self.assertEqual(refresher.calls, [])

    def test_refresh_failure_returns_stale_token(self):
        refresher = _FakeRefresher(error=TokenRejected("Reconnect Google."))
        vault = _vault(refresher)
        vault.store_credentials("user-1", "google", "old-access", "refresh-1", expires_in=60)

        lookup = vault.lookup("user-1", "google")

        self.assertTrue(lookup.connected)
        self.assertTrue(lookup.stale)
        self.assertEqual(lookup.access_token, "old-access")

    def test_missing_integration_is_not_connected(self):
        lookup = _vault().lookup("user-1", "monday")
        self.assertFalse(lookup.connected)
        self.assertIsNone(lookup.access_token)

    def test_providers_without_expiry_are_returned_as_stored(self):
        vault = _vault()
        vault.store_credentials("user-1", "monday", "monday-token")
        self.assertEqual(vault.get_valid_access_token("user-1", "monday"), "monday-token")

    def test_tokens_are_sealed_at_rest(self):
        repo = InMemoryIntegrationRepository()
        vault = _vault(repo=repo)
        vault.store_credentials("user-1", "google", "plain-access", expires_in=3600)
        row = repo.get_encrypted_token("user-1", "google", ACCESS_TOKEN)
        self.assertNotIn("plain-access", row.encrypted_value)

    def test_decrypt_failure_is_not_softened(self):
        repo = InMemoryIntegrationRepository()
        _vault(repo=repo).store_credentials("user-1", "google", "token", expires_in=3600)
        with self.assertRaises(CredentialDecryptError):
            _vault(repo=repo, key=KEY_B).lookup("user-1", "google")

    def test_refresh_keeps_existing_refresh_token_when_none_returned(self):
        refresher = _FakeRefresher()
        vault = _vault(refresher)
        vault.store_credentials("user-1", "google", "old", "refresh-1", expires_in=10)
        vault.lookup("user-1", "google", force_refresh=True)
        vault.lookup("user-1", "google", force_refresh=True)
        self.assertEqual(refresher.calls, ["refresh-1", "refresh-1"])


class GoogleOAuthServiceTests(unittest.TestCase):
    def test_connect_account_stores_sealed_credentials(self):
        service = GoogleOAuthService(client_id="cid", client_secret="secret")
        vault = _vault()
        exchange = OAuthGrant(
            access_token="access-1",
            refresh_token="refresh-1",
            scopes=("openid", "https://www.googleapis.com/auth/gmail.modify"),
            expires_in=3599,
        )
        with patch.object(service, "exchange_code", return_value=exchange), patch.object(
            service, "fetch_user_info", return_value={"email": "me@example.com"}
        ):
            lookup = service.connect_account(vault, user_id="user-1", code="auth-code")

        self.assertTrue(lookup.connected)
        self.assertEqual(lookup.provider_email, "me@example.com")
        self.assertTrue(lookup.has_scope("gmail"))
        self.assertEqual(vault.get_valid_access_token("user-1", "google"), "access-1")

    def test_unconfigured_service_refuses_to_refresh(self):
        service = GoogleOAuthService(client_id=None, client_secret=None)
        with self.assertRaises(RuntimeError):
            service.refresh_access_token("refresh-1")

    @patch("maiagent.services.google_oauth.requests.post")
    def test_refresh_parses_grant(self, mock_post):
        mock_post.return_value = MagicMock(
            ok=True,
            status_code=200,
            text="",
            json=MagicMock(
                return_value={
                    "access_token": "fresh",
                    "expires_in": "3599",
                    "scope": "openid https://www.googleapis.com/auth/contacts",
                }
            ),
        )
        grant = GoogleOAuthService("cid", "secret").refresh_access_token(" refresh-1 ")

        self.assertEqual(grant.access_token, "fresh")
        self.assertEqual(grant.expires_in, 3599)
        self.assertIsNone(grant.refresh_token)
        self.assertIn("https://www.googleapis.com/auth/contacts", grant.scopes)
        self.assertEqual(mock_post.call_args.kwargs["data"]["refresh_token"], "refresh-1")

    @patch("maiagent.services.google_oauth.requests.post")
    def test_revoked_refresh_token_is_rejected(self, mock_post):
        mock_post.return_value = MagicMock(
            ok=False,
            status_code=400,
            text="",
            json=MagicMock(
                return_value={"error": "invalid_grant", "error_description": "Token revoked."}
            ),
        )
        with self.assertRaises(TokenRejected):
            GoogleOAuthService("cid", "secret").refresh_access_token("refresh-1")


if __name__ == "__main__":
    unittest.main()
