import base64
import io
import json
import unittest
from email import message_from_bytes
from unittest.mock import patch
from urllib import error as urlerror

from maiagent.services.errors import (
    MissingScope,
    NotConnected,
    TokenRejected,
    UpstreamError,
    ValidationError,
)
from maiagent.services.security_tiers import UserSecurityPreferences
from maiagent.services.token_vault import VaultLookup
from maiagent.tools import (
    AccountTool,
    GoogleCalendarTool,
    GoogleContactsTool,
    GoogleGmailTool,
    MondayTool,
    ToolContext,
)

URLOPEN = "maiagent.tools.upstream.urlrequest.urlopen"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/gmail.modify",
]


class _FakeVault:
    def __init__(self, token="token-1", scopes=None, connected=True, refreshed_token=None):
        self.token = token
        self.scopes = GOOGLE_SCOPES if scopes is None else scopes
        self.connected = connected
        self.refreshed_token = refreshed_token
        self.lookups: list[bool] = []

    def lookup(self, user_id, provider, force_refresh=False):
        _ = user_id
        self.lookups.append(force_refresh)
        if not self.connected:
            return VaultLookup(provider=provider, connected=False)
        if force_refresh and self.refreshed_token:
            return VaultLookup(
                provider=provider,
                connected=True,
                access_token=self.refreshed_token,
                scopes=list(self.scopes),
                refreshed=True,
            )
        return VaultLookup(
            provider=provider,
            connected=True,
            access_token=self.token,
            scopes=list(self.scopes),
            stale=force_refresh,
        )


class _FakeResponse:
    def __init__(self, payload):
        self._raw = json.dumps(payload).encode("utf-8") if payload is not None else b""

    def read(self):
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _http_error(code, payload=None):
    body = json.dumps(payload or {"error": {"message": f"status {code}"}}).encode("utf-8")
    return urlerror.HTTPError("https://example.test", code, "error", {}, io.BytesIO(body))


class _Upstream:
    """Replays canned responses and records each outgoing request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, req, timeout=None):
        _ = timeout
        self.requests.append(req)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return _FakeResponse(item)

    def body(self, index):
        return json.loads(self.requests[index].data.decode("utf-8"))


def _context(tool_name, args, vault=None, preferences=None):
    return ToolContext(
        user_id="user-1",
        tool_name=tool_name,
        args=args,
        vault=vault if vault is not None else _FakeVault(),
        preferences=preferences,
    )


class UpstreamSessionTests(unittest.TestCase):
    def test_401_forces_one_refresh_then_retries(self):
        vault = _FakeVault(refreshed_token="token-2")
        upstream = _Upstream(_http_error(401), {"items": []})
        with patch(URLOPEN, upstream):
            result = GoogleCalendarTool().run(_context("get_calendar_events", {}, vault))

        self.assertTrue(result["success"])
        self.assertEqual(vault.lookups, [False, True])
        self.assertEqual(upstream.requests[0].get_header("Authorization"), "Bearer token-1")
        self.assertEqual(upstream.requests[1].get_header("Authorization"), "Bearer token-2")

    def test_second_401_is_token_rejected(self):
        vault = _FakeVault(refreshed_token="token-2")
        upstream = _Upstream(_http_error(401), _http_error(401))
        with patch(URLOPEN, upstream), self.assertRaises(TokenRejected):
            GoogleCalendarTool().run(_context("get_calendar_events", {}, vault))

    def test_401_without_a_refresh_is_token_rejected(self):
        upstream = _Upstream(_http_error(401))
        with patch(URLOPEN, upstream), self.assertRaises(TokenRejected):
            GoogleCalendarTool().run(_context("get_calendar_events", {}))
        self.assertEqual(len(upstream.requests), 1)

    def test_other_errors_become_upstream_errors(self):
        upstream = _Upstream(_http_error(500, {"error": {"message": "backend exploded"}}))
        with patch(URLOPEN, upstream), self.assertRaises(UpstreamError) as ctx:
            GoogleCalendarTool().run(_context("get_calendar_events", {}))
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertIn("backend exploded", ctx.exception.message)

    def test_not_connected(self):
        with self.assertRaises(NotConnected):
            GoogleCalendarTool().run(
                _context("get_calendar_events", {}, _FakeVault(connected=False))
            )


class GoogleCalendarToolTests(unittest.TestCase):
    def test_create_with_attendees_sends_invitations(self):
        upstream = _Upstream(
            {
                "id": "evt-1",
                "summary": "Design review",
                "start": {"dateTime": "2026-03-02T15:00:00+00:00"},
                "end": {"dateTime": "2026-03-02T16:00:00+00:00"},
                "attendees": [{"email": "ana@example.com"}],
            }
        )
        args = {
            "summary": "Design review",
            "start_time": "2026-03-02T15:00:00Z",
            "end_time": "2026-03-02T16:00:00Z",
            "attendees": ["ana@example.com"],
            "add_video_call": True,
        }
        with patch(URLOPEN, upstream):
            result = GoogleCalendarTool().run(_context("create_calendar_event", args))

        req = upstream.requests[0]
        body = upstream.body(0)
        self.assertEqual(req.get_method(), "POST")
        self.assertIn("sendUpdates=all", req.full_url)
        self.assertIn("conferenceDataVersion=1", req.full_url)
        self.assertEqual(body["attendees"], [{"email": "ana@example.com"}])
        self.assertEqual(
            body["conferenceData"]["createRequest"]["conferenceSolutionKey"]["type"],
            "hangoutsMeet",
        )
        self.assertEqual(result["event"]["attendees"], ["ana@example.com"])

    def test_invalid_attendee_is_rejected_before_any_call(self):
        upstream = _Upstream()
        args = {
            "summary": "Lunch",
            "start_time": "2026-03-02",
            "end_time": "2026-03-02",
            "attendees": ["not-an-email"],
        }
        with patch(URLOPEN, upstream), self.assertRaises(ValidationError) as ctx:
            GoogleCalendarTool().run(_context("create_calendar_event", args))
        self.assertEqual(ctx.exception.details["invalid"], ["not-an-email"])
        self.assertEqual(upstream.requests, [])

    def test_update_merges_into_existing_event(self):
        existing = {"id": "evt-1", "summary": "Old", "location": "Room 1"}
        upstream = _Upstream(existing, dict(existing, summary="New"))
        with patch(URLOPEN, upstream):
            GoogleCalendarTool().run(
                _context("update_calendar_event", {"event_id": "evt-1", "summary": "New"})
            )
        self.assertEqual(upstream.requests[1].get_method(), "PUT")
        self.assertEqual(upstream.body(1), {"id": "evt-1", "summary": "New", "location": "Room 1"})


class GoogleGmailToolTests(unittest.TestCase):
    def test_invalid_recipients_are_listed_together(self):
        upstream = _Upstream()
        args = {"to": "ok@example.com, bad", "cc": "also bad@", "subject": "Hi", "body": "x"}
        with patch(URLOPEN, upstream), self.assertRaises(ValidationError) as ctx:
            GoogleGmailTool().run(_context("send_email", args))
        self.assertEqual(ctx.exception.details["invalid"], ["bad", "also bad@"])
        self.assertEqual(upstream.requests, [])

    def test_send_appends_signature_as_html(self):
        upstream = _Upstream(
            {"sendAs": [{"isPrimary": True, "signature": "<b>Sam</b>"}]},
            {"id": "msg-1"},
        )
        args = {"to": "ana@example.com", "subject": "Notes", "body": "Line one\nLine two"}
        with patch(URLOPEN, upstream):
            result = GoogleGmailTool().run(_context("send_email", args))

        self.assertTrue(result["signature_appended"])
        self.assertTrue(upstream.requests[1].full_url.endswith("/messages/send"))
        raw = upstream.body(1)["raw"]
        message = message_from_bytes(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))
        self.assertEqual(message["To"], "ana@example.com")
        self.assertEqual(message.get_content_type(), "text/html")
        html = message.get_payload(decode=True).decode("utf-8")
        self.assertIn("Line one<br>Line two", html)
        self.assertIn("<b>Sam</b>", html)

    def test_get_emails_skips_unreadable_messages(self):
        upstream = _Upstream(
            {"messages": [{"id": "m1"}, {"id": "m2"}]},
            _http_error(404),
            {
                "id": "m2",
                "snippet": "See you &amp; bring snacks",
                "labelIds": ["INBOX", "UNREAD"],
                "payload": {"headers": [{"name": "Subject", "value": "Party"}]},
            },
        )
        with patch(URLOPEN, upstream):
            result = GoogleGmailTool().run(_context("get_emails", {"max_results": 5}))

        self.assertEqual(result["count"], 1)
        self.assertEqual(result["emails"][0]["subject"], "Party")
        self.assertTrue(result["emails"][0]["unread"])
        self.assertIn("&", result["emails"][0]["snippet"])

    def test_archive_removes_inbox_label(self):
        upstream = _Upstream({})
        with patch(URLOPEN, upstream):
            GoogleGmailTool().run(_context("archive_email", {"message_id": "m1"}))
        self.assertTrue(upstream.requests[0].full_url.endswith("/messages/m1/modify"))
        self.assertEqual(upstream.body(0), {"removeLabelIds": ["INBOX"]})


class GoogleContactsToolTests(unittest.TestCase):
    def test_requires_contacts_scope(self):
        with self.assertRaises(MissingScope):
            GoogleContactsTool().run(_context("get_contacts", {}))

    def test_search_with_scope(self):
        vault = _FakeVault(scopes=["https://www.googleapis.com/auth/contacts"])
        upstream = _Upstream(
            {
                "results": [
                    {
                        "person": {
                            "resourceName": "people/c1",
                            "names": [{"displayName": "Ana Lopez"}],
                            "emailAddresses": [{"value": "ana@example.com"}],
                        }
                    }
                ]
            }
        )
        with patch(URLOPEN, upstream):
            result = GoogleContactsTool().run(
                _context("search_contacts", {"query": "ana"}, vault)
            )
        self.assertEqual(result["count"], 1)
        self.assertIn("people:searchContacts", upstream.requests[0].full_url)


class MondayToolTests(unittest.TestCase):
    def test_graphql_errors_raise(self):
        upstream = _Upstream({"errors": [{"message": "Board not accessible"}]})
        with patch(URLOPEN, upstream), self.assertRaises(UpstreamError) as ctx:
            MondayTool().run(_context("monday_get_items", {"board_id": "123"}))
        self.assertIn("Board not accessible", ctx.exception.message)

    def test_raw_token_and_api_version_headers(self):
        upstream = _Upstream({"data": {"boards": [{"id": "1", "name": "Roadmap"}]}})
        with patch(URLOPEN, upstream):
            result = MondayTool().run(_context("monday_get_boards", {}))

        req = upstream.requests[0]
        self.assertEqual(req.get_header("Authorization"), "token-1")
        self.assertEqual(req.get_header("Api-version"), "2024-01")
        self.assertEqual(result["count"], 1)

    def test_status_string_is_sent_as_label(self):
        upstream = _Upstream({"data": {"change_column_value": {"id": "9"}}})
        args = {"board_id": "1", "item_id": "9", "column_id": "status", "value": "Done"}
        with patch(URLOPEN, upstream):
            MondayTool().run(_context("monday_change_column_value", args))
        self.assertEqual(json.loads(upstream.body(0)["variables"]["value"]), {"label": "Done"})

    def test_board_listing_stops_at_page_cap(self):
        full_page = {"data": {"boards": [{"id": "1", "name": "Roadmap"}]}}
        upstream = _Upstream(full_page, full_page, full_page)
        with patch(URLOPEN, upstream), patch.object(MondayTool, "BOARD_PAGE_SIZE", 1), patch.object(
            MondayTool, "MAX_BOARD_PAGES", 3
        ):
            result = MondayTool().run(_context("monday_get_boards", {}))

        self.assertEqual(len(upstream.requests), 3)
        self.assertEqual(result["count"], 3)
        self.assertTrue(result["truncated"])

    def test_non_numeric_ids_are_rejected(self):
        with self.assertRaises(ValidationError):
            MondayTool().run(_context("monday_delete_item", {"item_id": "abc"}))


class AccountToolTests(unittest.TestCase):
    def test_preferences_never_expose_the_phrase(self):
        prefs = UserSecurityPreferences(
            user_id="user-1",
            security_phrase_color="purple",
            security_phrase_object="elephant",
            action_security_overrides={"calendar.update_event": 2},
        )
        result = AccountTool().run(_context("get_user_preferences", {}, preferences=prefs))

        view = result["preferences"]
        self.assertTrue(view["has_security_phrase"])
        self.assertFalse(view["locked_out"])
        self.assertEqual(view["action_security_overrides"], {"calendar.update_event": 2})
        self.assertNotIn("purple", json.dumps(result))


if __name__ == "__main__":
    unittest.main()
