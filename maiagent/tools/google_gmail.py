from __future__ import annotations

import base64
from email.message import EmailMessage
from email.utils import formatdate
from html import escape as html_escape
from html import unescape as html_unescape
import logging
import re
from typing import Any
from urllib import parse as urlparse

from maiagent.services.errors import UpstreamError, ValidationError

from .base import Tool, ToolContext
from .upstream import UpstreamSession
from .validation import clamp_int, parse_email_list


logger = logging.getLogger(__name__)

METADATA_HEADERS = ("From", "To", "Subject", "Date")


class GoogleGmailTool(Tool):
    name = "google_gmail"
    provider = "google"
    GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
    GMAIL_MESSAGES_URL = f"{GMAIL_API_URL}/messages"
    GMAIL_DRAFTS_URL = f"{GMAIL_API_URL}/drafts"
    GMAIL_SEND_AS_URL = f"{GMAIL_API_URL}/settings/sendAs"

    def check_args(self, tool_name: str, args: dict[str, Any]) -> None:
        if tool_name in {"send_email", "create_draft"}:
            _validated_recipients(args)

    def handlers(self):
        return {
            "get_emails": self.get_emails,
            "create_draft": self.create_draft,
            "mark_email_read": self.mark_read,
            "archive_email": self.archive_email,
            "delete_email": self.delete_email,
            "send_email": self.send_email,
        }

    def _session(self, context: ToolContext) -> UpstreamSession:
        return UpstreamSession(context, self.provider, "Gmail")

    def get_emails(self, context: ToolContext) -> dict[str, Any]:
        args = context.args
        max_results = clamp_int(args.get("max_results"), default=10, minimum=1, maximum=25)
        session = self._session(context)
        listing = session.request_json(
            self.GMAIL_MESSAGES_URL,
            params={"q": args.get("query") or None, "maxResults": str(max_results)},
        )
        raw_messages = listing.get("messages", [])
        message_ids = [
            str(row.get("id"))
            for row in raw_messages
            if isinstance(row, dict) and row.get("id")
        ]

        emails: list[dict[str, Any]] = []
        for message_id in message_ids:
            try:
                message = session.request_json(
                    f"{self.GMAIL_MESSAGES_URL}/{urlparse.quote(message_id, safe='')}",
                    params={"format": "metadata", "metadataHeaders": list(METADATA_HEADERS)},
                )
            except UpstreamError:
                logger.warning("Skipping unreadable Gmail message %s", message_id)
                continue
            emails.append(_email_summary(message))
        return {"success": True, "emails": emails, "count": len(emails)}

    def create_draft(self, context: ToolContext) -> dict[str, Any]:
        args = context.args
        to, cc, bcc = _validated_recipients(args)
        raw = _build_rfc822_raw(to, cc, bcc, args["subject"], args["body"])
        payload = self._session(context).request_json(
            self.GMAIL_DRAFTS_URL, method="POST", body={"message": {"raw": raw}}
        )
        return {
            "success": True,
            "draft_id": payload.get("id"),
            "to": to,
            "subject": args["subject"],
        }

    def mark_read(self, context: ToolContext) -> dict[str, Any]:
        message_id = context.args["message_id"]
        self._modify_labels(context, message_id, remove=["UNREAD"])
        return {"success": True, "message_id": message_id, "marked_read": True}

    def archive_email(self, context: ToolContext) -> dict[str, Any]:
        message_id = context.args["message_id"]
        self._modify_labels(context, message_id, remove=["INBOX"])
        return {"success": True, "message_id": message_id, "archived": True}

    def delete_email(self, context: ToolContext) -> dict[str, Any]:
        message_id = context.args["message_id"]
        url = f"{self.GMAIL_MESSAGES_URL}/{urlparse.quote(message_id, safe='')}/trash"
        self._session(context).request_json(url, method="POST")
        return {"success": True, "message_id": message_id, "moved_to_trash": True}

    def send_email(self, context: ToolContext) -> dict[str, Any]:
        args = context.args
        to, cc, bcc = _validated_recipients(args)
        session = self._session(context)
        signature = self._fetch_signature(session)

        body = args["body"]
        if signature:
            html_body = html_escape(body).replace("\n", "<br>")
            raw = _build_rfc822_raw(
                to, cc, bcc, args["subject"], f"{html_body}<br><br>{signature}", html=True
            )
        else:
            raw = _build_rfc822_raw(to, cc, bcc, args["subject"], body)

        payload = session.request_json(
            f"{self.GMAIL_MESSAGES_URL}/send", method="POST", body={"raw": raw}
        )
        logger.info("Sent Gmail message %s for user %s", payload.get("id"), context.user_id)
        return {
            "success": True,
            "message_id": payload.get("id"),
            "to": to,
            "signature_appended": bool(signature),
        }

    def _modify_labels(self, context: ToolContext, message_id: str, remove: list[str]) -> None:
        url = f"{self.GMAIL_MESSAGES_URL}/{urlparse.quote(message_id, safe='')}/modify"
        self._session(context).request_json(
            url, method="POST", body={"removeLabelIds": remove}
        )

    def _fetch_signature(self, session: UpstreamSession) -> str:
        try:
            payload = session.request_json(self.GMAIL_SEND_AS_URL)
        except UpstreamError:
            logger.info("Could not read Gmail sendAs settings; sending without signature")
            return ""
        entries = [e for e in payload.get("sendAs", []) if isinstance(e, dict)]
        if not entries:
            return ""
        primary = next((e for e in entries if e.get("isPrimary") or e.get("isDefault")), entries[0])
        return str(primary.get("signature") or "").strip()


def _validated_recipients(args: dict[str, Any]) -> tuple[list[str], list[str], list[str]]:
    invalid: list[str] = []
    parsed: dict[str, list[str]] = {}
    for field_name in ("to", "cc", "bcc"):
        try:
            parsed[field_name] = parse_email_list(args.get(field_name), field_name)
        except ValidationError as exc:
            invalid.extend(exc.details.get("invalid") or [])
            parsed[field_name] = []
    if invalid:
        raise ValidationError(
            f"Invalid email addresses found: {', '.join(invalid)}. Please correct them.",
            invalid=invalid,
        )
    if not parsed["to"]:
        raise ValidationError("At least one recipient is required in 'to'.")
    return parsed["to"], parsed["cc"], parsed["bcc"]


def _email_summary(message: dict[str, Any]) -> dict[str, Any]:
    headers = _headers_to_map(message)
    snippet, flagged = _sanitize_email_text(html_unescape(str(message.get("snippet") or "")))
    out: dict[str, Any] = {
        "id": message.get("id"),
        "thread_id": message.get("threadId"),
        "from": headers.get("from", ""),
        "to": headers.get("to", ""),
        "subject": headers.get("subject", ""),
        "date": headers.get("date", ""),
        "snippet": snippet,
        "unread": "UNREAD" in (message.get("labelIds") or []),
    }
    if flagged:
        out["content_note"] = "Some lines looked like instructions and were removed."
    return out


def _build_rfc822_raw(
    to: list[str],
    cc: list[str],
    bcc: list[str],
    subject: str,
    body: str,
    html: bool = False,
) -> str:
    msg = EmailMessage()
    msg["To"] = ", ".join(to)
    if cc:
        msg["Cc"] = ", ".join(cc)
    if bcc:
        msg["Bcc"] = ", ".join(bcc)
    msg["Subject"] = (subject or "").strip() or "(no subject)"
    msg["Date"] = formatdate(localtime=True)
    if html:
        msg.set_content(body, subtype="html")
    else:
        msg.set_content(body)
    raw = msg.as_bytes()
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _headers_to_map(message_payload: dict[str, object]) -> dict[str, str]:
    payload = message_payload.get("payload")
    if not isinstance(payload, dict):
        return {}
    raw_headers = payload.get("headers", [])
    if not isinstance(raw_headers, list):
        return {}
    out: dict[str, str] = {}
    for row in raw_headers:
        if not isinstance(row, dict):
            continue
        key = str(row.get("name") or "").strip().lower()
        value = str(row.get("value") or "").strip()
        if key:
            out[key] = value
    return out


def _sanitize_email_text(text: str) -> tuple[str, bool]:
    if not text.strip():
        return ("", False)
    suspicious = [
        "ignore previous instructions",
        "ignore all previous instructions",
        "system prompt",
        "reveal your prompt",
        "developer message",
        "tool output",
        "api key",
        "password",
        "secret token",
    ]
    flagged = False
    safe_lines: list[str] = []
    for line in text.splitlines():
        lowered = line.strip().lower()
        if any(marker in lowered for marker in suspicious):
            flagged = True
            continue
        safe_lines.append(line)
    cleaned = re.sub(r"[ \t]+", " ", "\n".join(safe_lines)).strip()
    if len(cleaned) > 2000:
        cleaned = cleaned[:2000].rstrip() + "..."
    return (cleaned, flagged)
