from __future__ import annotations

from datetime import datetime, timedelta, timezone
import uuid
from typing import Any
from urllib import parse as urlparse

from maiagent.services.errors import ValidationError

from .base import Tool, ToolContext
from .upstream import UpstreamSession
from .validation import clamp_int, parse_email_list


class GoogleCalendarTool(Tool):
    name = "google_calendar"
    provider = "google"
    CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3"
    CALENDAR_EVENTS_URL = f"{CALENDAR_API_URL}/calendars/primary/events"
    FREEBUSY_URL = f"{CALENDAR_API_URL}/freeBusy"

    def check_args(self, tool_name: str, args: dict[str, Any]) -> None:
        if tool_name == "create_calendar_event":
            parse_email_list(args.get("attendees"), field_name="attendees")

    def handlers(self):
        return {
            "get_calendar_events": self.get_events,
            "get_free_busy": self.get_free_busy,
            "create_calendar_event": self.create_event,
            "update_calendar_event": self.update_event,
            "delete_calendar_event": self.delete_event,
        }

    def _session(self, context: ToolContext) -> UpstreamSession:
        return UpstreamSession(context, self.provider, "Google Calendar")

    def get_events(self, context: ToolContext) -> dict[str, Any]:
        args = context.args
        now = datetime.now(timezone.utc)
        max_results = clamp_int(args.get("max_results"), default=10, minimum=1, maximum=50)
        payload = self._session(context).request_json(
            self.CALENDAR_EVENTS_URL,
            params={
                "timeMin": args.get("time_min") or now.isoformat(),
                "timeMax": args.get("time_max") or (now + timedelta(days=7)).isoformat(),
                "maxResults": str(max_results),
                "singleEvents": "true",
                "orderBy": "startTime",
                "q": args.get("query") or None,
            },
        )
        raw_items = payload.get("items", [])
        events = [_event_summary(row) for row in raw_items if isinstance(row, dict)]
        return {"success": True, "events": events, "count": len(events)}

    def get_free_busy(self, context: ToolContext) -> dict[str, Any]:
        args = context.args
        payload = self._session(context).request_json(
            self.FREEBUSY_URL,
            method="POST",
            body={
                "timeMin": args["time_min"],
                "timeMax": args["time_max"],
                "items": [{"id": "primary"}],
            },
        )
        calendars = payload.get("calendars")
        primary = calendars.get("primary", {}) if isinstance(calendars, dict) else {}
        busy = primary.get("busy", []) if isinstance(primary, dict) else []
        return {
            "success": True,
            "busy": [slot for slot in busy if isinstance(slot, dict)],
            "time_min": args["time_min"],
            "time_max": args["time_max"],
        }

    def create_event(self, context: ToolContext) -> dict[str, Any]:
        args = context.args
        attendees = parse_email_list(args.get("attendees"), field_name="attendees")
        event: dict[str, Any] = {
            "summary": args["summary"],
            "start": _time_field(args["start_time"], args.get("timezone")),
            "end": _time_field(args["end_time"], args.get("timezone")),
        }
        if args.get("description"):
            event["description"] = args["description"]
        if args.get("location"):
            event["location"] = args["location"]
        if attendees:
            event["attendees"] = [{"email": email} for email in attendees]

        params: dict[str, Any] = {}
        if attendees:
            params["sendUpdates"] = "all"
        if args.get("add_video_call"):
            event["conferenceData"] = {
                "createRequest": {
                    "requestId": uuid.uuid4().hex,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
            params["conferenceDataVersion"] = "1"

        created = self._session(context).request_json(
            self.CALENDAR_EVENTS_URL, method="POST", body=event, params=params or None
        )
        return {"success": True, "event": _event_summary(created)}

    def update_event(self, context: ToolContext) -> dict[str, Any]:
        args = context.args
        session = self._session(context)
        url = f"{self.CALENDAR_EVENTS_URL}/{urlparse.quote(args['event_id'], safe='')}"
        existing = session.request_json(url)

        updated = dict(existing)
        if args.get("summary"):
            updated["summary"] = args["summary"]
        if args.get("description") is not None:
            updated["description"] = args["description"]
        if args.get("location") is not None:
            updated["location"] = args["location"]
        if args.get("start_time"):
            updated["start"] = _time_field(args["start_time"], args.get("timezone"))
        if args.get("end_time"):
            updated["end"] = _time_field(args["end_time"], args.get("timezone"))

        saved = session.request_json(url, method="PUT", body=updated)
        return {"success": True, "event": _event_summary(saved)}

    def delete_event(self, context: ToolContext) -> dict[str, Any]:
        event_id = context.args["event_id"]
        url = f"{self.CALENDAR_EVENTS_URL}/{urlparse.quote(event_id, safe='')}"
        self._session(context).request_json(url, method="DELETE")
        return {"success": True, "deleted_event_id": event_id}


def _time_field(value: str, tz_name: str | None) -> dict[str, str]:
    text = (value or "").strip()
    if not text:
        raise ValidationError("Event time is required.")
    if len(text) == 10 and text[4] == "-" and text[7] == "-":
        return {"date": text}
    field = {"dateTime": text}
    if tz_name:
        field["timeZone"] = tz_name
    return field


def _event_summary(row: dict[str, Any]) -> dict[str, Any]:
    attendees = row.get("attendees")
    out: dict[str, Any] = {
        "id": row.get("id"),
        "summary": str(row.get("summary") or "Untitled event").strip(),
        "start": _event_time_label(row.get("start")),
        "end": _event_time_label(row.get("end")),
        "location": row.get("location") or None,
        "link": row.get("htmlLink") or None,
    }
    if isinstance(attendees, list):
        out["attendees"] = [
            str(a.get("email")) for a in attendees if isinstance(a, dict) and a.get("email")
        ]
    meet = row.get("hangoutLink")
    if meet:
        out["video_call"] = meet
    return out


def _event_time_label(start: object) -> str:
    if not isinstance(start, dict):
        return "Time unavailable"
    date_time = start.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        normalized = date_time.strip()
        if normalized.endswith("Z"):
            normalized = normalized[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
            return parsed.strftime("%a, %b %d at %I:%M %p").replace(" 0", " ")
        except ValueError:
            return date_time.strip()
    date_only = start.get("date")
    if isinstance(date_only, str) and date_only.strip():
        try:
            parsed = datetime.fromisoformat(date_only.strip())
            return parsed.strftime("%a, %b %d") + " (all day)"
        except ValueError:
            return f"{date_only.strip()} (all day)"
    return "Time unavailable"
