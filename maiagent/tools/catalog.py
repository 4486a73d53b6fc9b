from __future__ import annotations

from .account import AccountTool
from .google_calendar import GoogleCalendarTool
from .google_contacts import GoogleContactsTool
from .google_gmail import GoogleGmailTool
from .monday import MondayTool
from .registry import ToolRegistry


TOOL_ACTIONS: dict[str, str] = {
    "get_calendar_events": "calendar.list_events",
    "get_free_busy": "calendar.get_freebusy",
    "create_calendar_event": "calendar.create_event_self",
    "update_calendar_event": "calendar.update_event",
    "delete_calendar_event": "calendar.delete_event",
    "get_emails": "gmail.list_emails",
    "create_draft": "gmail.create_draft",
    "mark_email_read": "gmail.mark_read",
    "archive_email": "gmail.archive_email",
    "delete_email": "gmail.delete_email",
    "send_email": "gmail.send_external",
    "get_contacts": "contacts.list_contacts",
    "search_contacts": "contacts.search_contacts",
    "create_contact": "contacts.create_contact",
    "update_contact": "contacts.update_contact",
    "delete_contact": "contacts.delete_contact",
    "monday_get_boards": "monday.get_boards",
    "monday_get_items": "monday.get_items",
    "monday_create_item": "monday.create_item",
    "monday_change_column_value": "monday.change_status",
    "monday_add_update": "monday.add_comment",
    "monday_archive_item": "monday.archive_item",
    "monday_delete_item": "monday.delete_item",
    "get_user_preferences": "account.view_settings",
}


def _string(description: str) -> dict[str, str]:
    return {"type": "string", "description": description}


def _integer(description: str) -> dict[str, str]:
    return {"type": "integer", "description": description}


def _object(required: list[str], **properties: dict[str, object]) -> dict[str, object]:
    return {"type": "object", "properties": properties, "required": required}


def _register_calendar(registry: ToolRegistry) -> None:
    tool = GoogleCalendarTool()
    registry.register(
        tool=tool,
        name="get_calendar_events",
        action_id=TOOL_ACTIONS["get_calendar_events"],
        label="Google Calendar",
        description=(
            "List events from the user's primary Google Calendar. Defaults to the next "
            "7 days when no range is given."
        ),
        schema=_object(
            [],
            time_min=_string("Range start, ISO 8601 (e.g. 2025-01-15T00:00:00Z)."),
            time_max=_string("Range end, ISO 8601."),
            query=_string("Optional free-text filter."),
            max_results=_integer("Maximum events to return (default 10)."),
        ),
    )
    registry.register(
        tool=tool,
        name="get_free_busy",
        action_id=TOOL_ACTIONS["get_free_busy"],
        label="Google Calendar",
        description="Return busy time blocks on the primary calendar between two times.",
        schema=_object(
            ["time_min", "time_max"],
            time_min=_string("Range start, ISO 8601."),
            time_max=_string("Range end, ISO 8601."),
        ),
    )
    registry.register(
        tool=tool,
        name="create_calendar_event",
        action_id=TOOL_ACTIONS["create_calendar_event"],
        escalate_on="attendees",
        escalated_action_id="calendar.create_event_external",
        label="Google Calendar",
        description=(
            "Create an event on the primary calendar. Adding attendees sends them an "
            "invitation. Set add_video_call to attach a Google Meet link."
        ),
        schema=_object(
            ["summary", "start_time", "end_time"],
            summary=_string("Event title."),
            start_time=_string("Start, ISO 8601 date-time or YYYY-MM-DD for all-day."),
            end_time=_string("End, ISO 8601 date-time or YYYY-MM-DD for all-day."),
            timezone=_string("IANA timezone, e.g. America/New_York."),
            description=_string("Event description."),
            location=_string("Event location."),
            attendees={
                "type": "array",
                "items": {"type": "string"},
                "description": "Attendee email addresses.",
            },
            add_video_call={"type": "boolean", "description": "Attach a Google Meet link."},
        ),
    )
    registry.register(
        tool=tool,
        name="update_calendar_event",
        action_id=TOOL_ACTIONS["update_calendar_event"],
        label="Google Calendar",
        description="Update an existing event. Fields that are not given stay unchanged.",
        schema=_object(
            ["event_id"],
            event_id=_string("Id of the event to update."),
            summary=_string("New title."),
            start_time=_string("New start, ISO 8601."),
            end_time=_string("New end, ISO 8601."),
            timezone=_string("IANA timezone for the new times."),
            description=_string("New description."),
            location=_string("New location."),
        ),
    )
    registry.register(
        tool=tool,
        name="delete_calendar_event",
        action_id=TOOL_ACTIONS["delete_calendar_event"],
        label="Google Calendar",
        description="Delete an event from the primary calendar.",
        schema=_object(["event_id"], event_id=_string("Id of the event to delete.")),
    )


def _register_gmail(registry: ToolRegistry) -> None:
    tool = GoogleGmailTool()
    recipients = {
        "to": _string("Recipient address, or a comma-separated list."),
        "cc": _string("Optional comma-separated CC addresses."),
        "bcc": _string("Optional comma-separated BCC addresses."),
        "subject": _string("Subject line."),
        "body": _string("Plain-text body."),
    }
    registry.register(
        tool=tool,
        name="get_emails",
        action_id=TOOL_ACTIONS["get_emails"],
        label="Gmail",
        description="List recent emails with sender, subject, date and snippet.",
        schema=_object(
            [],
            query=_string("Gmail search query, e.g. 'is:unread from:alice'."),
            max_results=_integer("Maximum emails to return (default 10)."),
        ),
    )
    registry.register(
        tool=tool,
        name="create_draft",
        action_id=TOOL_ACTIONS["create_draft"],
        label="Gmail",
        description="Save an email as a Gmail draft without sending it.",
        schema=_object(["to", "subject", "body"], **recipients),
    )
    message_id = {"message_id": _string("Gmail message id.")}
    registry.register(
        tool=tool,
        name="mark_email_read",
        action_id=TOOL_ACTIONS["mark_email_read"],
        label="Gmail",
        description="Mark an email as read.",
        schema=_object(["message_id"], **message_id),
    )
    registry.register(
        tool=tool,
        name="archive_email",
        action_id=TOOL_ACTIONS["archive_email"],
        label="Gmail",
        description="Archive an email (remove it from the inbox).",
        schema=_object(["message_id"], **message_id),
    )
    registry.register(
        tool=tool,
        name="delete_email",
        action_id=TOOL_ACTIONS["delete_email"],
        label="Gmail",
        description="Move an email to the trash.",
        schema=_object(["message_id"], **message_id),
    )
    registry.register(
        tool=tool,
        name="send_email",
        action_id=TOOL_ACTIONS["send_email"],
        label="Gmail",
        description=(
            "Send an email from the user's Gmail account. The user's Gmail signature "
            "is appended automatically."
        ),
        schema=_object(["to", "subject", "body"], **recipients),
    )


def _register_contacts(registry: ToolRegistry) -> None:
    tool = GoogleContactsTool()
    fields = {
        "given_name": _string("First name."),
        "family_name": _string("Last name."),
        "email": _string("Email address."),
        "phone": _string("Phone number."),
        "company": _string("Company name."),
        "job_title": _string("Job title."),
        "notes": _string("Free-form notes."),
    }
    registry.register(
        tool=tool,
        name="get_contacts",
        action_id=TOOL_ACTIONS["get_contacts"],
        label="Google Contacts",
        description="List the user's Google contacts, most recently changed first.",
        schema=_object([], max_results=_integer("Maximum contacts to return (default 25).")),
    )
    registry.register(
        tool=tool,
        name="search_contacts",
        action_id=TOOL_ACTIONS["search_contacts"],
        label="Google Contacts",
        description="Search contacts by name, email or phone.",
        schema=_object(
            ["query"],
            query=_string("Search text."),
            max_results=_integer("Maximum contacts to return (default 10)."),
        ),
    )
    registry.register(
        tool=tool,
        name="create_contact",
        action_id=TOOL_ACTIONS["create_contact"],
        label="Google Contacts",
        description="Create a new contact.",
        schema=_object([], **fields),
    )
    registry.register(
        tool=tool,
        name="update_contact",
        action_id=TOOL_ACTIONS["update_contact"],
        label="Google Contacts",
        description="Update fields on an existing contact.",
        schema=_object(
            ["resource_name"],
            resource_name=_string("Contact resource name, e.g. people/c123."),
            **fields,
        ),
    )
    registry.register(
        tool=tool,
        name="delete_contact",
        action_id=TOOL_ACTIONS["delete_contact"],
        label="Google Contacts",
        description="Delete a contact.",
        schema=_object(
            ["resource_name"],
            resource_name=_string("Contact resource name, e.g. people/c123."),
        ),
    )


def _register_monday(registry: ToolRegistry) -> None:
    tool = MondayTool()
    board_id = _string("Numeric board id.")
    item_id = _string("Numeric item id.")
    registry.register(
        tool=tool,
        name="monday_get_boards",
        action_id=TOOL_ACTIONS["monday_get_boards"],
        label="Monday.com",
        description="List active Monday.com boards with their groups and columns.",
        schema=_object([]),
    )
    registry.register(
        tool=tool,
        name="monday_get_items",
        action_id=TOOL_ACTIONS["monday_get_items"],
        label="Monday.com",
        description="List items on a Monday.com board.",
        schema=_object(
            ["board_id"], board_id=board_id, limit=_integer("Maximum items (default 25).")
        ),
    )
    registry.register(
        tool=tool,
        name="monday_create_item",
        action_id=TOOL_ACTIONS["monday_create_item"],
        label="Monday.com",
        description="Create an item on a board, optionally in a group with column values.",
        schema=_object(
            ["board_id", "item_name"],
            board_id=board_id,
            item_name=_string("Item name."),
            group_id=_string("Optional group id."),
            column_values={
                "type": "object",
                "description": "Column id to value map, e.g. {\"status\": {\"label\": \"Done\"}}.",
            },
        ),
    )
    registry.register(
        tool=tool,
        name="monday_change_column_value",
        action_id=TOOL_ACTIONS["monday_change_column_value"],
        label="Monday.com",
        description="Change a column value on an item, typically its status.",
        schema=_object(
            ["board_id", "item_id", "column_id", "value"],
            board_id=board_id,
            item_id=item_id,
            column_id=_string("Column id, e.g. status."),
            value=_string("New value. For status columns, the label text."),
        ),
    )
    registry.register(
        tool=tool,
        name="monday_add_update",
        action_id=TOOL_ACTIONS["monday_add_update"],
        label="Monday.com",
        description="Post an update (comment) on an item.",
        schema=_object(["item_id", "body"], item_id=item_id, body=_string("Comment text.")),
    )
    registry.register(
        tool=tool,
        name="monday_archive_item",
        action_id=TOOL_ACTIONS["monday_archive_item"],
        label="Monday.com",
        description="Archive an item.",
        schema=_object(["item_id"], item_id=item_id),
    )
    registry.register(
        tool=tool,
        name="monday_delete_item",
        action_id=TOOL_ACTIONS["monday_delete_item"],
        label="Monday.com",
        description="Delete an item permanently.",
        schema=_object(["item_id"], item_id=item_id),
    )


def build_default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    _register_calendar(registry)
    _register_gmail(registry)
    _register_contacts(registry)
    _register_monday(registry)
    registry.register(
        tool=AccountTool(),
        name="get_user_preferences",
        action_id=TOOL_ACTIONS["get_user_preferences"],
        label="Account",
        description=(
            "Show the user's confirmation settings: whether emoji confirmations are on "
            "and whether a security phrase is set. Never reveals the phrase."
        ),
        schema=_object([]),
    )
    registry.validate(TOOL_ACTIONS)
    return registry
