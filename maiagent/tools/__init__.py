from .account import AccountTool
from .base import Tool, ToolContext
from .catalog import TOOL_ACTIONS, build_default_registry
from .google_calendar import GoogleCalendarTool
from .google_contacts import GoogleContactsTool
from .google_gmail import GoogleGmailTool
from .monday import MondayTool
from .registry import ToolDefinition, ToolRegistry

__all__ = [
    "AccountTool",
    "Tool",
    "ToolContext",
    "GoogleCalendarTool",
    "GoogleContactsTool",
    "GoogleGmailTool",
    "MondayTool",
    "TOOL_ACTIONS",
    "ToolDefinition",
    "ToolRegistry",
    "build_default_registry",
]
