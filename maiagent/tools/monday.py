from __future__ import annotations

import json
import logging
from typing import Any

from maiagent.services.errors import UpstreamError, ValidationError

from .base import Tool, ToolContext
from .upstream import UpstreamSession
from .validation import clamp_int


logger = logging.getLogger(__name__)


class MondayTool(Tool):
    name = "monday"
    provider = "monday"
    API_URL = "https://api.monday.com/v2"
    API_VERSION = "2024-01"
    BOARD_PAGE_SIZE = 100
    MAX_BOARD_PAGES = 10

    def handlers(self):
        return {
            "monday_get_boards": self.get_boards,
            "monday_get_items": self.get_items,
            "monday_create_item": self.create_item,
            "monday_change_column_value": self.change_column_value,
            "monday_add_update": self.add_update,
            "monday_archive_item": self.archive_item,
            "monday_delete_item": self.delete_item,
        }

    def _graphql(
        self, context: ToolContext, query: str, variables: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        # Monday takes the raw token in Authorization, with no scheme prefix.
        session = UpstreamSession(context, self.provider, "Monday.com", auth_scheme=None)
        payload = session.request_json(
            self.API_URL,
            method="POST",
            body={"query": query, "variables": variables or {}},
            headers={"API-Version": self.API_VERSION},
        )
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            message = str(first.get("message") or "unknown error").strip()
            logger.warning("Monday.com GraphQL error for user %s: %s", context.user_id, message)
            raise UpstreamError(f"Monday.com request failed: {message}")
        if payload.get("error_message"):
            raise UpstreamError(f"Monday.com request failed: {payload['error_message']}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise UpstreamError("Monday.com returned an unexpected payload.")
        return data

    def get_boards(self, context: ToolContext) -> dict[str, Any]:
        query = """
            query ($limit: Int!, $page: Int!) {
              boards(limit: $limit, page: $page, state: active) {
                id name description state
                groups { id title }
                columns { id title type }
              }
            }
        """
        boards: list[dict[str, Any]] = []
        truncated = False
        for page in range(1, self.MAX_BOARD_PAGES + 1):
            data = self._graphql(context, query, {"limit": self.BOARD_PAGE_SIZE, "page": page})
            batch = [b for b in data.get("boards", []) if isinstance(b, dict)]
            boards.extend(batch)
            if len(batch) < self.BOARD_PAGE_SIZE:
                break
        else:
            truncated = True
            logger.warning(
                "Stopped listing monday.com boards for user %s after %d pages",
                context.user_id,
                self.MAX_BOARD_PAGES,
            )
        return {"success": True, "boards": boards, "count": len(boards), "truncated": truncated}

    def get_items(self, context: ToolContext) -> dict[str, Any]:
        board_id = _id_arg(context.args, "board_id")
        limit = clamp_int(context.args.get("limit"), default=25, minimum=1, maximum=100)
        query = """
            query ($boardId: [ID!], $limit: Int!) {
              boards(ids: $boardId) {
                id name
                items_page(limit: $limit) {
                  items {
                    id name state
                    group { id title }
                    column_values { id text }
                  }
                }
              }
            }
        """
        data = self._graphql(context, query, {"boardId": [board_id], "limit": limit})
        boards = data.get("boards") or []
        if not boards:
            raise UpstreamError(f"Monday.com board {board_id} was not found.", status_code=404)
        page = boards[0].get("items_page") or {}
        items = [_item_summary(i) for i in page.get("items", []) if isinstance(i, dict)]
        return {
            "success": True,
            "board": {"id": boards[0].get("id"), "name": boards[0].get("name")},
            "items": items,
            "count": len(items),
        }

    def create_item(self, context: ToolContext) -> dict[str, Any]:
        args = context.args
        query = """
            mutation ($boardId: ID!, $name: String!, $groupId: String, $columns: JSON) {
              create_item(board_id: $boardId, item_name: $name,
                          group_id: $groupId, column_values: $columns) { id name }
            }
        """
        columns = args.get("column_values")
        data = self._graphql(
            context,
            query,
            {
                "boardId": _id_arg(args, "board_id"),
                "name": args["item_name"],
                "groupId": args.get("group_id") or None,
                "columns": json.dumps(columns) if columns else None,
            },
        )
        return {"success": True, "item": data.get("create_item")}

    def change_column_value(self, context: ToolContext) -> dict[str, Any]:
        args = context.args
        query = """
            mutation ($boardId: ID!, $itemId: ID!, $columnId: String!, $value: JSON!) {
              change_column_value(board_id: $boardId, item_id: $itemId,
                                  column_id: $columnId, value: $value) { id name }
            }
        """
        value = args["value"]
        # Status columns take {"label": ...}; plain strings are treated as labels.
        encoded = json.dumps(value if isinstance(value, dict) else {"label": str(value)})
        data = self._graphql(
            context,
            query,
            {
                "boardId": _id_arg(args, "board_id"),
                "itemId": _id_arg(args, "item_id"),
                "columnId": args["column_id"],
                "value": encoded,
            },
        )
        return {"success": True, "item": data.get("change_column_value")}

    def add_update(self, context: ToolContext) -> dict[str, Any]:
        query = """
            mutation ($itemId: ID!, $body: String!) {
              create_update(item_id: $itemId, body: $body) { id }
            }
        """
        data = self._graphql(
            context,
            query,
            {"itemId": _id_arg(context.args, "item_id"), "body": context.args["body"]},
        )
        return {"success": True, "update": data.get("create_update")}

    def archive_item(self, context: ToolContext) -> dict[str, Any]:
        query = "mutation ($itemId: ID!) { archive_item(item_id: $itemId) { id } }"
        item_id = _id_arg(context.args, "item_id")
        self._graphql(context, query, {"itemId": item_id})
        return {"success": True, "archived_item_id": item_id}

    def delete_item(self, context: ToolContext) -> dict[str, Any]:
        query = "mutation ($itemId: ID!) { delete_item(item_id: $itemId) { id } }"
        item_id = _id_arg(context.args, "item_id")
        self._graphql(context, query, {"itemId": item_id})
        return {"success": True, "deleted_item_id": item_id}


def _id_arg(args: dict[str, Any], key: str) -> str:
    value = str(args.get(key) or "").strip()
    if not value.isdigit():
        raise ValidationError(f"'{key}' must be a numeric Monday.com id.", invalid=[value])
    return value


def _item_summary(item: dict[str, Any]) -> dict[str, Any]:
    group = item.get("group") or {}
    columns = {
        str(col.get("id")): col.get("text")
        for col in item.get("column_values", []) or []
        if isinstance(col, dict) and col.get("id") and col.get("text")
    }
    return {
        "id": item.get("id"),
        "name": item.get("name"),
        "state": item.get("state"),
        "group": group.get("title") if isinstance(group, dict) else None,
        "columns": columns,
    }
