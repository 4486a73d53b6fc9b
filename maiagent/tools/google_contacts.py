from __future__ import annotations

from typing import Any
from urllib import parse as urlparse

from maiagent.services.errors import ValidationError

from .base import Tool, ToolContext
from .upstream import UpstreamSession
from .validation import clamp_int, is_valid_email


PERSON_FIELDS = (
    "names,emailAddresses,phoneNumbers,organizations,addresses,"
    "birthdays,biographies,memberships,photos"
)


class GoogleContactsTool(Tool):
    """Google People API. Requires a granted scope containing ``contacts``."""

    name = "google_contacts"
    provider = "google"
    PEOPLE_API_URL = "https://people.googleapis.com/v1"

    def handlers(self):
        return {
            "get_contacts": self.list_contacts,
            "search_contacts": self.search_contacts,
            "create_contact": self.create_contact,
            "update_contact": self.update_contact,
            "delete_contact": self.delete_contact,
        }

    def _session(self, context: ToolContext) -> UpstreamSession:
        return UpstreamSession(
            context, self.provider, "Google Contacts", required_scope="contacts"
        )

    def list_contacts(self, context: ToolContext) -> dict[str, Any]:
        page_size = clamp_int(context.args.get("max_results"), default=25, minimum=1, maximum=100)
        payload = self._session(context).request_json(
            f"{self.PEOPLE_API_URL}/people/me/connections",
            params={
                "personFields": PERSON_FIELDS,
                "pageSize": str(page_size),
                "sortOrder": "LAST_MODIFIED_DESCENDING",
            },
        )
        people = [_person_summary(p) for p in payload.get("connections", []) if isinstance(p, dict)]
        return {
            "success": True,
            "contacts": people,
            "count": len(people),
            "total": payload.get("totalPeople", len(people)),
        }

    def search_contacts(self, context: ToolContext) -> dict[str, Any]:
        query = context.args["query"].strip()
        page_size = clamp_int(context.args.get("max_results"), default=10, minimum=1, maximum=30)
        payload = self._session(context).request_json(
            f"{self.PEOPLE_API_URL}/people:searchContacts",
            params={"query": query, "readMask": PERSON_FIELDS, "pageSize": str(page_size)},
        )
        people = [
            _person_summary(row["person"])
            for row in payload.get("results", [])
            if isinstance(row, dict) and isinstance(row.get("person"), dict)
        ]
        return {"success": True, "contacts": people, "count": len(people), "query": query}

    def create_contact(self, context: ToolContext) -> dict[str, Any]:
        body = _person_body(context.args)
        if "names" not in body:
            raise ValidationError("A contact needs at least a first or last name.")
        created = self._session(context).request_json(
            f"{self.PEOPLE_API_URL}/people:createContact",
            method="POST",
            body=body,
            params={"personFields": PERSON_FIELDS},
        )
        return {"success": True, "contact": _person_summary(created)}

    def update_contact(self, context: ToolContext) -> dict[str, Any]:
        resource_name = _resource_name(context.args["resource_name"])
        body = _person_body(context.args)
        if not body:
            raise ValidationError("Nothing to update. Provide at least one field to change.")
        session = self._session(context)
        existing = session.request_json(
            f"{self.PEOPLE_API_URL}/{resource_name}", params={"personFields": PERSON_FIELDS}
        )
        body["etag"] = existing.get("etag")
        updated = session.request_json(
            f"{self.PEOPLE_API_URL}/{resource_name}:updateContact",
            method="PATCH",
            body=body,
            params={
                "updatePersonFields": ",".join(k for k in body if k != "etag"),
                "personFields": PERSON_FIELDS,
            },
        )
        return {"success": True, "contact": _person_summary(updated)}

    def delete_contact(self, context: ToolContext) -> dict[str, Any]:
        resource_name = _resource_name(context.args["resource_name"])
        self._session(context).request_json(
            f"{self.PEOPLE_API_URL}/{resource_name}:deleteContact", method="DELETE"
        )
        return {"success": True, "deleted_contact": resource_name}


def _resource_name(raw: str) -> str:
    value = (raw or "").strip()
    if not value.startswith("people/"):
        value = f"people/{value}"
    # Keep the slash; escape anything else that could alter the path.
    return urlparse.quote(value, safe="/")


def _person_body(args: dict[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {}
    given = (args.get("given_name") or "").strip()
    family = (args.get("family_name") or "").strip()
    if given or family:
        body["names"] = [{"givenName": given, "familyName": family}]
    email = (args.get("email") or "").strip()
    if email:
        if not is_valid_email(email):
            raise ValidationError(f"Invalid email address: {email}", invalid=[email])
        body["emailAddresses"] = [{"value": email}]
    phone = (args.get("phone") or "").strip()
    if phone:
        body["phoneNumbers"] = [{"value": phone}]
    company = (args.get("company") or "").strip()
    title = (args.get("job_title") or "").strip()
    if company or title:
        body["organizations"] = [{"name": company, "title": title}]
    notes = (args.get("notes") or "").strip()
    if notes:
        body["biographies"] = [{"value": notes, "contentType": "TEXT_PLAIN"}]
    return body


def _first_value(person: dict[str, Any], field: str, key: str = "value") -> str | None:
    rows = person.get(field)
    if not isinstance(rows, list):
        return None
    for row in rows:
        if isinstance(row, dict) and row.get(key):
            return str(row[key])
    return None


def _person_summary(person: dict[str, Any]) -> dict[str, Any]:
    emails = [
        str(row.get("value"))
        for row in person.get("emailAddresses", []) or []
        if isinstance(row, dict) and row.get("value")
    ]
    phones = [
        str(row.get("value"))
        for row in person.get("phoneNumbers", []) or []
        if isinstance(row, dict) and row.get("value")
    ]
    return {
        "resource_name": person.get("resourceName"),
        "name": _first_value(person, "names", "displayName") or "(no name)",
        "emails": emails,
        "phones": phones,
        "company": _first_value(person, "organizations", "name"),
        "job_title": _first_value(person, "organizations", "title"),
    }
