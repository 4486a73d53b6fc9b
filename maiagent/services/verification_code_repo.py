from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .supabase_rest import SupabaseRestClient, eq, parse_time, to_iso


@dataclass(frozen=True)
class VerificationCodeRow:
    user_id: str
    action_type: str
    code_hash: str
    salt: str
    expires_at: datetime


class SupabaseVerificationCodeRepository:
    def __init__(
        self, client: SupabaseRestClient, table: str = "verification_codes"
    ) -> None:
        self.client = client
        self.table = (table or "verification_codes").strip()

    def is_configured(self) -> bool:
        return self.client.is_configured()

    def get(self, user_id: str, action_type: str) -> VerificationCodeRow | None:
        rows = self.client.select(
            self.table,
            filters={"user_id": eq(user_id), "action_type": eq(action_type)},
            columns="user_id,action_type,code_hash,salt,expires_at",
            order="expires_at.desc",
            limit=1,
        )
        if not rows:
            return None
        return _to_row(rows[0])

    def replace(self, row: VerificationCodeRow) -> None:
        self.delete(row.user_id, row.action_type)
        self.client.insert(
            self.table,
            body={
                "user_id": row.user_id,
                "action_type": row.action_type,
                "code_hash": row.code_hash,
                "salt": row.salt,
                "expires_at": to_iso(row.expires_at),
            },
        )

    def delete(self, user_id: str, action_type: str) -> None:
        self.client.delete(
            self.table,
            filters={"user_id": eq(user_id), "action_type": eq(action_type)},
        )


class InMemoryVerificationCodeRepository:
    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], VerificationCodeRow] = {}
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return True

    def get(self, user_id: str, action_type: str) -> VerificationCodeRow | None:
        return self._rows.get((user_id, action_type))

    def replace(self, row: VerificationCodeRow) -> None:
        with self._lock:
            self._rows[(row.user_id, row.action_type)] = row

    def delete(self, user_id: str, action_type: str) -> None:
        with self._lock:
            self._rows.pop((user_id, action_type), None)


def _to_row(row: dict[str, Any]) -> VerificationCodeRow:
    # A row without a readable expiry is treated as already expired.
    expires_at = parse_time(row.get("expires_at")) or datetime.min.replace(tzinfo=timezone.utc)
    return VerificationCodeRow(
        user_id=str(row.get("user_id", "")),
        action_type=str(row.get("action_type", "")),
        code_hash=str(row.get("code_hash", "")),
        salt=str(row.get("salt") or ""),
        expires_at=expires_at,
    )
