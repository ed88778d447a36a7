"""Shared storage contracts for the Redis and in-memory account stores.

Both backends expose the same async surface so services never care which one
the runtime picked.
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from signalnoise.storage.models import Account, SyncSnapshot


def now_ms() -> int:
    """Wall-clock epoch milliseconds, the unit every stored timestamp uses."""
    return int(time.time() * 1000)


def iso_from_ms(value: int) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC string with a Z suffix."""
    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class KeySpace:
    """Key builders for every record the service touches."""

    def __init__(self, prefix: str = "sn:") -> None:
        self.prefix = prefix

    def account(self, account_id: str) -> str:
        return f"{self.prefix}u:{account_id}"

    def account_pattern(self) -> str:
        return f"{self.prefix}u:*"

    def account_id_from_key(self, key: str) -> Optional[str]:
        marker = f"{self.prefix}u:"
        if not key.startswith(marker):
            return None
        account_id = key[len(marker):]
        # Legacy per-user session sets live under the account namespace
        if not account_id or account_id.endswith(":sessions"):
            return None
        return account_id

    def magic(self, token: str) -> str:
        return f"{self.prefix}magic:{token}"

    def session(self, token: str) -> str:
        return f"{self.prefix}session:{token}"

    def entitlement(self, token: str) -> str:
        return f"{self.prefix}entitlement:{token}"


def snapshot_fields(
    snapshot: SyncSnapshot,
    *,
    now_ms: int,
    device: Optional[str],
    initial: bool,
) -> Dict[str, str]:
    """Hash fields written by a sync push (the version bump is separate)."""
    fields = {
        "app_data": json.dumps(snapshot.data),
        "app_data_ts": str(snapshot.timestamp),
        "last_modified": str(now_ms),
        "last_active": str(now_ms),
        "last_device": device or "Unknown",
    }
    if snapshot.first_name is not None:
        fields["first_name"] = snapshot.first_name
    if snapshot.language is not None:
        fields["language"] = snapshot.language
    if initial:
        fields["synced_from_local"] = str(now_ms)
    return fields


def cleared_snapshot_fields(snapshot: SyncSnapshot) -> List[str]:
    """Profile fields the winning snapshot leaves unset; the stored values are removed."""
    cleared = []
    if snapshot.first_name is None:
        cleared.append("first_name")
    if snapshot.language is None:
        cleared.append("language")
    return cleared


def stringify_fields(fields: Dict[str, Any]) -> Dict[str, str]:
    """Redis hashes hold strings only; drop ``None`` values."""
    return {key: str(value) for key, value in fields.items() if value is not None}


class AccountStore(Protocol):
    async def get_account(self, account_id: str) -> Optional[Account]: ...

    async def provision_account(self, account_id: str, fields: Dict[str, Any]) -> Account: ...

    async def put_magic_token(self, token: str, account_id: str, ttl_seconds: int) -> None: ...

    async def pop_magic_token(self, token: str) -> Optional[str]: ...

    async def start_session(
        self,
        account_id: str,
        session_token: str,
        *,
        created_ms: int,
        expires_ms: int,
        previous_token: Optional[str] = None,
    ) -> int: ...

    async def find_account_by_session(self, session_token: str) -> Optional[str]: ...

    async def touch_session(
        self, account_id: str, *, last_active_ms: int, expires_ms: Optional[int] = None
    ) -> None: ...

    async def clear_session(self, account_id: str, session_token: str) -> bool: ...

    async def find_account_by_entitlement(self, access_token: str) -> Optional[str]: ...

    async def reindex_entitlements(self, *, batch_size: int = 200) -> int: ...

    async def revoke_entitlement(
        self, account_id: str, access_token: str, *, now_ms: int
    ) -> bool: ...

    async def write_snapshot(
        self,
        account_id: str,
        snapshot: SyncSnapshot,
        *,
        now_ms: int,
        device: Optional[str] = None,
        initial: bool = False,
    ) -> int: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


__all__ = [
    "AccountStore",
    "KeySpace",
    "cleared_snapshot_fields",
    "iso_from_ms",
    "now_ms",
    "snapshot_fields",
    "stringify_fields",
]
