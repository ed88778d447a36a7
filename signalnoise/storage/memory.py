from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional, Tuple

from signalnoise.logging import get_logger
from signalnoise.storage.common import (
    cleared_snapshot_fields,
    now_ms,
    snapshot_fields,
    stringify_fields,
)
from signalnoise.storage.models import Account, SyncSnapshot


class MemoryAccountStore:
    """In-memory account store for tests and local development.

    Every operation runs under one re-entrant lock, which gives the same
    single-step atomicity the Redis store gets from MULTI/EXEC and Lua.
    """

    def __init__(self, *, clock: Callable[[], int] = now_ms) -> None:
        self.logger = get_logger(__name__)
        self.clock = clock
        self.accounts: Dict[str, Dict[str, str]] = {}
        self.magic_tokens: Dict[str, Tuple[str, int]] = {}  # token -> (account_id, expires_ms)
        self.session_index: Dict[str, str] = {}
        self.entitlement_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            raw = self.accounts.get(account_id)
            if not raw:
                return None
            return Account.from_hash(account_id, dict(raw))

    async def provision_account(self, account_id: str, fields: Dict[str, Any]) -> Account:
        mapping = stringify_fields({"email": account_id, **fields})
        with self._data_lock:
            record = self.accounts.setdefault(account_id, {})
            record.update(mapping)
            if mapping.get("access_token"):
                self.entitlement_index[mapping["access_token"]] = account_id
            return Account.from_hash(account_id, dict(record))

    async def put_magic_token(self, token: str, account_id: str, ttl_seconds: int) -> None:
        with self._data_lock:
            self.magic_tokens[token] = (account_id, self.clock() + ttl_seconds * 1000)

    async def pop_magic_token(self, token: str) -> Optional[str]:
        with self._data_lock:
            entry = self.magic_tokens.pop(token, None)
            if entry is None:
                return None
            account_id, expires_at = entry
            if self.clock() >= expires_at:
                return None
            return account_id

    async def start_session(
        self,
        account_id: str,
        session_token: str,
        *,
        created_ms: int,
        expires_ms: int,
        previous_token: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            record = self.accounts.setdefault(account_id, {})
            record.update(
                {
                    "session_token": session_token,
                    "session_created": str(created_ms),
                    "session_expires": str(expires_ms),
                    "last_active": str(created_ms),
                }
            )
            login_count = int(record.get("login_count") or 0) + 1
            record["login_count"] = str(login_count)
            self.session_index[session_token] = account_id
            if previous_token and previous_token != session_token:
                self.session_index.pop(previous_token, None)
            return login_count

    async def find_account_by_session(self, session_token: str) -> Optional[str]:
        with self._data_lock:
            return self.session_index.get(session_token)

    async def touch_session(
        self, account_id: str, *, last_active_ms: int, expires_ms: Optional[int] = None
    ) -> None:
        with self._data_lock:
            record = self.accounts.setdefault(account_id, {})
            record["last_active"] = str(last_active_ms)
            if expires_ms is not None:
                record["session_expires"] = str(expires_ms)

    async def clear_session(self, account_id: str, session_token: str) -> bool:
        with self._data_lock:
            record = self.accounts.get(account_id)
            if not record or record.get("session_token") != session_token:
                return False
            for key in ("session_token", "session_created", "session_expires"):
                record.pop(key, None)
            self.session_index.pop(session_token, None)
            return True

    async def find_account_by_entitlement(self, access_token: str) -> Optional[str]:
        with self._data_lock:
            return self.entitlement_index.get(access_token)

    async def reindex_entitlements(self, *, batch_size: int = 200) -> int:
        with self._data_lock:
            written = 0
            for account_id, record in self.accounts.items():
                access_token = record.get("access_token")
                if access_token and access_token not in self.entitlement_index:
                    self.entitlement_index[access_token] = account_id
                    written += 1
            return written

    async def revoke_entitlement(
        self, account_id: str, access_token: str, *, now_ms: int
    ) -> bool:
        with self._data_lock:
            record = self.accounts.get(account_id)
            if not record or record.get("access_token") != access_token:
                return False
            record.pop("access_token", None)
            record["last_active"] = str(now_ms)
            record["access_revoked"] = str(now_ms)
            self.entitlement_index.pop(access_token, None)
            return True

    async def write_snapshot(
        self,
        account_id: str,
        snapshot: SyncSnapshot,
        *,
        now_ms: int,
        device: Optional[str] = None,
        initial: bool = False,
    ) -> int:
        fields = snapshot_fields(snapshot, now_ms=now_ms, device=device, initial=initial)
        with self._data_lock:
            record = self.accounts.setdefault(account_id, {})
            record.update(fields)
            for name in cleared_snapshot_fields(snapshot):
                record.pop(name, None)
            version = int(record.get("version") or 0) + 1
            record["version"] = str(version)
            return version


__all__ = ["MemoryAccountStore"]
