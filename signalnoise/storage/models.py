from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

DEFAULT_TIER = "early_adopter"
DEFAULT_PAYMENT_TYPE = "lifetime"
ACTIVE = "active"


def _int_field(raw: Mapping[str, Any], key: str) -> Optional[int]:
    value = raw.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def empty_app_data() -> Dict[str, Any]:
    return {
        "tasks": [],
        "history": [],
        "badges": [],
        "patterns": {},
        "settings": {"targetRatio": 80, "notifications": False},
    }


@dataclass
class SyncSnapshot:
    """The full application state, moved between device and server as one unit."""

    data: Dict[str, Any]
    timestamp: int
    first_name: Optional[str] = None
    language: Optional[str] = None

    def task_count(self) -> int:
        tasks = self.data.get("tasks") if isinstance(self.data, dict) else None
        return len(tasks) if isinstance(tasks, list) else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "timestamp": self.timestamp,
            "firstName": self.first_name,
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SyncSnapshot":
        return cls(
            data=dict(payload.get("data") or {}),
            timestamp=int(payload.get("timestamp") or 0),
            first_name=payload.get("firstName"),
            language=payload.get("language"),
        )


@dataclass
class Account:
    """Typed view over the account hash stored at ``{prefix}u:{account_id}``."""

    account_id: str
    email: str
    status: str = "inactive"
    tier: str = DEFAULT_TIER
    payment_type: str = DEFAULT_PAYMENT_TYPE
    access_token: Optional[str] = None
    session_token: Optional[str] = None
    session_created: Optional[int] = None
    session_expires: Optional[int] = None
    last_active: int = 0
    login_count: int = 0
    first_name: str = ""
    language: Optional[str] = None
    app_data: Optional[Dict[str, Any]] = None
    app_data_ts: Optional[int] = None
    version: int = 0
    last_modified: Optional[int] = None
    last_device: Optional[str] = None
    synced_from_local: Optional[int] = None
    access_revoked: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    @property
    def is_entitled(self) -> bool:
        """Active status plus a live entitlement token gate every new session."""
        return self.is_active and bool(self.access_token)

    def session_live_at(self, now_ms: int) -> bool:
        if not self.session_token:
            return False
        return self.session_expires is None or now_ms <= self.session_expires

    def snapshot(self) -> Optional[SyncSnapshot]:
        if self.app_data is None:
            return None
        return SyncSnapshot(
            data=self.app_data,
            timestamp=self.app_data_ts or 0,
            first_name=self.first_name or None,
            language=self.language,
        )

    def public_fields(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "firstName": self.first_name or "",
            "tier": self.tier or DEFAULT_TIER,
            "paymentType": self.payment_type or DEFAULT_PAYMENT_TYPE,
            "lastActive": self.last_active,
            "syncedFromLocal": self.synced_from_local,
        }

    @classmethod
    def from_hash(cls, account_id: str, raw: Mapping[str, Any]) -> "Account":
        app_data: Optional[Dict[str, Any]] = None
        raw_app_data = raw.get("app_data")
        if raw_app_data:
            try:
                decoded = json.loads(raw_app_data) if isinstance(raw_app_data, str) else raw_app_data
                app_data = decoded if isinstance(decoded, dict) else None
            except (json.JSONDecodeError, TypeError):
                # Corrupted snapshot - treat as absent
                app_data = None
        return cls(
            account_id=account_id,
            email=raw.get("email") or account_id,
            status=raw.get("status") or "inactive",
            tier=raw.get("tier") or DEFAULT_TIER,
            payment_type=raw.get("payment_type") or DEFAULT_PAYMENT_TYPE,
            access_token=raw.get("access_token") or None,
            session_token=raw.get("session_token") or None,
            session_created=_int_field(raw, "session_created"),
            session_expires=_int_field(raw, "session_expires"),
            last_active=_int_field(raw, "last_active") or 0,
            login_count=_int_field(raw, "login_count") or 0,
            first_name=raw.get("first_name") or "",
            language=raw.get("language") or None,
            app_data=app_data,
            app_data_ts=_int_field(raw, "app_data_ts"),
            version=_int_field(raw, "version") or 0,
            last_modified=_int_field(raw, "last_modified"),
            last_device=raw.get("last_device") or None,
            synced_from_local=_int_field(raw, "synced_from_local"),
            access_revoked=_int_field(raw, "access_revoked"),
        )


@dataclass
class SessionView:
    """Client-observed session derived from the account record."""

    session_token: str
    issued_at: int
    last_active: int
    expires_at: int
    renewed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.issued_at,
            "lastActive": self.last_active,
            "expires": self.expires_at,
            "renewed": self.renewed,
        }


@dataclass
class SessionBundle:
    """Everything a device needs after redeeming a magic link."""

    account_id: str
    entitlement_token: str
    session_token: str
    issued_at: int
    expires_at: int
    first_name: str
    tier: str
    payment_type: str
    synced_from_local: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.account_id,
            "token": self.entitlement_token,
            "sessionToken": self.session_token,
            "created": self.issued_at,
            "lastActive": self.issued_at,
            "expires": self.expires_at,
            "firstName": self.first_name,
            "tier": self.tier,
            "paymentType": self.payment_type,
            "syncedFromLocal": self.synced_from_local,
        }


@dataclass
class SyncMetadata:
    version: int
    last_modified: int
    last_device: str
    task_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "lastModified": self.last_modified,
            "lastDevice": self.last_device,
            "taskCount": self.task_count,
        }
