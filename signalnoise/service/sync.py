"""Whole-snapshot sync between a device and the server copy.

There is no field-level merge: whichever side carries the newer timestamp is
taken as a unit and the other side is discarded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from signalnoise.logging import get_logger
from signalnoise.service.errors import NotFoundError
from signalnoise.storage.common import AccountStore, now_ms
from signalnoise.storage.models import SyncMetadata, SyncSnapshot

logger = get_logger(__name__)

PULLED = "pulled"
PUSHED = "pushed"

# Error detail reason for a pull with nothing stored
NO_SNAPSHOT = "no_snapshot"


def device_type(user_agent: Optional[str]) -> str:
    """Coarse device label recorded with each push."""
    agent = user_agent or ""
    if "iPhone" in agent:
        return "iPhone"
    if "iPad" in agent:
        return "iPad"
    if "Android" in agent:
        return "Android"
    if "Mac" in agent:
        return "Mac"
    if "Windows" in agent:
        return "Windows"
    return "Desktop"


@dataclass
class ReconcileOutcome:
    action: str
    snapshot: SyncSnapshot

    @property
    def pulled(self) -> bool:
        return self.action == PULLED


def reconcile(local: SyncSnapshot, server: Optional[SyncSnapshot]) -> ReconcileOutcome:
    """Pick the snapshot both sides should hold after syncing.

    The server copy wins only when strictly newer; ties and a missing server
    copy keep the local snapshot, which the caller must then push.
    """
    if server is not None and server.timestamp > local.timestamp:
        return ReconcileOutcome(action=PULLED, snapshot=server)
    return ReconcileOutcome(action=PUSHED, snapshot=local)


@dataclass
class PushResult:
    timestamp: int
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "timestamp": self.timestamp, "version": self.version}


class SyncService:
    def __init__(self, store: AccountStore, *, clock: Callable[[], int] = now_ms) -> None:
        self.store = store
        self.clock = clock
        self.logger = logger

    async def push(
        self,
        account_id: str,
        snapshot: SyncSnapshot,
        *,
        device: Optional[str] = None,
        initial: bool = False,
    ) -> PushResult:
        now = self.clock()
        version = await self.store.write_snapshot(
            account_id, snapshot, now_ms=now, device=device, initial=initial
        )
        self.logger.info(
            "sync_pushed",
            account_id=account_id,
            version=version,
            task_count=snapshot.task_count(),
            device=device,
            initial=initial,
        )
        return PushResult(timestamp=snapshot.timestamp, version=version)

    async def pull(self, account_id: str) -> Optional[SyncSnapshot]:
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        return account.snapshot()

    async def metadata(self, account_id: str) -> SyncMetadata:
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        snapshot = account.snapshot()
        return SyncMetadata(
            version=account.version,
            last_modified=account.last_modified or account.last_active,
            last_device=account.last_device or "Unknown",
            task_count=snapshot.task_count() if snapshot else 0,
        )
