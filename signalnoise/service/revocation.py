from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from signalnoise.logging import get_logger
from signalnoise.service.errors import AuthenticationError, ForbiddenError
from signalnoise.service.tokens import tokens_equal
from signalnoise.storage.common import AccountStore, iso_from_ms, now_ms

logger = get_logger(__name__)


@dataclass
class RevocationResult:
    account_id: str
    revoked_devices: int
    revoked_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "revokedDevices": self.revoked_devices,
            "revokedAt": iso_from_ms(self.revoked_at),
        }


class RevocationService:
    """Withdraw an account's entitlement everywhere.

    Only ``access_token`` is removed; the stored session and snapshot stay in
    place and are rejected by the session validator from then on.
    """

    def __init__(self, store: AccountStore, *, clock: Callable[[], int] = now_ms) -> None:
        self.store = store
        self.clock = clock
        self.logger = logger

    async def revoke(self, access_token: Optional[str]) -> RevocationResult:
        if not access_token:
            raise AuthenticationError("authentication required")
        account_id = await self.store.find_account_by_entitlement(access_token)
        if not account_id:
            raise ForbiddenError("invalid access token")
        account = await self.store.get_account(account_id)
        if (
            account is None
            or not account.is_active
            or not tokens_equal(access_token, account.access_token)
        ):
            raise ForbiddenError("invalid access token")

        now = self.clock()
        revoked = await self.store.revoke_entitlement(account_id, access_token, now_ms=now)
        if not revoked:
            # Lost a race with a concurrent revocation
            raise ForbiddenError("invalid access token")
        revoked_devices = 1 if account.session_live_at(now) else 0
        self.logger.info(
            "entitlement_revoked",
            account_id=account_id,
            revoked_devices=revoked_devices,
        )
        return RevocationResult(
            account_id=account_id, revoked_devices=revoked_devices, revoked_at=now
        )
