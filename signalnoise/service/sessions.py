from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from signalnoise.config import Settings
from signalnoise.logging import get_logger
from signalnoise.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SessionExpiredError,
)
from signalnoise.service.tokens import tokens_equal
from signalnoise.storage.common import AccountStore, iso_from_ms, now_ms
from signalnoise.storage.models import Account, SessionView

logger = get_logger(__name__)


@dataclass
class ValidatedSession:
    account: Account
    session: SessionView

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": True,
            "user": self.account.public_fields(),
            "session": self.session.to_dict(),
        }


class SingleSessionGuard:
    """Refuse a new login while another device holds a recently used session.

    A session counts as held when a token is stored, it has not passed its own
    expiry, and the account was active within the lookback window.
    """

    def __init__(self, lookback_ms: int) -> None:
        self.lookback_ms = lookback_ms

    def holds_live_session(self, account: Account, now: int) -> bool:
        if not account.session_live_at(now):
            return False
        return account.last_active > now - self.lookback_ms

    def check(self, account: Account, now: int) -> None:
        if self.holds_live_session(account, now):
            logger.info(
                "single_session_conflict",
                account_id=account.account_id,
                last_active=account.last_active,
            )
            raise ConflictError(
                "account already active on another device",
                detail={"lastActive": iso_from_ms(account.last_active)},
            )


class SessionValidator:
    """Resolve bearer session tokens to accounts with sliding-window renewal."""

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.logger = logger

    def _expiry_of(self, account: Account) -> int:
        if account.session_expires is not None:
            return account.session_expires
        # Rows written before absolute expiry was stored
        issued = account.session_created or account.last_active
        return issued + self.settings.session_ttl_ms

    async def _resolve(self, session_token: Optional[str]) -> Account:
        if not session_token:
            raise AuthenticationError("authentication required")
        account_id = await self.store.find_account_by_session(session_token)
        if not account_id:
            raise NotFoundError("session not found")
        account = await self.store.get_account(account_id)
        # Index entries are hints; the account record is authoritative
        if account is None or not tokens_equal(session_token, account.session_token):
            raise NotFoundError("session not found")
        return account

    async def _require_unexpired(self, account: Account, now: int) -> int:
        """Return the session expiry, clearing the session and failing once it has passed."""
        expires_at = self._expiry_of(account)
        if now > expires_at:
            await self.store.clear_session(account.account_id, account.session_token)
            self.logger.info(
                "session_expired",
                account_id=account.account_id,
                expired_at=expires_at,
            )
            raise SessionExpiredError("session expired")
        return expires_at

    async def validate(self, session_token: Optional[str]) -> ValidatedSession:
        account = await self._resolve(session_token)
        now = self.clock()
        expires_at = await self._require_unexpired(account, now)

        if not account.is_entitled:
            self.logger.info(
                "session_rejected_entitlement",
                account_id=account.account_id,
                status=account.status,
            )
            raise ForbiddenError("access revoked")

        renewed = expires_at - now <= self.settings.session_renewal_window_ms
        if renewed:
            expires_at = now + self.settings.session_ttl_ms
            self.logger.info(
                "session_renewed",
                account_id=account.account_id,
                expires_at=expires_at,
            )
        await self.store.touch_session(
            account.account_id,
            last_active_ms=now,
            expires_ms=expires_at if renewed else None,
        )
        account.last_active = now
        account.session_expires = expires_at

        view = SessionView(
            session_token=account.session_token or "",
            issued_at=account.session_created or now,
            last_active=now,
            expires_at=expires_at,
            renewed=renewed,
        )
        return ValidatedSession(account=account, session=view)

    async def sign_out(self, session_token: Optional[str]) -> None:
        """End the caller's own session so another device can sign in."""
        account = await self._resolve(session_token)
        await self._require_unexpired(account, self.clock())
        cleared = await self.store.clear_session(account.account_id, session_token)
        if not cleared:
            # Superseded between the read and the compare-and-clear
            raise NotFoundError("session not found")
        self.logger.info("session_signed_out", account_id=account.account_id)
