from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

from signalnoise.config import Settings
from signalnoise.logging import get_logger
from signalnoise.service.email import EmailService
from signalnoise.service.errors import ForbiddenError, NotFoundError
from signalnoise.service.sessions import SingleSessionGuard
from signalnoise.service.tokens import generate_token, normalize_account_id
from signalnoise.storage.common import AccountStore, now_ms
from signalnoise.storage.models import Account, SessionBundle

logger = get_logger(__name__)


@dataclass
class MagicLinkIssued:
    account_id: str
    token: str
    link: str
    expires_at: int
    delivered: bool

    def to_dict(self, *, include_link: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": True,
            "message": "Magic link sent to your email",
        }
        if include_link:
            body["devLink"] = self.link
        return body


class MagicLinkService:
    """Issue and redeem one-time sign-in tokens."""

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        *,
        email_service: Optional[EmailService] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.settings = settings
        self.email_service = email_service
        self.clock = clock
        self.guard = SingleSessionGuard(settings.conflict_lookback_ms)
        self.logger = logger

    def build_link(self, token: str) -> str:
        return f"{self.settings.app_base_url}/auth/verify?{urlencode({'token': token})}"

    def _require_entitled(self, account: Account) -> None:
        if not account.is_active:
            raise ForbiddenError("account not active")
        if not account.access_token:
            raise ForbiddenError("access revoked")

    async def request_link(self, email: str) -> MagicLinkIssued:
        account_id = normalize_account_id(email)
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("no premium account found for this email")
        self._require_entitled(account)

        now = self.clock()
        self.guard.check(account, now)

        token = generate_token()
        await self.store.put_magic_token(
            token, account_id, self.settings.magic_link_ttl_seconds
        )
        link = self.build_link(token)
        delivered = await self._deliver(account, link)
        self.logger.info(
            "magic_link_issued",
            account_id=account_id,
            delivered=delivered,
        )
        return MagicLinkIssued(
            account_id=account_id,
            token=token,
            link=link,
            expires_at=now + self.settings.magic_link_ttl_ms,
            delivered=delivered,
        )

    async def _deliver(self, account: Account, link: str) -> bool:
        """Send the link; the token is already persisted so failures only log."""
        if self.email_service is None:
            return False
        try:
            sent = await asyncio.to_thread(
                self.email_service.send_magic_link,
                account.email,
                link,
                first_name=account.first_name,
                ttl_minutes=self.settings.magic_link_ttl_seconds // 60,
            )
        except Exception as exc:
            self.logger.error(
                "magic_link_delivery_error",
                account_id=account.account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not sent:
            self.logger.warning("magic_link_delivery_failed", account_id=account.account_id)
        return bool(sent)

    async def redeem_link(self, token: Optional[str]) -> SessionBundle:
        if not token:
            raise NotFoundError("invalid or expired link")
        # Atomic pop: a second redemption of the same token always misses
        account_id = await self.store.pop_magic_token(token)
        if not account_id:
            raise NotFoundError("invalid or expired link")
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        self._require_entitled(account)

        now = self.clock()
        session_token = generate_token()
        expires_at = now + self.settings.session_ttl_ms
        login_count = await self.store.start_session(
            account_id,
            session_token,
            created_ms=now,
            expires_ms=expires_at,
            previous_token=account.session_token,
        )
        self.logger.info(
            "magic_link_redeemed",
            account_id=account_id,
            login_count=login_count,
            superseded=bool(account.session_token),
        )
        return SessionBundle(
            account_id=account_id,
            entitlement_token=account.access_token or "",
            session_token=session_token,
            issued_at=now,
            expires_at=expires_at,
            first_name=account.first_name,
            tier=account.tier,
            payment_type=account.payment_type,
            synced_from_local=account.synced_from_local,
        )
