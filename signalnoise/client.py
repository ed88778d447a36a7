"""Device-side client for the account and sync API.

``DeviceSync`` holds the device's cached snapshot in a JSON file and
reconciles it with the server copy using :func:`signalnoise.service.sync.reconcile`.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from signalnoise.logging import get_logger
from signalnoise.service.sync import NO_SNAPSHOT, PULLED, ReconcileOutcome, reconcile
from signalnoise.service.tokens import account_hash
from signalnoise.storage.models import SyncSnapshot

logger = get_logger(__name__)


class ClientError(Exception):
    """Non-2xx response from the account API."""

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(f"{status_code} {message}")
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details


class AccountClient:
    """Thin async wrapper over the HTTP surface."""

    def __init__(
        self,
        base_url: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0,
        user_agent: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout
        self.user_agent = user_agent
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"User-Agent": self.user_agent} if self.user_agent else None
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                transport=self.transport,
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AccountClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @staticmethod
    def _auth(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            raise ClientError(
                response.status_code,
                error.get("message") or response.reason_phrase,
                code=error.get("code"),
                details=error.get("details"),
            )
        raise ClientError(response.status_code, response.reason_phrase, details=payload or None)

    async def _call(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        client = await self._get_client()
        response = await client.request(method, path, **kwargs)
        self._raise_for_error(response)
        return response.json()

    async def request_magic_link(self, email: str) -> Dict[str, Any]:
        return await self._call("POST", "/auth/magic-link", json={"email": email})

    async def verify_magic_link(self, token: str) -> Dict[str, Any]:
        """Redeem a link token; returns the session payload."""
        body = await self._call("GET", "/auth/verify-magic-link", params={"token": token})
        return body["session"]

    async def validate_session(self, session_token: str) -> Dict[str, Any]:
        return await self._call(
            "GET", "/auth/validate-session", headers=self._auth(session_token)
        )

    async def sign_out(self, session_token: str) -> Dict[str, Any]:
        return await self._call("POST", "/auth/sign-out", headers=self._auth(session_token))

    async def revoke_access(self, access_token: str) -> Dict[str, Any]:
        return await self._call("POST", "/auth/revoke-access", headers=self._auth(access_token))

    async def pull(self, account_id: str, session_token: str) -> Optional[SyncSnapshot]:
        """Fetch the server snapshot, or ``None`` when nothing is stored yet."""
        try:
            body = await self._call(
                "GET", f"/sync/{account_hash(account_id)}", headers=self._auth(session_token)
            )
        except ClientError as exc:
            if exc.status_code == 404 and (exc.details or {}).get("reason") == NO_SNAPSHOT:
                return None
            raise
        return SyncSnapshot.from_dict(body)

    async def push(
        self,
        account_id: str,
        session_token: str,
        snapshot: SyncSnapshot,
        *,
        initial: bool = False,
    ) -> Dict[str, Any]:
        payload = snapshot.to_dict()
        payload["syncType"] = "initial" if initial else "update"
        return await self._call(
            "POST",
            f"/sync/{account_hash(account_id)}",
            json=payload,
            headers=self._auth(session_token),
        )

    async def sync_meta(self, account_id: str, session_token: str) -> Dict[str, Any]:
        return await self._call(
            "GET", f"/sync/{account_hash(account_id)}/meta", headers=self._auth(session_token)
        )


class LocalSnapshotFile:
    """The device's cached snapshot, stored as a single JSON document."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[SyncSnapshot]:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("local_snapshot_corrupt", path=str(self.path))
            return None
        if not isinstance(payload, dict):
            return None
        return SyncSnapshot.from_dict(payload)

    def save(self, snapshot: SyncSnapshot) -> None:
        """Replace the cached snapshot in one step."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".snapshot-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(snapshot.to_dict(), handle)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise


class DeviceSync:
    """Reconcile one device's snapshot file with the server copy."""

    def __init__(
        self,
        client: AccountClient,
        local: LocalSnapshotFile,
        *,
        account_id: str,
        session_token: str,
    ) -> None:
        self.client = client
        self.local = local
        self.account_id = account_id
        self.session_token = session_token

    async def sync(self) -> Optional[ReconcileOutcome]:
        """Pull, compare timestamps, then overwrite the losing side wholesale.

        Returns ``None`` when neither side holds a snapshot.
        """
        server = await self.client.pull(self.account_id, self.session_token)
        local = self.local.load()
        if local is None:
            if server is None:
                return None
            self.local.save(server)
            logger.info("device_sync_pulled", timestamp=server.timestamp, first_sync=True)
            return ReconcileOutcome(action=PULLED, snapshot=server)

        outcome = reconcile(local, server)
        if outcome.pulled:
            self.local.save(outcome.snapshot)
            logger.info(
                "device_sync_pulled",
                timestamp=outcome.snapshot.timestamp,
                discarded_timestamp=local.timestamp,
            )
        else:
            await self.client.push(
                self.account_id,
                self.session_token,
                outcome.snapshot,
                initial=server is None,
            )
            logger.info(
                "device_sync_pushed",
                timestamp=outcome.snapshot.timestamp,
                initial=server is None,
            )
        return outcome
