from __future__ import annotations

import contextlib
from typing import Any, AsyncIterator, Dict, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from signalnoise.logging import get_logger
from signalnoise.storage.common import (
    KeySpace,
    cleared_snapshot_fields,
    snapshot_fields,
    stringify_fields,
)
from signalnoise.storage.errors import StoreError
from signalnoise.storage.models import Account, SyncSnapshot

logger = get_logger(__name__)


class RedisAccountStore:
    """Account records as Redis hashes plus token -> account indexes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Compare-and-clear: only the holder of the current session can end it
    _CLEAR_SESSION_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'session_token')
if current ~= ARGV[1] then
  return 0
end
redis.call('HDEL', KEYS[1], 'session_token', 'session_created', 'session_expires')
redis.call('DEL', KEYS[2])
return 1
"""

    # Compare-and-delete of the entitlement, stamped in the same step
    _REVOKE_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'access_token')
if current ~= ARGV[1] then
  return 0
end
redis.call('HDEL', KEYS[1], 'access_token')
redis.call('HSET', KEYS[1], 'last_active', ARGV[2], 'access_revoked', ARGV[2])
redis.call('DEL', KEYS[2])
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "sn:",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.keys = KeySpace(key_prefix)
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._clear_session = self.client.register_script(self._CLEAR_SESSION_SCRIPT)
        self._revoke = self.client.register_script(self._REVOKE_SCRIPT)

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error(
                "redis_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(f"{operation} failed") from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def get_account(self, account_id: str) -> Optional[Account]:
        async with self._guard("get_account"):
            raw = await self.client.hgetall(self.keys.account(account_id))
        if not raw:
            return None
        return Account.from_hash(account_id, raw)

    async def provision_account(self, account_id: str, fields: Dict[str, Any]) -> Account:
        mapping = stringify_fields({"email": account_id, **fields})
        async with self._guard("provision_account"):
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(self.keys.account(account_id), mapping=mapping)
            if mapping.get("access_token"):
                pipe.set(self.keys.entitlement(mapping["access_token"]), account_id)
            await pipe.execute()
        return Account.from_hash(account_id, mapping)

    async def put_magic_token(self, token: str, account_id: str, ttl_seconds: int) -> None:
        async with self._guard("put_magic_token"):
            await self.client.set(self.keys.magic(token), account_id, ex=ttl_seconds)

    async def pop_magic_token(self, token: str) -> Optional[str]:
        """Atomically read and delete a magic token so only one redeemer wins."""
        key = self.keys.magic(token)
        async with self._guard("pop_magic_token"):
            return await self.client.getdel(key)

    async def start_session(
        self,
        account_id: str,
        session_token: str,
        *,
        created_ms: int,
        expires_ms: int,
        previous_token: Optional[str] = None,
    ) -> int:
        account_key = self.keys.account(account_id)
        async with self._guard("start_session"):
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(
                account_key,
                mapping={
                    "session_token": session_token,
                    "session_created": str(created_ms),
                    "session_expires": str(expires_ms),
                    "last_active": str(created_ms),
                },
            )
            pipe.hincrby(account_key, "login_count", 1)
            pipe.set(self.keys.session(session_token), account_id)
            if previous_token and previous_token != session_token:
                pipe.delete(self.keys.session(previous_token))
            results = await pipe.execute()
        return int(results[1])

    async def find_account_by_session(self, session_token: str) -> Optional[str]:
        async with self._guard("find_account_by_session"):
            return await self.client.get(self.keys.session(session_token))

    async def touch_session(
        self, account_id: str, *, last_active_ms: int, expires_ms: Optional[int] = None
    ) -> None:
        mapping = {"last_active": str(last_active_ms)}
        if expires_ms is not None:
            mapping["session_expires"] = str(expires_ms)
        async with self._guard("touch_session"):
            await self.client.hset(self.keys.account(account_id), mapping=mapping)

    async def clear_session(self, account_id: str, session_token: str) -> bool:
        async with self._guard("clear_session"):
            cleared = await self._clear_session(
                keys=[self.keys.account(account_id), self.keys.session(session_token)],
                args=[session_token],
            )
        return bool(int(cleared))

    async def find_account_by_entitlement(self, access_token: str) -> Optional[str]:
        async with self._guard("find_account_by_entitlement"):
            return await self.client.get(self.keys.entitlement(access_token))

    async def reindex_entitlements(self, *, batch_size: int = 200) -> int:
        """Write missing entitlement index entries for rows provisioned without one.

        A one-off maintenance pass: account keys are walked with SCAN and each
        batch's ``access_token`` fields are read through a single pipeline.
        Returns the number of index entries written.
        """
        written = 0
        batch: List[str] = []
        async with self._guard("reindex_entitlements"):
            async for key in self.client.scan_iter(
                match=self.keys.account_pattern(), count=batch_size
            ):
                if self.keys.account_id_from_key(key) is None:
                    continue
                batch.append(key)
                if len(batch) >= batch_size:
                    written += await self._index_batch(batch)
                    batch = []
            if batch:
                written += await self._index_batch(batch)
        logger.info("entitlement_index_rebuilt", written=written)
        return written

    async def _index_batch(self, keys: List[str]) -> int:
        pipe = self.client.pipeline(transaction=False)
        for key in keys:
            pipe.hget(key, "access_token")
        tokens = await pipe.execute()
        pipe = self.client.pipeline(transaction=False)
        queued = 0
        for key, access_token in zip(keys, tokens):
            if access_token:
                # NX keeps entries written concurrently by provisioning
                pipe.set(
                    self.keys.entitlement(access_token),
                    self.keys.account_id_from_key(key),
                    nx=True,
                )
                queued += 1
        if not queued:
            return 0
        results = await pipe.execute()
        return sum(1 for result in results if result)

    async def revoke_entitlement(
        self, account_id: str, access_token: str, *, now_ms: int
    ) -> bool:
        async with self._guard("revoke_entitlement"):
            revoked = await self._revoke(
                keys=[self.keys.account(account_id), self.keys.entitlement(access_token)],
                args=[access_token, str(now_ms)],
            )
        return bool(int(revoked))

    async def write_snapshot(
        self,
        account_id: str,
        snapshot: SyncSnapshot,
        *,
        now_ms: int,
        device: Optional[str] = None,
        initial: bool = False,
    ) -> int:
        account_key = self.keys.account(account_id)
        fields = snapshot_fields(snapshot, now_ms=now_ms, device=device, initial=initial)
        async with self._guard("write_snapshot"):
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(account_key, mapping=fields)
            cleared = cleared_snapshot_fields(snapshot)
            if cleared:
                pipe.hdel(account_key, *cleared)
            pipe.hincrby(account_key, "version", 1)
            results = await pipe.execute()
        return int(results[-1])


__all__ = ["RedisAccountStore"]
