"""Unit tests for entitlement revocation."""

import pytest

from signalnoise.config import DAY_MS, Settings
from signalnoise.service.errors import AuthenticationError, ForbiddenError
from signalnoise.service.magic_link import MagicLinkService
from signalnoise.service.revocation import RevocationService
from signalnoise.storage.memory import MemoryAccountStore
from signalnoise.storage.models import SyncSnapshot


@pytest.fixture
def store(clock):
    return MemoryAccountStore(clock=clock)


@pytest.fixture
def magic(store, clock):
    return MagicLinkService(store, Settings(), clock=clock)


@pytest.fixture
def revocation(store, clock):
    return RevocationService(store, clock=clock)


async def _provision(store, **fields):
    values = {"status": "active", "access_token": "ent-1", "last_active": 0}
    values.update(fields)
    await store.provision_account("a@x.com", values)


async def test_revoke_without_session_reports_zero_devices(store, revocation, clock):
    await _provision(store)
    result = await revocation.revoke("ent-1")
    assert result.revoked_devices == 0
    assert result.revoked_at == clock()
    body = result.to_dict()
    assert body["success"] is True
    assert body["revokedDevices"] == 0
    assert body["revokedAt"].endswith("Z")


async def test_revoke_with_live_session_keeps_session_and_data(store, magic, revocation, clock):
    await _provision(store)
    bundle = await magic.redeem_link((await magic.request_link("a@x.com")).token)
    await store.write_snapshot(
        "a@x.com", SyncSnapshot(data={"tasks": [1, 2]}, timestamp=5), now_ms=clock()
    )
    clock.advance(DAY_MS)
    result = await revocation.revoke("ent-1")
    assert result.revoked_devices == 1
    account = await store.get_account("a@x.com")
    assert account.access_token is None
    assert account.access_revoked == clock()
    assert account.last_active == clock()
    assert account.session_token == bundle.session_token
    assert account.app_data == {"tasks": [1, 2]}


async def test_revoked_account_cannot_sign_in(store, magic, revocation):
    await _provision(store)
    await revocation.revoke("ent-1")
    with pytest.raises(ForbiddenError):
        await magic.request_link("a@x.com")


async def test_revoke_is_not_repeatable(store, revocation):
    await _provision(store)
    await revocation.revoke("ent-1")
    with pytest.raises(ForbiddenError):
        await revocation.revoke("ent-1")


async def test_unknown_token_forbidden(store, revocation):
    await _provision(store)
    with pytest.raises(ForbiddenError):
        await revocation.revoke("not-a-token")


async def test_inactive_account_forbidden(store, revocation):
    await _provision(store, status="inactive")
    with pytest.raises(ForbiddenError):
        await revocation.revoke("ent-1")


async def test_missing_token_unauthorized(revocation):
    with pytest.raises(AuthenticationError):
        await revocation.revoke(None)
