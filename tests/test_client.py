"""Device client tests, served in-process through httpx's ASGI transport."""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from signalnoise import app as app_module
from signalnoise.client import AccountClient, ClientError, DeviceSync, LocalSnapshotFile
from signalnoise.service.runtime import get_runtime
from signalnoise.service.sync import PULLED, PUSHED
from signalnoise.storage.models import SyncSnapshot


def _tasks(count):
    return {"tasks": [{"id": i} for i in range(count)], "history": [], "badges": []}


async def _signed_in_client(email="a@x.com"):
    await get_runtime().store.provision_account(
        email, {"status": "active", "access_token": "ent-1", "last_active": 0}
    )
    client = AccountClient(
        "http://testserver",
        transport=httpx.ASGITransport(app=app_module.app),
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)",
    )
    requested = await client.request_magic_link(email)
    token = parse_qs(urlparse(requested["devLink"]).query)["token"][0]
    session = await client.verify_magic_link(token)
    return client, session


async def test_newer_server_snapshot_replaces_local_file(tmp_path):
    client, session = await _signed_in_client()
    async with client:
        await client.push(
            "a@x.com",
            session["sessionToken"],
            SyncSnapshot(data=_tasks(1), timestamp=2000, first_name="Server"),
        )
        local = LocalSnapshotFile(tmp_path / "snapshot.json")
        local.save(SyncSnapshot(data=_tasks(3), timestamp=1000, first_name="Local"))

        device = DeviceSync(client, local, account_id="a@x.com", session_token=session["sessionToken"])
        outcome = await device.sync()

    assert outcome.action == PULLED
    stored = local.load()
    assert stored.timestamp == 2000
    assert len(stored.data["tasks"]) == 1
    assert stored.first_name == "Server"
    raw = json.loads((tmp_path / "snapshot.json").read_text())
    assert raw["timestamp"] == 2000


async def test_newer_local_snapshot_is_pushed(tmp_path):
    client, session = await _signed_in_client()
    async with client:
        await client.push(
            "a@x.com", session["sessionToken"], SyncSnapshot(data=_tasks(5), timestamp=1000)
        )
        local = LocalSnapshotFile(tmp_path / "snapshot.json")
        local.save(SyncSnapshot(data=_tasks(2), timestamp=3000, language="de"))

        device = DeviceSync(client, local, account_id="a@x.com", session_token=session["sessionToken"])
        outcome = await device.sync()
        server = await client.pull("a@x.com", session["sessionToken"])
        meta = await client.sync_meta("a@x.com", session["sessionToken"])

    assert outcome.action == PUSHED
    assert server.timestamp == 3000
    assert len(server.data["tasks"]) == 2
    assert server.language == "de"
    assert meta["version"] == 2
    assert meta["lastDevice"] == "Mac"



async def test_pushed_snapshot_replaces_every_server_field(tmp_path):
    client, session = await _signed_in_client()
    async with client:
        await client.push(
            "a@x.com",
            session["sessionToken"],
            SyncSnapshot(data=_tasks(1), timestamp=2000, first_name="Server", language="de"),
        )
        local = LocalSnapshotFile(tmp_path / "snapshot.json")
        winner = SyncSnapshot(data=_tasks(2), timestamp=3000)
        local.save(winner)

        device = DeviceSync(client, local, account_id="a@x.com", session_token=session["sessionToken"])
        outcome = await device.sync()
        server = await client.pull("a@x.com", session["sessionToken"])

    assert outcome.action == PUSHED
    assert server == winner

async def test_first_sync_uploads_as_initial(tmp_path):
    client, session = await _signed_in_client()
    async with client:
        local = LocalSnapshotFile(tmp_path / "snapshot.json")
        local.save(SyncSnapshot(data=_tasks(4), timestamp=500))
        device = DeviceSync(client, local, account_id="a@x.com", session_token=session["sessionToken"])
        outcome = await device.sync()

    assert outcome.action == PUSHED
    account = await get_runtime().store.get_account("a@x.com")
    assert account.synced_from_local is not None
    assert account.app_data_ts == 500


async def test_empty_device_pulls_server_copy(tmp_path):
    client, session = await _signed_in_client()
    async with client:
        await client.push(
            "a@x.com", session["sessionToken"], SyncSnapshot(data=_tasks(2), timestamp=10)
        )
        local = LocalSnapshotFile(tmp_path / "nested" / "snapshot.json")
        device = DeviceSync(client, local, account_id="a@x.com", session_token=session["sessionToken"])
        outcome = await device.sync()

    assert outcome.action == PULLED
    assert local.load().timestamp == 10


async def test_nothing_to_sync(tmp_path):
    client, session = await _signed_in_client()
    async with client:
        device = DeviceSync(
            client,
            LocalSnapshotFile(tmp_path / "snapshot.json"),
            account_id="a@x.com",
            session_token=session["sessionToken"],
        )
        assert await device.sync() is None


async def test_client_errors_carry_envelope_fields():
    client, session = await _signed_in_client()
    async with client:
        with pytest.raises(ClientError) as excinfo:
            await client.request_magic_link("a@x.com")
        assert excinfo.value.status_code == 409
        assert excinfo.value.code == "conflict"
        assert "lastActive" in excinfo.value.details

        with pytest.raises(ClientError) as excinfo:
            await client.pull("a@x.com", "f" * 64)
        assert excinfo.value.status_code == 404


def test_corrupt_local_snapshot_reads_as_missing(tmp_path):
    path = tmp_path / "snapshot.json"
    path.write_text("{not json")
    assert LocalSnapshotFile(path).load() is None
