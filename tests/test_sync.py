"""Tests for snapshot reconciliation and the server-side sync service."""

import pytest

from signalnoise.service.errors import NotFoundError
from signalnoise.service.sync import PULLED, PUSHED, SyncService, device_type, reconcile
from signalnoise.storage.memory import MemoryAccountStore
from signalnoise.storage.models import SyncSnapshot, empty_app_data


def _snapshot(timestamp, tasks, **extra):
    data = empty_app_data()
    data["tasks"] = [{"id": i, "text": f"task {i}"} for i in range(tasks)]
    return SyncSnapshot(data=data, timestamp=timestamp, **extra)


class TestReconcile:
    def test_newer_server_snapshot_replaces_local(self):
        local = _snapshot(1000, 3, first_name="Local", language="en")
        server = _snapshot(2000, 1, first_name="Server", language="de")
        outcome = reconcile(local, server)
        assert outcome.action == PULLED
        assert outcome.pulled
        assert outcome.snapshot is server
        assert outcome.snapshot.task_count() == 1
        assert outcome.snapshot.first_name == "Server"
        assert outcome.snapshot.language == "de"

    def test_newer_local_snapshot_is_pushed(self):
        local = _snapshot(3000, 2)
        server = _snapshot(2000, 5)
        outcome = reconcile(local, server)
        assert outcome.action == PUSHED
        assert outcome.snapshot is local

    def test_tie_keeps_local(self):
        local = _snapshot(2000, 2)
        outcome = reconcile(local, _snapshot(2000, 9))
        assert outcome.action == PUSHED
        assert outcome.snapshot is local

    def test_missing_server_snapshot_keeps_local(self):
        local = _snapshot(10, 1)
        assert reconcile(local, None).snapshot is local

    @pytest.mark.parametrize("t1,t2", [(0, 1), (1, 0), (5, 5), (1000, 2000), (2000, 1000)])
    def test_result_is_side_with_max_timestamp(self, t1, t2):
        local = _snapshot(t1, 1)
        server = _snapshot(t2, 2)
        outcome = reconcile(local, server)
        assert outcome.snapshot.timestamp == max(t1, t2)
        assert outcome.snapshot in (local, server)


@pytest.mark.parametrize(
    "agent,expected",
    [
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X)", "iPhone"),
        ("Mozilla/5.0 (iPad; CPU OS 16_0 like Mac OS X)", "iPad"),
        ("Mozilla/5.0 (Linux; Android 14)", "Android"),
        ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)", "Mac"),
        ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "Windows"),
        ("curl/8.0", "Desktop"),
        (None, "Desktop"),
    ],
)
def test_device_type(agent, expected):
    assert device_type(agent) == expected


@pytest.fixture
def store(clock):
    return MemoryAccountStore(clock=clock)


@pytest.fixture
def sync(store, clock):
    return SyncService(store, clock=clock)


async def test_push_overwrites_unconditionally(store, sync, clock):
    await store.provision_account("a@x.com", {"status": "active"})
    first = await sync.push("a@x.com", _snapshot(5000, 4), device="Mac", initial=True)
    assert first.version == 1
    # An older timestamp still overwrites; the decision belongs to reconcile
    second = await sync.push("a@x.com", _snapshot(1000, 1))
    assert second.to_dict() == {"success": True, "timestamp": 1000, "version": 2}
    pulled = await sync.pull("a@x.com")
    assert pulled.timestamp == 1000
    assert pulled.task_count() == 1


async def test_pull_without_snapshot_returns_none(store, sync):
    await store.provision_account("a@x.com", {"status": "active"})
    assert await sync.pull("a@x.com") is None


async def test_pull_unknown_account(sync):
    with pytest.raises(NotFoundError):
        await sync.pull("missing@x.com")


async def test_metadata_reports_version_and_device(store, sync, clock):
    await store.provision_account("a@x.com", {"status": "active", "last_active": 1})
    empty = await sync.metadata("a@x.com")
    assert empty.to_dict() == {
        "version": 0,
        "lastModified": 1,
        "lastDevice": "Unknown",
        "taskCount": 0,
    }
    await sync.push("a@x.com", _snapshot(7, 3), device="iPhone")
    meta = await sync.metadata("a@x.com")
    assert meta.to_dict() == {
        "version": 1,
        "lastModified": clock(),
        "lastDevice": "iPhone",
        "taskCount": 3,
    }


async def test_push_replaces_profile_fields_with_the_winner(store, sync):
    await store.provision_account("a@x.com", {"status": "active"})
    await sync.push("a@x.com", _snapshot(2000, 2, first_name="Ada", language="de"))
    winner = _snapshot(3000, 1)
    await sync.push("a@x.com", winner)
    assert await sync.pull("a@x.com") == winner
    account = await store.get_account("a@x.com")
    assert account.first_name == ""
    assert account.language is None
