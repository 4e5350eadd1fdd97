"""State store backend tests."""

import asyncio

import pytest

from convoy.contracts import (
    PipelineRun,
    PipelineState,
    ResourceKind,
    ResourceStatus,
    StateRecord,
)
from convoy.errors import StaleStateError
from convoy.state import InMemoryStateStore, SQLiteStateStore


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteStateStore(tmp_path / "state.db")
    return InMemoryStateStore()


def _record(identifier="cluster", status=ResourceStatus.CREATING, **kwargs):
    return StateRecord(
        identifier=identifier,
        kind=ResourceKind.COMPUTE_CLUSTER,
        config_hash="abc",
        handle="cluster-1",
        status=status,
        dependencies=["network"],
        **kwargs,
    )


@pytest.mark.asyncio
async def test_commit_and_snapshot(store):
    first = await store.commit(_record())
    assert first.version == 1

    second = await store.commit(_record(status=ResourceStatus.READY), expected_version=1)
    assert second.version == 2

    snapshot = await store.get_snapshot()
    assert list(snapshot) == ["cluster"]
    record = snapshot["cluster"]
    assert record.status == ResourceStatus.READY
    assert record.dependencies == ["network"]
    assert record.handle == "cluster-1"
    assert record.version == 2

    assert await store.get_record("missing") is None


@pytest.mark.asyncio
async def test_commit_rejects_stale_version(store):
    await store.commit(_record())
    await store.commit(_record(), expected_version=1)

    with pytest.raises(StaleStateError) as exc_info:
        await store.commit(_record(status=ResourceStatus.READY), expected_version=1)
    assert exc_info.value.actual == 2

    with pytest.raises(StaleStateError):
        await store.commit(_record(identifier="new"), expected_version=3)


@pytest.mark.asyncio
async def test_lock_is_exclusive_and_not_reentrant(store):
    assert await store.try_lock("run-1")
    assert not await store.try_lock("run-2")
    assert not await store.try_lock("run-1")
    assert await store.lock_holder() == "run-1"

    assert not await store.unlock("run-2")
    assert await store.unlock("run-1")
    assert await store.lock_holder() is None
    assert await store.try_lock("run-2")


@pytest.mark.asyncio
async def test_force_unlock_returns_previous_holder(store):
    assert await store.force_unlock() is None
    await store.try_lock("crashed-run")
    assert await store.force_unlock() == "crashed-run"
    assert await store.try_lock("next-run")


@pytest.mark.asyncio
async def test_concurrent_force_unlock_reports_holder_once(store):
    await store.try_lock("crashed-run")
    released = await asyncio.gather(*(store.force_unlock() for _ in range(8)))
    assert released.count("crashed-run") == 1
    assert released.count(None) == 7


@pytest.mark.asyncio
async def test_runs_are_archived(store):
    run = PipelineRun(require_approval=True)
    await store.save_run(run)
    run.state = PipelineState.SUCCEEDED
    await store.save_run(run)

    loaded = await store.get_run(run.run_id)
    assert loaded is not None
    assert loaded.state == PipelineState.SUCCEEDED
    assert loaded.require_approval is True
    assert [r.run_id for r in await store.list_runs()] == [run.run_id]
    assert await store.get_run("missing") is None


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "state.db"
    await SQLiteStateStore(path).commit(_record(status=ResourceStatus.READY))

    reopened = SQLiteStateStore(path)
    record = await reopened.get_record("cluster")
    assert record is not None
    assert record.status == ResourceStatus.READY
    assert record.version == 1
