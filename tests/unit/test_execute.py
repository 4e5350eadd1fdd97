"""Apply executor tests."""

import pytest

from convoy.config import ExecutorConfig
from convoy.contracts import (
    ChangeAction,
    OperationOutcome,
    ResourceDefinition,
    ResourceKind,
    ResourceStatus,
)
from convoy.errors import PermanentApplyError, TransientApplyError
from convoy.execute import ApplyExecutor
from convoy.graph import build_graph
from convoy.plan import PlanEngine
from convoy.providers import InMemoryOrchestrator, InMemoryProvisioner
from convoy.state import InMemoryStateStore
from convoy.utils.signals import AbortSignal


def _settings(**overrides):
    values = dict(
        concurrency=4,
        max_attempts=3,
        backoff_factor=0.0,
        backoff_jitter=0.0,
        operation_timeout=1.0,
    )
    values.update(overrides)
    return ExecutorConfig(**values)


def _res(identifier, *deps, kind=ResourceKind.NETWORK, **config):
    return ResourceDefinition(
        identifier=identifier, kind=kind, config=config, depends_on=list(deps)
    )


def _branching():
    # network -> cluster -> {nodes, web}; cache is an independent branch
    return [
        _res("network"),
        _res("cluster", "network", kind=ResourceKind.COMPUTE_CLUSTER),
        _res("nodes", "cluster", kind=ResourceKind.NODE_GROUP, min_size=2),
        _res("web", "nodes", kind=ResourceKind.WORKLOAD, replicas=2),
        _res("cache"),
        _res("cache-app", "cache", kind=ResourceKind.WORKLOAD),
    ]


async def _plan(store, definitions):
    return await PlanEngine(store).plan(build_graph(definitions))


@pytest.mark.asyncio
async def test_apply_commits_state_for_each_operation():
    store = InMemoryStateStore()
    provisioner, orchestrator = InMemoryProvisioner(), InMemoryOrchestrator()
    executor = ApplyExecutor(provisioner, orchestrator, store, _settings())

    report = await executor.execute(await _plan(store, _branching()))

    assert sorted(report.applied) == sorted(d.identifier for d in _branching())
    snapshot = await store.get_snapshot()
    assert snapshot["cluster"].status == ResourceStatus.CREATING
    assert snapshot["cluster"].handle == provisioner.handle_for("cluster")
    assert snapshot["web"].handle == "web"
    assert snapshot["web"].dependencies == ["nodes"]
    assert orchestrator.workloads["web"] == {"replicas": 2}
    assert ("create", "network") in provisioner.calls


@pytest.mark.asyncio
async def test_permanent_failure_blocks_transitive_dependents_only():
    store = InMemoryStateStore()
    provisioner, orchestrator = InMemoryProvisioner(), InMemoryOrchestrator()
    provisioner.fail("cluster", PermanentApplyError("quota exceeded"))
    executor = ApplyExecutor(provisioner, orchestrator, store, _settings())

    report = await executor.execute(await _plan(store, _branching()))

    assert report.failed == ["cluster"]
    assert sorted(report.blocked) == ["nodes", "web"]
    assert sorted(report.applied) == ["cache", "cache-app", "network"]
    assert report.get("cluster").error == "quota exceeded"
    assert report.get("cluster").attempts == 1
    assert ("create", "nodes") not in provisioner.calls
    assert "web" not in orchestrator.workloads

    snapshot = await store.get_snapshot()
    assert snapshot["cluster"].status == ResourceStatus.FAILED
    assert "nodes" not in snapshot


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    store = InMemoryStateStore()
    provisioner, orchestrator = InMemoryProvisioner(), InMemoryOrchestrator()
    provisioner.fail("network", TransientApplyError("throttled"), TransientApplyError("throttled"))
    executor = ApplyExecutor(provisioner, orchestrator, store, _settings(max_attempts=3))

    report = await executor.execute(await _plan(store, [_res("network")]))

    result = report.get("network")
    assert result.outcome == OperationOutcome.APPLIED
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_transient_failures_give_up_after_max_attempts():
    store = InMemoryStateStore()
    provisioner, orchestrator = InMemoryProvisioner(), InMemoryOrchestrator()
    provisioner.fail("network", *[TransientApplyError("throttled")] * 5)
    executor = ApplyExecutor(provisioner, orchestrator, store, _settings(max_attempts=2))

    report = await executor.execute(
        await _plan(store, [_res("network"), _res("cluster", "network")])
    )

    assert report.get("network").outcome == OperationOutcome.FAILED
    assert report.get("network").attempts == 2
    assert report.get("cluster").outcome == OperationOutcome.BLOCKED


@pytest.mark.asyncio
async def test_operation_timeout_counts_as_transient_failure():
    store = InMemoryStateStore()
    provisioner = InMemoryProvisioner(latency=0.2)
    executor = ApplyExecutor(
        provisioner,
        InMemoryOrchestrator(),
        store,
        _settings(max_attempts=2, operation_timeout=0.05),
    )

    report = await executor.execute(await _plan(store, [_res("network")]))

    result = report.get("network")
    assert result.outcome == OperationOutcome.FAILED
    assert result.attempts == 2
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_concurrency_is_bounded_within_a_tier():
    store = InMemoryStateStore()
    provisioner = InMemoryProvisioner(latency=0.02)
    executor = ApplyExecutor(
        provisioner, InMemoryOrchestrator(), store, _settings(concurrency=2)
    )
    definitions = [_res(f"net-{i}") for i in range(6)]

    report = await executor.execute(await _plan(store, definitions))

    assert len(report.applied) == 6
    assert provisioner.max_in_flight == 2


@pytest.mark.asyncio
async def test_abort_skips_undispatched_tiers():
    store = InMemoryStateStore()
    signal = AbortSignal()
    signal.abort("operator stop")
    executor = ApplyExecutor(InMemoryProvisioner(), InMemoryOrchestrator(), store, _settings())

    report = await executor.execute(await _plan(store, _branching()), signal)

    assert report.applied == []
    assert len(report.skipped) == len(_branching())
    assert await store.get_snapshot() == {}


@pytest.mark.asyncio
async def test_delete_marks_records_deleting():
    store = InMemoryStateStore()
    provisioner, orchestrator = InMemoryProvisioner(), InMemoryOrchestrator()
    executor = ApplyExecutor(provisioner, orchestrator, store, _settings())
    await executor.execute(await _plan(store, _branching()))

    changeset = await PlanEngine(store).plan_destroy()
    report = await executor.execute(changeset)

    assert all(op.action == ChangeAction.DELETE for op in changeset.operations)
    assert len(report.applied) == len(_branching())
    snapshot = await store.get_snapshot()
    assert snapshot["network"].status == ResourceStatus.DELETING
    assert "web" not in orchestrator.workloads
    assert provisioner.handle_for("network") is None
