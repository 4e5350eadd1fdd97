"""Pipeline coordinator: plan, approve, apply, converge and verify."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from .config import ConvoyConfig, load_config
from .contracts import (
    ChangeSet,
    PipelineRun,
    PipelineState,
    ResourceDefinition,
    ResourceKind,
    StageResult,
)
from .converge import ConvergenceWatcher
from .errors import ConvoyError, PlanConflictError, VerificationFailedError
from .execute import ApplyExecutor
from .graph import ResourceGraph, build_graph
from .plan import PlanEngine
from .providers import OrchestratorAPI, ProvisioningAPI
from .state import StateStore
from .utils.signals import AbortSignal

logger = logging.getLogger(__name__)

Approver = Callable[[PipelineRun, ChangeSet], Awaitable[bool]]
Verifier = Callable[[ResourceGraph], Awaitable[None]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkloadVerifier:
    """Post-deploy health check over every declared workload."""

    def __init__(self, orchestrator: OrchestratorAPI) -> None:
        self._orchestrator = orchestrator

    async def __call__(self, graph: ResourceGraph) -> None:
        problems: List[str] = []
        for definition in graph.definitions:
            if definition.kind != ResourceKind.WORKLOAD:
                continue
            status = await self._orchestrator.workload_status(definition.identifier)
            if not status.found:
                problems.append(f"{definition.identifier}: not found")
            elif not status.healthy:
                problems.append(f"{definition.identifier}: health check failing")
            elif status.replicas_ready < status.replicas_desired:
                problems.append(
                    f"{definition.identifier}: {status.replicas_ready}/"
                    f"{status.replicas_desired} replicas ready"
                )
        if problems:
            raise VerificationFailedError("; ".join(problems))


class PipelineCoordinator:
    """Drive pipeline runs through their state machine.

    Runs execute as background tasks; ``submit`` returns immediately with
    the run id, ``status``/``abort``/``approve`` act on live runs and
    ``wait`` blocks until a run is terminal. Finished runs are archived in
    the state store.
    """

    def __init__(
        self,
        store: StateStore,
        provisioner: ProvisioningAPI,
        orchestrator: OrchestratorAPI,
        config: Optional[ConvoyConfig] = None,
        approver: Optional[Approver] = None,
        verifier: Optional[Verifier] = None,
    ) -> None:
        self._store = store
        self._provisioner = provisioner
        self._orchestrator = orchestrator
        self._config = config or load_config()
        self._approver = approver
        self._verifier = verifier or WorkloadVerifier(orchestrator)
        self._runs: Dict[str, PipelineRun] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._signals: Dict[str, AbortSignal] = {}
        self._approvals: Dict[str, asyncio.Future] = {}
        self._changesets: Dict[str, ChangeSet] = {}

    # ------------------------------------------------------------------
    # Trigger API
    async def submit(
        self,
        definitions: Iterable[ResourceDefinition],
        require_approval: Optional[bool] = None,
        origin: Optional[str] = None,
    ) -> str:
        """Start a run in the background and return its identifier."""
        if require_approval is None:
            require_approval = self._config.pipeline.require_approval
        run = PipelineRun(
            definitions=list(definitions),
            require_approval=require_approval,
            origin=origin,
        )
        signal = AbortSignal()
        self._runs[run.run_id] = run
        self._signals[run.run_id] = signal
        await self._store.save_run(run)
        self._tasks[run.run_id] = asyncio.create_task(
            self._execute(run, signal), name=f"pipeline-{run.run_id}"
        )
        logger.info(f"Submitted run_id={run.run_id} with {len(run.definitions)} resources")
        return run.run_id

    async def run(
        self,
        definitions: Iterable[ResourceDefinition],
        require_approval: Optional[bool] = None,
    ) -> PipelineRun:
        """Submit a run and wait for it to finish."""
        run_id = await self.submit(definitions, require_approval)
        return await self.wait(run_id)

    async def wait(self, run_id: str) -> PipelineRun:
        task = self._tasks.get(run_id)
        if task is not None:
            await task
        run = await self._store.get_run(run_id)
        if run is None:
            raise KeyError(run_id)
        return run

    async def status(self, run_id: str) -> Optional[PipelineRun]:
        run = self._runs.get(run_id)
        if run is not None:
            return run.model_copy(deep=True)
        return await self._store.get_run(run_id)

    def pending_changeset(self, run_id: str) -> Optional[ChangeSet]:
        """Change-set planned by a live run, once planning has finished."""
        return self._changesets.get(run_id)

    def abort(self, run_id: str, reason: str = "abort requested") -> bool:
        """Request cooperative cancellation of a live run."""
        run = self._runs.get(run_id)
        if run is None or run.is_terminal:
            return False
        logger.info(f"Abort requested for run_id={run_id}: {reason}")
        self._signals[run_id].abort(reason)
        self._decide(run_id, False)
        return True

    def approve(self, run_id: str) -> bool:
        return self._decide(run_id, True)

    def deny(self, run_id: str) -> bool:
        return self._decide(run_id, False)

    async def resume(self, run_id: str, require_approval: Optional[bool] = None) -> str:
        """Re-submit the definitions of ``run_id``; only the remaining delta is applied."""
        previous = await self._require_run(run_id)
        return await self.submit(
            previous.definitions, require_approval, origin=f"resume:{run_id}"
        )

    async def rollback(self, run_id: str, require_approval: Optional[bool] = None) -> str:
        """Start a new run that restores the definitions recorded by ``run_id``."""
        target = await self._require_run(run_id)
        return await self.submit(
            target.definitions, require_approval, origin=f"rollback:{run_id}"
        )

    async def destroy(self, require_approval: Optional[bool] = None) -> str:
        """Start a run that deletes every resource recorded in state."""
        return await self.submit([], require_approval, origin="destroy")

    async def _require_run(self, run_id: str) -> PipelineRun:
        run = await self.status(run_id)
        if run is None:
            raise KeyError(run_id)
        return run

    def _forget(self, run_id: str) -> None:
        for live in (self._runs, self._tasks, self._signals, self._changesets):
            live.pop(run_id, None)

    def _decide(self, run_id: str, decision: bool) -> bool:
        future = self._approvals.get(run_id)
        if future is None or future.done():
            return False
        future.set_result(decision)
        return True

    # ------------------------------------------------------------------
    # State machine
    async def _transition(self, run: PipelineRun, state: PipelineState) -> None:
        logger.info(f"Run {run.run_id}: {run.state.value} -> {state.value}")
        run.state = state
        if run.is_terminal:
            run.current_stage = None
            run.finished_at = _now()
        await self._store.save_run(run)

    @staticmethod
    def _begin(run: PipelineRun, name: str) -> StageResult:
        stage = StageResult(name=name)
        run.stages.append(stage)
        run.current_stage = name
        return stage

    @staticmethod
    def _end(stage: StageResult, outcome: str, detail: Optional[str] = None) -> None:
        stage.finished_at = _now()
        stage.outcome = outcome
        stage.detail = detail

    async def _fail(self, run: PipelineRun, stage: StageResult, error: object) -> None:
        logger.error(f"Run {run.run_id} failed in {stage.name}: {error}")
        self._end(stage, "failed", str(error))
        run.error = str(error)
        await self._transition(run, PipelineState.FAILED)

    async def _aborted(
        self, run: PipelineRun, signal: AbortSignal, stage: Optional[StageResult] = None
    ) -> None:
        reason = signal.reason or "aborted"
        if stage is not None and stage.outcome is None:
            self._end(stage, "aborted", reason)
        run.error = reason
        await self._transition(run, PipelineState.ABORTED)

    async def _await_approval(
        self, run: PipelineRun, changeset: ChangeSet, signal: AbortSignal
    ) -> bool:
        if self._approver is not None:
            decision: asyncio.Future = asyncio.ensure_future(self._approver(run, changeset))
        else:
            decision = asyncio.get_running_loop().create_future()
        self._approvals[run.run_id] = decision
        aborted = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {decision, aborted},
                timeout=self._config.pipeline.approval_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            aborted.cancel()
            self._approvals.pop(run.run_id, None)

        if decision not in done:
            decision.cancel()
            logger.info(f"Run {run.run_id}: no approval decision")
            return False
        if decision.cancelled():
            return False
        if decision.exception() is not None:
            logger.error(f"Approver for run {run.run_id} raised: {decision.exception()}")
            return False
        return bool(decision.result())

    async def _execute(self, run: PipelineRun, signal: AbortSignal) -> None:
        acquired = False
        try:
            await self._transition(run, PipelineState.PLANNING)
            stage = self._begin(run, "planning")
            try:
                acquired = await self._store.try_lock(run.run_id)
                if not acquired:
                    raise PlanConflictError(await self._store.lock_holder())
                graph = build_graph(run.definitions)
                changeset = await PlanEngine(self._store).plan(graph, run.run_id)
            except ConvoyError as exc:
                await self._fail(run, stage, exc)
                return
            self._changesets[run.run_id] = changeset
            self._end(stage, "succeeded", str(changeset.summary()))
            if signal.aborted:
                await self._aborted(run, signal)
                return

            if run.require_approval:
                await self._transition(run, PipelineState.AWAITING_APPROVAL)
                stage = self._begin(run, "approval")
                if not await self._await_approval(run, changeset, signal):
                    if not signal.aborted:
                        signal.abort("approval denied or timed out")
                    await self._aborted(run, signal, stage)
                    return
                self._end(stage, "succeeded")

            await self._transition(run, PipelineState.APPLYING)
            stage = self._begin(run, "applying")
            watcher = ConvergenceWatcher(
                self._provisioner,
                self._orchestrator,
                self._store,
                poll_interval=self._config.convergence.poll_interval,
                timeout=self._config.convergence.timeout,
                signal=signal,
            )
            executor = ApplyExecutor(
                self._provisioner,
                self._orchestrator,
                self._store,
                settings=self._config.executor,
                watcher=watcher,
            )
            report = await executor.execute(changeset, signal)
            run.operations = report.results
            if report.has_failures:
                # settle in-flight convergence so state reflects what did come up
                convergence = await watcher.wait_all()
                run.degraded = convergence.degraded
                await self._fail(run, stage, f"operations failed: {', '.join(report.failed)}")
                return
            if signal.aborted:
                await watcher.wait_all()
                await self._aborted(run, signal, stage)
                return
            self._end(stage, "succeeded", f"applied {len(report.applied)} operations")

            await self._transition(run, PipelineState.CONVERGING)
            stage = self._begin(run, "converging")
            convergence = await watcher.wait_all()
            run.degraded = convergence.degraded
            if signal.aborted:
                await self._aborted(run, signal, stage)
                return
            try:
                convergence.raise_for_degraded()
            except ConvoyError as exc:
                await self._fail(run, stage, exc)
                return
            if report.blocked:
                await self._fail(run, stage, f"operations blocked: {', '.join(report.blocked)}")
                return
            self._end(stage, "succeeded")
            if signal.aborted:
                await self._aborted(run, signal)
                return

            await self._transition(run, PipelineState.VERIFYING)
            stage = self._begin(run, "verifying")
            if self._config.pipeline.verify:
                try:
                    await self._verifier(graph)
                except VerificationFailedError as exc:
                    await self._fail(run, stage, exc)
                    return
            if signal.aborted:
                await self._aborted(run, signal, stage)
                return
            self._end(stage, "succeeded")
            await self._transition(run, PipelineState.SUCCEEDED)
        except Exception as exc:
            logger.exception(f"Run {run.run_id} crashed")
            run.error = str(exc)
            if not run.is_terminal:
                await self._transition(run, PipelineState.FAILED)
            raise
        finally:
            if acquired:
                await self._store.unlock(run.run_id)
            await self._store.save_run(run)
            self._forget(run.run_id)
