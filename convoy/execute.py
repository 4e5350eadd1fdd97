"""Apply executor: runs change-sets against external collaborators."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .config import ExecutorConfig
from .contracts import (
    ApplyReport,
    ChangeAction,
    ChangeOperation,
    ChangeSet,
    OperationOutcome,
    OperationResult,
    ResourceKind,
    ResourceStatus,
    StateRecord,
)
from .converge import ConvergenceWatcher
from .errors import PermanentApplyError, StaleStateError, TransientApplyError
from .providers import OrchestratorAPI, ProvisioningAPI
from .state import StateStore
from .utils.retry import schedule_retry
from .utils.signals import AbortSignal

logger = logging.getLogger(__name__)


class ApplyExecutor:
    """Execute change-set operations tier by tier.

    Operations inside a tier run concurrently, bounded by
    ``settings.concurrency``; a tier starts only after every operation of
    the previous tier reached a terminal outcome.
    """

    def __init__(
        self,
        provisioner: ProvisioningAPI,
        orchestrator: OrchestratorAPI,
        store: StateStore,
        settings: ExecutorConfig | None = None,
        watcher: ConvergenceWatcher | None = None,
    ) -> None:
        self._provisioner = provisioner
        self._orchestrator = orchestrator
        self._store = store
        self._settings = settings or ExecutorConfig()
        self._watcher = watcher

    async def execute(
        self, changeset: ChangeSet, signal: Optional[AbortSignal] = None
    ) -> ApplyReport:
        results: Dict[str, OperationResult] = {}
        semaphore = asyncio.Semaphore(max(1, self._settings.concurrency))

        for index, tier in enumerate(changeset.tiers()):
            if signal is not None and signal.aborted:
                logger.info(f"Abort requested, skipping tier {index}")
                for op in tier:
                    results[op.identifier] = self._result(
                        op, OperationOutcome.SKIPPED, "run aborted"
                    )
                continue

            tier_results = await asyncio.gather(
                *(self._run_when_unblocked(op, results, semaphore, signal) for op in tier)
            )
            for result in tier_results:
                results[result.identifier] = result

        report = ApplyReport(results=[results[op.identifier] for op in changeset.operations])
        logger.info(
            f"Apply finished: applied={report.applied} failed={report.failed} "
            f"blocked={report.blocked} skipped={report.skipped}"
        )
        return report

    @staticmethod
    def _result(
        op: ChangeOperation,
        outcome: OperationOutcome,
        error: Optional[str] = None,
        attempts: int = 0,
    ) -> OperationResult:
        return OperationResult(
            identifier=op.identifier,
            action=op.action,
            outcome=outcome,
            error=error,
            attempts=attempts,
        )

    async def _run_when_unblocked(
        self,
        op: ChangeOperation,
        results: Dict[str, OperationResult],
        semaphore: asyncio.Semaphore,
        signal: Optional[AbortSignal],
    ) -> OperationResult:
        for dep in op.after:
            prior = results.get(dep)
            if prior is None:
                continue
            if prior.outcome in (OperationOutcome.FAILED, OperationOutcome.BLOCKED):
                logger.info(f"Blocking {op.identifier}: dependency {dep} {prior.outcome.value}")
                return self._result(
                    op, OperationOutcome.BLOCKED, f"dependency '{dep}' {prior.outcome.value}"
                )
            if prior.outcome == OperationOutcome.SKIPPED:
                return self._result(op, OperationOutcome.SKIPPED, f"dependency '{dep}' skipped")

        if self._watcher is not None:
            for dep in op.after:
                converged = await self._watcher.wait_for(dep)
                if converged is not None and not converged.converged:
                    logger.info(f"Blocking {op.identifier}: dependency {dep} not ready")
                    return self._result(
                        op, OperationOutcome.BLOCKED, f"dependency '{dep}' not ready"
                    )

        async with semaphore:
            if signal is not None and signal.aborted:
                return self._result(op, OperationOutcome.SKIPPED, "run aborted")
            return await self._apply(op)

    async def _dispatch(self, op: ChangeOperation) -> Optional[str]:
        """Invoke the collaborator for ``op`` and return the resource handle."""
        if op.kind == ResourceKind.WORKLOAD:
            if op.action == ChangeAction.DELETE:
                await self._orchestrator.delete_workload(op.identifier)
            else:
                await self._orchestrator.apply_workload(op.identifier, op.config)
            return op.identifier

        if op.action == ChangeAction.CREATE:
            return await self._provisioner.create(op.kind, op.config, op.identifier)

        handle = op.prior.handle if op.prior else None
        if handle is None:
            return None
        if op.action == ChangeAction.UPDATE:
            await self._provisioner.update(handle, op.config)
        else:
            await self._provisioner.delete(handle)
        return handle

    async def _apply(self, op: ChangeOperation) -> OperationResult:
        attempts = 0
        while True:
            attempts += 1
            try:
                handle = await asyncio.wait_for(
                    self._dispatch(op), timeout=self._settings.operation_timeout
                )
            except asyncio.TimeoutError:
                error: Exception = TransientApplyError(
                    f"{op.action.value} timed out after {self._settings.operation_timeout}s"
                )
            except TransientApplyError as exc:
                error = exc
            except PermanentApplyError as exc:
                return await self._record_failure(op, exc, attempts)
            except Exception as exc:
                logger.exception(f"Unexpected error applying {op.identifier}")
                return await self._record_failure(op, PermanentApplyError(str(exc)), attempts)
            else:
                return await self._record_success(op, handle, attempts)

            if attempts >= self._settings.max_attempts:
                return await self._record_failure(op, error, attempts)
            logger.warning(
                f"Transient failure on {op.action.value} {op.identifier} "
                f"(attempt {attempts}/{self._settings.max_attempts}): {error}"
            )
            await schedule_retry(
                attempts,
                base=self._settings.backoff_base,
                jitter=self._settings.backoff_jitter,
                factor=self._settings.backoff_factor,
            )

    def _record_for(
        self, op: ChangeOperation, status: ResourceStatus, handle: Optional[str]
    ) -> StateRecord:
        if op.definition is not None:
            config_hash = op.definition.config_hash()
            dependencies = list(op.definition.depends_on)
        else:
            config_hash = op.prior.config_hash if op.prior else None
            dependencies = list(op.prior.dependencies) if op.prior else []
        return StateRecord(
            identifier=op.identifier,
            kind=op.kind,
            config_hash=config_hash,
            handle=handle,
            status=status,
            dependencies=dependencies,
        )

    async def _record_success(
        self, op: ChangeOperation, handle: Optional[str], attempts: int
    ) -> OperationResult:
        if op.action == ChangeAction.DELETE:
            status = ResourceStatus.DELETING if handle else ResourceStatus.ABSENT
        else:
            status = ResourceStatus.CREATING
        try:
            committed = await self._store.commit(
                self._record_for(op, status, handle),
                expected_version=op.prior.version if op.prior else 0,
            )
        except StaleStateError as exc:
            logger.error(f"{op.identifier} was applied but state changed underneath: {exc}")
            return self._result(op, OperationOutcome.FAILED, str(exc), attempts)

        logger.info(f"Applied {op.action.value} {op.identifier} (handle={handle})")
        if self._watcher is not None and status != ResourceStatus.ABSENT:
            self._watcher.start(op.action, committed, op.config, after=op.after)
        return self._result(op, OperationOutcome.APPLIED, attempts=attempts)

    async def _record_failure(
        self, op: ChangeOperation, error: Exception, attempts: int
    ) -> OperationResult:
        logger.error(f"Failed to {op.action.value} {op.identifier}: {error}")
        record = StateRecord(
            identifier=op.identifier,
            kind=op.kind,
            config_hash=op.prior.config_hash if op.prior else None,
            handle=op.prior.handle if op.prior else None,
            status=ResourceStatus.FAILED,
            dependencies=list(op.definition.depends_on)
            if op.definition is not None
            else list(op.prior.dependencies if op.prior else []),
        )
        try:
            await self._store.commit(
                record, expected_version=op.prior.version if op.prior else 0
            )
        except StaleStateError as exc:
            logger.error(f"Could not record failure of {op.identifier}: {exc}")
        return self._result(op, OperationOutcome.FAILED, str(error), attempts)
