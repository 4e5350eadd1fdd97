"""Command line interface for convoy pipelines."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer

from convoy import (
    ChangeSet,
    PipelineCoordinator,
    PipelineRun,
    PipelineState,
    build_graph,
    get_providers,
    get_state_store,
    load_config,
    load_definitions,
)
from convoy.errors import ConvoyError
from convoy.plan import PlanEngine

app = typer.Typer(help="CLI for convoy provisioning pipelines")

run_app = typer.Typer(help="Commands for inspecting and re-running pipeline runs")
state_app = typer.Typer(help="Commands for inspecting the state store")

app.add_typer(run_app, name="run")
app.add_typer(state_app, name="state")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Python logging level"),
) -> None:
    """Convoy CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_vars(pairs: Optional[List[str]]) -> dict:
    variables = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            typer.secho(f"Invalid variable '{pair}', expected KEY=VALUE", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        variables[key] = value
    return variables


def _load(definitions: Path, var: Optional[List[str]]):
    try:
        return load_definitions(definitions, _parse_vars(var))
    except ConvoyError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_changeset(changeset: ChangeSet) -> None:
    if changeset.is_empty:
        typer.echo("No changes. Infrastructure is up to date.")
        return
    for index, tier in enumerate(changeset.tiers()):
        typer.echo(f"Tier {index}:")
        for op in tier:
            typer.echo(f"  {op.action.value:<7} {op.identifier} ({op.kind.value})")
    summary = changeset.summary()
    typer.echo(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete."
    )


def _echo_run(run: PipelineRun) -> None:
    typer.echo(f"Run {run.run_id}: {run.state.value}")
    if run.origin:
        typer.echo(f"Origin: {run.origin}")
    for stage in run.stages:
        typer.echo(
            f"- {stage.name}: {stage.outcome or 'running'}"
            + (f" ({stage.detail})" if stage.detail else "")
        )
    for result in run.operations:
        typer.echo(
            f"  {result.action.value} {result.identifier}: {result.outcome.value}"
            + (f" - {result.error}" if result.error else "")
        )
    if run.degraded:
        typer.echo(f"Degraded: {', '.join(run.degraded)}")
    if run.error:
        typer.echo(f"Error: {run.error}")


def _coordinator(auto_approve: bool) -> PipelineCoordinator:
    config = load_config()
    provisioner, orchestrator = get_providers(config=config)

    async def confirm(run: PipelineRun, changeset: ChangeSet) -> bool:
        _echo_changeset(changeset)
        return await asyncio.to_thread(typer.confirm, "Apply these changes?", default=False)

    return PipelineCoordinator(
        get_state_store(),
        provisioner,
        orchestrator,
        config=config,
        approver=None if auto_approve else confirm,
    )


def _finish(run: PipelineRun) -> None:
    _echo_run(run)
    if run.state != PipelineState.SUCCEEDED:
        raise typer.Exit(code=1)


@app.command("plan")
def plan(
    definitions: Path,
    var: Optional[List[str]] = typer.Option(None, help="Template variable KEY=VALUE"),
) -> None:
    """
    Show the change-set needed to reach the declared definitions.

    Example:
        convoy plan ./infra.yaml
        convoy plan ./infra/ --var region=eu-west-1
    """
    resources = _load(definitions, var)
    try:
        graph = build_graph(resources)
        changeset = asyncio.run(PlanEngine(get_state_store()).plan(graph))
    except ConvoyError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _echo_changeset(changeset)


@app.command("apply")
def apply(
    definitions: Path,
    var: Optional[List[str]] = typer.Option(None, help="Template variable KEY=VALUE"),
    auto_approve: bool = typer.Option(False, help="Skip the interactive approval"),
) -> None:
    """
    Plan, apply, converge and verify the declared definitions.

    Example:
        convoy apply ./infra.yaml --auto-approve
    """
    resources = _load(definitions, var)
    coordinator = _coordinator(auto_approve)
    run = asyncio.run(coordinator.run(resources, require_approval=not auto_approve))
    _finish(run)


@app.command("destroy")
def destroy(
    auto_approve: bool = typer.Option(False, help="Skip the interactive approval"),
) -> None:
    """Delete every resource recorded in the state store."""
    coordinator = _coordinator(auto_approve)

    async def _destroy() -> PipelineRun:
        run_id = await coordinator.destroy(require_approval=not auto_approve)
        return await coordinator.wait(run_id)

    _finish(asyncio.run(_destroy()))


@run_app.command("list")
def run_list() -> None:
    """List archived pipeline runs with their final state."""
    runs = asyncio.run(get_state_store().list_runs())
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.state.value}\t{run.created_at.isoformat()}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show stages and per-operation outcomes of a run."""
    run = asyncio.run(get_state_store().get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    _echo_run(run)


def _rerun(run_id: str, auto_approve: bool, rollback: bool) -> None:
    coordinator = _coordinator(auto_approve)

    async def _go() -> PipelineRun:
        if rollback:
            new_id = await coordinator.rollback(run_id, require_approval=not auto_approve)
        else:
            new_id = await coordinator.resume(run_id, require_approval=not auto_approve)
        return await coordinator.wait(new_id)

    try:
        run = asyncio.run(_go())
    except KeyError:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    _finish(run)


@run_app.command("resume")
def run_resume(
    run_id: str,
    auto_approve: bool = typer.Option(False, help="Skip the interactive approval"),
) -> None:
    """Re-plan a run's definitions against current state and apply the delta."""
    _rerun(run_id, auto_approve, rollback=False)


@run_app.command("rollback")
def run_rollback(
    run_id: str,
    auto_approve: bool = typer.Option(False, help="Skip the interactive approval"),
) -> None:
    """Start a new run restoring the definitions recorded by an earlier run."""
    _rerun(run_id, auto_approve, rollback=True)


@state_app.command("list")
def state_list() -> None:
    """List state records."""
    snapshot = asyncio.run(get_state_store().get_snapshot())
    if not snapshot:
        typer.echo("State is empty")
        return
    for ident, record in sorted(snapshot.items()):
        typer.echo(
            f"{ident}\t{record.kind.value}\t{record.status.value}\t"
            f"{record.handle or '-'}\tv{record.version}"
        )


@state_app.command("unlock")
def state_unlock() -> None:
    """Release the state lock left behind by a crashed run."""
    holder = asyncio.run(get_state_store().force_unlock())
    if holder is None:
        typer.echo("State was not locked")
    else:
        typer.echo(f"Released lock held by run {holder}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
