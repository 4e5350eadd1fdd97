import asyncio

import pytest
from typer.testing import CliRunner

import convoy.state as state
from convoy.cli import app
from convoy.state import InMemoryStateStore

STACK = """
resources:
  - name: network
    kind: network
    config:
      cidr: ${cidr}
  - name: cluster
    kind: compute-cluster
    depends_on: [network]
    config:
      min_nodes: 1
  - name: web
    kind: workload
    depends_on: [cluster]
    config:
      image: nginx
      replicas: 1
"""


@pytest.fixture
def store(monkeypatch, tmp_path):
    monkeypatch.setenv("CONVOY_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("CONVOY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    repo = InMemoryStateStore()
    state._store_instance = repo
    yield repo
    state._store_instance = None


@pytest.fixture
def stack_file(tmp_path):
    path = tmp_path / "infra.yaml"
    path.write_text(STACK)
    return path


def test_plan_lists_changes_by_tier(store, stack_file):
    runner = CliRunner()
    result = runner.invoke(app, ["plan", str(stack_file), "--var", "cidr=10.0.0.0/16"])
    assert result.exit_code == 0, result.stdout
    assert "Tier 0:" in result.stdout
    assert "Tier 2:" in result.stdout
    assert "3 to create" in result.stdout


def test_plan_rejects_missing_variable(store, stack_file):
    runner = CliRunner()
    result = runner.invoke(app, ["plan", str(stack_file)])
    assert result.exit_code == 1
    assert "cidr" in result.stdout


def test_apply_then_plan_reports_no_changes(store, stack_file):
    runner = CliRunner()
    result = runner.invoke(
        app, ["apply", str(stack_file), "--var", "cidr=10.0.0.0/16", "--auto-approve"]
    )
    assert result.exit_code == 0, result.stdout
    assert "succeeded" in result.stdout

    snapshot = asyncio.run(store.get_snapshot())
    assert sorted(snapshot) == ["cluster", "network", "web"]

    result = runner.invoke(app, ["plan", str(stack_file), "--var", "cidr=10.0.0.0/16"])
    assert result.exit_code == 0
    assert "No changes" in result.stdout

    listing = runner.invoke(app, ["state", "list"])
    assert listing.exit_code == 0
    assert "web\tworkload\tready" in listing.stdout


def test_run_list_and_show(store, stack_file):
    runner = CliRunner()
    runner.invoke(
        app, ["apply", str(stack_file), "--var", "cidr=10.0.0.0/16", "--auto-approve"]
    )
    runs = asyncio.run(store.list_runs())
    assert len(runs) == 1
    run_id = runs[0].run_id

    result = runner.invoke(app, ["run", "list"])
    assert result.exit_code == 0
    assert run_id in result.stdout

    result = runner.invoke(app, ["run", "show", run_id])
    assert result.exit_code == 0
    assert "planning: succeeded" in result.stdout
    assert "create network: applied" in result.stdout

    missing = runner.invoke(app, ["run", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Run not found" in missing.stdout


def test_state_commands_on_empty_store(store):
    runner = CliRunner()
    result = runner.invoke(app, ["state", "list"])
    assert result.exit_code == 0
    assert "State is empty" in result.stdout

    result = runner.invoke(app, ["state", "unlock"])
    assert "State was not locked" in result.stdout


def test_state_unlock_releases_stale_lock(store):
    asyncio.run(store.try_lock("crashed-run"))
    runner = CliRunner()
    result = runner.invoke(app, ["state", "unlock"])
    assert result.exit_code == 0
    assert "Released lock held by run crashed-run" in result.stdout
    assert asyncio.run(store.lock_holder()) is None
