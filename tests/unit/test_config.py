"""Tests for configuration loading."""

from convoy.config import load_config
from convoy.providers import InMemoryProvisioner, get_providers
from convoy.state import SQLiteStateStore, get_state_store


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "convoy.yaml"
    config_path.write_text(
        """
executor:
  concurrency: 8
  max_attempts: 2
convergence:
  poll_interval: 1.5
pipeline:
  require_approval: true
"""
    )
    monkeypatch.setenv("CONVOY_CONFIG", str(config_path))
    monkeypatch.delenv("CONVOY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.executor.concurrency == 8
    assert config.executor.max_attempts == 2
    assert config.convergence.poll_interval == 1.5
    assert config.convergence.timeout == 900.0
    assert config.pipeline.require_approval is True
    assert config.database_url is None


def test_missing_config_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("CONVOY_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("CONVOY_DATABASE_URL", "sqlite://" + str(tmp_path / "s.db"))

    config = load_config()
    assert config.executor.concurrency == 4
    assert config.provider.backend == "inmemory"
    assert config.database_url.startswith("sqlite://")


def test_get_state_store_uses_database_url(tmp_path, monkeypatch):
    monkeypatch.setenv("CONVOY_CONFIG", str(tmp_path / "absent.yaml"))
    store = get_state_store(database_url="sqlite://" + str(tmp_path / "state.db"))
    assert isinstance(store, SQLiteStateStore)


def test_get_providers_defaults_to_inmemory(tmp_path, monkeypatch):
    monkeypatch.setenv("CONVOY_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("CONVOY_PROVIDER", raising=False)
    provisioner, _ = get_providers()
    assert isinstance(provisioner, InMemoryProvisioner)
