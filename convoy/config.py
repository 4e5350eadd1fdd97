from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_APPROVAL_TIMEOUT,
    DEFAULT_CONCURRENCY,
    DEFAULT_CONVERGENCE_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_OPERATION_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
)


class ExecutorConfig(BaseModel):
    """Settings for the apply executor."""

    concurrency: int = DEFAULT_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = 1.5
    backoff_factor: float = 1.0
    backoff_jitter: float = 0.5
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT


class ConvergenceConfig(BaseModel):
    """Settings for the convergence watcher."""

    poll_interval: float = DEFAULT_POLL_INTERVAL
    timeout: float = DEFAULT_CONVERGENCE_TIMEOUT


class PipelineConfig(BaseModel):
    """Settings for the pipeline coordinator."""

    require_approval: bool = False
    approval_timeout: float = DEFAULT_APPROVAL_TIMEOUT
    verify: bool = True


class ProviderConfig(BaseModel):
    """External collaborator selection.

    ``backend`` is either ``inmemory`` or an import path of the form
    ``package.module:factory`` where ``factory(config)`` returns a
    ``(provisioner, orchestrator)`` pair.
    """

    backend: str = "inmemory"


class ConvoyConfig(BaseModel):
    """Top-level configuration model."""

    executor: ExecutorConfig = ExecutorConfig()
    convergence: ConvergenceConfig = ConvergenceConfig()
    pipeline: PipelineConfig = PipelineConfig()
    provider: ProviderConfig = ProviderConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> ConvoyConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CONVOY_CONFIG env
            variable or 'convoy.yaml' in the current directory.
    """

    config_path = path or os.getenv("CONVOY_CONFIG", "convoy.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ConvoyConfig(**data)
    else:
        config = ConvoyConfig()

    env_db_url = os.getenv("CONVOY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
