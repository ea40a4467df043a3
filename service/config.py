"""Service configuration with YAML support."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import Field

from execution_core.schemas import BaseSchema, ExecutorSettings, ReviewerSettings, SchedulerSettings

FULL_CODE_EXECUTION_ENV = "KEYBOARD_FULL_CODE_EXECUTION"


class ServiceConfig(BaseSchema):
    """Top-level configuration: executor, scheduler and optional reviewer."""

    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    reviewer: ReviewerSettings = Field(default_factory=ReviewerSettings)
    log_level: str = "INFO"


def apply_env_overrides(config: ServiceConfig, environ: Mapping[str, str] | None = None) -> ServiceConfig:
    """Honour process-level switches that predate the YAML file."""
    environ = os.environ if environ is None else environ
    if environ.get(FULL_CODE_EXECUTION_ENV, "").strip().lower() == "true":
        config.executor.full_code_execution = True
    return config


def load_config(yaml_path: str | Path | None = None) -> ServiceConfig:
    """Load service configuration from a YAML file.

    Without a path the defaults are used. Environment overrides are applied
    in both cases.

    Raises:
        FileNotFoundError: If ``yaml_path`` doesn't exist
        ValueError: If the YAML is invalid or has unknown values
    """
    if yaml_path is None:
        return apply_env_overrides(ServiceConfig())

    yaml_path = Path(yaml_path)
    if not yaml_path.exists():
        raise FileNotFoundError(f"Config file not found: {yaml_path}")

    with open(yaml_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {yaml_path}")

    try:
        config = ServiceConfig.from_dict(data)
    except ValueError as e:
        raise ValueError(f"Invalid configuration in {yaml_path}: {e}") from e
    return apply_env_overrides(config)


def save_config(config: ServiceConfig, yaml_path: str | Path) -> None:
    """Save configuration to YAML. The reviewer API key is never written."""
    yaml_path = Path(yaml_path)
    yaml_path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(mode="json")
    data["reviewer"].pop("api_key", None)

    with open(yaml_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, indent=2)
