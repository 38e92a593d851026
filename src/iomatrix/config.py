# Copyright (c) Syntropy Systems
"""Configuration management for iomatrix."""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional, cast

import yaml
from pydantic import Field, ValidationError, field_validator, model_validator

from iomatrix.errors import ConfigError
from iomatrix.expand import SAMPLE_AXIS
from iomatrix.models.base import MatrixBaseModel, Scalar
from iomatrix.models.space import ParameterSpace

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

# Extra seconds allowed on top of runtime + ramp when no timeout is set
TIMEOUT_SLACK = 60


def _default_fio_options() -> dict[str, Scalar]:
    return {
        "direct": 1,
        "time_based": 1,
        "group_reporting": 1,
        "ioengine": "io_uring",
    }


class RunOptions(MatrixBaseModel):
    """Options that apply to every job of a run."""

    # Benchmark tool executable
    fio: str = "fio"

    # Target used when the space has no resource key axis
    device: str = "/dev/null"

    # Per-job time budget in seconds (None derives it from runtime and ramp)
    timeout: Optional[float] = None

    # Grace period before SIGKILL after SIGTERM (seconds)
    kill_grace_period: float = 10.0

    # Maximum number of jobs in flight
    concurrency: int = 1

    output_dir: Path = Path("iomatrix-output")
    runtime: int = 30
    ramp: int = 10
    samples: int = 1

    # Axis whose value identifies the storage resource a job exercises
    resource_key: str = "filename"

    # Axes that label jobs but are not written to the job file
    meta_axes: list[str] = Field(default_factory=list)

    output_format: str = "json"
    prep: bool = False
    verify: bool = False
    hipri: bool = False
    pin_cpus: bool = False
    fio_options: dict[str, Scalar] = Field(default_factory=_default_fio_options)

    # argv lists run around every job
    setup_hooks: list[list[str]] = Field(default_factory=list)
    teardown_hooks: list[list[str]] = Field(default_factory=list)
    # argv lists run once around the whole run
    run_setup_hooks: list[list[str]] = Field(default_factory=list)
    run_teardown_hooks: list[list[str]] = Field(default_factory=list)

    hook_retries: int = 3
    hook_retry_delay: float = 1.0

    tag: Optional[str] = None
    compress: bool = False

    @field_validator("concurrency", "samples", "hook_retries")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            msg = "must be at least 1"
            raise ValueError(msg)
        return value

    @field_validator("timeout")
    @classmethod
    def _positive_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            msg = "must be positive"
            raise ValueError(msg)
        return value

    @field_validator("runtime", "ramp")
    @classmethod
    def _not_negative(cls, value: int) -> int:
        if value < 0:
            msg = "must not be negative"
            raise ValueError(msg)
        return value

    @field_validator(
        "setup_hooks", "teardown_hooks", "run_setup_hooks", "run_teardown_hooks"
    )
    @classmethod
    def _non_empty_argv(cls, value: list[list[str]]) -> list[list[str]]:
        if any(not argv for argv in value):
            msg = "hook commands must not be empty"
            raise ValueError(msg)
        return value

    @property
    def effective_timeout(self) -> float:
        """Timeout in seconds, derived from runtime and ramp when unset."""
        if self.timeout is not None:
            return self.timeout
        return float(self.runtime + self.ramp + TIMEOUT_SLACK)


class MatrixConfig(MatrixBaseModel):
    """Parameter space plus run options, as loaded from configuration."""

    space: ParameterSpace
    options: RunOptions = Field(default_factory=RunOptions)

    @model_validator(mode="after")
    def _check_sample_axis(self) -> MatrixConfig:
        if self.options.samples > 1 and SAMPLE_AXIS in self.space.axis_names:
            msg = f"axis name '{SAMPLE_AXIS}' is reserved when samples > 1"
            raise ValueError(msg)
        return self


def merge_dicts(base: Mapping[str, object], override: Mapping[str, object]) -> dict[str, object]:
    """Recursively merge override into base; later values win."""
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_dicts(
                cast("dict[str, object]", current),
                cast("dict[str, object]", value),
            )
        else:
            merged[key] = value
    return merged


def read_config_files(paths: Sequence[Path]) -> dict[str, object]:
    """Load and merge YAML config files in order."""
    data: dict[str, object] = {}
    for path in paths:
        if not path.exists():
            msg = f"Could not find config file: {path}"
            raise ConfigError(msg)
        try:
            with path.open() as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            msg = f"Could not parse {path}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(loaded, dict):
            msg = f"Config file {path} must contain a mapping"
            raise ConfigError(msg)
        data = merge_dicts(data, cast("dict[str, object]", loaded))
    return data


def build_config(
    data: Mapping[str, object],
    overrides: Mapping[str, object] | None = None,
) -> MatrixConfig:
    """Validate merged configuration data into a MatrixConfig.

    ``overrides`` are run options from the command line; they win over file
    values. A top-level ``tag`` is accepted as a shortcut for ``options.tag``.

    Raises InvalidSpace for a malformed space and ConfigError for anything
    else.
    """
    if "axes" not in data:
        msg = "Config must have an 'axes' field"
        raise ConfigError(msg)

    options_data = data.get("options") or {}
    if not isinstance(options_data, dict):
        msg = "'options' must be a mapping"
        raise ConfigError(msg)
    options_data = cast("dict[str, object]", options_data)
    if "tag" in data and "tag" not in options_data:
        options_data = {**options_data, "tag": data["tag"]}
    if overrides:
        options_data = merge_dicts(
            options_data,
            {key: value for key, value in overrides.items() if value is not None},
        )

    exclude = data.get("exclude") or []
    if not isinstance(exclude, list):
        msg = "'exclude' must be a list of mappings"
        raise ConfigError(msg)

    space = ParameterSpace.from_mapping(
        cast("dict[str, list[Scalar]]", data["axes"]),
        cast("list[dict[str, Scalar]]", exclude),
    )

    try:
        return MatrixConfig(
            space=space,
            options=RunOptions.model_validate(options_data),
        )
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "config"
        msg = f"Invalid configuration at {location}: {first['msg']}"
        raise ConfigError(msg) from e


def load_config(
    paths: Sequence[Path],
    overrides: Mapping[str, object] | None = None,
) -> MatrixConfig:
    """Load configuration from YAML files merged in order, then overrides."""
    if not paths:
        msg = "At least one config file is required"
        raise ConfigError(msg)
    return build_config(read_config_files(paths), overrides)


def dump_config(config: MatrixConfig) -> str:
    """Render a configuration back to YAML."""
    data: dict[str, object] = {
        "axes": {axis.name: axis.values for axis in config.space.axes},
        "exclude": [dict(rule.match) for rule in config.space.exclude],
        "options": config.options.model_dump(mode="json"),
    }
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=None)
