# Copyright (c) Syntropy Systems
"""Outcome of running one job."""

from __future__ import annotations

from enum import Enum
from typing import Literal, Union

from pydantic import Field
from typing_extensions import Annotated, TypeAlias

from .base import FrozenModel
from .result import JobMetrics


class FailureKind(str, Enum):
    """Why a job produced no measurement."""

    NONZERO_EXIT = "nonzero_exit"
    SIGNALLED = "signalled"
    MISSING_OUTPUT = "missing_output"
    UNPARSABLE_OUTPUT = "unparsable_output"
    PREP_FAILED = "prep_failed"
    HOOK_FAILED = "hook_failed"
    LAUNCH_FAILED = "launch_failed"
    INTERNAL_ERROR = "internal_error"


class Success(FrozenModel):
    """Tool exited cleanly and its result document was parsed."""

    tag: Literal["success"] = "success"
    metrics: JobMetrics
    duration_s: float


class Failure(FrozenModel):
    """Tool failed or its output could not be used."""

    tag: Literal["failure"] = "failure"
    kind: FailureKind
    diagnostic: str
    exit_code: int | None = None
    partial_output: str | None = None
    duration_s: float = 0.0


class Timeout(FrozenModel):
    """Tool exceeded its time budget and was killed."""

    tag: Literal["timeout"] = "timeout"
    elapsed_s: float
    timeout_s: float


class Skipped(FrozenModel):
    """Job was never started."""

    tag: Literal["skipped"] = "skipped"
    reason: str


Outcome: TypeAlias = Annotated[
    Union[Success, Failure, Timeout, Skipped],
    Field(discriminator="tag"),
]
