# Copyright (c) Syntropy Systems
"""Exception types raised by iomatrix."""
from __future__ import annotations


class IOMatrixError(Exception):
    """Base class for errors that end an iomatrix invocation."""


class ConfigError(IOMatrixError):
    """Configuration file or run options are unusable."""


class InvalidSpace(IOMatrixError):
    """The parameter space violates one of its structural constraints."""


class ToolLaunchError(IOMatrixError):
    """The benchmark tool could not be started at all."""


class ToolFailure(IOMatrixError):
    """A single tool invocation produced no usable result.

    Carries the failure kind so the runner can turn it into a ``Failure``
    outcome.
    """

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class SetupError(IOMatrixError):
    """A run-scoped setup hook failed, so no job was started."""
