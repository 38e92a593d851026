# Copyright (c) Syntropy Systems
"""Job descriptor: one point of the benchmark matrix."""

from __future__ import annotations

import hashlib
import json
import re

from .base import FrozenModel, Scalar
from .space import format_value

SLUG_MAX_LENGTH = 80
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9.+_=-]+")


def job_id_for(params: dict[str, Scalar]) -> str:
    """Derive the stable identifier of an assignment.

    The readable slug is followed by a digest of the canonical assignment so
    ids stay unique after truncation and do not depend on expansion index.
    """
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:8]  # noqa: S324

    parts = [f"{name}={format_value(value)}" for name, value in params.items()]
    slug = _UNSAFE_CHARS.sub("_", "_".join(parts)).strip("_")
    if len(slug) > SLUG_MAX_LENGTH:
        slug = slug[:SLUG_MAX_LENGTH].rstrip("_")
    return f"{slug}-{digest}" if slug else digest


class Job(FrozenModel):
    """Immutable assignment of one value to every axis."""

    index: int
    id: str
    params: dict[str, Scalar]

    def label(self) -> str:
        """Short human readable form, e.g. ``bs=4k rw=read``."""
        return " ".join(
            f"{name}={format_value(value)}" for name, value in self.params.items()
        )
