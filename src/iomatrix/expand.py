# Copyright (c) Syntropy Systems
"""Parameter space expansion into ordered jobs."""
from __future__ import annotations

import itertools
from typing import TYPE_CHECKING

from iomatrix.errors import InvalidSpace
from iomatrix.models.job import Job, job_id_for
from iomatrix.models.space import ParameterAxis, ParameterSpace

if TYPE_CHECKING:
    from collections.abc import Iterator

    from iomatrix.models.base import Scalar

SAMPLE_AXIS = "sample"


def with_samples(space: ParameterSpace, samples: int) -> ParameterSpace:
    """Prepend a ``sample`` axis so the whole matrix repeats sample-major."""
    if samples <= 1:
        return space
    if SAMPLE_AXIS in space.axis_names:
        msg = f"Axis name '{SAMPLE_AXIS}' is reserved when samples > 1"
        raise InvalidSpace(msg)
    sample_axis = ParameterAxis(name=SAMPLE_AXIS, values=list(range(samples)))
    return ParameterSpace(axes=[sample_axis, *space.axes], exclude=space.exclude)


def generate_combinations(space: ParameterSpace) -> Iterator[dict[str, Scalar]]:
    """Generate every combination of axis values in declaration order.

    The last declared axis varies fastest. Excluded combinations are dropped.
    """
    names = space.axis_names
    values = [axis.values for axis in space.axes]

    for combo in itertools.product(*values):
        params = dict(zip(names, combo))
        if any(rule.matches(params) for rule in space.exclude):
            continue
        yield params


def expand_jobs(space: ParameterSpace) -> list[Job]:
    """Expand a parameter space into its ordered job list.

    Raises InvalidSpace if the space is malformed.
    """
    space.check()

    jobs: list[Job] = []
    seen: set[str] = set()
    for index, params in enumerate(generate_combinations(space)):
        job_id = job_id_for(params)
        if job_id in seen:
            msg = f"Two combinations map to the same job id '{job_id}'"
            raise InvalidSpace(msg)
        seen.add(job_id)
        jobs.append(Job(index=index, id=job_id, params=params))

    return jobs
