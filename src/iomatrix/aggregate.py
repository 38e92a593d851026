# Copyright (c) Syntropy Systems
"""Folding outcomes into a normalized, ordered result set."""
from __future__ import annotations

import statistics
import threading
from typing import TYPE_CHECKING

from iomatrix.models.outcome import Failure, Skipped, Success, Timeout
from iomatrix.models.result import (
    METRIC_NAMES,
    AxisValueSummary,
    MetricStats,
    ResultRecord,
    ResultSet,
)
from iomatrix.models.space import value_key

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from iomatrix.models.job import Job
    from iomatrix.models.outcome import Outcome
    from iomatrix.models.space import ParameterSpace


def to_record(
    job: Job,
    outcome: Outcome,
    artifacts: Mapping[str, str] | None = None,
) -> ResultRecord:
    """Flatten one outcome joined with its job's assignments."""
    common = {
        "index": job.index,
        "job_id": job.id,
        "params": job.params,
        "artifacts": dict(artifacts or {}),
    }
    if isinstance(outcome, Success):
        return ResultRecord(
            **common,
            outcome="success",
            duration_s=outcome.duration_s,
            metrics=outcome.metrics,
            exit_code=0,
        )
    if isinstance(outcome, Failure):
        diagnostic = f"{outcome.kind.value}: {outcome.diagnostic}"
        if outcome.partial_output:
            diagnostic = f"{diagnostic}\n{outcome.partial_output}"
        return ResultRecord(
            **common,
            outcome="failure",
            duration_s=outcome.duration_s,
            diagnostic=diagnostic,
            exit_code=outcome.exit_code,
        )
    if isinstance(outcome, Timeout):
        return ResultRecord(
            **common,
            outcome="timeout",
            duration_s=outcome.elapsed_s,
            diagnostic=f"exceeded timeout of {outcome.timeout_s:g}s",
        )
    if isinstance(outcome, Skipped):
        return ResultRecord(**common, outcome="skipped", diagnostic=outcome.reason)
    msg = f"Unknown outcome: {outcome!r}"
    raise TypeError(msg)


def metric_stats(values: Sequence[float]) -> MetricStats:
    """Min, max and median of the present values; all None if there are none."""
    if not values:
        return MetricStats()
    return MetricStats(
        count=len(values),
        min=min(values),
        max=max(values),
        median=statistics.median(values),
    )


def summarize(space: ParameterSpace, records: Sequence[ResultRecord]) -> list[AxisValueSummary]:
    """Per axis value statistics of every common metric."""
    summaries: list[AxisValueSummary] = []
    for axis in space.axes:
        for value in axis.values:
            key = value_key(value)
            matching = [
                record
                for record in records
                if axis.name in record.params and value_key(record.params[axis.name]) == key
            ]
            metrics: dict[str, MetricStats] = {}
            for name in METRIC_NAMES:
                present = [
                    metric
                    for metric in (record.metric(name) for record in matching)
                    if metric is not None
                ]
                metrics[name] = metric_stats(present)
            summaries.append(AxisValueSummary(axis=axis.name, value=value, metrics=metrics))
    return summaries


class ResultAggregator:
    """Builds a ResultSet from (job, outcome) pairs arriving in any order.

    Each outcome is converted to its record on arrival; records are slotted
    by job index so the finished set follows expansion order.
    """

    def __init__(self, space: ParameterSpace, jobs: Sequence[Job]) -> None:
        self.space = space
        self.jobs = list(jobs)
        self._records: list[ResultRecord | None] = [None] * len(self.jobs)
        self._result: ResultSet | None = None
        self._lock = threading.Lock()

    def add(
        self,
        job: Job,
        outcome: Outcome,
        artifacts: Mapping[str, str] | None = None,
    ) -> ResultRecord:
        """Fold one outcome into the set. Safe to call from worker threads."""
        if not 0 <= job.index < len(self.jobs) or self.jobs[job.index].id != job.id:
            msg = f"Job {job.id} is not part of this run"
            raise ValueError(msg)

        record = to_record(job, outcome, artifacts)
        with self._lock:
            if self._result is not None:
                msg = "Result set is already finalized"
                raise RuntimeError(msg)
            if self._records[job.index] is not None:
                msg = f"Job {job.id} already has an outcome"
                raise ValueError(msg)
            self._records[job.index] = record
        return record

    @property
    def complete(self) -> bool:
        return all(record is not None for record in self._records)

    def finalize(
        self,
        *,
        tag: str | None = None,
        started_at: str | None = None,
        finished_at: str | None = None,
        cancelled: bool = False,
        host: Mapping[str, str] | None = None,
    ) -> ResultSet:
        """Compute summaries and freeze the set. Every job must have an outcome."""
        if self._result is not None:
            return self._result

        missing = [job.id for job, record in zip(self.jobs, self._records) if record is None]
        if missing:
            msg = f"{len(missing)} job(s) have no outcome, first: {missing[0]}"
            raise RuntimeError(msg)

        records = [record for record in self._records if record is not None]
        self._result = ResultSet(
            axes=self.space.axis_names,
            records=records,
            summaries=summarize(self.space, records),
            tag=tag,
            started_at=started_at,
            finished_at=finished_at,
            cancelled=cancelled,
            host=dict(host or {}),
        )
        return self._result
