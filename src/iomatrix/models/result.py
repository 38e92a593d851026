# Copyright (c) Syntropy Systems
"""Pydantic models for normalized results and summary statistics."""

from __future__ import annotations

from typing import ClassVar, Literal

from pydantic import ConfigDict, Field

from .base import FrozenModel, JSONValue, MatrixBaseModel, Scalar
from .space import value_key

OutcomeTag = Literal["success", "failure", "timeout", "skipped"]

METRIC_NAMES: tuple[str, ...] = (
    "read_iops",
    "read_bw_kib",
    "read_lat_mean_ns",
    "read_clat_p50_ns",
    "read_clat_p99_ns",
    "write_iops",
    "write_bw_kib",
    "write_lat_mean_ns",
    "write_clat_p50_ns",
    "write_clat_p99_ns",
)


class JobMetrics(FrozenModel):
    """Common numeric schema shared by every tool invocation.

    ``None`` means the value was not reported. Tool specific fields live in
    ``extra`` under namespaced keys such as ``fio.usr_cpu``.
    """

    read_iops: float | None = None
    read_bw_kib: float | None = None
    read_lat_mean_ns: float | None = None
    read_clat_p50_ns: float | None = None
    read_clat_p99_ns: float | None = None
    write_iops: float | None = None
    write_bw_kib: float | None = None
    write_lat_mean_ns: float | None = None
    write_clat_p50_ns: float | None = None
    write_clat_p99_ns: float | None = None
    extra: dict[str, JSONValue] = Field(default_factory=dict)

    def common(self) -> dict[str, float | None]:
        """Return the common metric fields keyed by name."""
        return {name: getattr(self, name) for name in METRIC_NAMES}


class ResultRecord(FrozenModel):
    """Flattened view of one job joined with its outcome."""

    index: int
    job_id: str
    params: dict[str, Scalar]
    outcome: OutcomeTag
    duration_s: float | None = None
    metrics: JobMetrics | None = None
    diagnostic: str | None = None
    exit_code: int | None = None
    artifacts: dict[str, str] = Field(default_factory=dict)

    def metric(self, name: str) -> float | None:
        """Return a common metric or None when absent."""
        if self.metrics is None:
            return None
        return self.metrics.common().get(name)


class MetricStats(FrozenModel):
    """Min, max and median over the present values of one metric."""

    count: int = 0
    min: float | None = None
    max: float | None = None
    median: float | None = None


class AxisValueSummary(FrozenModel):
    """Statistics of every common metric for one axis value."""

    axis: str
    value: Scalar
    metrics: dict[str, MetricStats]


class ResultSet(MatrixBaseModel):
    """Ordered records plus per-axis summaries for a finished run."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    axes: list[str]
    records: list[ResultRecord]
    summaries: list[AxisValueSummary] = Field(default_factory=list)
    tag: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    cancelled: bool = False
    host: dict[str, str] = Field(default_factory=dict)

    @property
    def counts(self) -> dict[str, int]:
        """Number of records per outcome tag."""
        counts = {"success": 0, "failure": 0, "timeout": 0, "skipped": 0}
        for record in self.records:
            counts[record.outcome] += 1
        return counts

    @property
    def all_succeeded(self) -> bool:
        """True when every job reached success."""
        return all(record.outcome == "success" for record in self.records)

    def summary_for(self, axis: str, value: Scalar) -> AxisValueSummary | None:
        """Find the summary for one axis value."""
        for summary in self.summaries:
            if summary.axis == axis and value_key(summary.value) == value_key(value):
                return summary
        return None
