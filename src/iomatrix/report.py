# Copyright (c) Syntropy Systems
"""Rendering and persistence of finished result sets."""
from __future__ import annotations

import csv
from typing import TYPE_CHECKING

from pydantic import ValidationError
from rich.table import Table

from iomatrix.errors import ConfigError
from iomatrix.models.result import METRIC_NAMES, ResultSet
from iomatrix.models.space import format_value

if TYPE_CHECKING:
    from pathlib import Path

    from rich.console import Console

    from iomatrix.models.base import Scalar

EXIT_OK = 0
EXIT_JOB_FAILURES = 1
EXIT_FATAL = 3
EXIT_CANCELLED = 130

# Metrics shown in the record table
TABLE_METRICS = ("read_iops", "read_bw_kib", "write_iops", "write_bw_kib", "read_clat_p99_ns")

_OUTCOME_STYLES = {
    "success": "green",
    "failure": "red",
    "timeout": "yellow",
    "skipped": "dim",
}


def exit_code_for(result_set: ResultSet) -> int:
    """Orchestrator exit code for a finished run."""
    if result_set.cancelled:
        return EXIT_CANCELLED
    if result_set.all_succeeded:
        return EXIT_OK
    return EXIT_JOB_FAILURES


def write_json(result_set: ResultSet, path: Path) -> None:
    """Persist a result set as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    _ = path.write_text(result_set.model_dump_json(indent=2))


def load_result_set(path: Path) -> ResultSet:
    """Load a result set written by write_json."""
    try:
        return ResultSet.model_validate_json(path.read_bytes())
    except (OSError, ValidationError) as e:
        msg = f"Could not load results from {path}: {e}"
        raise ConfigError(msg) from e


def _to_csv_value(value: Scalar) -> str | float:
    if isinstance(value, float):
        return value
    return format_value(value)


def write_csv(result_set: ResultSet, path: Path) -> None:
    """Write one row per record with flattened params and metrics.

    Absent metrics are empty cells, never zero.
    """
    fieldnames = ["index", "job_id", "outcome", "duration_s", "exit_code"]
    param_fields = [f"param.{name}" for name in result_set.axes]
    metric_fields = [f"metric.{name}" for name in METRIC_NAMES]
    fieldnames.extend(param_fields)
    fieldnames.extend(metric_fields)
    fieldnames.append("diagnostic")

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()

        for record in result_set.records:
            row: dict[str, str | float | None] = {
                "index": record.index,
                "job_id": record.job_id,
                "outcome": record.outcome,
                "duration_s": record.duration_s,
                "exit_code": record.exit_code,
                "diagnostic": record.diagnostic.splitlines()[0] if record.diagnostic else None,
            }
            for name, value in record.params.items():
                row[f"param.{name}"] = _to_csv_value(value)
            for name in METRIC_NAMES:
                row[f"metric.{name}"] = record.metric(name)
            writer.writerow(row)


def _format_metric(value: float | None) -> str:
    if value is None:
        return "-"
    if value >= 100:
        return f"{value:,.0f}"
    return f"{value:.2f}"


def render_records(result_set: ResultSet, console: Console) -> None:
    """Print one row per job with its outcome and headline metrics."""
    title = f"Results: {result_set.tag}" if result_set.tag else "Results"
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("#", style="dim")
    for name in result_set.axes:
        table.add_column(name)
    table.add_column("Outcome")
    table.add_column("Duration")
    for name in TABLE_METRICS:
        table.add_column(name, justify="right")

    for record in result_set.records:
        style = _OUTCOME_STYLES[record.outcome]
        duration = f"{record.duration_s:.1f}s" if record.duration_s is not None else "-"
        table.add_row(
            str(record.index),
            *[format_value(record.params[name]) for name in result_set.axes],
            f"[{style}]{record.outcome}[/{style}]",
            duration,
            *[_format_metric(record.metric(name)) for name in TABLE_METRICS],
        )

    console.print(table)

    counts = result_set.counts
    console.print(
        f"[green]{counts['success']} succeeded[/green], "
        f"[red]{counts['failure']} failed[/red], "
        f"[yellow]{counts['timeout']} timed out[/yellow], "
        f"[dim]{counts['skipped']} skipped[/dim]"
    )


def render_failures(result_set: ResultSet, console: Console) -> None:
    """Print the diagnostic of every non-successful job."""
    for record in result_set.records:
        if record.outcome == "success" or not record.diagnostic:
            continue
        first_line = record.diagnostic.splitlines()[0]
        console.print(f"  [dim]#{record.index}[/dim] {record.job_id}: {first_line}")


def render_summary(result_set: ResultSet, console: Console, metric: str = "read_iops") -> None:
    """Print min/median/max of one metric for every axis value."""
    if metric not in METRIC_NAMES:
        msg = f"Unknown metric '{metric}', expected one of: {', '.join(METRIC_NAMES)}"
        raise ConfigError(msg)

    table = Table(title=f"Summary: {metric}", show_header=True, header_style="bold")
    table.add_column("Axis", style="dim")
    table.add_column("Value")
    table.add_column("n", justify="right")
    table.add_column("min", justify="right")
    table.add_column("median", justify="right")
    table.add_column("max", justify="right")

    for summary in result_set.summaries:
        stats = summary.metrics[metric]
        table.add_row(
            summary.axis,
            format_value(summary.value),
            str(stats.count),
            _format_metric(stats.min),
            _format_metric(stats.median),
            _format_metric(stats.max),
        )

    console.print(table)
