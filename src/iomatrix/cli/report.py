# Copyright (c) Syntropy Systems
"""iomatrix report command."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape

from iomatrix.errors import IOMatrixError
from iomatrix.report import (
    EXIT_FATAL,
    load_result_set,
    render_failures,
    render_records,
    render_summary,
    write_csv,
)

console = Console()


def report(
    results: Path = typer.Argument(
        ...,
        help="results.json written by a previous run",
        exists=True,
    ),
    csv_path: Optional[Path] = typer.Option(
        None, "--csv", "-c", help="Also export the records as CSV"
    ),
    metric: str = typer.Option(
        "read_iops", "--metric", "-m", help="Metric to summarize per axis value"
    ),
    records: bool = typer.Option(
        True, "--records/--no-records", help="Show the per-job table"
    ),
) -> None:
    """Render a saved result set.

    Example:
        iomatrix report iomatrix-output/results.json --metric write_iops

    """
    try:
        result_set = load_result_set(results)
        if records:
            render_records(result_set, console)
            render_failures(result_set, console)
        console.print()
        render_summary(result_set, console, metric)
    except IOMatrixError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(EXIT_FATAL) from e

    if csv_path is not None:
        write_csv(result_set, csv_path)
        console.print(f"[green]Exported {len(result_set.records)} record(s) to {csv_path}[/green]")
