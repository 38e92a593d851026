# Copyright (c) Syntropy Systems
"""iomatrix plan command."""
from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from iomatrix.config import load_config
from iomatrix.errors import IOMatrixError
from iomatrix.fio import resource_key_of
from iomatrix.matrix import plan as plan_jobs
from iomatrix.models.space import format_value
from iomatrix.report import EXIT_FATAL

console = Console()


def plan(
    config_files: list[Path] = typer.Argument(
        ...,
        help="Matrix configuration YAML file(s), merged in order",
    ),
) -> None:
    """Preview the jobs a matrix expands to without running anything."""
    try:
        config = load_config(config_files)
        space, jobs = plan_jobs(config)
    except IOMatrixError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(EXIT_FATAL) from e

    if not jobs:
        console.print("[yellow]Every combination is excluded, no jobs to run[/yellow]")
        return

    table = Table(title=f"Matrix: {config.options.tag or 'untagged'}")
    table.add_column("#", style="dim")
    for name in space.axis_names:
        table.add_column(name)
    table.add_column("Resource")
    table.add_column("Job ID", style="dim")

    for job in jobs:
        table.add_row(
            str(job.index),
            *[format_value(job.params[name]) for name in space.axis_names],
            resource_key_of(job, config.options),
            job.id,
        )

    console.print(table)

    excluded = space.size - len(jobs)
    console.print(f"\n[bold]{len(jobs)} jobs[/bold] ({excluded} excluded)")
    console.print("[yellow]Plan only - nothing was run[/yellow]")
