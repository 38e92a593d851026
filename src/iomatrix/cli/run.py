# Copyright (c) Syntropy Systems
"""iomatrix run command."""
from __future__ import annotations

import signal
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn

from iomatrix.config import dump_config, load_config
from iomatrix.errors import IOMatrixError
from iomatrix.log import setup_logging
from iomatrix.matrix import plan, run_matrix
from iomatrix.report import EXIT_FATAL, exit_code_for, render_failures, render_records
from iomatrix.scheduler import CancelToken

if TYPE_CHECKING:
    from types import FrameType

    from iomatrix.models.job import Job
    from iomatrix.models.outcome import Outcome

console = Console()


def run(
    config_files: list[Path] = typer.Argument(
        ...,
        help="Matrix configuration YAML file(s), merged in order",
    ),
    fio: Optional[str] = typer.Option(None, "--fio", help="fio executable"),
    device: Optional[str] = typer.Option(
        None, "--device", "-d", help="Target used when no filename axis is declared"
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", "-t", help="Per-job timeout in seconds"
    ),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-j", help="Maximum jobs in flight (distinct devices only)"
    ),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-o", help="Directory for job artifacts and results"
    ),
    samples: Optional[int] = typer.Option(
        None, "--samples", "-n", help="Repeat the whole matrix this many times"
    ),
    runtime: Optional[int] = typer.Option(None, "--runtime", help="fio runtime per job (s)"),
    ramp: Optional[int] = typer.Option(None, "--ramp", help="fio ramp time per job (s)"),
    tag: Optional[str] = typer.Option(None, "--tag", help="Label stored with the results"),
    prep: Optional[bool] = typer.Option(
        None, "--prep/--no-prep", help="Precondition the target before each job"
    ),
    compress: Optional[bool] = typer.Option(
        None, "--compress/--no-compress", help="Pack the output directory into a .tgz"
    ),
    show_config: bool = typer.Option(
        False, "--dump-config", help="Print the merged configuration and exit"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to the console"),
) -> None:
    r"""Run fio over every point of a parameter matrix.

    Example matrix.yaml:

    \b
        tag: nvme-baseline
        axes:
          bs: [4k, 64k]
          rw: [randread, randwrite]
          iodepth: [1, 32]
        exclude:
          - {bs: 64k, iodepth: 1}
        options:
          device: /dev/nvme0n1
          runtime: 30
          timeout: 120
    """
    overrides: dict[str, object] = {
        "fio": fio,
        "device": device,
        "timeout": timeout,
        "concurrency": concurrency,
        "output_dir": output_dir,
        "samples": samples,
        "runtime": runtime,
        "ramp": ramp,
        "tag": tag,
        "prep": prep,
        "compress": compress,
    }

    try:
        config = load_config(config_files, overrides)
        _, jobs = plan(config)
    except IOMatrixError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(EXIT_FATAL) from e

    if show_config:
        console.print(dump_config(config), markup=False, highlight=False)
        return

    options = config.options
    log_path = setup_logging(options.output_dir, verbose=verbose, console=console)
    console.print(f"[bold]{len(jobs)} jobs[/bold] -> {options.output_dir}")
    if log_path is not None:
        console.print(f"  [dim]log:[/dim] {log_path}")

    cancel = CancelToken()

    def _signal_handler(signum: int, frame: FrameType | None) -> None:
        """Handle SIGINT/SIGTERM by cancelling the run."""
        if not cancel.cancelled:
            console.print(
                "\n[yellow]Cancellation requested, finishing in-flight jobs...[/yellow]"
            )
        cancel.cancel()

    previous = {
        sig: signal.signal(sig, _signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    progress = Progress(
        TextColumn("{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        disable=not console.is_terminal,
    )
    task = progress.add_task("Measuring", total=len(jobs))

    def on_start(job: Job) -> None:
        progress.console.print(f"[blue]Starting job #{job.index}:[/blue] {escape(job.label())}")

    def on_outcome(job: Job, outcome: Outcome) -> None:
        progress.advance(task)
        if outcome.tag in ("failure", "timeout"):
            progress.console.print(f"[red]Job #{job.index} {outcome.tag}[/red] ({job.id})")

    try:
        with progress:
            matrix_run = run_matrix(config, cancel=cancel, on_start=on_start, on_outcome=on_outcome)
    except IOMatrixError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(EXIT_FATAL) from e
    finally:
        for sig, handler in previous.items():
            _ = signal.signal(sig, handler)

    result_set = matrix_run.result_set
    render_records(result_set, console)
    render_failures(result_set, console)
    console.print(f"\n[dim]results:[/dim] {matrix_run.results_path}")
    console.print(f"[dim]csv:[/dim] {matrix_run.csv_path}")
    if matrix_run.archive_path is not None:
        console.print(f"[dim]archive:[/dim] {matrix_run.archive_path}")

    if matrix_run.fatal is not None:
        console.print(f"[red]Error:[/red] {escape(str(matrix_run.fatal))}")
        raise typer.Exit(EXIT_FATAL)

    if result_set.cancelled:
        console.print("[yellow]Run cancelled before completion[/yellow]")

    code = exit_code_for(result_set)
    if code:
        raise typer.Exit(code)
