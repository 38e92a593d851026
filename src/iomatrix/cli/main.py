# Copyright (c) Syntropy Systems
"""Main CLI entry point for iomatrix."""

import typer

from iomatrix.cli.plan import plan
from iomatrix.cli.report import report
from iomatrix.cli.run import run

app = typer.Typer(
    name="iomatrix",
    help=(
        "fio benchmark matrices. Expand a parameter space, run every point, "
        "compare the results."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(run)
_ = app.command()(plan)
_ = app.command()(report)


if __name__ == "__main__":
    app()
