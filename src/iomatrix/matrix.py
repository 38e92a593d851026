# Copyright (c) Syntropy Systems
"""End-to-end matrix run: expand, schedule, aggregate, persist."""
from __future__ import annotations

import logging
import tarfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from iomatrix.aggregate import ResultAggregator
from iomatrix.errors import SetupError
from iomatrix.expand import expand_jobs, with_samples
from iomatrix.fio import resource_key_of
from iomatrix.log import flush_file_logs, log_host_info
from iomatrix.report import write_csv, write_json
from iomatrix.runner import JobRunner, check_tool
from iomatrix.scheduler import CancelToken, MatrixScheduler, ResourceRegistry

if TYPE_CHECKING:
    from collections.abc import Iterable

    from iomatrix.config import MatrixConfig
    from iomatrix.errors import ToolLaunchError
    from iomatrix.models.job import Job
    from iomatrix.models.outcome import Outcome
    from iomatrix.models.result import ResultSet
    from iomatrix.models.space import ParameterSpace

logger = logging.getLogger(__name__)

RESULTS_JSON = "results.json"
RESULTS_CSV = "results.csv"
RUN_HOOKS_LOG = "run-hooks.log"


def utc_now() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class MatrixRun:
    """Everything a finished run produced."""

    jobs: list[Job]
    result_set: ResultSet
    results_path: Path
    csv_path: Path
    fatal: Optional[ToolLaunchError] = None
    archive_path: Optional[Path] = None


def plan(config: MatrixConfig) -> tuple[ParameterSpace, list[Job]]:
    """Expand the configured space, including the sample axis."""
    space = with_samples(config.space, config.options.samples)
    return space, expand_jobs(space)


def compress_dir(directory: Path, files: Iterable[Path] | None = None) -> Path:
    """Pack a directory into ``<directory>.tgz`` next to it.

    When ``files`` is given only those files are archived, under the
    directory's name.
    """
    archive = directory.with_name(f"{directory.name}.tgz")
    logger.info("Compressing %s to %s", directory, archive)
    with tarfile.open(archive, "w:gz") as tar:
        if files is None:
            tar.add(directory, arcname=directory.name)
        else:
            for path in sorted(set(files)):
                if path.is_file():
                    tar.add(path, arcname=f"{directory.name}/{path.name}")
    return archive


def run_files(result_set: ResultSet, output_dir: Path) -> list[Path]:
    """Files written by one run: job artifacts, results, run hook log and log."""
    files = [Path(path) for record in result_set.records for path in record.artifacts.values()]
    files.extend(output_dir / name for name in (RESULTS_JSON, RESULTS_CSV, RUN_HOOKS_LOG))
    files.extend(flush_file_logs(output_dir))
    return files


def _run_hooks(
    runner: JobRunner,
    hooks: list[list[str]],
    log_path: Path,
    attempts: int,
) -> str | None:
    env = {"IOMATRIX_OUTPUT_DIR": str(runner.output_dir)}
    for argv in hooks:
        error = runner.run_hook(argv, log_path, env, attempts=attempts)
        if error is not None:
            return error
    return None


def run_matrix(
    config: MatrixConfig,
    *,
    cancel: CancelToken | None = None,
    registry: ResourceRegistry | None = None,
    runner: JobRunner | None = None,
    on_start: Callable[[Job], None] | None = None,
    on_outcome: Callable[[Job, Outcome], None] | None = None,
) -> MatrixRun:
    """Run every job of the matrix and persist the result set.

    Raises InvalidSpace before anything runs if the space is malformed,
    ToolLaunchError if the tool is not available at all and SetupError if a
    run setup hook fails. A launch failure in the middle of the run is
    reported through ``MatrixRun.fatal`` after the result set is written.
    """
    options = config.options
    space, jobs = plan(config)
    _ = check_tool(options.fio)

    host = log_host_info()
    logger.info("Starting matrix run: %d jobs, concurrency %d", len(jobs), options.concurrency)

    runner = runner if runner is not None else JobRunner(options)
    aggregator = ResultAggregator(space, jobs)

    def collect(job: Job, outcome: Outcome) -> None:
        # Skipped jobs wrote nothing in this run
        artifacts: dict[str, str] = {}
        if outcome.tag != "skipped":
            artifacts = {
                name: str(path)
                for name, path in runner.artifact_paths(job).items()
                if path.is_file()
            }
        _ = aggregator.add(job, outcome, artifacts)
        if on_outcome is not None:
            on_outcome(job, outcome)

    scheduler = MatrixScheduler(
        run_job=runner.run,
        resource_key=lambda job: resource_key_of(job, options),
        concurrency=options.concurrency,
        registry=registry,
        cancel=cancel,
    )

    runner.output_dir.mkdir(parents=True, exist_ok=True)
    hooks_log = runner.output_dir / RUN_HOOKS_LOG
    hooks_log.unlink(missing_ok=True)

    started_at = utc_now()
    try:
        error = _run_hooks(runner, options.run_setup_hooks, hooks_log, attempts=1)
        if error is not None:
            msg = f"Run setup failed: {error}"
            raise SetupError(msg)
        result = scheduler.run(jobs, on_start=on_start, on_outcome=collect)
    finally:
        teardown_error = _run_hooks(
            runner, options.run_teardown_hooks, hooks_log, attempts=options.hook_retries
        )
        if teardown_error is not None:
            logger.warning("Run teardown failed: %s", teardown_error)

    result_set = aggregator.finalize(
        tag=options.tag,
        started_at=started_at,
        finished_at=utc_now(),
        cancelled=result.cancelled,
        host=host,
    )

    results_path = runner.output_dir / RESULTS_JSON
    csv_path = runner.output_dir / RESULTS_CSV
    write_json(result_set, results_path)
    write_csv(result_set, csv_path)
    logger.info("Results written to %s", results_path)

    archive_path = None
    if options.compress:
        archive_path = compress_dir(runner.output_dir, run_files(result_set, runner.output_dir))

    return MatrixRun(
        jobs=jobs,
        result_set=result_set,
        results_path=results_path,
        csv_path=csv_path,
        fatal=result.fatal,
        archive_path=archive_path,
    )
