# Copyright (c) Syntropy Systems
"""Job runner: supervised fio invocation with orphan prevention."""
from __future__ import annotations

import contextlib
import ctypes
import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import IO, TYPE_CHECKING

import psutil
from typing_extensions import Self

from iomatrix.errors import ToolFailure, ToolLaunchError
from iomatrix.fio import (
    build_command,
    build_prep_command,
    parse_output_file,
    render_job_file,
    target_of,
)
from iomatrix.models.outcome import Failure, FailureKind, Success, Timeout

if TYPE_CHECKING:
    from types import TracebackType

    from iomatrix.config import RunOptions
    from iomatrix.models.job import Job
    from iomatrix.models.outcome import Outcome

logger = logging.getLogger(__name__)

# Bytes of log kept as diagnostic output on failure
TAIL_BYTES = 4096


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so child dies when parent dies.

    This prevents orphan processes when the orchestrator crashes.
    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


def check_tool(executable: str) -> str:
    """Resolve the benchmark tool or raise ToolLaunchError."""
    resolved = shutil.which(executable)
    if resolved is None:
        msg = f"Benchmark tool not found or not executable: {executable}"
        raise ToolLaunchError(msg)
    return resolved


def read_tail(path: Path, limit: int = TAIL_BYTES) -> str | None:
    """Return the last ``limit`` bytes of a file, or None if it is empty."""
    if not path.exists():
        return None
    with path.open("rb") as f:
        _ = f.seek(0, os.SEEK_END)
        size = f.tell()
        _ = f.seek(max(0, size - limit))
        data = f.read()
    text = data.decode("utf-8", errors="replace")
    return text or None


class ToolProcess:
    """One external command with process group management.

    Features:
    - Uses start_new_session=True for reliable process group
    - Sets PDEATHSIG on Linux to prevent orphans
    - Captures stdout/stderr to a log file
    - Graceful then forceful termination of the group and of descendants
      that left it
    - Context manager: leaving the block always terminates and reaps
    """

    command_argv: list[str]
    log_path: Path
    env: dict[str, str]
    _process: subprocess.Popen[bytes] | None
    _exit_code: int | None
    _output_file: IO[str] | None

    def __init__(
        self,
        command_argv: list[str],
        log_path: Path,
        env: dict[str, str] | None = None,
        workdir: Path | None = None,
        append: bool = False,
    ) -> None:
        """Initialize a tool process.

        Args:
            command_argv: Command as list of argv tokens (no shell)
            log_path: File receiving stdout and stderr
            env: Additional environment variables
            workdir: Working directory to run the command in
            append: Append to the log instead of truncating it

        """
        self.command_argv = command_argv
        self.log_path = log_path
        self.workdir = workdir
        self.append = append

        # Merge environment
        self.env = os.environ.copy()
        if env:
            self.env.update(env)

        self._process = None
        self._exit_code = None
        self._output_file = None

    def __enter__(self) -> Self:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.reap()

    def start(self) -> None:
        """Start the process.

        Raises ToolLaunchError if the executable cannot be run and ToolFailure
        if the log file cannot be opened.
        """
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._output_file = self.log_path.open("a" if self.append else "w")
        except OSError as e:
            msg = f"Could not open log file {self.log_path}: {e}"
            raise ToolFailure(FailureKind.INTERNAL_ERROR.value, msg) from e

        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.command_argv,
                stdout=self._output_file,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                env=self.env,
                cwd=str(self.workdir) if self.workdir else None,
                start_new_session=True,  # Creates new process group
                preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
            )
        except OSError as e:
            self._cleanup()
            msg = f"Could not launch {self.command_argv[0]}: {e}"
            raise ToolLaunchError(msg) from e

    def wait(self, timeout: float | None = None) -> int:
        """Wait for the process to finish and return exit code.

        Raises subprocess.TimeoutExpired if it is still running after timeout.
        """
        if self._process is None:
            return self._exit_code or 0

        code = self._process.wait(timeout=timeout)
        self._exit_code = code
        self._cleanup()
        return code

    def descendants(self) -> list[psutil.Process]:
        """Snapshot of every live descendant of the process."""
        if self._process is None:
            return []
        try:
            return psutil.Process(self._process.pid).children(recursive=True)
        except psutil.Error:
            return []

    def kill(self, grace_period: float = 10.0) -> int:
        """Kill the process and everything it spawned.

        First sends SIGTERM to the process group, waits for grace_period,
        then sends SIGKILL if still alive. Descendants that moved to another
        process group are killed individually.

        Args:
            grace_period: Seconds to wait after SIGTERM before SIGKILL

        Returns:
            Exit code (negative signal number if killed)

        """
        if self._process is None:
            return self._exit_code or 0

        # Taken before the kill, children are reparented once their parent dies
        children = self.descendants()
        pgid = self._process.pid

        # Already finished?
        if self._process.poll() is not None:
            exit_code = self._process.returncode
            self._exit_code = exit_code
            self._kill_leftovers(pgid, children)
            self._cleanup()
            return exit_code

        # Send SIGTERM to process group
        with contextlib.suppress(OSError):
            os.killpg(pgid, signal.SIGTERM)

        # Wait for grace period
        deadline = time.monotonic() + grace_period
        while time.monotonic() < deadline:
            if self._process.poll() is not None:
                break
            time.sleep(0.1)

        # Still alive - SIGKILL
        if self._process.poll() is None:
            with contextlib.suppress(OSError):
                os.killpg(pgid, signal.SIGKILL)

        # Wait for process to die
        with contextlib.suppress(subprocess.TimeoutExpired):
            _ = self._process.wait(timeout=5.0)

        self._kill_leftovers(pgid, children)

        exit_code = self._process.returncode
        if exit_code is None:
            exit_code = -signal.SIGKILL
        self._exit_code = exit_code
        self._cleanup()
        return exit_code

    def reap(self, grace_period: float = 1.0) -> None:
        """Make sure neither the process nor its descendants survive."""
        if self._process is None:
            self._cleanup()
            return
        if self._process.poll() is None:
            logger.warning("Terminating %s (pid %d)", self.command_argv[0], self._process.pid)
        _ = self.kill(grace_period=grace_period)

    def _kill_leftovers(self, pgid: int, children: list[psutil.Process]) -> None:
        """SIGKILL remaining group members and escaped descendants, then reap."""
        with contextlib.suppress(OSError):
            os.killpg(pgid, signal.SIGKILL)

        alive: list[psutil.Process] = []
        for child in children:
            try:
                if child.is_running():
                    child.kill()
                    alive.append(child)
            except psutil.Error:
                continue
        if alive:
            _, still_alive = psutil.wait_procs(alive, timeout=5.0)
            for child in still_alive:
                try:
                    if child.status() == psutil.STATUS_ZOMBIE:
                        continue
                except psutil.Error:
                    continue
                logger.error("Process %d survived SIGKILL", child.pid)

    def _cleanup(self) -> None:
        """Cleanup resources."""
        if self._output_file:
            with contextlib.suppress(OSError):
                self._output_file.close()
            self._output_file = None

    @property
    def pid(self) -> int | None:
        """Get the process ID."""
        if self._process is None:
            return None
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        """Get the exit code if finished."""
        return self._exit_code

    @property
    def is_running(self) -> bool:
        """Check if the process is still running."""
        if self._process is None:
            return False
        return self._process.poll() is None


class JobRunner:
    """Runs one job through fio and classifies the result.

    ``run`` never raises for per-job problems; they become Failure or
    Timeout outcomes. Only ToolLaunchError escapes, since no job could
    succeed without the tool.
    """

    options: RunOptions
    output_dir: Path

    def __init__(self, options: RunOptions, output_dir: Path | None = None) -> None:
        self.options = options
        self.output_dir = output_dir if output_dir is not None else options.output_dir

    def artifact_paths(self, job: Job) -> dict[str, Path]:
        """Per-job artifact paths derived from the stable job id."""
        base = self.output_dir
        return {
            "cfg": base / f"{job.id}.cfg",
            "out": base / f"{job.id}.out",
            "log": base / f"{job.id}.log",
            "prep": base / f"{job.id}-prep.log",
            "hooks": base / f"{job.id}-hooks.log",
        }

    def run(self, job: Job) -> Outcome:
        """Execute one job and return its outcome."""
        try:
            return self._run(job)
        except ToolLaunchError:
            raise
        except ToolFailure as e:
            logger.warning("Job %s could not run: %s", job.id, e)
            return Failure(kind=FailureKind(e.kind), diagnostic=str(e))
        except Exception as e:  # noqa: BLE001
            logger.exception("Job %s failed inside the runner", job.id)
            return Failure(
                kind=FailureKind.INTERNAL_ERROR,
                diagnostic=f"{type(e).__name__}: {e}",
            )

    def _run(self, job: Job) -> Outcome:
        paths = self.artifact_paths(job)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        # Artifacts left by a previous run must not pass for this one
        for path in paths.values():
            path.unlink(missing_ok=True)
        _ = paths["cfg"].write_text(render_job_file(job, self.options))

        env = {
            "IOMATRIX_JOB_ID": job.id,
            "IOMATRIX_JOB_INDEX": str(job.index),
            "IOMATRIX_TARGET": target_of(job, self.options),
            "IOMATRIX_OUTPUT_DIR": str(self.output_dir),
        }

        try:
            for argv in self.options.setup_hooks:
                error = self.run_hook(argv, paths["hooks"], env, attempts=1)
                if error is not None:
                    return Failure(
                        kind=FailureKind.HOOK_FAILED,
                        diagnostic=error,
                        partial_output=read_tail(paths["hooks"]),
                    )

            if self.options.prep:
                failure = self._prep(job, paths["prep"], env)
                if failure is not None:
                    return failure

            return self._measure(job, paths, env)
        finally:
            for argv in self.options.teardown_hooks:
                error = self.run_hook(
                    argv, paths["hooks"], env, attempts=self.options.hook_retries
                )
                if error is not None:
                    logger.warning("Teardown for job %s failed: %s", job.id, error)

    def _measure(self, job: Job, paths: dict[str, Path], env: dict[str, str]) -> Outcome:
        timeout = self.options.effective_timeout
        command = build_command(self.options, paths["cfg"], paths["out"])
        logger.info("Running job %s: %s", job.id, shlex.join(command))

        started = time.monotonic()
        with ToolProcess(command, paths["log"], env=env) as process:
            try:
                exit_code = process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                _ = process.kill(grace_period=self.options.kill_grace_period)
                elapsed = time.monotonic() - started
                logger.warning("Job %s timed out after %.1fs", job.id, elapsed)
                return Timeout(elapsed_s=elapsed, timeout_s=timeout)
        duration = time.monotonic() - started

        if exit_code != 0:
            kind = FailureKind.SIGNALLED if exit_code < 0 else FailureKind.NONZERO_EXIT
            logger.warning("Job %s failed with exit code %d", job.id, exit_code)
            return Failure(
                kind=kind,
                diagnostic=f"fio exited with code {exit_code}",
                exit_code=exit_code,
                partial_output=read_tail(paths["log"]),
                duration_s=duration,
            )

        try:
            metrics = parse_output_file(paths["out"])
        except ToolFailure as e:
            logger.warning("Job %s produced no usable result: %s", job.id, e)
            return Failure(
                kind=FailureKind(e.kind),
                diagnostic=str(e),
                exit_code=exit_code,
                partial_output=read_tail(paths["out"]) or read_tail(paths["log"]),
                duration_s=duration,
            )

        logger.info("Job %s completed in %.1fs", job.id, duration)
        return Success(metrics=metrics, duration_s=duration)

    def _prep(self, job: Job, log_path: Path, env: dict[str, str]) -> Failure | None:
        command = build_prep_command(self.options, target_of(job, self.options))
        logger.info("Running prep for job %s: %s", job.id, shlex.join(command))

        started = time.monotonic()
        with ToolProcess(command, log_path, env=env) as process:
            try:
                exit_code = process.wait(timeout=self.options.effective_timeout)
            except subprocess.TimeoutExpired:
                _ = process.kill(grace_period=self.options.kill_grace_period)
                exit_code = None

        if exit_code == 0:
            return None
        reason = "timed out" if exit_code is None else f"exited with code {exit_code}"
        return Failure(
            kind=FailureKind.PREP_FAILED,
            diagnostic=f"prep pass {reason}",
            exit_code=exit_code,
            partial_output=read_tail(log_path),
            duration_s=time.monotonic() - started,
        )

    def run_hook(
        self,
        argv: list[str],
        log_path: Path,
        env: dict[str, str],
        attempts: int,
    ) -> str | None:
        """Run a hook command, retrying on failure.

        Returns None on success, else a description of the last failure.
        """
        error: str | None = None
        for attempt in range(1, attempts + 1):
            logger.info("Running hook: %s", shlex.join(argv))
            try:
                with ToolProcess(argv, log_path, env=env, append=True) as process:
                    try:
                        exit_code = process.wait(timeout=self.options.effective_timeout)
                    except subprocess.TimeoutExpired:
                        exit_code = process.kill(grace_period=self.options.kill_grace_period)
            except (ToolLaunchError, ToolFailure) as e:
                return str(e)

            if exit_code == 0:
                return None

            error = f"{shlex.join(argv)} exited with code {exit_code}"
            if attempt < attempts:
                logger.warning("Hook failed (attempt %d/%d): %s", attempt, attempts, error)
                time.sleep(self.options.hook_retry_delay)
        return error
