# Copyright (c) Syntropy Systems
"""Tests for the matrix scheduler."""

from __future__ import annotations

import threading
import time

import pytest

from iomatrix.errors import ToolLaunchError
from iomatrix.expand import expand_jobs
from iomatrix.models.job import Job
from iomatrix.models.outcome import Failure, FailureKind, Outcome, Skipped, Success, Timeout
from iomatrix.models.result import JobMetrics
from iomatrix.models.space import ParameterSpace
from iomatrix.scheduler import (
    CANCELLED_REASON,
    LAUNCH_ABORT_REASON,
    CancelToken,
    MatrixScheduler,
    ResourceRegistry,
)


def make_jobs(axes: dict) -> list[Job]:
    return expand_jobs(ParameterSpace.from_mapping(axes))


def ok(job: Job) -> Outcome:
    return Success(metrics=JobMetrics(read_iops=float(job.index)), duration_s=0.0)


class Tracker:
    """Records which resource keys are in use at the same time."""

    def __init__(self, delay: float = 0.05) -> None:
        self.delay = delay
        self.lock = threading.Lock()
        self.active: set[str] = set()
        self.overlaps: list[str] = []
        self.max_in_flight = 0
        self.started: list[int] = []

    def run(self, job: Job) -> Outcome:
        key = str(job.params["filename"])
        with self.lock:
            if key in self.active:
                self.overlaps.append(key)
            self.active.add(key)
            self.max_in_flight = max(self.max_in_flight, len(self.active))
            self.started.append(job.index)
        time.sleep(self.delay)
        with self.lock:
            self.active.discard(key)
        return ok(job)


class TestCancelToken:
    """Tests for CancelToken."""

    def test_first_reason_wins(self) -> None:
        token = CancelToken()
        assert not token.cancelled

        token.cancel("first")
        token.cancel("second")

        assert token.cancelled
        assert token.reason == "first"


class TestResourceRegistry:
    """Tests for ResourceRegistry."""

    def test_acquire_release(self) -> None:
        registry = ResourceRegistry()

        assert registry.try_acquire("/dev/sda")
        assert not registry.try_acquire("/dev/sda")
        assert registry.try_acquire("/dev/sdb")
        assert registry.active() == {"/dev/sda", "/dev/sdb"}

        registry.release("/dev/sda")

        assert registry.try_acquire("/dev/sda")


class TestMatrixScheduler:
    """Tests for MatrixScheduler."""

    def test_sequential_outcomes_in_order(self) -> None:
        jobs = make_jobs({"bs": ["4k", "64k"], "rw": ["read", "write"]})
        scheduler = MatrixScheduler(run_job=ok, resource_key=lambda job: "dev")

        result = scheduler.run(jobs)

        assert len(result.outcomes) == 4
        assert [o.metrics.read_iops for o in result.outcomes] == [0, 1, 2, 3]
        assert result.started == [0, 1, 2, 3]
        assert not result.cancelled

    def test_concurrent_outcomes_stay_in_job_order(self) -> None:
        """Results are in expansion order whatever order jobs finish in."""
        jobs = make_jobs({"filename": ["a", "b", "c", "d"], "bs": ["4k", "64k"]})

        def run_job(job: Job) -> Outcome:
            # Later jobs finish first
            time.sleep(0.01 * (len(jobs) - job.index))
            return ok(job)

        scheduler = MatrixScheduler(
            run_job=run_job,
            resource_key=lambda job: str(job.params["filename"]),
            concurrency=4,
        )

        result = scheduler.run(jobs)

        assert [o.metrics.read_iops for o in result.outcomes] == list(range(len(jobs)))

    def test_same_resource_never_overlaps(self) -> None:
        """Two jobs on one device never run at the same time."""
        jobs = make_jobs({"filename": ["a", "b"], "bs": ["4k", "8k", "64k"]})
        tracker = Tracker()
        scheduler = MatrixScheduler(
            run_job=tracker.run,
            resource_key=lambda job: str(job.params["filename"]),
            concurrency=4,
        )

        result = scheduler.run(jobs)

        assert tracker.overlaps == []
        assert tracker.max_in_flight <= 2
        assert len(result.outcomes) == 6
        assert all(isinstance(o, Success) for o in result.outcomes)

    def test_distinct_resources_run_in_parallel(self) -> None:
        jobs = make_jobs({"filename": ["a", "b", "c"]})
        tracker = Tracker(delay=0.3)
        scheduler = MatrixScheduler(
            run_job=tracker.run,
            resource_key=lambda job: str(job.params["filename"]),
            concurrency=3,
        )

        _ = scheduler.run(jobs)

        assert tracker.max_in_flight >= 2

    def test_shared_registry_blocks_busy_key(self) -> None:
        """A key held elsewhere is not used until it is released."""
        registry = ResourceRegistry()
        assert registry.try_acquire("a")
        jobs = make_jobs({"filename": ["a", "b"]})
        order: list[str] = []

        def run_job(job: Job) -> Outcome:
            order.append(str(job.params["filename"]))
            return ok(job)

        scheduler = MatrixScheduler(
            run_job=run_job,
            resource_key=lambda job: str(job.params["filename"]),
            registry=registry,
        )
        timer = threading.Timer(0.3, registry.release, args=("a",))
        timer.start()
        try:
            result = scheduler.run(jobs)
        finally:
            timer.cancel()

        assert order == ["b", "a"]
        assert len(result.outcomes) == 2

    def test_failures_do_not_stop_the_run(self) -> None:
        jobs = make_jobs({"bs": ["4k", "8k", "64k"]})

        def run_job(job: Job) -> Outcome:
            if job.index == 0:
                return Failure(kind=FailureKind.NONZERO_EXIT, diagnostic="boom", exit_code=1)
            if job.index == 1:
                return Timeout(elapsed_s=1.0, timeout_s=1.0)
            return ok(job)

        result = MatrixScheduler(run_job=run_job, resource_key=lambda job: "dev").run(jobs)

        assert [o.tag for o in result.outcomes] == ["failure", "timeout", "success"]
        assert not result.cancelled

    def test_cancel_after_second_start_skips_the_rest(self) -> None:
        """In-flight jobs finish, unstarted jobs become skipped."""
        jobs = make_jobs({"bs": ["4k", "8k", "16k", "64k"]})
        cancel = CancelToken()
        ran: list[int] = []

        def run_job(job: Job) -> Outcome:
            ran.append(job.index)
            return ok(job)

        def on_start(job: Job) -> None:
            if job.index == 1:
                cancel.cancel()

        scheduler = MatrixScheduler(run_job=run_job, resource_key=lambda job: "dev", cancel=cancel)

        result = scheduler.run(jobs, on_start=on_start)

        assert ran == [0, 1]
        assert [o.tag for o in result.outcomes] == ["success", "success", "skipped", "skipped"]
        skipped = result.outcomes[2]
        assert isinstance(skipped, Skipped)
        assert skipped.reason == CANCELLED_REASON
        assert result.cancelled

    def test_cancel_before_start_skips_everything(self) -> None:
        jobs = make_jobs({"bs": ["4k", "8k"]})
        cancel = CancelToken()
        cancel.cancel()

        result = MatrixScheduler(run_job=ok, resource_key=lambda job: "dev", cancel=cancel).run(
            jobs
        )

        assert [o.tag for o in result.outcomes] == ["skipped", "skipped"]
        assert result.started == []

    def test_launch_error_is_fatal(self) -> None:
        """A launch failure fails that job and skips the unstarted rest."""
        jobs = make_jobs({"bs": ["4k", "8k", "64k"]})

        def run_job(job: Job) -> Outcome:
            if job.index == 1:
                msg = "no fio"
                raise ToolLaunchError(msg)
            return ok(job)

        result = MatrixScheduler(run_job=run_job, resource_key=lambda job: "dev").run(jobs)

        assert [o.tag for o in result.outcomes] == ["success", "failure", "skipped"]
        failure = result.outcomes[1]
        assert isinstance(failure, Failure)
        assert failure.kind == FailureKind.LAUNCH_FAILED
        skipped = result.outcomes[2]
        assert isinstance(skipped, Skipped)
        assert skipped.reason == LAUNCH_ABORT_REASON
        assert isinstance(result.fatal, ToolLaunchError)

    def test_unexpected_error_propagates(self) -> None:
        jobs = make_jobs({"bs": ["4k", "8k"]})

        def run_job(job: Job) -> Outcome:
            msg = "bug"
            raise RuntimeError(msg)

        scheduler = MatrixScheduler(run_job=run_job, resource_key=lambda job: "dev")

        with pytest.raises(RuntimeError, match="bug"):
            scheduler.run(jobs)

    def test_on_outcome_called_once_per_job(self) -> None:
        jobs = make_jobs({"filename": ["a", "b"], "bs": ["4k", "8k"]})
        seen: list[str] = []
        lock = threading.Lock()

        def on_outcome(job: Job, outcome: Outcome) -> None:
            with lock:
                seen.append(job.id)

        scheduler = MatrixScheduler(
            run_job=ok, resource_key=lambda job: str(job.params["filename"]), concurrency=2
        )
        _ = scheduler.run(jobs, on_outcome=on_outcome)

        assert sorted(seen) == sorted(job.id for job in jobs)

    def test_concurrency_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            MatrixScheduler(run_job=ok, resource_key=lambda job: "dev", concurrency=0)
