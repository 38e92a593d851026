# Copyright (c) Syntropy Systems
"""Matrix scheduler: drives jobs through the runner under a concurrency policy."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from iomatrix.errors import ToolLaunchError
from iomatrix.models.outcome import Failure, FailureKind, Skipped

if TYPE_CHECKING:
    from collections.abc import Sequence

    from iomatrix.models.job import Job
    from iomatrix.models.outcome import Outcome

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"
LAUNCH_ABORT_REASON = "aborted: tool launch failed"
INTERNAL_ABORT_REASON = "aborted: internal error"

# How often idle workers re-check for cancellation (seconds)
IDLE_WAIT = 0.2


class CancelToken:
    """Run-scoped cancellation signal checked before each launch."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = CANCELLED_REASON

    def cancel(self, reason: str = CANCELLED_REASON) -> None:
        """Request cancellation. The first reason given wins."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout=timeout)


class ResourceRegistry:
    """Lock-guarded set of storage resource keys currently in use.

    Owned by whoever builds the scheduler; one registry must be shared by
    every scheduler that targets the same devices.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._active: set[str] = set()

    def try_acquire(self, key: str) -> bool:
        """Mark key busy. Returns False if it already is."""
        with self._condition:
            if key in self._active:
                return False
            self._active.add(key)
            return True

    def release(self, key: str) -> None:
        """Mark key free and wake waiting workers."""
        with self._condition:
            self._active.discard(key)
            self._condition.notify_all()

    @property
    def condition(self) -> threading.Condition:
        return self._condition

    def active(self) -> set[str]:
        with self._condition:
            return set(self._active)


@dataclass
class ScheduleResult:
    """Outcomes in job order plus how the run ended."""

    outcomes: list[Outcome]
    cancelled: bool = False
    fatal: Optional[ToolLaunchError] = None
    started: list[int] = field(default_factory=list)


class MatrixScheduler:
    """Runs every job exactly once and returns outcomes in job order.

    At most ``concurrency`` jobs are in flight, and never two with the same
    resource key. Failures and timeouts do not stop the run; cancellation
    stops new launches and marks unstarted jobs skipped.
    """

    def __init__(
        self,
        run_job: Callable[[Job], Outcome],
        resource_key: Callable[[Job], str],
        concurrency: int = 1,
        registry: ResourceRegistry | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        if concurrency < 1:
            msg = "concurrency must be at least 1"
            raise ValueError(msg)
        self.run_job = run_job
        self.resource_key = resource_key
        self.concurrency = concurrency
        self.registry = registry if registry is not None else ResourceRegistry()
        self.cancel = cancel if cancel is not None else CancelToken()

    def run(
        self,
        jobs: Sequence[Job],
        on_start: Callable[[Job], None] | None = None,
        on_outcome: Callable[[Job, Outcome], None] | None = None,
    ) -> ScheduleResult:
        """Drive every job to an outcome."""
        outcomes: list[Outcome | None] = [None] * len(jobs)
        pending: list[int] = list(range(len(jobs)))
        started: list[int] = []
        keys = [self.resource_key(job) for job in jobs]
        fatal: list[ToolLaunchError] = []
        crashed: list[Exception] = []
        condition = self.registry.condition

        def record(index: int, outcome: Outcome) -> None:
            outcomes[index] = outcome
            if on_outcome is not None:
                on_outcome(jobs[index], outcome)

        def claim_next() -> int | None:
            """Take the first pending job whose resource is free."""
            with condition:
                while True:
                    if self.cancel.cancelled or not pending:
                        return None
                    for position, index in enumerate(pending):
                        if self.registry.try_acquire(keys[index]):
                            del pending[position]
                            started.append(index)
                            return index
                    _ = condition.wait(timeout=IDLE_WAIT)

        def worker() -> None:
            while True:
                index = claim_next()
                if index is None:
                    return
                job = jobs[index]
                try:
                    if on_start is not None:
                        on_start(job)
                    logger.info("Starting job %d/%d: %s", index + 1, len(jobs), job.id)
                    try:
                        outcome = self.run_job(job)
                    except ToolLaunchError as e:
                        logger.error("Tool launch failed for job %s: %s", job.id, e)  # noqa: TRY400
                        fatal.append(e)
                        self.cancel.cancel(LAUNCH_ABORT_REASON)
                        outcome = Failure(kind=FailureKind.LAUNCH_FAILED, diagnostic=str(e))
                    record(index, outcome)
                except Exception as e:
                    crashed.append(e)
                    self.cancel.cancel(INTERNAL_ABORT_REASON)
                    return
                finally:
                    self.registry.release(keys[index])

        workers = min(self.concurrency, len(jobs))
        if workers <= 1:
            worker()
        else:
            threads = [
                threading.Thread(target=worker, name=f"iomatrix-worker-{i}", daemon=True)
                for i in range(workers)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        if crashed:
            raise crashed[0]

        for index in range(len(jobs)):
            if outcomes[index] is None:
                record(index, Skipped(reason=self.cancel.reason))

        if self.cancel.cancelled:
            logger.warning(
                "Run cancelled (%s): %d of %d jobs skipped",
                self.cancel.reason,
                len(jobs) - len(started),
                len(jobs),
            )

        return ScheduleResult(
            outcomes=[outcome for outcome in outcomes if outcome is not None],
            cancelled=self.cancel.cancelled,
            fatal=fatal[0] if fatal else None,
            started=started,
        )
