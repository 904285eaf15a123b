# scheduler.py
"""
Event-driven job scheduler for one run.

The scheduler is the only writer of job status transitions. Job workers,
the slot pool and the run controller talk to it through a single queue:

    JobFinished      a worker finished a job (any outcome)
    SlotFreed        some slot in the pool was released
    CancelRequested  the run was cancelled

Ready jobs are admitted in definition order while the concurrency limit and
slot availability allow. The scheduler blocks on the queue between events;
its wait timeout is the earliest slot-wait deadline, if any. Only waiting on
a slot counts against `slot_timeout`; waiting on the concurrency limit does
not.
"""
from __future__ import annotations

import logging
import queue
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional

from .executor import JobExecutor, JobOutcome
from .model import JobInstance, JobStatus, Run, StepStatus, now_utc
from .slots import ExecutionSlot, SlotFreed, SlotPool
from .ui.console import Console, get_console

log = logging.getLogger(__name__)

UPSTREAM_FAILED = "upstream-failed"
SLOT_TIMEOUT = "slot-timeout"
CANCELLED = "cancelled"
EXECUTOR_ERROR = "executor-error"


@dataclass(frozen=True)
class JobFinished:
    name: str
    outcome: JobOutcome


@dataclass(frozen=True)
class CancelRequested:
    pass


class Scheduler:
    def __init__(
        self,
        run: Run,
        executor: JobExecutor,
        slots: Optional[SlotPool] = None,
        *,
        max_parallel_jobs: Optional[int] = None,
        slot_timeout: Optional[float] = None,
        console: Optional[Console] = None,
    ):
        if max_parallel_jobs is not None and max_parallel_jobs < 1:
            raise ValueError("max_parallel_jobs must be at least 1")
        self.run = run
        self.executor = executor
        self.slots = slots or SlotPool()
        self.max_parallel_jobs = max_parallel_jobs
        self.slot_timeout = slot_timeout
        self.console = console or get_console()
        self.events: queue.Queue = queue.Queue()
        self._running: Dict[str, ExecutionSlot] = {}
        self._ready_since: Dict[str, float] = {}
        self._cancelled = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Thread-safe; the actual transitions happen on the scheduler thread."""
        self.events.put(CancelRequested())

    def drain(self) -> None:
        """Run until every job of the run is terminal."""
        jobs = self.run.jobs
        workers = self.max_parallel_jobs or max(1, len(jobs))
        self.slots.subscribe(self.events)
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"relayci-{self.run.id[:8]}") as pool:
                self._resolve_blocked()
                while not all(j.status.terminal for j in jobs):
                    if self.run.cancel_event.is_set() and not self._cancelled:
                        self._on_cancel()
                    if not self._cancelled:
                        self._admit(pool)
                        self._expire_waiting()
                    if all(j.status.terminal for j in jobs):
                        break
                    self._handle(self._next_event())
        finally:
            self.slots.unsubscribe(self.events)

    # ------------------------------------------------------------------
    # Event loop internals
    # ------------------------------------------------------------------

    def _next_event(self):
        timeout = None
        if self._ready_since and self.slot_timeout is not None and not self._cancelled:
            earliest = min(self._ready_since.values()) + self.slot_timeout
            timeout = max(0.0, earliest - time.monotonic())
        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def _handle(self, event) -> None:
        if isinstance(event, JobFinished):
            self._on_finished(event)
        elif isinstance(event, CancelRequested):
            self._on_cancel()
        # SlotFreed / timeout wake-ups only need another admission pass

    def _ready(self) -> List[JobInstance]:
        return [j for j in self.run.jobs if j.status is JobStatus.READY]

    def _admit(self, pool: ThreadPoolExecutor) -> None:
        ready = self._ready()
        for i, job in enumerate(ready):
            if self.max_parallel_jobs is not None and len(self._running) >= self.max_parallel_jobs:
                break
            slot = self.slots.try_acquire(job.name)
            if slot is None:
                # tie-break is definition order; later jobs do not jump ahead
                now = time.monotonic()
                for waiting in ready[i:]:
                    self._ready_since.setdefault(waiting.name, now)
                break
            self._start(pool, job, slot)

    def _start(self, pool: ThreadPoolExecutor, job: JobInstance, slot: ExecutionSlot) -> None:
        self._ready_since.pop(job.name, None)
        job.status = JobStatus.RUNNING
        job.slot = slot.id
        job.started_at = now_utc()
        self._running[job.name] = slot
        log.debug("job %s admitted on slot %d", job.name, slot.id)
        self.console.print_job_start(job.name, slot.id)
        pool.submit(self._work, job, slot)

    def _work(self, job: JobInstance, slot: ExecutionSlot) -> None:
        """Worker thread body: never lets an exception escape without an event."""
        try:
            outcome = self.executor.execute(self.run, job, slot)
        except Exception:
            log.exception("job %s crashed in executor", job.name)
            slot.release()
            outcome = JobOutcome(JobStatus.FAILED, EXECUTOR_ERROR)
        self.events.put(JobFinished(job.name, outcome))

    def _expire_waiting(self) -> None:
        if self.slot_timeout is None:
            return
        now = time.monotonic()
        expired = [
            name for name, since in self._ready_since.items()
            if now - since >= self.slot_timeout
        ]
        for name in expired:
            job = self.run.job(name)
            self._ready_since.pop(name, None)
            if job.status is not JobStatus.READY:
                continue
            log.warning("job %s waited %.1fs for an execution slot", name, self.slot_timeout)
            self._finish(job, JobStatus.FAILED, SLOT_TIMEOUT)
            for s in job.steps:
                s.status = StepStatus.SKIPPED
        if expired:
            self._resolve_blocked()

    def _on_finished(self, event: JobFinished) -> None:
        job = self.run.job(event.name)
        self._running.pop(job.name, None)
        self._finish(job, event.outcome.status, event.outcome.reason)
        if not self._cancelled:
            self._resolve_blocked()

    def _on_cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        log.info("run %s cancelled; skipping %d pending job(s)", self.run.id,
                 sum(1 for j in self.run.jobs if j.status in (JobStatus.BLOCKED, JobStatus.READY)))
        for job in self.run.jobs:
            if job.status in (JobStatus.BLOCKED, JobStatus.READY, JobStatus.PENDING):
                self._finish(job, JobStatus.SKIPPED, CANCELLED)
                for s in job.steps:
                    s.status = StepStatus.SKIPPED
        self._ready_since.clear()

    def _finish(self, job: JobInstance, status: JobStatus, reason: Optional[str]) -> None:
        job.status = status
        job.reason = reason
        job.finished_at = now_utc()
        if status is JobStatus.SKIPPED:
            self.console.print_job_skipped(job.name, reason or "skipped")
        else:
            self.console.print_job_finished(job.name, status.value, reason)

    def _resolve_blocked(self) -> None:
        """Blocked -> Ready / Skipped, repeated until nothing changes."""
        changed = True
        while changed:
            changed = False
            for job in self.run.jobs:
                if job.status is not JobStatus.BLOCKED:
                    continue
                deps = [self.run.job(d).status for d in job.needs]
                if any(d.unfavorable for d in deps):
                    self._finish(job, JobStatus.SKIPPED, UPSTREAM_FAILED)
                    for s in job.steps:
                        s.status = StepStatus.SKIPPED
                    changed = True
                elif all(d is JobStatus.SUCCEEDED for d in deps):
                    job.status = JobStatus.READY
                    changed = True
