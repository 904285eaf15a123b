# controller.py
from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from .config import EngineConfig
from .dag import build_job_instances, validate_graph
from .executor import JobExecutor
from .model import Event, JobInstance, JobStatus, Run, RunStatus, WorkflowDefinition, now_utc
from .scheduler import CANCELLED, Scheduler
from .secrets import SecretProvider
from .slots import SlotPool
from .steps import StepRegistry
from .triggers import TriggerDecision, evaluate, validate_triggers
from .ui.console import Console, get_console

log = logging.getLogger(__name__)


def _stopped_by_cancel(job: JobInstance) -> bool:
    if job.status is JobStatus.CANCELLED:
        return True
    return job.status is JobStatus.SKIPPED and job.reason == CANCELLED


def aggregate(run: Run) -> RunStatus:
    """
    Final run status:
      - cancelled if a cancel request actually stopped a job
      - failed if any job failed
      - succeeded otherwise (skipped-by-filter jobs do not fail a run)
    """
    if run.cancel_requested and any(_stopped_by_cancel(j) for j in run.jobs):
        return RunStatus.CANCELLED
    if any(j.status is JobStatus.FAILED for j in run.jobs):
        return RunStatus.FAILED
    return RunStatus.SUCCEEDED


class RunController:
    """
    Orchestrates runs of one workflow: trigger check, graph build, scheduling,
    final status. Definition problems are raised when the controller is
    created, before any event is seen.
    """

    def __init__(
        self,
        workflow: WorkflowDefinition,
        *,
        config: Optional[EngineConfig] = None,
        registry: Optional[StepRegistry] = None,
        secrets: Optional[SecretProvider] = None,
        slots: Optional[SlotPool] = None,
        console: Optional[Console] = None,
    ):
        validate_triggers(workflow.triggers)
        validate_graph(workflow)

        self.workflow = workflow
        self.config = config or EngineConfig()
        self.console = console or get_console()
        self.slots = slots or SlotPool(self.config.slots)
        self.executor = JobExecutor(
            registry=registry,
            secrets=secrets,
            workspace_root=self.config.workspace,
            isolate=self.config.isolate_jobs,
            inherit_env=self.config.inherit_env,
            output_tail=self.config.output_tail,
            kill_grace=self.config.kill_grace,
            console=self.console,
        )
        self._lock = threading.Lock()
        self._schedulers: Dict[str, Scheduler] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self.runs: Dict[str, Run] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def evaluate(self, event: Event) -> TriggerDecision:
        return evaluate(event, self.workflow.triggers)

    def create_run(self, event: Event) -> Optional[Run]:
        """Return a pending Run, or None if the trigger filters reject the event."""
        decision = self.evaluate(event)
        if not decision.accepted:
            log.info("workflow %s: event %s rejected (%s)", self.workflow.name, event.kind, decision.reason)
            self.console.print_trigger_rejected(self.workflow.name, decision.reason)
            return None

        run = Run(workflow=self.workflow, event=event)
        run.set_jobs(build_job_instances(self.workflow, event))
        scheduler = Scheduler(
            run,
            self.executor,
            self.slots,
            max_parallel_jobs=self.config.max_parallel_jobs,
            slot_timeout=self.config.slot_timeout,
            console=self.console,
        )
        with self._lock:
            self.runs[run.id] = run
            self._schedulers[run.id] = scheduler
        return run

    def execute(self, run: Run) -> Run:
        """Drive a pending run to a terminal status (blocking)."""
        with self._lock:
            if run.status is not RunStatus.PENDING:
                raise RuntimeError(f"run {run.id} is already {run.status.value}")
            scheduler = self._schedulers[run.id]
            run.status = RunStatus.RUNNING
            run.started_at = now_utc()

        log.info("run %s started: workflow=%s event=%s ref=%s", run.id, self.workflow.name, run.event.kind, run.event.ref)
        self.console.print_run_started(
            run_id=run.id,
            workflow=self.workflow.name,
            event=run.event.kind,
            ref=run.event.ref,
            job_count=len(run.jobs),
        )
        try:
            scheduler.drain()
        finally:
            with self._lock:
                run.status = aggregate(run)
                run.finished_at = now_utc()
                self._schedulers.pop(run.id, None)
        log.info("run %s finished: %s", run.id, run.status.value)
        return run

    def submit(self, event: Event) -> Optional[Run]:
        """Evaluate, build and run to completion. None if the event is rejected."""
        run = self.create_run(event)
        if run is None:
            return None
        return self.execute(run)

    def start(self, event: Event) -> Optional[Run]:
        """Like submit(), but executes on a background thread and returns at once."""
        run = self.create_run(event)
        if run is None:
            return None
        thread = threading.Thread(target=self.execute, args=(run,), name=f"relayci-run-{run.id[:8]}", daemon=True)
        with self._lock:
            self._threads[run.id] = thread
        thread.start()
        return run

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Run:
        thread = self._threads.get(run_id)
        if thread is not None:
            thread.join(timeout)
        return self.runs[run_id]

    def is_active(self, run_id: str) -> bool:
        thread = self._threads.get(run_id)
        return thread is not None and thread.is_alive()

    def forget(self, run_id: str) -> Optional[Run]:
        """Drop a finished run from memory once it has been archived."""
        with self._lock:
            run = self.runs.get(run_id)
            if run is None or not run.status.terminal:
                return None
            self._threads.pop(run_id, None)
            return self.runs.pop(run_id)

    def cancel(self, run_id: Optional[str] = None) -> bool:
        """
        Cancel one run (or every active run). Returns False if nothing was
        cancelled because the run(s) had already finished.
        """
        cancelled = False
        with self._lock:
            if run_id is None:
                targets = list(self.runs.values())
            else:
                targets = [self.runs[run_id]] if run_id in self.runs else []
            for run in targets:
                if run.status.terminal or run.cancel_requested:
                    continue
                if all(j.status.terminal for j in run.jobs):
                    continue
                run.cancel_requested = True
                run.cancel_event.set()
                scheduler = self._schedulers.get(run.id)
                if scheduler is not None:
                    scheduler.cancel()
                log.info("run %s: cancellation requested", run.id)
                cancelled = True
        return cancelled
