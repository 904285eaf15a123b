# executor.py
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .errors import CIError
from .model import JobInstance, JobStatus, Run, Step, StepInstance, StepStatus, now_utc
from .secrets import EnvSecretProvider, ExpressionContext, SecretProvider, mask
from .slots import ExecutionSlot
from .steps import CANCELLED, STEP_TIMEOUT, StepContext, StepRegistry, StepResult, default_registry
from .ui.console import Console, get_console

log = logging.getLogger(__name__)

STEP_ERROR = "step-error"
JOB_TIMEOUT = "job-timeout"


@dataclass(frozen=True)
class JobOutcome:
    status: JobStatus
    reason: Optional[str] = None


def _safe_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in name)


class JobExecutor:
    """
    Runs one job's steps, strictly in declared order, on a leased slot.

    Each job gets its own workspace directory and its own environment
    mapping; steps see the exports of earlier steps in the same job.
    """

    def __init__(
        self,
        *,
        registry: Optional[StepRegistry] = None,
        secrets: Optional[SecretProvider] = None,
        workspace_root: str | Path = ".relayci/work",
        isolate: bool = True,
        inherit_env: bool = True,
        output_tail: int = 4000,
        kill_grace: float = 5.0,
        console: Optional[Console] = None,
    ):
        self.registry = registry or default_registry()
        self.secrets = secrets or EnvSecretProvider()
        self.workspace_root = Path(workspace_root)
        self.isolate = isolate
        self.inherit_env = inherit_env
        self.output_tail = output_tail
        self.kill_grace = kill_grace
        self.console = console or get_console()

    def workspace_for(self, run: Run, job: JobInstance) -> Path:
        if not self.isolate:
            return self.workspace_root.resolve()
        return (self.workspace_root / run.id / _safe_name(job.name)).resolve()

    def _base_env(self, run: Run, job: JobInstance) -> tuple[Dict[str, str], list[str]]:
        """Job environment plus the secret values rendered into it."""
        env: Dict[str, str] = dict(os.environ) if self.inherit_env else {}
        env.update({
            "CI": "true",
            "RELAYCI": "true",
            "RELAYCI_RUN_ID": run.id,
            "RELAYCI_WORKFLOW": run.workflow.name,
            "RELAYCI_JOB": job.name,
            "RELAYCI_EVENT_NAME": run.event.kind,
            "RELAYCI_REF": run.event.ref or "",
        })
        expr = ExpressionContext(secrets=self.secrets, env=env, event=run.event, job=job.name)
        env.update({k: str(v) for k, v in expr.render_mapping(run.workflow.env).items()})
        env.update({k: str(v) for k, v in expr.render_mapping(job.definition.env).items()})
        return env, list(expr.used_secrets.values())

    def execute(self, run: Run, job: JobInstance, slot: ExecutionSlot) -> JobOutcome:
        """Run the job; the slot is released on every exit path."""
        try:
            return self._execute(run, job, slot)
        finally:
            slot.release()

    def _execute(self, run: Run, job: JobInstance, slot: ExecutionSlot) -> JobOutcome:
        cancel = run.cancel_event
        workspace = self.workspace_for(run, job)
        workspace.mkdir(parents=True, exist_ok=True)

        try:
            env, job_secrets = self._base_env(run, job)
        except CIError as e:
            for s in job.steps:
                s.status = StepStatus.SKIPPED
            return JobOutcome(JobStatus.FAILED, e.kind)

        deadline = time.monotonic() + job.definition.timeout if job.definition.timeout else None
        outcome: Optional[JobOutcome] = None

        for step_def, step in zip(job.definition.steps, job.steps):
            if outcome is not None:
                step.status = StepStatus.SKIPPED
                continue
            if cancel.is_set():
                step.status = StepStatus.SKIPPED
                outcome = JobOutcome(JobStatus.CANCELLED, CANCELLED)
                continue

            timeout = step_def.timeout
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    step.status = StepStatus.SKIPPED
                    outcome = JobOutcome(JobStatus.FAILED, JOB_TIMEOUT)
                    continue
                timeout = min(timeout, remaining) if timeout else remaining

            self.console.print_step(job.name, step.name)
            result, secret_values = self._run_step(run, job, step_def, step, env, workspace, timeout)
            self._record(step, result, job_secrets + secret_values)

            if step.status is StepStatus.CANCELLED:
                outcome = JobOutcome(JobStatus.CANCELLED, CANCELLED)
            elif step.status is StepStatus.SUCCEEDED:
                env.update(result.env)
            else:
                self.console.print_failure(
                    f"{job.name} / {step.name}",
                    step.reason or "failed",
                    exit_code=step.exit_code,
                    hint=result.hint,
                    output=step.output,
                )
                if step.continue_on_error:
                    log.info("[%s] step '%s' failed; continuing (continue-on-error)", job.name, step.name)
                    continue
                reason = step.reason
                if reason == STEP_TIMEOUT and deadline is not None and time.monotonic() >= deadline:
                    reason = JOB_TIMEOUT
                outcome = JobOutcome(JobStatus.FAILED, reason)

        if outcome is None:
            if cancel.is_set():
                return JobOutcome(JobStatus.CANCELLED, CANCELLED)
            return JobOutcome(JobStatus.SUCCEEDED)
        return outcome

    def _run_step(
        self,
        run: Run,
        job: JobInstance,
        step_def: Step,
        step: StepInstance,
        env: Dict[str, str],
        workspace: Path,
        timeout: Optional[float],
    ) -> tuple[StepResult, list[str]]:
        step.status = StepStatus.RUNNING
        step.started_at = now_utc()
        expr = ExpressionContext(secrets=self.secrets, env=env, event=run.event, job=job.name)
        try:
            config = expr.render_mapping(step_def.config)
            step_env = dict(env)
            step_env.update({k: str(v) for k, v in expr.render_mapping(step_def.env).items()})
            runner = self.registry.resolve(step_def.kind)
            ctx = StepContext(
                job=job.name,
                step=step.name,
                config=config,
                env=step_env,
                workspace=workspace,
                event=run.event,
                cancel=run.cancel_event,
                timeout=timeout,
                kill_grace=self.kill_grace,
            )
            result = runner(ctx)
        except CIError as e:
            log.debug("[%s] step '%s': %s", job.name, step.name, e)
            result = StepResult(exit_code=None, output=str(e), reason=e.kind, hint=e.details.get("hint"))
        except Exception as e:
            log.exception("[%s] step '%s' raised", job.name, step.name)
            result = StepResult(exit_code=None, output=f"{type(e).__name__}: {e}", reason=STEP_ERROR)
        return result, list(expr.used_secrets.values())

    def _record(self, step: StepInstance, result: StepResult, secret_values: list[str]) -> None:
        step.finished_at = now_utc()
        step.exit_code = result.exit_code
        output = mask(result.output or "", secret_values)
        step.output = output[-self.output_tail:] if self.output_tail else ""
        if result.cancelled:
            step.status = StepStatus.CANCELLED
            step.reason = CANCELLED
        elif result.ok:
            step.status = StepStatus.SUCCEEDED
            step.reason = None
        else:
            step.status = StepStatus.FAILED
            step.reason = result.reason or "exit-code"
