# report.py
"""Structured run/job/step records for external reporting."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .model import JobInstance, Run, StepInstance


class StepReport(BaseModel):
    name: str
    kind: str
    status: str
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    continue_on_error: bool = False
    output: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class JobReport(BaseModel):
    name: str
    status: str
    reason: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    slot: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    steps: List[StepReport] = Field(default_factory=list)


class RunReport(BaseModel):
    id: str
    workflow: str
    status: str
    event: str
    ref: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    cancel_requested: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    jobs: List[JobReport] = Field(default_factory=list)

    def job_statuses(self) -> Dict[str, str]:
        return {j.name: j.status for j in self.jobs}


def step_report(step: StepInstance, *, include_output: bool = True) -> StepReport:
    return StepReport(
        name=step.name,
        kind=step.kind,
        status=step.status.value,
        exit_code=step.exit_code,
        reason=step.reason,
        continue_on_error=step.continue_on_error,
        output=step.output if include_output else "",
        started_at=step.started_at,
        finished_at=step.finished_at,
    )


def job_report(job: JobInstance, *, include_output: bool = True) -> JobReport:
    return JobReport(
        name=job.name,
        status=job.status.value,
        reason=job.reason,
        needs=list(job.needs),
        slot=job.slot,
        started_at=job.started_at,
        finished_at=job.finished_at,
        steps=[step_report(s, include_output=include_output) for s in job.steps],
    )


def run_report(run: Run, *, include_output: bool = True) -> RunReport:
    return RunReport(
        id=run.id,
        workflow=run.workflow.name,
        status=run.status.value,
        event=run.event.kind,
        ref=run.event.ref,
        metadata={k: v for k, v in run.event.metadata.items() if _jsonable(v)},
        cancel_requested=run.cancel_requested,
        started_at=run.started_at,
        finished_at=run.finished_at,
        jobs=[job_report(j, include_output=include_output) for j in run.jobs],
    )


def _jsonable(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool, type(None), list, dict))
