# model.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

Scalar = str | int | float | bool | None


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------
# Definition-time model (immutable)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single executable unit inside a CI job."""
    kind: str
    name: str = ""
    config: Dict[str, Scalar] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout: Optional[float] = None   # seconds

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.kind == "run":
            return f"Run {self.config.get('run', '')}".strip()
        return f"Run {self.kind}"


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies.

    `needs` holds names of jobs that must succeed BEFORE this job runs.
    `paths` is an optional change filter (fnmatch globs) checked against the
    triggering event's changed files.
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    paths: Optional[Tuple[str, ...]] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class TriggerFilter:
    """`event` kind plus optional exact branch names (None = any ref)."""
    event: str
    branches: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    jobs: Tuple[Job, ...]
    triggers: Tuple[TriggerFilter, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


@dataclass(frozen=True)
class Event:
    """A triggering event, e.g. a push webhook from source control."""
    kind: str
    ref: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def branch(self) -> Optional[str]:
        if self.ref is None:
            return None
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    @property
    def changed_files(self) -> Optional[List[str]]:
        files = self.metadata.get("changed_files")
        if files is None:
            return None
        if isinstance(files, str):
            files = [files]
        return [str(f) for f in files]


# ---------------------------------------------------------------------
# Run-time model (mutable, owned by a Run)
# ---------------------------------------------------------------------

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class JobStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _JOB_TERMINAL

    @property
    def unfavorable(self) -> bool:
        """Upstream outcomes that make dependents skip."""
        return self in (JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED)


_JOB_TERMINAL = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class StepInstance:
    name: str
    kind: str
    config: Dict[str, Scalar]
    continue_on_error: bool = False
    status: StepStatus = StepStatus.PENDING
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    output: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_step(cls, step: Step) -> StepInstance:
        return cls(
            name=step.display_name,
            kind=step.kind,
            config=dict(step.config),
            continue_on_error=step.continue_on_error,
        )


@dataclass
class JobInstance:
    name: str
    index: int
    definition: Job
    needs: Tuple[str, ...]
    steps: List[StepInstance]
    status: JobStatus = JobStatus.PENDING
    reason: Optional[str] = None
    slot: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job, index: int) -> JobInstance:
        return cls(
            name=job.name,
            index=index,
            definition=job,
            needs=tuple(job.needs),
            steps=[StepInstance.from_step(s) for s in job.steps],
        )


@dataclass
class Run:
    """One instantiation of a workflow against one triggering event."""
    workflow: WorkflowDefinition
    event: Event
    jobs: List[JobInstance] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancel_requested: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def __post_init__(self) -> None:
        self._index = {j.name: i for i, j in enumerate(self.jobs)}

    def set_jobs(self, jobs: List[JobInstance]) -> None:
        self.jobs = jobs
        self._index = {j.name: i for i, j in enumerate(jobs)}

    def job(self, name: str) -> JobInstance:
        return self.jobs[self._index[name]]

    def statuses(self) -> Dict[str, JobStatus]:
        return {j.name: j.status for j in self.jobs}
