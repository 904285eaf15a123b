from .controller import RunController, aggregate
from .dsl import job, sh, uses, on, matrix, wf, JobBuilder, build
from .loader import load_workflow
from .model import Event, Job, Step, TriggerFilter, WorkflowDefinition, Run, RunStatus, JobStatus, StepStatus
from .triggers import evaluate

__all__ = [
    "RunController", "aggregate", "evaluate", "load_workflow",
    "job", "sh", "uses", "on", "matrix", "wf", "JobBuilder", "build",
    "Event", "Job", "Step", "TriggerFilter", "WorkflowDefinition", "Run", "RunStatus", "JobStatus", "StepStatus",
]
