# dag.py
from __future__ import annotations

import logging
from collections import deque
from fnmatch import fnmatch
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .errors import DefinitionError
from .model import Event, Job, JobInstance, JobStatus, WorkflowDefinition

log = logging.getLogger(__name__)

PATHS_FILTER = "paths-filter"


def build_dag(jobs: Sequence[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DefinitionError(
            kind="duplicate-job",
            message=f"Duplicate job names found: {dupes}",
            details={"jobs": dupes},
        )

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for dep in job.needs:
            if dep not in name_set:
                raise DefinitionError(
                    kind="unknown-dependency",
                    message=f"Job '{job.name}' needs missing job '{dep}'",
                    job=job.name,
                    details={"dependency": dep, "known": sorted(name_set)},
                )
            # Edge dep -> job.name (dep must run before job)
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    order: Optional[Sequence[str]] = None,
) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel. Within a stage names keep `order`
    (definition order); without it they are sorted.
    """
    rank = {n: i for i, n in enumerate(order)} if order else None

    def _ordered(items: Iterable[str]) -> List[str]:
        return sorted(items, key=rank.__getitem__) if rank else sorted(items)

    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(_ordered(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level = _ordered(q)
        q.clear()
        nxt: List[str] = []
        for node in level:
            processed += 1
            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        levels.append(level)
        q.extend(nxt)

    if processed != len(indeg):
        remaining = _ordered(n for n, d in indeg.items() if d > 0)
        raise DefinitionError(
            kind="cyclic-dependency",
            message=f"Job graph has a cycle. Stuck jobs: {remaining}",
            details={"jobs": remaining},
        )

    return levels


def validate_graph(definition: WorkflowDefinition) -> List[List[str]]:
    adj, indeg = build_dag(definition.jobs)
    return topo_levels(adj, indeg, order=[j.name for j in definition.jobs])


def _filtered_out(job: Job, event: Optional[Event]) -> bool:
    if not job.paths or event is None:
        return False
    changed = event.changed_files
    if changed is None:
        # no change information: the job runs
        return False
    return not any(fnmatch(f, p) for f in changed for p in job.paths)


def build_job_instances(
    definition: WorkflowDefinition,
    event: Optional[Event] = None,
) -> List[JobInstance]:
    """
    Produce one JobInstance per declared job, in definition order.

    Jobs with no dependencies start `ready`, all others `blocked`. Jobs whose
    `paths` filter does not match the event's changed files start `skipped`.
    Raises DefinitionError on unknown or cyclic dependencies.
    """
    validate_graph(definition)

    instances: List[JobInstance] = []
    for idx, job in enumerate(definition.jobs):
        inst = JobInstance.from_job(job, idx)
        if _filtered_out(job, event):
            inst.status = JobStatus.SKIPPED
            inst.reason = PATHS_FILTER
            log.debug("job %s skipped by paths filter %s", job.name, job.paths)
        elif job.needs:
            inst.status = JobStatus.BLOCKED
        else:
            inst.status = JobStatus.READY
        instances.append(inst)
    return instances
