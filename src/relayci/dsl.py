# src/relayci/dsl.py
from __future__ import annotations

import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .model import Job, Scalar, Step, TriggerFilter, WorkflowDefinition


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    shell: str | None = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
) -> Step:
    """Create a shell step."""
    config: Dict[str, Scalar] = {"run": cmd}
    if cwd is not None:
        config["working-directory"] = cwd
    if shell is not None:
        config["shell"] = shell
    return Step(
        kind="run",
        name=name,
        config=config,
        env=dict(env or {}),
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def uses(
    kind: str,
    name: str = "",
    *,
    with_: Optional[Mapping[str, Scalar]] = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
) -> Step:
    """Create a step that invokes a registered step kind, e.g. uses("actions-rs/cargo", with_={"command": "test"})."""
    return Step(
        kind=kind.split("@", 1)[0],
        name=name,
        config=dict(with_ or {}),
        env=dict(env or {}),
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[Sequence[str]] = None,
    env: Optional[Dict[str, str]] = None,
    paths: Optional[Sequence[str]] = None,
    timeout: Optional[float] = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        env=dict(env or {}),
        paths=tuple(paths) if paths is not None else None,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._paths: Optional[list[str]] = None
        self._timeout: Optional[float] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def step(self, step: Step):
        self._steps.append(step)
        return self

    def run(self, name: str, cmd: str, **kwargs):
        return self.step(sh(name, cmd, **kwargs))

    def uses(self, kind: str, name: str = "", **config: Scalar):
        return self.step(uses(kind, name, with_=config))

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_paths(self, *patterns: str):
        self._paths = list(patterns)
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            env=self._env,
            paths=self._paths,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').run(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

_MATRIX_RE = re.compile(r"\$\{\{\s*matrix\.([\w\-]+)\s*\}\}")


def substitute_matrix(value: Any, values: Mapping[str, Scalar]) -> Any:
    if not isinstance(value, str):
        return value

    def _sub(m: re.Match) -> str:
        key = m.group(1)
        return str(values[key]) if key in values else m.group(0)

    return _MATRIX_RE.sub(_sub, value)


def expand_matrix(template: Job, key: str, values: Iterable[Scalar]) -> List[Job]:
    """
    One job per matrix value: name `template (value)`, `${{ matrix.<key> }}`
    substituted in step names, config and env.
    """
    out: List[Job] = []
    for value in values:
        binding = {key: value}
        steps = tuple(
            Step(
                kind=s.kind,
                name=substitute_matrix(s.name, binding),
                config={k: substitute_matrix(v, binding) for k, v in s.config.items()},
                env={k: substitute_matrix(v, binding) for k, v in s.env.items()},
                continue_on_error=s.continue_on_error,
                timeout=s.timeout,
            )
            for s in template.steps
        )
        out.append(
            Job(
                name=f"{template.name} ({value})",
                steps=steps,
                needs=template.needs,
                env={k: substitute_matrix(v, binding) for k, v in template.env.items()},
                paths=template.paths,
                timeout=template.timeout,
            )
        )
    return out


class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("toolchain", ["stable", "beta"]).jobs(
            lambda v: job(f"test-{v}", uses("actions-rs/cargo", with_={"command": "test", "toolchain": v}))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]

    def expand(self, template: Job) -> List[Job]:
        return expand_matrix(template, self.key, self.values)


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Triggers + workflow
# ---------------------------------------------------------------------

def on(event: str, *branches: str) -> TriggerFilter:
    """on("push", "main") -> run on pushes to main; on("push") -> any ref."""
    return TriggerFilter(event=event, branches=tuple(branches) if branches else None)


def wf(
    *jobs: Job | List[Job],
    name: str = "workflow",
    triggers: Sequence[TriggerFilter] = (),
    env: Optional[Dict[str, str]] = None,
) -> WorkflowDefinition:
    """
    Workflow definition helper. Lists (e.g. from a matrix) are flattened.

        from relayci.dsl import wf, job, sh, on

        def workflow():
            return wf(
                job("lint", sh("ruff", "ruff check .")),
                job("test", sh("pytest", "pytest -q"), needs=["lint"]),
                name="ci",
                triggers=[on("push", "main")],
            )
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            flat.extend(j)
        else:
            flat.append(j)
    return WorkflowDefinition(name=name, jobs=tuple(flat), triggers=tuple(triggers), env=dict(env or {}))
