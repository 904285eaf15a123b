# loader.py
"""
Workflow definition loading.

Two sources are supported:
  - YAML/JSON documents in the GitHub-Actions shape (`on`, `env`, `jobs`)
  - Python files defining `workflow()` or `WORKFLOW` with the relayci DSL

Either way the result is an immutable WorkflowDefinition whose triggers and
job graph have already been validated.
"""
from __future__ import annotations

import json
import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .dag import validate_graph
from .dsl import expand_matrix
from .errors import DefinitionError
from .model import Job, Scalar, Step, TriggerFilter, WorkflowDefinition
from .steps import normalize_kind
from .triggers import validate_triggers

log = logging.getLogger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")


# ----------------------------------------------------------------------
# Document schema
# ----------------------------------------------------------------------

def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class StepDoc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: Optional[str] = None
    uses: Optional[str] = None
    run: Optional[str] = None
    with_: Dict[str, Scalar] = Field(default_factory=dict, alias="with")
    env: Dict[str, Scalar] = Field(default_factory=dict)
    shell: Optional[str] = None
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)

    @model_validator(mode="after")
    def _uses_or_run(self) -> StepDoc:
        if bool(self.uses) == bool(self.run):
            raise ValueError("a step needs exactly one of 'uses' or 'run'")
        return self


class StrategyDoc(BaseModel):
    model_config = ConfigDict(extra="allow")

    matrix: Dict[str, List[Scalar]] = Field(default_factory=dict)


class JobDoc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    env: Dict[str, Scalar] = Field(default_factory=dict)
    paths: Optional[List[str]] = None
    runs_on: Optional[Any] = Field(default=None, alias="runs-on")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    strategy: Optional[StrategyDoc] = None
    steps: List[StepDoc] = Field(min_length=1)

    @field_validator("needs", "paths", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        return _as_list(v) if v is not None else v


class TriggerDoc(BaseModel):
    model_config = ConfigDict(extra="allow")

    branches: Optional[List[str]] = None

    @field_validator("branches", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        return _as_list(v) if v is not None else v


class WorkflowDoc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: Optional[str] = None
    on: Union[str, List[str], Dict[str, Optional[TriggerDoc]]] = Field(default_factory=dict)
    env: Dict[str, Scalar] = Field(default_factory=dict)
    jobs: Dict[str, JobDoc] = Field(min_length=1)


# ----------------------------------------------------------------------
# Conversion
# ----------------------------------------------------------------------

def _str_map(values: Mapping[str, Scalar]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in values.items():
        if isinstance(v, bool):
            out[k] = "true" if v else "false"
        else:
            out[k] = "" if v is None else str(v)
    return out


def _minutes(value: Optional[float]) -> Optional[float]:
    return value * 60 if value is not None else None


def _warn_extra(where: str, model: BaseModel) -> None:
    extra = sorted((model.model_extra or {}).keys())
    if extra:
        log.warning("%s: ignoring unsupported keys %s", where, extra)


def _step_from_doc(job_id: str, doc: StepDoc) -> Step:
    _warn_extra(f"job {job_id!r} step {doc.name or doc.uses or doc.run!r}", doc)
    if doc.run:
        config: Dict[str, Scalar] = {"run": doc.run}
        if doc.shell:
            config["shell"] = doc.shell
        if doc.working_directory:
            config["working-directory"] = doc.working_directory
        kind = "run"
    else:
        config = dict(doc.with_)
        kind = normalize_kind(doc.uses or "")
    return Step(
        kind=kind,
        name=doc.name or "",
        config=config,
        env=_str_map(doc.env),
        continue_on_error=doc.continue_on_error,
        timeout=_minutes(doc.timeout_minutes),
    )


def _triggers_from_doc(on: Union[str, List[str], Dict[str, Optional[TriggerDoc]]]) -> List[TriggerFilter]:
    if isinstance(on, str):
        return [TriggerFilter(event=on)]
    if isinstance(on, list):
        return [TriggerFilter(event=e) for e in on]
    out: List[TriggerFilter] = []
    for event, doc in on.items():
        branches = tuple(doc.branches) if doc is not None and doc.branches is not None else None
        out.append(TriggerFilter(event=event, branches=branches))
    return out


def definition_from_mapping(data: Mapping[str, Any], *, default_name: str = "workflow") -> WorkflowDefinition:
    """Validate a parsed document and turn it into a WorkflowDefinition."""
    if not isinstance(data, Mapping):
        raise DefinitionError(kind="invalid-definition", message="workflow document must be a mapping")

    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)

    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(
            kind="invalid-definition",
            message=f"invalid workflow document ({e.error_count()} error(s))",
            details={"errors": [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]},
        ) from None

    _warn_extra("workflow", doc)

    jobs: List[Job] = []
    expanded: Dict[str, List[str]] = {}
    for job_id, jd in doc.jobs.items():
        _warn_extra(f"job {job_id!r}", jd)
        template = Job(
            name=job_id,
            steps=tuple(_step_from_doc(job_id, s) for s in jd.steps),
            needs=tuple(jd.needs),
            env=_str_map(jd.env),
            paths=tuple(jd.paths) if jd.paths is not None else None,
            timeout=_minutes(jd.timeout_minutes),
        )
        matrix = jd.strategy.matrix if jd.strategy else {}
        if len(matrix) > 1:
            raise DefinitionError(
                kind="invalid-definition",
                message=f"job {job_id!r}: only single-axis matrices are supported",
                job=job_id,
                details={"axes": sorted(matrix)},
            )
        if matrix:
            (key, values), = matrix.items()
            generated = expand_matrix(template, key, values)
        else:
            generated = [template]
        expanded[job_id] = [j.name for j in generated]
        jobs.extend(generated)

    # needs on a matrix template means every generated job
    resolved: List[Job] = []
    for j in jobs:
        needs: List[str] = []
        for dep in j.needs:
            needs.extend(expanded.get(dep, [dep]))
        resolved.append(Job(name=j.name, steps=j.steps, needs=tuple(needs), env=j.env, paths=j.paths, timeout=j.timeout))

    definition = WorkflowDefinition(
        name=doc.name or default_name,
        jobs=tuple(resolved),
        triggers=tuple(_triggers_from_doc(doc.on)),
        env=_str_map(doc.env),
    )
    validate_definition(definition)
    return definition


def validate_definition(definition: WorkflowDefinition) -> WorkflowDefinition:
    """Load-time checks: trigger patterns, duplicate/unknown/cyclic dependencies."""
    validate_triggers(definition.triggers)
    validate_graph(definition)
    return definition


def _load_python(path: Path) -> WorkflowDefinition:
    module_name = f"relayci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    definition = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            definition = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with a helper). "
                    "Use the 'wf' helper instead: `from relayci.dsl import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        definition = globals_dict["WORKFLOW"]

    if not isinstance(definition, WorkflowDefinition):
        raise TypeError(
            "Workflow must return/define a WorkflowDefinition. "
            "Define workflow() -> WorkflowDefinition or WORKFLOW = wf(...)."
        )
    return validate_definition(definition)


def load_workflow(path: str | Path) -> WorkflowDefinition:
    """
    Load a workflow from a YAML, JSON or Python file.

    Raises:
        FileNotFoundError: the file does not exist
        DefinitionError: the definition is invalid
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    suffix = wf_path.suffix.lower()
    if suffix == ".py":
        return _load_python(wf_path)

    text = wf_path.read_text(encoding="utf-8")
    try:
        if suffix in YAML_SUFFIXES:
            data = yaml.safe_load(text)
        elif suffix == ".json":
            data = json.loads(text)
        else:
            raise DefinitionError(
                kind="invalid-definition",
                message=f"unsupported workflow format: {wf_path.name}",
                details={"supported": [".yml", ".yaml", ".json", ".py"]},
            )
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise DefinitionError(kind="invalid-definition", message=f"{wf_path.name}: {e}") from None

    return definition_from_mapping(data or {}, default_name=wf_path.stem)
