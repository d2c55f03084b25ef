# loader.py
"""
Pipeline definition loader.

A pipeline is either a YAML document::

    name: ci
    on:
      push:
        branches: [main, develop]
    jobs:
      test:
        steps:
          - name: Unit tests
            run: mvn -B test
      image:
        needs: test
        if: branch == main
        steps:
          - uses: docker/publish
            with:
              image: acme/app
              username: ${{ secrets.DOCKERHUB_USERNAME }}
              password: ${{ secrets.DOCKERHUB_TOKEN }}

or a Python workflow file built with `pipewright.dsl`. Either way the result
is a validated PipelineSpec; anything invalid raises ParseError before a
single step runs.
"""
from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from . import dag
from .actions import known_actions
from .conditions import parse_condition
from .documents import Source, duplicate_keys_under, looks_like_path, parse_yaml, read_text, validation_error
from .errors import ParseError, ParseErrorKind
from .model import Job, PipelineSpec, Step, Trigger

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------

def _str_map(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    return value


def _str_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class StepDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = Field(None, alias="working-directory")
    expect: int = 0
    if_: Optional[str] = Field(None, alias="if")

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, value: Any) -> Any:
        return _str_map(value)

    @model_validator(mode="after")
    def check_run_or_uses(self) -> "StepDoc":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self


class JobDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    needs: List[str] = Field(default_factory=list)
    if_: Optional[str] = Field(None, alias="if")
    env: Dict[str, str] = Field(default_factory=dict)
    steps: List[StepDoc] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, value: Any) -> Any:
        return _str_map(value)

    @field_validator("needs", mode="before")
    @classmethod
    def coerce_needs(cls, value: Any) -> Any:
        return _str_list(value)


class PipelineDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = "pipeline"
    on: Any = None
    env: Dict[str, str] = Field(default_factory=dict)
    jobs: Dict[str, JobDoc] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, value: Any) -> Any:
        return _str_map(value)


class EventRulesDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    branches: List[str] = Field(default_factory=list)

    @field_validator("branches", mode="before")
    @classmethod
    def coerce_branches(cls, value: Any) -> Any:
        return [str(b) for b in _str_list(value)]


class WorkflowRunRulesDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    workflows: List[str] = Field(min_length=1)
    conclusion: str = "success"

    @field_validator("workflows", mode="before")
    @classmethod
    def coerce_workflows(cls, value: Any) -> Any:
        return [str(w) for w in _str_list(value)]


# ---------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------

def _trigger(on: Any, origin: str) -> Trigger:
    """
    Normalize the `on:` section. Accepted forms:
      on: push
      on: [push, pull_request]
      on: {push: {branches: [main]}, workflow_run: {workflows: [build], conclusion: success}}
    """
    if on is None:
        return Trigger()
    if isinstance(on, str):
        on = [on]
    if isinstance(on, list):
        return Trigger(branches={str(e): [] for e in on})
    if not isinstance(on, dict):
        raise ParseError(ParseErrorKind.INVALID, f"'on' must be a string, list or mapping in {origin}")

    branches: Dict[str, List[str]] = {}
    workflow_run: Optional[WorkflowRunRulesDoc] = None
    for event, rules in on.items():
        event = str(event)
        if event == "workflow_run" and not rules:
            raise ParseError(ParseErrorKind.INVALID, f"workflow_run trigger needs 'workflows' in {origin}")
        rules = rules or {}
        if not isinstance(rules, dict):
            raise ParseError(ParseErrorKind.INVALID, f"trigger '{event}' must be a mapping in {origin}")
        try:
            if event == "workflow_run":
                workflow_run = WorkflowRunRulesDoc.model_validate(rules)
            else:
                branches[event] = EventRulesDoc.model_validate(rules).branches
        except ValidationError as e:
            raise validation_error(e, f"trigger '{event}' in {origin}") from None

    if workflow_run is None:
        return Trigger(branches=branches)
    return Trigger(branches=branches, workflow_run=workflow_run.workflows, workflow_conclusion=workflow_run.conclusion)


def _from_document(data: Mapping[str, Any], origin: str) -> PipelineSpec:
    data = dict(data)
    # YAML 1.1 reads a bare `on` key as boolean True
    if True in data:
        data["on"] = data.pop(True)

    try:
        doc = PipelineDoc.model_validate(data)
    except ValidationError as e:
        raise validation_error(e, origin) from None

    jobs: List[Job] = []
    for job_name, jd in doc.jobs.items():
        steps = [
            Step(
                name=sd.name or sd.run or sd.uses or f"step {i + 1}",
                run=sd.run,
                uses=sd.uses,
                params=dict(sd.with_),
                env=dict(sd.env),
                cwd=sd.cwd,
                expect=sd.expect,
                condition=sd.if_,
            )
            for i, sd in enumerate(jd.steps)
        ]
        jobs.append(Job(name=str(job_name), steps=steps, needs=list(jd.needs), condition=jd.if_, env=dict(jd.env)))

    return PipelineSpec(name=doc.name, jobs=jobs, trigger=_trigger(doc.on, origin), env=dict(doc.env))


def _from_python(path: Path) -> PipelineSpec:
    """
    Load a Python workflow file. The file must define one of:
      - workflow() -> PipelineSpec | List[Job]
      - PIPELINE = PipelineSpec(...)
      - JOBS = [Job, ...]
    """
    module_name = f"pipewright_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    value: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            value = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from pipewright.dsl import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "PIPELINE" in globals_dict:
        value = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        value = globals_dict["JOBS"]

    if isinstance(value, PipelineSpec):
        return value
    if isinstance(value, list) and value and all(isinstance(j, Job) for j in value):
        return PipelineSpec(name=path.stem, jobs=value)
    raise ParseError(
        ParseErrorKind.INVALID,
        f"{path.name} must define workflow() -> PipelineSpec | List[Job], PIPELINE or JOBS",
    )


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

def _check_condition(text: Optional[str], where: str) -> None:
    if text is None:
        return
    try:
        parse_condition(text)
    except ParseError as e:
        raise ParseError(ParseErrorKind.INVALID, f"{where}: {e.message}", e.details) from None


def validate(spec: PipelineSpec) -> List[List[str]]:
    """Validate structure, conditions and actions; returns the job stages."""
    stages = dag.validate(spec.jobs)

    actions = set(known_actions())
    for job in spec.jobs:
        if not job.steps:
            raise ParseError(ParseErrorKind.INVALID, f"Job '{job.name}' has no steps")
        _check_condition(job.condition, f"job '{job.name}' condition")
        for step in job.steps:
            where = f"job '{job.name}' step '{step.name}'"
            _check_condition(step.condition, f"{where} condition")
            if step.uses is not None:
                if step.uses not in actions:
                    raise ParseError(
                        ParseErrorKind.INVALID,
                        f"{where}: unknown action '{step.uses}'",
                        {"known": sorted(actions)},
                    )
                if isinstance(step.params.get("if"), str):
                    _check_condition(step.params["if"], f"{where} input 'if'")

    return stages


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def load(source: Union[Source, PipelineSpec]) -> PipelineSpec:
    """
    Load and validate a pipeline from a YAML/Python path, YAML text, a
    parsed mapping, or an existing PipelineSpec.
    """
    if isinstance(source, PipelineSpec):
        spec = source
    elif isinstance(source, Mapping):
        spec = _from_document(source, "<mapping>")
    elif looks_like_path(source) and Path(source).suffix == ".py":
        path = Path(source).expanduser().resolve()
        if not path.exists():
            raise FileNotFoundError(f"Workflow file not found: {path}")
        spec = _from_python(path)
    else:
        text, origin = read_text(source)
        dupes = duplicate_keys_under(text, "jobs")
        if dupes:
            raise ParseError(ParseErrorKind.DUPLICATE_JOB, f"Duplicate job names found: {dupes}", {"jobs": dupes})
        spec = _from_document(parse_yaml(text, origin), origin)

    stages = validate(spec)
    logger.debug("loaded pipeline %r: %d job(s), stages=%s", spec.name, len(spec.jobs), stages)
    return spec


def load_inventory(source: Source):
    from .deploy.inventory import load_inventory as _load
    return _load(source)


def load_playbook(source: Source):
    from .deploy.inventory import load_playbook as _load
    return _load(source)
