# src/pipewright/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .model import Job, PipelineSpec, Step, Trigger


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, env: Optional[Dict[str, str]] = None,
       expect: int = 0, if_: Optional[str] = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, env=env or {}, expect=expect, condition=if_)


def uses(name: str, action: str, *, cwd: str | None = None, if_: Optional[str] = None, **params: Any) -> Step:
    """
    Create a built-in action step.

        uses("Push image", "docker/publish", image="acme/app", tags=["latest"])
    """
    return Step(name=name, uses=action, params=params, cwd=cwd, condition=if_)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    if_: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        condition=if_,
        env={k: str(v) for k, v in (env or {}).items()},
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
        self._condition: Optional[str] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def use_action(self, name: str, action: str, **params: Any):
        self._steps.append(Step(name=name, uses=action, params=params))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def run_if(self, condition: str):
        self._condition = condition
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            condition=self._condition,
            env=dict(self._env),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("jdk", ["17", "21"]).jobs(
            lambda v: job(f"test-jdk{v}", sh("test", "mvn -B test"), env={"JDK": v})
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helpers
# ---------------------------------------------------------------------

def wf(*jobs: Job | List[Job]) -> List[Job]:
    """
    Workflow definition helper; flattens matrix job lists.

        def workflow():
            return wf(job(...), matrix(...).jobs(...))
    """
    out: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            out.extend(j)
        else:
            out.append(j)
    return out


def on(*events: str, branches: Optional[List[str]] = None, workflow_run: Optional[List[str]] = None,
       conclusion: str = "success") -> Trigger:
    """Trigger rules: on("push", "pull_request", branches=["main"])."""
    return Trigger(
        branches={e: list(branches or []) for e in events},
        workflow_run=list(workflow_run or []),
        workflow_conclusion=conclusion,
    )


def pipeline(name: str, *jobs: Job | List[Job], trigger: Optional[Trigger] = None,
             env: Optional[Dict[str, str]] = None) -> PipelineSpec:
    return PipelineSpec(name=name, jobs=wf(*jobs), trigger=trigger or Trigger(), env=dict(env or {}))
