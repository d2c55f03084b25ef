# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Dict, List, Optional

from . import settings


@dataclass(frozen=True)
class Step:
    """
    A single unit inside a job: either a shell command (`run`) or a
    built-in action (`uses`) fed with `params`.
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    expect: int = 0
    condition: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step '{self.name}' must define exactly one of 'run' or 'uses'")

    @property
    def display(self) -> str:
        return self.run if self.run is not None else f"uses: {self.uses}"


@dataclass
class Job:
    """
    A named unit of work: ordered steps + dependencies + run condition.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    condition: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Trigger:
    """
    Trigger rules, keyed by event name.

    `branches` maps an event (push, pull_request, ...) to the branch globs
    it accepts; an empty list accepts every branch. `workflow_run` lists
    upstream workflows whose completion triggers the pipeline.
    """
    branches: Dict[str, List[str]] = field(default_factory=dict)
    workflow_run: List[str] = field(default_factory=list)
    workflow_conclusion: str = "success"

    @property
    def events(self) -> List[str]:
        events = list(self.branches)
        if self.workflow_run and "workflow_run" not in events:
            events.append("workflow_run")
        return events

    def matches(self, ctx: "TriggerContext") -> bool:
        if not self.branches and not self.workflow_run:
            return True

        if ctx.event == "workflow_run":
            if not self.workflow_run:
                return False
            if ctx.upstream_workflow and ctx.upstream_workflow not in self.workflow_run:
                return False
            return ctx.upstream_conclusion == self.workflow_conclusion

        if ctx.event not in self.branches:
            return False
        patterns = self.branches[ctx.event]
        if not patterns:
            return True
        return any(fnmatch(ctx.branch, p) for p in patterns)


@dataclass
class PipelineSpec:
    name: str
    jobs: list[Job]
    trigger: Trigger = field(default_factory=Trigger)
    env: Dict[str, str] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


@dataclass(frozen=True)
class TriggerContext:
    """Facts a run is evaluated against. Immutable for the whole run."""
    branch: str = ""
    event: str = "push"
    sha: str = ""
    default_branch: str = settings.DEFAULT_BRANCH
    upstream_conclusion: Optional[str] = None
    upstream_workflow: Optional[str] = None
    repository: str = ""

    @property
    def ref(self) -> str:
        return f"refs/heads/{self.branch}" if self.branch else ""

    def variables(self) -> Dict[str, str]:
        return {
            "branch": self.branch,
            "ref": self.ref,
            "event": self.event,
            "sha": self.sha,
            "default_branch": self.default_branch,
            "conclusion": self.upstream_conclusion or "",
            "workflow": self.upstream_workflow or "",
            "repository": self.repository,
        }

    def as_env(self) -> Dict[str, str]:
        return {
            "CI": "true",
            "PIPEWRIGHT_BRANCH": self.branch,
            "PIPEWRIGHT_REF": self.ref,
            "PIPEWRIGHT_SHA": self.sha,
            "PIPEWRIGHT_EVENT": self.event,
            "PIPEWRIGHT_REPOSITORY": self.repository,
        }

    @classmethod
    def from_git(cls, **overrides: Any) -> "TriggerContext":
        """
        Fill branch/sha/repository from the local checkout. Explicit
        (non-None) overrides win; git failures leave the field empty.
        """
        from .git_facts import git

        values: Dict[str, Any] = {}
        for key, fn in (
            ("branch", git.current_branch),
            ("sha", git.head_sha),
            ("repository", git.repository_name),
        ):
            if overrides.get(key) is None:
                try:
                    values[key] = fn()
                except (OSError, git.GitError):
                    values[key] = ""
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED)


@dataclass
class StepResult:
    name: str
    state: JobState
    exit_code: Optional[int] = None
    output: str = ""
    inputs: Dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "output": self.output,
            "inputs": self.inputs,
            "duration": round(self.duration, 3),
            "error": self.error,
        }


@dataclass
class JobResult:
    job: str
    state: JobState = JobState.PENDING
    steps: List[StepResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "state": self.state.value,
            "reason": self.reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class RunResult:
    pipeline: str
    jobs: Dict[str, JobResult]
    trigger_matched: bool = True
    cancelled: bool = False

    @property
    def exit_code(self) -> int:
        # skipped jobs never fail a run
        return 1 if any(r.state is JobState.FAILED for r in self.jobs.values()) else 0

    def states(self) -> Dict[str, JobState]:
        return {name: r.state for name, r in self.jobs.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "trigger_matched": self.trigger_matched,
            "cancelled": self.cancelled,
            "exit_code": self.exit_code,
            "jobs": {name: r.to_dict() for name, r in self.jobs.items()},
        }
