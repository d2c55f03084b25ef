# publisher.py
"""
Artifact publisher: builds a container image and pushes it to a registry,
but only when the publish condition holds for the current trigger context.

The condition is a pure predicate over the TriggerContext and is evaluated
before the registry is touched, so a `skipped` publish performs no registry
call at all.
"""
from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from . import settings
from .conditions import evaluate
from .errors import PublishFailure, ToolUnavailable
from .model import TriggerContext
from .tools import check_tool_available, tail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageArtifact:
    """A container image to build from `context` and publish under `tags`."""
    repository: str
    tags: tuple[str, ...] = ("latest",)
    context: str = "."
    dockerfile: Optional[str] = None
    build_args: Dict[str, str] = field(default_factory=dict)

    @property
    def refs(self) -> List[str]:
        return [f"{self.repository}:{t}" for t in self.tags]

    def __str__(self) -> str:
        return ", ".join(self.refs)


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str
    server: Optional[str] = None

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, server={self.server!r})"


class PublishState(str, Enum):
    PUBLISHED = "published"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class PublishResult:
    artifact: str
    state: PublishState
    pushed: List[str] = field(default_factory=list)
    error: Optional[str] = None
    log: str = ""

    @property
    def ok(self) -> bool:
        return self.state is not PublishState.FAILED


class Registry(ABC):
    """Collaborator that performs the side effects of a publish."""

    @abstractmethod
    def login(self, credentials: Credentials) -> str: ...

    @abstractmethod
    def build(self, artifact: ImageArtifact, workdir: str = ".") -> str: ...

    @abstractmethod
    def push(self, ref: str) -> str: ...


class DockerRegistry(Registry):
    """Registry backed by the docker CLI."""

    def __init__(self, docker: str = settings.DOCKER):
        self.docker = docker
        self._checked = False

    def _run(self, args: List[str], *, artifact: str, cwd: str | None = None, stdin: str | None = None) -> str:
        if not self._checked:
            check_tool_available(self.docker)
            self._checked = True

        # argument values (build args, usernames) may be secrets
        logger.debug("docker %s %s", args[0], artifact)
        proc = subprocess.run(
            [self.docker, *args],
            cwd=cwd,
            input=stdin,
            text=True,
            capture_output=True,
        )
        output = (proc.stdout or "") + (proc.stderr or "")
        if proc.returncode != 0:
            raise PublishFailure(
                artifact=artifact,
                message=tail(proc.stderr or proc.stdout, settings.OUTPUT_TAIL).strip(),
                exit_code=proc.returncode,
            )
        return output

    def login(self, credentials: Credentials) -> str:
        args = ["login", "--username", credentials.username, "--password-stdin"]
        if credentials.server:
            args.append(credentials.server)
        return self._run(args, artifact=credentials.server or "registry", stdin=credentials.password)

    def build(self, artifact: ImageArtifact, workdir: str = ".") -> str:
        args = ["build"]
        for ref in artifact.refs:
            args.extend(["-t", ref])
        if artifact.dockerfile:
            args.extend(["-f", artifact.dockerfile])
        for key, value in artifact.build_args.items():
            args.extend(["--build-arg", f"{key}={value}"])
        args.append(artifact.context)
        return self._run(args, artifact=str(artifact), cwd=workdir)

    def push(self, ref: str) -> str:
        return self._run(["push", ref], artifact=ref)


def publish(
    artifact: ImageArtifact,
    condition: Optional[str],
    context: TriggerContext,
    registry: Registry,
    *,
    credentials: Optional[Credentials] = None,
    workdir: str = ".",
    build: bool = True,
) -> PublishResult:
    """
    Build and push `artifact` when `condition` holds for `context`.

    Returns a PublishResult; registry errors are reported as
    state=failed (never retried here).
    """
    if not evaluate(condition, context):
        logger.info("publish of %s skipped: condition %r is false", artifact, condition)
        return PublishResult(artifact=str(artifact), state=PublishState.SKIPPED)

    logs: List[str] = []
    pushed: List[str] = []
    try:
        if credentials is not None:
            logs.append(registry.login(credentials))
        if build:
            logs.append(registry.build(artifact, workdir=workdir))
        for ref in artifact.refs:
            logs.append(registry.push(ref))
            pushed.append(ref)
    except (PublishFailure, ToolUnavailable) as e:
        logger.warning("publish of %s failed: %s", artifact, e)
        return PublishResult(
            artifact=str(artifact),
            state=PublishState.FAILED,
            pushed=pushed,
            error=str(e),
            log="".join(logs),
        )

    return PublishResult(
        artifact=str(artifact),
        state=PublishState.PUBLISHED,
        pushed=pushed,
        log="".join(logs),
    )
