# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class PipewrightError(Exception):
    """Base class for every error raised by pipewright."""


class ParseErrorKind(str, Enum):
    CYCLE_DETECTED = "CycleDetected"
    UNKNOWN_DEPENDENCY = "UnknownDependency"
    DUPLICATE_JOB = "DuplicateJob"
    INVALID = "Invalid"


@dataclass
class ParseError(PipewrightError):
    """
    A pipeline, inventory or playbook document could not be accepted.

    Parse errors are fatal: they are raised before anything executes.
    """
    kind: ParseErrorKind
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind.value}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConditionError(ParseError):
    """Malformed run condition."""

    def __init__(self, message: str, expression: str):
        super().__init__(
            kind=ParseErrorKind.INVALID,
            message=message,
            details={"expression": expression},
        )


@dataclass
class StepFailure(PipewrightError):
    job: str
    step: str
    cmd: str
    exit_code: int
    expected: int = 0

    def __str__(self) -> str:
        return (
            f"[{self.job}] step '{self.step}' failed "
            f"(exit={self.exit_code}, expected={self.expected}): {self.cmd}"
        )


@dataclass
class PublishFailure(PipewrightError):
    artifact: str
    message: str
    exit_code: Optional[int] = None

    def __str__(self) -> str:
        suffix = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        return f"publish of '{self.artifact}' failed{suffix}: {self.message}"


@dataclass
class ApplyFailure(PipewrightError):
    host: str
    index: int
    assertion: str
    message: str

    def __str__(self) -> str:
        return f"[{self.host}] assertion #{self.index} ({self.assertion}) failed: {self.message}"


@dataclass
class ConnectivityError(PipewrightError):
    host: str
    message: str

    def __str__(self) -> str:
        return f"[{self.host}] unreachable: {self.message}"


@dataclass
class MissingSecret(PipewrightError):
    name: str

    def __str__(self) -> str:
        return f"secret '{self.name}' is not defined"


@dataclass
class ToolUnavailable(PipewrightError):
    """A required executable (docker, ssh, ...) is missing from PATH."""
    tool: str
    hint: str

    def __str__(self) -> str:
        return f"{self.tool} is not available. {self.hint}"


TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "ssh": "Install an OpenSSH client or fix PATH.",
    "git": "Install Git or fix PATH.",
}
