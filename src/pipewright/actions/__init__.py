# actions/__init__.py
"""
Built-in actions, referenced from steps with `uses: <name>`.

An action receives an ActionContext (resolved inputs, environment, working
directory, trigger context) and returns an ActionOutput. Raising a
PipewrightError fails the step.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..model import TriggerContext
from ..publisher import Registry


@dataclass
class ActionContext:
    job: str
    step: str
    params: Dict[str, Any]
    env: Dict[str, str]
    cwd: Path
    workdir: Path
    context: TriggerContext
    registry: Optional[Registry] = None


@dataclass
class ActionOutput:
    exit_code: int = 0
    output: str = ""
    skipped: bool = False
    details: Dict[str, Any] = field(default_factory=dict)


Action = Callable[[ActionContext], ActionOutput]

_ACTIONS: Dict[str, Action] = {}


def register(name: str) -> Callable[[Action], Action]:
    def deco(fn: Action) -> Action:
        _ACTIONS[name] = fn
        return fn
    return deco


def get_action(name: str) -> Action:
    try:
        return _ACTIONS[name]
    except KeyError:
        raise KeyError(f"Unknown action '{name}'. Known actions: {sorted(_ACTIONS)}") from None


def known_actions() -> list[str]:
    return sorted(_ACTIONS)


# populate the registry
from . import builtin, docker  # noqa: E402,F401
