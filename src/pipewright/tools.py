from __future__ import annotations

import subprocess
from typing import Sequence

from .errors import TOOL_HINTS, ToolUnavailable


def check_tool_available(tool: str, version_args: Sequence[str] = ("--version",)) -> None:
    """Raise ToolUnavailable with an install hint if `tool` cannot be executed."""
    try:
        subprocess.run(
            [tool, *version_args],
            capture_output=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
        raise ToolUnavailable(tool=tool, hint=hint)


def tail(text: str | None, limit: int) -> str:
    if not text:
        return ""
    return text[-limit:]
