"""
Shared fixtures
"""

import io
import os

import pytest

from pipewright.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    """Route console output into a buffer so tests can inspect it"""
    console = Console(stream=io.StringIO())
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def base_env():
    """Minimal process environment for shell steps"""
    return {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}
