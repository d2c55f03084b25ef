# deploy/connection.py
from __future__ import annotations

import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

from .. import settings
from ..errors import ConnectivityError, ToolUnavailable

logger = logging.getLogger(__name__)

# ssh reserves 255 for its own (connection/auth) failures
SSH_ERROR = 255


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Connection(ABC):
    """Runs shell commands on one deployment host."""

    host: str
    become: bool = False
    # commands carry resolved secrets; the applier installs the store's redact
    redact: Callable[[str], str] = staticmethod(lambda text: text)

    @abstractmethod
    def run(self, command: str) -> CommandResult: ...

    def log_command(self, command: str) -> None:
        logger.debug("[%s] $ %s", self.host, self.redact(command))

    def privileged(self, command: str) -> str:
        """Wrap `command` in non-interactive sudo when the target asks for it."""
        if not self.become:
            return command
        return f"sudo -n sh -c {shlex.quote(command)}"

    def ping(self) -> None:
        """Raise ConnectivityError unless the host accepts a trivial command."""
        res = self.run("true")
        if not res.ok:
            raise ConnectivityError(host=self.host, message=(res.stderr or f"exit {res.exit_code}").strip())


class LocalConnection(Connection):
    def __init__(self, host: str = "localhost", become: bool = False):
        self.host = host
        self.become = become

    def run(self, command: str) -> CommandResult:
        self.log_command(command)
        proc = subprocess.run(command, shell=True, text=True, capture_output=True)
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")


class SSHConnection(Connection):
    """Connection through the system OpenSSH client (key based, non-interactive)."""

    def __init__(
        self,
        host: str,
        user: Optional[str] = None,
        key_path: Optional[str] = None,
        port: int = 22,
        become: bool = False,
        options: str = settings.SSH_OPTIONS,
        connect_timeout: int = settings.CONNECT_TIMEOUT,
    ):
        self.host = host
        self.user = user
        self.key_path = key_path
        self.port = port
        self.become = become
        self.options = options
        self.connect_timeout = connect_timeout

    def argv(self, command: str) -> List[str]:
        args = ["ssh", *shlex.split(self.options), "-o", f"ConnectTimeout={self.connect_timeout}", "-p", str(self.port)]
        if self.key_path:
            args.extend(["-i", self.key_path])
        target = f"{self.user}@{self.host}" if self.user else self.host
        args.extend([target, "--", command])
        return args

    def run(self, command: str) -> CommandResult:
        self.log_command(command)
        try:
            proc = subprocess.run(self.argv(command), text=True, capture_output=True)
        except FileNotFoundError:
            raise ToolUnavailable(tool="ssh", hint="Install an OpenSSH client or fix PATH.")
        if proc.returncode == SSH_ERROR:
            raise ConnectivityError(host=self.host, message=(proc.stderr or "ssh failed").strip())
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")
