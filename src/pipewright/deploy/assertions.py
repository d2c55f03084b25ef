# deploy/assertions.py
"""
Resource assertions: declarative statements about the desired state of a
host. Each one is a (check, apply) pair, so an already satisfied assertion
is a no-op and applying a set twice changes nothing the second time.
"""
from __future__ import annotations

import hashlib
import json
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Type

from .. import settings
from ..errors import PipewrightError
from .connection import CommandResult, Connection

CONFIG_LABEL = "pipewright.config"


@dataclass
class CommandFailed(PipewrightError):
    command: str
    exit_code: int
    stderr: str

    def __str__(self) -> str:
        detail = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else "no output"
        return f"`{self.command}` exited {self.exit_code}: {detail}"


def _must(conn: Connection, command: str) -> CommandResult:
    res = conn.run(command)
    if not res.ok:
        raise CommandFailed(command=command, exit_code=res.exit_code, stderr=res.stderr or res.stdout)
    return res


def _q(value: Any) -> str:
    return shlex.quote(str(value))


class ResourceAssertion(ABC):
    kind: ClassVar[str]

    @abstractmethod
    def describe(self) -> str: ...

    @abstractmethod
    def check(self, conn: Connection) -> bool:
        """True when the host already satisfies the assertion."""

    @abstractmethod
    def apply(self, conn: Connection) -> None:
        """Perform the corrective action; raise on failure."""


@dataclass
class PackageInstalled(ResourceAssertion):
    kind: ClassVar[str] = "package"
    name: str
    state: str = "present"

    def describe(self) -> str:
        return f"package {self.name} {self.state}"

    def check(self, conn: Connection) -> bool:
        installed = conn.run(
            f"dpkg-query -W -f='${{Status}}' {_q(self.name)} 2>/dev/null | grep -q 'install ok installed'"
        ).ok
        return installed if self.state == "present" else not installed

    def apply(self, conn: Connection) -> None:
        if self.state == "present":
            cmd = f"DEBIAN_FRONTEND=noninteractive apt-get update -qq && DEBIAN_FRONTEND=noninteractive apt-get install -y -qq {_q(self.name)}"
        else:
            cmd = f"DEBIAN_FRONTEND=noninteractive apt-get remove -y -qq {_q(self.name)}"
        _must(conn, conn.privileged(cmd))


@dataclass
class ServiceState(ResourceAssertion):
    kind: ClassVar[str] = "service"
    name: str
    state: str = "started"
    enabled: Optional[bool] = None

    def describe(self) -> str:
        extra = "" if self.enabled is None else (" enabled" if self.enabled else " disabled")
        return f"service {self.name} {self.state}{extra}"

    def _active(self, conn: Connection) -> bool:
        return conn.run(f"systemctl is-active --quiet {_q(self.name)}").ok

    def _enabled(self, conn: Connection) -> bool:
        return conn.run(f"systemctl is-enabled --quiet {_q(self.name)}").ok

    def check(self, conn: Connection) -> bool:
        if self._active(conn) != (self.state == "started"):
            return False
        if self.enabled is not None and self._enabled(conn) != self.enabled:
            return False
        return True

    def apply(self, conn: Connection) -> None:
        if self.enabled is not None and self._enabled(conn) != self.enabled:
            verb = "enable" if self.enabled else "disable"
            _must(conn, conn.privileged(f"systemctl {verb} {_q(self.name)}"))
        if self._active(conn) != (self.state == "started"):
            verb = "start" if self.state == "started" else "stop"
            _must(conn, conn.privileged(f"systemctl {verb} {_q(self.name)}"))


@dataclass
class NetworkExists(ResourceAssertion):
    kind: ClassVar[str] = "network"
    name: str
    driver: str = "bridge"
    state: str = "present"

    def describe(self) -> str:
        return f"docker network {self.name} {self.state}"

    def check(self, conn: Connection) -> bool:
        exists = conn.run(f"{settings.DOCKER} network inspect {_q(self.name)} >/dev/null 2>&1").ok
        return exists if self.state == "present" else not exists

    def apply(self, conn: Connection) -> None:
        if self.state == "present":
            _must(conn, conn.privileged(f"{settings.DOCKER} network create --driver {_q(self.driver)} {_q(self.name)}"))
        else:
            _must(conn, conn.privileged(f"{settings.DOCKER} network rm {_q(self.name)}"))


@dataclass
class VolumeExists(ResourceAssertion):
    kind: ClassVar[str] = "volume"
    name: str
    state: str = "present"

    def describe(self) -> str:
        return f"docker volume {self.name} {self.state}"

    def check(self, conn: Connection) -> bool:
        exists = conn.run(f"{settings.DOCKER} volume inspect {_q(self.name)} >/dev/null 2>&1").ok
        return exists if self.state == "present" else not exists

    def apply(self, conn: Connection) -> None:
        if self.state == "present":
            _must(conn, conn.privileged(f"{settings.DOCKER} volume create {_q(self.name)}"))
        else:
            _must(conn, conn.privileged(f"{settings.DOCKER} volume rm {_q(self.name)}"))


@dataclass
class ContainerRunning(ResourceAssertion):
    """
    A container with the given image and configuration is running.

    The desired configuration is hashed into a container label; a running
    container whose label differs (new image tag, env, ports, ...) is
    recreated, one that matches is left alone.
    """
    kind: ClassVar[str] = "container"
    name: str
    image: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    networks: List[str] = field(default_factory=list)
    volumes: List[str] = field(default_factory=list)
    ports: List[str] = field(default_factory=list)
    restart: Optional[str] = "unless-stopped"
    command: Optional[str] = None
    pull: bool = False
    state: str = "running"

    def describe(self) -> str:
        # env values may hold secrets; never describe them
        if self.state == "absent":
            return f"container {self.name} absent"
        return f"container {self.name} running {self.image}"

    def config_hash(self) -> str:
        desired = {
            "image": self.image,
            "env": dict(sorted(self.env.items())),
            "networks": self.networks,
            "volumes": self.volumes,
            "ports": self.ports,
            "restart": self.restart,
            "command": self.command,
        }
        return hashlib.sha256(json.dumps(desired, sort_keys=True).encode("utf-8")).hexdigest()[:16]

    def _inspect(self, conn: Connection) -> Optional[str]:
        fmt = '{{.State.Running}}|{{index .Config.Labels "%s"}}' % CONFIG_LABEL
        res = conn.run(f"{settings.DOCKER} inspect -f {_q(fmt)} {_q(self.name)} 2>/dev/null")
        return res.stdout.strip() if res.ok else None

    def check(self, conn: Connection) -> bool:
        current = self._inspect(conn)
        if self.state == "absent":
            return current is None
        return current == f"true|{self.config_hash()}"

    def run_command(self) -> str:
        parts = [settings.DOCKER, "run", "-d", "--name", _q(self.name), "--label", _q(f"{CONFIG_LABEL}={self.config_hash()}")]
        if self.restart:
            parts.extend(["--restart", _q(self.restart)])
        for key, value in self.env.items():
            parts.extend(["-e", _q(f"{key}={value}")])
        if self.networks:
            parts.extend(["--network", _q(self.networks[0])])
        for vol in self.volumes:
            parts.extend(["-v", _q(vol)])
        for port in self.ports:
            parts.extend(["-p", _q(port)])
        parts.append(_q(self.image))
        if self.command:
            parts.append(self.command)
        return " ".join(parts)

    def apply(self, conn: Connection) -> None:
        if self._inspect(conn) is not None:
            _must(conn, conn.privileged(f"{settings.DOCKER} rm -f {_q(self.name)}"))
        if self.state == "absent":
            return
        if self.pull:
            _must(conn, conn.privileged(f"{settings.DOCKER} pull {_q(self.image)}"))
        _must(conn, conn.privileged(self.run_command()))
        for net in self.networks[1:]:
            _must(conn, conn.privileged(f"{settings.DOCKER} network connect {_q(net)} {_q(self.name)}"))


ASSERTION_TYPES: Dict[str, Type[ResourceAssertion]] = {
    cls.kind: cls for cls in (PackageInstalled, ServiceState, NetworkExists, VolumeExists, ContainerRunning)
}
