# deploy/inventory.py
"""
Inventory and playbook documents.

Inventory::

    groups:
      web:
        vars: {user: ubuntu, key_path: ~/.ssh/deploy, become: true}
        hosts:
          - 203.0.113.10
          - {host: 203.0.113.11, port: 2222}

Playbook::

    roles:
      docker:
        - package: {name: docker.io}
        - service: {name: docker, state: started, enabled: true}
      app:
        - network: {name: app-net}
        - container:
            name: app
            image: acme/app:latest
            networks: [app-net]
            env: {DB_PASSWORD: "${{ secrets.DB_PASSWORD }}"}
    plays:
      - hosts: web
        roles: [docker, app]
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..documents import Source, parse_yaml, read_text, validation_error
from ..errors import ParseError, ParseErrorKind
from ..secret_store import EMPTY, SecretStore
from .assertions import ASSERTION_TYPES, ResourceAssertion
from .connection import Connection, LocalConnection, SSHConnection

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


# ---------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------

class HostVars(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user: Optional[str] = None
    key_path: Optional[str] = None
    port: Optional[int] = None
    become: Optional[bool] = None
    connection: Optional[Literal["ssh", "local"]] = None


class HostDoc(HostVars):
    host: str


class GroupDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    vars: HostVars = Field(default_factory=HostVars)
    hosts: List[HostDoc] = Field(min_length=1)

    @field_validator("hosts", mode="before")
    @classmethod
    def expand_host_strings(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [{"host": h} if isinstance(h, str) else h for h in value]
        return value


class InventoryDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    groups: Dict[str, GroupDoc] = Field(min_length=1)


@dataclass(frozen=True)
class Host:
    name: str
    user: Optional[str] = None
    key_path: Optional[str] = None
    port: int = 22
    become: bool = False
    connection: str = "ssh"

    def connect(self) -> Connection:
        if self.connection == "local":
            return LocalConnection(self.name, become=self.become)
        return SSHConnection(self.name, user=self.user, key_path=self.key_path, port=self.port, become=self.become)


@dataclass
class Inventory:
    groups: Dict[str, List[Host]]

    def hosts(self, pattern: str) -> List[Host]:
        """Hosts of a group name, a single host name, or `all`."""
        if pattern == "all":
            seen: Dict[str, Host] = {}
            for hosts in self.groups.values():
                for h in hosts:
                    seen.setdefault(h.name, h)
            return list(seen.values())
        if pattern in self.groups:
            return list(self.groups[pattern])
        for hosts in self.groups.values():
            for h in hosts:
                if h.name == pattern:
                    return [h]
        raise ParseError(ParseErrorKind.INVALID, f"No inventory group or host named '{pattern}'",
                         {"groups": sorted(self.groups)})


def _merge(group_vars: HostVars, doc: HostDoc) -> Host:
    def pick(attr: str, default: Any) -> Any:
        own = getattr(doc, attr)
        if own is not None:
            return own
        inherited = getattr(group_vars, attr)
        return inherited if inherited is not None else default

    connection = pick("connection", "local" if doc.host in LOCAL_HOSTS else "ssh")
    return Host(
        name=doc.host,
        user=pick("user", None),
        key_path=pick("key_path", None),
        port=pick("port", 22),
        become=pick("become", False),
        connection=connection,
    )


def load_inventory(source: Source) -> Inventory:
    if isinstance(source, Mapping):
        data, origin = dict(source), "<mapping>"
    else:
        text, origin = read_text(source)
        data = parse_yaml(text, origin)
    try:
        doc = InventoryDoc.model_validate(data)
    except ValidationError as e:
        raise validation_error(e, origin) from None

    return Inventory(groups={name: [_merge(g.vars, h) for h in g.hosts] for name, g in doc.groups.items()})


# ---------------------------------------------------------------------
# Playbook
# ---------------------------------------------------------------------

class PlayDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hosts: str
    roles: List[str] = Field(min_length=1)


class PlaybookDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    roles: Dict[str, List[Dict[str, Dict[str, Any]]]]
    plays: List[PlayDoc] = Field(min_length=1)

    @model_validator(mode="after")
    def check_roles(self) -> "PlaybookDoc":
        for play in self.plays:
            for role in play.roles:
                if role not in self.roles:
                    raise ValueError(f"play on '{play.hosts}' uses unknown role '{role}'")
        for role, items in self.roles.items():
            for i, item in enumerate(items):
                if len(item) != 1:
                    raise ValueError(f"role '{role}' item {i}: expected exactly one assertion kind")
                kind = next(iter(item))
                if kind not in ASSERTION_TYPES:
                    raise ValueError(f"role '{role}' item {i}: unknown kind '{kind}' (known: {sorted(ASSERTION_TYPES)})")
        return self


@dataclass
class Play:
    hosts: str
    roles: List[str]


@dataclass
class Playbook:
    roles: Dict[str, List[Dict[str, Dict[str, Any]]]]
    plays: List[Play] = field(default_factory=list)

    def assertions_for(self, play: Play, secrets: SecretStore = EMPTY) -> List[ResourceAssertion]:
        out: List[ResourceAssertion] = []
        for role in play.roles:
            for item in self.roles[role]:
                kind, params = next(iter(item.items()))
                out.append(build_assertion(kind, params, secrets, where=f"role '{role}'"))
        return out


def build_assertion(kind: str, params: Mapping[str, Any], secrets: SecretStore = EMPTY, where: str = "") -> ResourceAssertion:
    cls = ASSERTION_TYPES[kind]
    resolved = secrets.resolve(dict(params or {}))
    if "env" in resolved and isinstance(resolved["env"], dict):
        resolved["env"] = {str(k): str(v) for k, v in resolved["env"].items()}
    try:
        return cls(**resolved)
    except TypeError as e:
        raise ParseError(ParseErrorKind.INVALID, f"{where} {kind}: {e}".strip()) from None


def load_playbook(source: Source) -> Playbook:
    if isinstance(source, Mapping):
        data, origin = dict(source), "<mapping>"
    else:
        text, origin = read_text(source)
        data = parse_yaml(text, origin)
    try:
        doc = PlaybookDoc.model_validate(data)
    except ValidationError as e:
        raise validation_error(e, origin) from None

    book = Playbook(roles=doc.roles, plays=[Play(hosts=p.hosts, roles=list(p.roles)) for p in doc.plays])
    # surface bad assertion parameters at load time (secrets are resolved later)
    for role, items in book.roles.items():
        for item in items:
            kind, params = next(iter(item.items()))
            build_assertion(kind, params, SecretStore(_placeholders(params)), where=f"role '{role}'")
    return book


def _placeholders(params: Any) -> Dict[str, str]:
    return {name: "" for name in EMPTY.references(params)}
