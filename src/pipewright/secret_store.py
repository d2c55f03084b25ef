# secret_store.py
from __future__ import annotations

import os
import re
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional

import yaml

from . import settings
from .errors import MissingSecret, ParseError, ParseErrorKind

SECRET_REF = re.compile(r"\$\{\{\s*secrets\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
MASK = "***"


class SecretStore(Mapping[str, str]):
    """
    Read-only name -> value store handed explicitly to step execution.

    Values are only ever substituted into a process environment or an
    action's inputs; everything that is logged or returned goes through
    `redact`.
    """

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values = MappingProxyType({k: str(v) for k, v in (values or {}).items()})

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"SecretStore(names={sorted(self._values)})"

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, prefix: str = settings.SECRET_ENV_PREFIX) -> "SecretStore":
        environ = os.environ if environ is None else environ
        return cls({k[len(prefix):]: v for k, v in environ.items() if k.startswith(prefix) and len(k) > len(prefix)})

    @classmethod
    def from_file(cls, path: str | Path) -> "SecretStore":
        """
        Load secrets from a YAML mapping or a dotenv-style KEY=VALUE file.
        """
        p = Path(path).expanduser()
        if not p.exists():
            raise FileNotFoundError(f"Secrets file not found: {p}")
        text = p.read_text(encoding="utf-8")

        if p.suffix in (".yml", ".yaml"):
            try:
                data = yaml.safe_load(text) or {}
            except yaml.YAMLError as e:
                raise ParseError(ParseErrorKind.INVALID, f"Invalid YAML in {p}: {e}")
            if not isinstance(data, dict):
                raise ParseError(ParseErrorKind.INVALID, f"Secrets file {p} must contain a mapping")
            return cls({str(k): str(v) for k, v in data.items()})

        values: Dict[str, str] = {}
        for lineno, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                raise ParseError(ParseErrorKind.INVALID, f"{p}:{lineno}: expected KEY=VALUE")
            key, _, value = line.partition("=")
            values[key.strip()] = value.strip().strip("'\"")
        return cls(values)

    def merged(self, other: Mapping[str, str]) -> "SecretStore":
        return SecretStore({**self._values, **other})

    # ------------------------------------------------------------------
    # Substitution / masking
    # ------------------------------------------------------------------

    def references(self, value: Any) -> set[str]:
        if isinstance(value, str):
            return set(SECRET_REF.findall(value))
        if isinstance(value, dict):
            return set().union(*(self.references(v) for v in value.values())) if value else set()
        if isinstance(value, (list, tuple)):
            return set().union(*(self.references(v) for v in value)) if value else set()
        return set()

    def resolve(self, value: Any) -> Any:
        """Substitute `${{ secrets.NAME }}` references (recursively for containers)."""
        if isinstance(value, str):
            def _sub(m: re.Match) -> str:
                name = m.group(1)
                if name not in self._values:
                    raise MissingSecret(name)
                return self._values[name]
            return SECRET_REF.sub(_sub, value)
        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v) for v in value]
        return value

    def redact(self, value: Any) -> Any:
        """Mask every known secret value (longest first, so overlaps mask fully)."""
        if isinstance(value, str):
            for secret in sorted(self._values.values(), key=len, reverse=True):
                if secret:
                    value = value.replace(secret, MASK)
            return value
        if isinstance(value, dict):
            return {k: self.redact(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.redact(v) for v in value]
        return value


EMPTY = SecretStore()
