# documents.py
"""YAML document reading shared by the pipeline, inventory and playbook loaders."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Union

import yaml
from pydantic import ValidationError

from .errors import ParseError, ParseErrorKind

Source = Union[str, Path, Mapping[str, Any]]


class StrictLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _value_node in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping", node.start_mark,
                    f"found duplicate key {key!r}", key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def looks_like_path(source: Union[str, Path]) -> bool:
    if isinstance(source, Path):
        return True
    if "\n" in source:
        return False
    return Path(source).suffix in (".yml", ".yaml", ".py") or Path(source).exists()


def read_text(source: Union[str, Path]) -> tuple[str, str]:
    """Return (text, origin) for a path or inline document."""
    if looks_like_path(source):
        path = Path(source).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        return path.read_text(encoding="utf-8"), str(path)
    return str(source), "<string>"


def duplicate_keys_under(text: str, key: str) -> list[str]:
    """Duplicate keys of the top-level mapping stored under `key`."""
    try:
        root = yaml.compose(text, Loader=yaml.SafeLoader)
    except yaml.YAMLError:
        return []
    if not isinstance(root, yaml.MappingNode):
        return []
    for key_node, value_node in root.value:
        if getattr(key_node, "value", None) == key and isinstance(value_node, yaml.MappingNode):
            names = [k.value for k, _ in value_node.value]
            return sorted({n for n in names if names.count(n) > 1})
    return []


def parse_yaml(text: str, origin: str = "<string>") -> dict:
    try:
        data = yaml.load(text, Loader=StrictLoader)
    except yaml.YAMLError as e:
        raise ParseError(ParseErrorKind.INVALID, f"Invalid YAML in {origin}: {e}")
    if data is None:
        raise ParseError(ParseErrorKind.INVALID, f"Empty document: {origin}")
    if not isinstance(data, dict):
        raise ParseError(ParseErrorKind.INVALID, f"Top level of {origin} must be a mapping")
    return data


def validation_error(e: ValidationError, origin: str) -> ParseError:
    problems = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        problems.append(f"{loc or '<root>'}: {err.get('msg')}")
    return ParseError(
        ParseErrorKind.INVALID,
        f"Invalid document {origin}:\n" + "\n".join(f"  - {p}" for p in problems),
        {"errors": len(problems)},
    )
