# conditions.py
"""
Run-condition predicates.

Conditions are small boolean expressions evaluated against an immutable
TriggerContext, e.g.::

    branch == main
    event == push && branch =~ 'release/*'
    ${{ github.ref_name == 'main' }}
    !(conclusion == failure)

Operands are context variables or literals; `=~` is a glob match.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from fnmatch import fnmatch
from typing import Callable, List, Optional

from .errors import ConditionError
from .model import TriggerContext

VARIABLES = ("branch", "ref", "event", "sha", "default_branch", "conclusion", "workflow", "repository")

ALIASES = {
    "github.ref_name": "branch",
    "github.ref": "ref",
    "github.event_name": "event",
    "github.sha": "sha",
    "github.repository": "repository",
    "github.event.repository.default_branch": "default_branch",
    "github.event.workflow_run.conclusion": "conclusion",
    "github.event.workflow_run.name": "workflow",
}

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<op>&&|\|\||==|!=|=~|!|\(|\))
      | '(?P<sq>[^']*)'
      | "(?P<dq>[^"]*)"
      | (?P<word>[^\s()!=&|'"~]+)
    )""",
    re.VERBOSE,
)

_WRAPPER = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)

Predicate = Callable[[TriggerContext], bool]


@dataclass(frozen=True)
class _Tok:
    kind: str  # "op" | "lit" | "word"
    value: str


def _tokenize(text: str) -> List[_Tok]:
    toks: List[_Tok] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m or m.end() == pos:
            raise ConditionError(f"unexpected character at offset {pos}", text)
        pos = m.end()
        if m.group("op"):
            toks.append(_Tok("op", m.group("op")))
        elif m.group("sq") is not None:
            toks.append(_Tok("lit", m.group("sq")))
        elif m.group("dq") is not None:
            toks.append(_Tok("lit", m.group("dq")))
        else:
            toks.append(_Tok("word", m.group("word")))
    return toks


def _operand(tok: _Tok) -> Callable[[TriggerContext], str]:
    if tok.kind == "lit":
        return lambda ctx, v=tok.value: v
    name = ALIASES.get(tok.value, tok.value)
    if name in VARIABLES:
        return lambda ctx, n=name: ctx.variables()[n]
    return lambda ctx, v=tok.value: v


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.toks = _tokenize(text)
        self.i = 0

    def _peek(self) -> Optional[_Tok]:
        return self.toks[self.i] if self.i < len(self.toks) else None

    def _take(self) -> _Tok:
        tok = self._peek()
        if tok is None:
            raise ConditionError("unexpected end of expression", self.text)
        self.i += 1
        return tok

    def _accept(self, op: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.value == op:
            self.i += 1
            return True
        return False

    def parse(self) -> Predicate:
        if not self.toks:
            raise ConditionError("empty condition", self.text)
        pred = self._expr()
        if self._peek() is not None:
            raise ConditionError(f"unexpected token {self._peek().value!r}", self.text)
        return pred

    def _expr(self) -> Predicate:
        parts = [self._conj()]
        while self._accept("||"):
            parts.append(self._conj())
        if len(parts) == 1:
            return parts[0]
        return lambda ctx: any(p(ctx) for p in parts)

    def _conj(self) -> Predicate:
        parts = [self._unary()]
        while self._accept("&&"):
            parts.append(self._unary())
        if len(parts) == 1:
            return parts[0]
        return lambda ctx: all(p(ctx) for p in parts)

    def _unary(self) -> Predicate:
        if self._accept("!"):
            inner = self._unary()
            return lambda ctx: not inner(ctx)
        if self._accept("("):
            inner = self._expr()
            if not self._accept(")"):
                raise ConditionError("missing ')'", self.text)
            return inner
        return self._clause()

    def _clause(self) -> Predicate:
        left_tok = self._take()
        if left_tok.kind == "op":
            raise ConditionError(f"unexpected operator {left_tok.value!r}", self.text)

        nxt = self._peek()
        if nxt is None or nxt.kind != "op" or nxt.value not in ("==", "!=", "=~"):
            if left_tok.kind == "word" and left_tok.value in ("true", "false"):
                value = left_tok.value == "true"
                return lambda ctx: value
            raise ConditionError(f"expected comparison after {left_tok.value!r}", self.text)

        op = self._take().value
        right_tok = self._take()
        if right_tok.kind == "op":
            raise ConditionError(f"unexpected operator {right_tok.value!r}", self.text)

        left, right = _operand(left_tok), _operand(right_tok)
        if op == "==":
            return lambda ctx: left(ctx) == right(ctx)
        if op == "!=":
            return lambda ctx: left(ctx) != right(ctx)
        return lambda ctx: fnmatch(left(ctx), right(ctx))


@dataclass(frozen=True)
class Condition:
    source: str
    predicate: Predicate

    def __call__(self, ctx: TriggerContext) -> bool:
        return bool(self.predicate(ctx))


def parse_condition(text: str) -> Condition:
    """Compile a condition string; raises ConditionError when malformed."""
    if not isinstance(text, str):
        raise ConditionError("condition must be a string", repr(text))
    m = _WRAPPER.match(text)
    body = m.group(1) if m else text
    return Condition(source=text, predicate=_Parser(body).parse())


def evaluate(text: Optional[str], ctx: TriggerContext) -> bool:
    """Evaluate a condition; a missing condition is always true."""
    if text is None or not str(text).strip():
        return True
    return parse_condition(text)(ctx)
