"""
Strategy eligibility conditions.

A condition is a single function call, e.g.

    and(has-inviter(), github-star("zgsm-ai.zgsm"))

Arguments are nested calls, quoted strings or numbers. Function names come
from a closed registry with fixed arities; anything else is an
EvaluationError, never a silent false. Evaluation reads only the UserInfo
snapshot it is given.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Callable, Dict, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from quota_manager.core.config import settings
from quota_manager.core.errors import EvaluationError
from quota_manager.models.user import UserInfo

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<comma>,)
    """,
    re.VERBOSE,
)

_TIMESTAMP_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d")


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Argument", ...] = ()

    def __str__(self) -> str:
        return f"{self.name}({', '.join(_render(a) for a in self.args)})"


Argument = Union[Call, str, float]


def _render(arg: Argument) -> str:
    if isinstance(arg, Call):
        return str(arg)
    if isinstance(arg, str):
        return '"' + arg.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return repr(arg)


def _tokenize(expression: str) -> List[Tuple[str, str, int]]:
    tokens = []
    pos = 0
    while pos < len(expression):
        match = _TOKEN_RE.match(expression, pos)
        if not match:
            raise EvaluationError(f"Unexpected character {expression[pos]!r} at position {pos}")
        kind = match.lastgroup
        if kind != "ws":
            tokens.append((kind, match.group(), pos))
        pos = match.end()
    return tokens


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.index = 0

    def _peek(self) -> Optional[Tuple[str, str, int]]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _take(self, kind: str) -> Tuple[str, str, int]:
        token = self._peek()
        if token is None:
            raise EvaluationError(f"Unexpected end of condition, expected {kind}")
        if token[0] != kind:
            raise EvaluationError(f"Expected {kind} at position {token[2]}, got {token[1]!r}")
        self.index += 1
        return token

    def parse(self) -> Call:
        if not self.tokens:
            raise EvaluationError("Condition is empty")
        call = self._call()
        trailing = self._peek()
        if trailing is not None:
            raise EvaluationError(f"Unexpected {trailing[1]!r} at position {trailing[2]}")
        return call

    def _call(self) -> Call:
        _, name, _ = self._take("ident")
        self._take("lparen")
        args: List[Argument] = []
        token = self._peek()
        if token is not None and token[0] == "rparen":
            self.index += 1
            return Call(name, ())
        while True:
            args.append(self._argument())
            token = self._peek()
            if token is not None and token[0] == "comma":
                self.index += 1
                continue
            self._take("rparen")
            return Call(name, tuple(args))

    def _argument(self) -> Argument:
        token = self._peek()
        if token is None:
            raise EvaluationError("Unexpected end of condition, expected argument")
        kind, raw, pos = token
        if kind == "ident":
            return self._call()
        self.index += 1
        if kind == "string":
            return _unquote(raw)
        if kind == "number":
            return float(raw)
        raise EvaluationError(f"Unexpected {raw!r} at position {pos}")


def parse_condition(expression: str) -> Call:
    """Parse a condition string into a call tree (syntax only)."""
    if not isinstance(expression, str):
        raise EvaluationError("Condition must be a string")
    return _Parser(expression).parse()


# --- predicate registry ---------------------------------------------------

@dataclass(frozen=True)
class _Context:
    user: UserInfo
    tz: tzinfo


LeafFn = Callable[[_Context, Tuple[Argument, ...]], bool]


@dataclass(frozen=True)
class Predicate:
    name: str
    # "leaf" takes literal arguments; "combinator" takes nested calls
    kind: str
    min_args: int
    max_args: Optional[int]
    arg_types: Tuple[type, ...] = ()
    fn: Optional[LeafFn] = None
    # Static check of literal arguments, run at validation time
    check_args: Optional[Callable[[Tuple[Argument, ...]], None]] = None


def _parse_timestamp(raw: str, tz: tzinfo) -> datetime:
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(raw, fmt).replace(tzinfo=tz)
        except ValueError:
            continue
    raise EvaluationError(f"Invalid timestamp {raw!r}; expected YYYY-MM-DD HH:MM:SS")


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _check_timestamp(args) -> None:
    _parse_timestamp(args[0], timezone.utc)


def _register_before(ctx: _Context, args) -> bool:
    cutoff = _parse_timestamp(args[0], ctx.tz)
    registered = ctx.user.registered_at
    return registered is not None and _aware(registered) < cutoff


def _access_after(ctx: _Context, args) -> bool:
    cutoff = _parse_timestamp(args[0], ctx.tz)
    accessed = ctx.user.last_accessed_at
    return accessed is not None and _aware(accessed) > cutoff


_PREDICATES: Dict[str, Predicate] = {
    p.name: p
    for p in (
        Predicate("true", "leaf", 0, 0, fn=lambda ctx, args: True),
        Predicate("false", "leaf", 0, 0, fn=lambda ctx, args: False),
        Predicate("has-inviter", "leaf", 0, 0, fn=lambda ctx, args: ctx.user.has_inviter),
        Predicate("github-star", "leaf", 1, 1, (str,), lambda ctx, args: ctx.user.has_starred(args[0])),
        Predicate("match-user", "leaf", 1, 1, (str,), lambda ctx, args: ctx.user.user_id == args[0]),
        Predicate("belong-to", "leaf", 1, 1, (str,), lambda ctx, args: (ctx.user.company or "") == args[0]),
        Predicate("is-vip", "leaf", 1, 1, (float,), lambda ctx, args: ctx.user.vip >= args[0]),
        Predicate("register-before", "leaf", 1, 1, (str,), _register_before, _check_timestamp),
        Predicate("access-after", "leaf", 1, 1, (str,), _access_after, _check_timestamp),
        Predicate("and", "combinator", 0, None),
        Predicate("or", "combinator", 0, None),
        Predicate("not", "combinator", 1, 1),
    )
}

SUPPORTED_FUNCTIONS = tuple(sorted(_PREDICATES))


def _check(call: Call) -> None:
    predicate = _PREDICATES.get(call.name)
    if predicate is None:
        raise EvaluationError(f"Unknown function {call.name!r}")
    count = len(call.args)
    if count < predicate.min_args or (predicate.max_args is not None and count > predicate.max_args):
        if predicate.max_args is None:
            expected = f"at least {predicate.min_args}"
        elif predicate.min_args == predicate.max_args:
            expected = str(predicate.min_args)
        else:
            expected = f"{predicate.min_args}-{predicate.max_args}"
        raise EvaluationError(f"{call.name}() takes {expected} argument(s), got {count}")
    if predicate.kind == "combinator":
        for arg in call.args:
            if not isinstance(arg, Call):
                raise EvaluationError(f"{call.name}() arguments must be conditions, got {_render(arg)}")
            _check(arg)
        return
    for position, (arg, expected_type) in enumerate(zip(call.args, predicate.arg_types), start=1):
        if isinstance(arg, Call) or not isinstance(arg, expected_type):
            kind = "string" if expected_type is str else "number"
            raise EvaluationError(f"{call.name}() argument {position} must be a {kind}, got {_render(arg)}")
    if predicate.check_args is not None:
        predicate.check_args(call.args)


def _evaluate(call: Call, ctx: _Context) -> bool:
    if call.name == "and":
        return all(_evaluate(arg, ctx) for arg in call.args)
    if call.name == "or":
        return any(_evaluate(arg, ctx) for arg in call.args)
    if call.name == "not":
        return not _evaluate(call.args[0], ctx)
    return bool(_PREDICATES[call.name].fn(ctx, call.args))


def validate_condition(condition: Union[str, Call]) -> Call:
    """Parse and check names, arities and argument types without a user."""
    call = parse_condition(condition) if isinstance(condition, str) else condition
    _check(call)
    return call


def evaluate_condition(condition: Union[str, Call], user: UserInfo, *, tz: Optional[tzinfo] = None) -> bool:
    """
    Evaluate a condition against a user snapshot.

    The whole tree is validated before evaluation so that an unknown function
    in a short-circuited branch still fails.
    """
    call = validate_condition(condition)
    ctx = _Context(user=user, tz=tz or ZoneInfo(settings.QUOTA_TIMEZONE))
    return _evaluate(call, ctx)
