# conditions.py
"""
Step condition language.

    platform == 'linux'
    ne(variables['agent.os'], 'Windows_NT') && channel != 'nightly'
    !(platform == 'windows' || channel == 'beta')

Comparisons are case-insensitive. Unknown variables raise ConfigError
instead of evaluating to false.
"""
from __future__ import annotations

import platform
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from .errors import ConfigError
from .model import JobConfig, Pipeline

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<op>==|!=|&&|\|\||[!(),\[\]])
  | (?P<str>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<ident>[A-Za-z_][A-Za-z0-9_.]*)
    """,
    re.VERBOSE,
)

_FUNCS = ("eq", "ne", "and", "or", "not")


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Union[str, bool]


@dataclass(frozen=True)
class Var:
    name: str


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class BoolOp:
    op: str  # "and" | "or"
    operands: Tuple["Node", ...]


@dataclass(frozen=True)
class Compare:
    op: str  # "==" | "!="
    left: "Node"
    right: "Node"


Node = Union[Literal, Var, Not, BoolOp, Compare]


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------

def _tokenize(expr: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(expr):
        m = _TOKEN_RE.match(expr, pos)
        if not m:
            raise ConfigError(f"Unexpected character {expr[pos]!r} at {pos} in condition {expr!r}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        text = m.group()
        if kind == "str":
            text = re.sub(r"\\(.)", r"\1", text[1:-1])
        tokens.append((kind, text))
    return tokens


class _Parser:
    def __init__(self, expr: str):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ConfigError(f"Unexpected end of condition {self.expr!r}")
        self.pos += 1
        return tok

    def _accept(self, text: str) -> bool:
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] == text:
            self.pos += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            got = self._peek()
            raise ConfigError(
                f"Expected {text!r} but got {got[1] if got else 'end'!r} in condition {self.expr!r}"
            )

    def parse(self) -> Node:
        node = self._or()
        if self._peek() is not None:
            raise ConfigError(f"Unexpected {self._peek()[1]!r} in condition {self.expr!r}")
        return node

    def _or(self) -> Node:
        operands = [self._and()]
        while self._accept("||"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def _and(self) -> Node:
        operands = [self._unary()]
        while self._accept("&&"):
            operands.append(self._unary())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def _unary(self) -> Node:
        if self._accept("!"):
            return Not(self._unary())
        return self._compare()

    def _compare(self) -> Node:
        left = self._primary()
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] in ("==", "!="):
            self.pos += 1
            return Compare(tok[1], left, self._primary())
        return left

    def _args(self) -> List[Node]:
        self._expect("(")
        args: List[Node] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        return args

    def _primary(self) -> Node:
        if self._accept("("):
            node = self._or()
            self._expect(")")
            return node

        kind, text = self._next()
        if kind == "str":
            return Literal(text)
        if kind != "ident":
            raise ConfigError(f"Unexpected {text!r} in condition {self.expr!r}")

        low = text.lower()
        if low in ("true", "false"):
            return Literal(low == "true")

        nxt = self._peek()
        if low == "variables" and nxt == ("op", "["):
            self.pos += 1
            kind, name = self._next()
            if kind != "str":
                raise ConfigError(f"variables[...] needs a quoted name in condition {self.expr!r}")
            self._expect("]")
            return Var(name)

        if nxt == ("op", "("):
            if low not in _FUNCS:
                raise ConfigError(f"Unknown function {text!r} in condition {self.expr!r}")
            args = self._args()
            return self._call(low, args)

        return Var(text)

    def _call(self, fn: str, args: List[Node]) -> Node:
        if fn in ("eq", "ne"):
            if len(args) != 2:
                raise ConfigError(f"{fn}() takes 2 arguments in condition {self.expr!r}")
            return Compare("==" if fn == "eq" else "!=", args[0], args[1])
        if fn == "not":
            if len(args) != 1:
                raise ConfigError(f"not() takes 1 argument in condition {self.expr!r}")
            return Not(args[0])
        if len(args) < 2:
            raise ConfigError(f"{fn}() takes at least 2 arguments in condition {self.expr!r}")
        return BoolOp(fn, tuple(args))


@lru_cache(maxsize=256)
def parse(expr: str) -> Node:
    """Parse a condition expression (cached)."""
    if not expr or not expr.strip():
        raise ConfigError("Empty condition")
    return _Parser(expr).parse()


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def host_os() -> str:
    system = platform.system()
    if system == "Windows":
        return "Windows_NT"
    return system  # "Linux", "Darwin", ...


def host_family() -> str:
    return {"Windows_NT": "windows", "Darwin": "macos"}.get(host_os(), host_os().lower())


def builtin_variables() -> Dict[str, str]:
    return {"agent.os": host_os(), "agent.osfamily": host_family()}


def _lookup(name: str, variables: Mapping[str, str], builtins: Mapping[str, str]) -> str:
    if name in variables:
        return variables[name]
    if name.lower() in builtins:
        return builtins[name.lower()]
    raise ConfigError(f"Condition references unknown variable {name!r}")


def _value(node: Node, variables, builtins) -> Union[str, bool]:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Var):
        return _lookup(node.name, variables, builtins)
    return _truth(node, variables, builtins)


def _norm(v: Union[str, bool]) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return v.strip().lower()


def _truth(node: Node, variables, builtins) -> bool:
    if isinstance(node, Compare):
        same = _norm(_value(node.left, variables, builtins)) == _norm(_value(node.right, variables, builtins))
        return same if node.op == "==" else not same
    if isinstance(node, Not):
        return not _truth(node.operand, variables, builtins)
    if isinstance(node, BoolOp):
        if node.op == "and":
            return all(_truth(o, variables, builtins) for o in node.operands)
        return any(_truth(o, variables, builtins) for o in node.operands)
    value = _value(node, variables, builtins)
    if isinstance(value, bool):
        return value
    return _norm(value) not in ("", "false", "0")


def evaluate(
    expr: str | None,
    variables: Mapping[str, str],
    builtins: Optional[Mapping[str, str]] = None,
) -> bool:
    """True if the step applies. No condition means always applies."""
    if expr is None:
        return True
    if builtins is None:
        builtins = builtin_variables()
    return _truth(parse(expr), variables, builtins)


def references(expr: str) -> Set[str]:
    """Variable names an expression reads."""
    out: Set[str] = set()
    stack: List[Node] = [parse(expr)]
    while stack:
        node = stack.pop()
        if isinstance(node, Var):
            out.add(node.name)
        elif isinstance(node, Not):
            stack.append(node.operand)
        elif isinstance(node, BoolOp):
            stack.extend(node.operands)
        elif isinstance(node, Compare):
            stack.extend((node.left, node.right))
    return out


def validate_pipeline(pipeline: Pipeline, configs: Iterable[JobConfig]) -> None:
    """Parse every condition and check its references against every job."""
    builtins = builtin_variables()
    configs = list(configs)
    for step in pipeline.steps:
        if step.condition is None:
            continue
        try:
            names = references(step.condition)
        except ConfigError as e:
            raise ConfigError(e.message, location=f"step {step.name!r}") from None
        for cfg in configs:
            for name in sorted(names):
                if name not in cfg.variables and name.lower() not in builtins:
                    raise ConfigError(
                        f"Condition references unknown variable {name!r} (job {cfg.identity})",
                        location=f"step {step.name!r}",
                    )
