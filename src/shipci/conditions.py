# conditions.py
"""
Trigger conditions for jobs and steps.

A condition is a small boolean expression (GitHub Actions flavoured):

    github.event_name == 'push' && branch('release/**')
    matrix.component == 'frontend' || matrix.component == 'backend'
    always() && needs.build.result == 'failure'

It is parsed once into a tree of frozen nodes and evaluated against a
RunContext plus, where relevant, a matrix binding and the outcomes of the
job's dependencies. Evaluation never has side effects.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from fnmatch import fnmatch
from functools import lru_cache
from typing import Iterable, Iterator, List, Mapping, Optional, Set, Tuple, Union

from .context import RunContext
from .errors import ConfigurationError
from .model import CANCELLED, FAILURE, SUCCESS


# ---------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Const:
    value: Union[str, bool]


@dataclass(frozen=True)
class Ref:
    path: Tuple[str, ...]

    def __str__(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True)
class Comparison:
    left: "Node"
    op: str  # "==" | "!="
    right: "Node"


@dataclass(frozen=True)
class And:
    items: Tuple["Node", ...]


@dataclass(frozen=True)
class Or:
    items: Tuple["Node", ...]


@dataclass(frozen=True)
class Not:
    item: "Node"


@dataclass(frozen=True)
class BranchMatch:
    pattern: str
    field: str = "branch"   # "branch" | "ref" | "base_branch"
    glob: bool = False


@dataclass(frozen=True)
class EventMatch:
    kind: str


@dataclass(frozen=True)
class JobStatusRef:
    job: str
    status: str


@dataclass(frozen=True)
class StatusCheck:
    name: str  # always | success | failure | cancelled


@dataclass(frozen=True)
class Call:
    name: str  # startsWith | contains
    args: Tuple["Node", ...]


Node = Union[Const, Ref, Comparison, And, Or, Not, BranchMatch, EventMatch, JobStatusRef, StatusCheck, Call]

STATUS_FUNCTIONS = ("always", "success", "failure", "cancelled")
VALUE_FUNCTIONS = ("startsWith", "endsWith", "contains")


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<op>&&|\|\||==|!=|!|\(|\)|,)
      | '(?P<sq>[^']*)'
      | "(?P<dq>[^"]*)"
      | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    )
    """,
    re.VERBOSE,
)

_WRAPPER_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ConfigurationError(f"Malformed condition {text!r}: unexpected input at position {pos}")
        if m.group("op") is not None:
            tokens.append(("op", m.group("op")))
        elif m.group("sq") is not None:
            tokens.append(("str", m.group("sq")))
        elif m.group("dq") is not None:
            tokens.append(("str", m.group("dq")))
        else:
            tokens.append(("ident", m.group("ident")))
        pos = m.end()
    return tokens


# ---------------------------------------------------------------------
# Reference canonicalisation
# ---------------------------------------------------------------------

_SCALAR_ALIASES = {
    ("event",): ("event",),
    ("github", "event_name"): ("event",),
    ("ref",): ("ref",),
    ("github", "ref"): ("ref",),
    ("branch",): ("branch",),
    ("github", "ref_name"): ("branch",),
    ("base_branch",): ("base_branch",),
    ("github", "base_ref"): ("base_branch",),
    ("sha",): ("sha",),
    ("github", "sha"): ("sha",),
    ("repository",): ("repository",),
    ("github", "repository"): ("repository",),
    ("actor",): ("actor",),
    ("github", "actor"): ("actor",),
}


def _canonical_ref(dotted: str) -> Tuple[str, ...]:
    parts = tuple(dotted.split("."))
    if parts in _SCALAR_ALIASES:
        return _SCALAR_ALIASES[parts]
    if len(parts) == 2 and parts[0] in ("inputs", "matrix"):
        return parts
    if len(parts) == 4 and parts[:3] == ("github", "event", "inputs"):
        return ("inputs", parts[3])
    if len(parts) == 3 and parts[0] == "needs" and parts[2] == "result":
        return parts
    if len(parts) == 4 and parts[0] == "steps" and parts[2] == "outputs":
        return parts
    raise ConfigurationError(f"Unknown reference {dotted!r} in condition")


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def error(self, message: str) -> ConfigurationError:
        return ConfigurationError(f"Malformed condition {self.text!r}: {message}")

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise self.error("unexpected end of expression")
        self.pos += 1
        return tok

    def accept(self, value: str) -> bool:
        tok = self.peek()
        if tok is not None and tok[0] == "op" and tok[1] == value:
            self.pos += 1
            return True
        return False

    def expect(self, value: str) -> None:
        if not self.accept(value):
            raise self.error(f"expected {value!r}")

    def parse(self) -> Node:
        if not self.tokens:
            raise self.error("empty expression")
        node = self.or_expr()
        if self.peek() is not None:
            raise self.error(f"unexpected token {self.peek()[1]!r}")
        return node

    def or_expr(self) -> Node:
        items = [self.and_expr()]
        while self.accept("||"):
            items.append(self.and_expr())
        return items[0] if len(items) == 1 else Or(tuple(items))

    def and_expr(self) -> Node:
        items = [self.unary()]
        while self.accept("&&"):
            items.append(self.unary())
        return items[0] if len(items) == 1 else And(tuple(items))

    def unary(self) -> Node:
        if self.accept("!"):
            return Not(self.unary())
        return self.comparison()

    def comparison(self) -> Node:
        left = self.operand()
        for op in ("==", "!="):
            if self.accept(op):
                right = self.operand()
                node = _specialise(left, right)
                if node is None:
                    return Comparison(left, op, right)
                return node if op == "==" else Not(node)
        return left

    def operand(self) -> Node:
        kind, value = self.take()
        if kind == "op":
            if value == "(":
                node = self.or_expr()
                self.expect(")")
                return node
            raise self.error(f"unexpected {value!r}")
        if kind == "str":
            return Const(value)
        if value in ("true", "false"):
            return Const(value == "true")
        if self.accept("("):
            return self.call(value)
        return Ref(_canonical_ref(value))

    def call(self, name: str) -> Node:
        args: List[Node] = []
        if not self.accept(")"):
            args.append(self.or_expr())
            while self.accept(","):
                args.append(self.or_expr())
            self.expect(")")

        if name in STATUS_FUNCTIONS:
            if args:
                raise self.error(f"{name}() takes no arguments")
            return StatusCheck(name)
        if name in ("branch", "event"):
            if len(args) != 1 or not isinstance(args[0], Const) or not isinstance(args[0].value, str):
                raise self.error(f"{name}() takes a single string literal")
            if name == "branch":
                return BranchMatch(args[0].value, "branch", glob=True)
            return EventMatch(args[0].value)
        if name in VALUE_FUNCTIONS:
            if len(args) != 2:
                raise self.error(f"{name}() takes two arguments")
            return Call(name, tuple(args))
        raise self.error(f"unknown function {name}()")


def _specialise(left: Node, right: Node) -> Optional[Node]:
    """Turn `ref == 'literal'` comparisons into the typed match nodes."""
    if isinstance(right, Ref) and isinstance(left, Const):
        left, right = right, left
    if not (isinstance(left, Ref) and isinstance(right, Const) and isinstance(right.value, str)):
        return None
    path = left.path
    if path == ("event",):
        return EventMatch(right.value)
    if path in (("branch",), ("ref",), ("base_branch",)):
        return BranchMatch(right.value, path[0], glob=False)
    if path[0] == "needs":
        return JobStatusRef(path[1], right.value)
    return None


@lru_cache(maxsize=512)
def _parse_cached(text: str) -> Node:
    m = _WRAPPER_RE.match(text)
    if m:
        text = m.group(1)
    return _Parser(text).parse()


def parse(text: str) -> Node:
    """Parse a condition string. Raises ConfigurationError when malformed."""
    if not isinstance(text, str):
        raise ConfigurationError(f"Condition must be a string, got {type(text).__name__}")
    return _parse_cached(text)


# ---------------------------------------------------------------------
# Static analysis
# ---------------------------------------------------------------------

def walk(node: Node) -> Iterator[Node]:
    yield node
    if isinstance(node, (And, Or)):
        for item in node.items:
            yield from walk(item)
    elif isinstance(node, Not):
        yield from walk(node.item)
    elif isinstance(node, Comparison):
        yield from walk(node.left)
        yield from walk(node.right)
    elif isinstance(node, Call):
        for arg in node.args:
            yield from walk(arg)


def references_outcomes(node: Node) -> bool:
    """True when the condition looks at job outcomes (and must wait for them)."""
    for n in walk(node):
        if isinstance(n, (StatusCheck, JobStatusRef)):
            return True
        if isinstance(n, Ref) and n.path[0] == "needs":
            return True
    return False


def uses_status_functions(node: Node) -> bool:
    """True when the condition calls always() / success() / failure() / cancelled()."""
    return any(isinstance(n, StatusCheck) for n in walk(node))


def referenced_jobs(node: Node) -> Set[str]:
    out: Set[str] = set()
    for n in walk(node):
        if isinstance(n, JobStatusRef):
            out.add(n.job)
        elif isinstance(n, Ref) and n.path[0] == "needs":
            out.add(n.path[1])
    return out


def referenced_axes(node: Node) -> Set[str]:
    return {n.path[1] for n in walk(node) if isinstance(n, Ref) and n.path[0] == "matrix"}


def referenced_steps(node: Node) -> Set[str]:
    return {n.path[1] for n in walk(node) if isinstance(n, Ref) and n.path[0] == "steps"}


def validate(
    node: Node,
    *,
    owner: str,
    needs: Iterable[str],
    known_jobs: Iterable[str],
    axes: Iterable[str],
    steps: Iterable[str] = (),
) -> None:
    """Raise ConfigurationError for references that can never resolve."""
    needs = set(needs)
    known = set(known_jobs)
    problems = []
    for job in sorted(referenced_jobs(node)):
        if job not in known:
            problems.append(f"condition of '{owner}' references unknown job '{job}'")
        elif job not in needs:
            problems.append(f"condition of '{owner}' references job '{job}' which is not in its needs")
    for ax in sorted(referenced_axes(node) - set(axes)):
        problems.append(f"condition of '{owner}' references undeclared matrix axis '{ax}'")
    for step_id in sorted(referenced_steps(node) - set(steps)):
        problems.append(f"condition of '{owner}' references step '{step_id}' which is not an earlier step of its job")
    for n in walk(node):
        if isinstance(n, JobStatusRef) and n.status not in (SUCCESS, FAILURE, CANCELLED, "skipped"):
            problems.append(f"condition of '{owner}' compares needs.{n.job}.result with unknown status {n.status!r}")
    if problems:
        raise ConfigurationError("Invalid condition", problems=problems)


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Scope:
    context: RunContext
    matrix: Mapping[str, str]
    needs: Mapping[str, str]
    cancelled: bool = False
    # outputs of earlier steps of the same job instance, keyed by step id
    steps: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    def resolve(self, ref: Ref) -> str:
        path = ref.path
        head = path[0]
        if head == "inputs":
            return self.context.inputs.get(path[1], "")
        if head == "matrix":
            return self.matrix.get(path[1], "")
        if head == "needs":
            return self.needs.get(path[1], "")
        if head == "steps":
            return self.steps.get(path[1], {}).get(path[3], "")
        value = getattr(self.context, head)
        return value if value is not None else ""


def _value(node: Node, scope: Scope):
    if isinstance(node, Const):
        return node.value
    if isinstance(node, Ref):
        return scope.resolve(node)
    return _eval(node, scope)


def _eval(node: Node, scope: Scope) -> bool:
    if isinstance(node, And):
        return all(_eval(i, scope) for i in node.items)
    if isinstance(node, Or):
        return any(_eval(i, scope) for i in node.items)
    if isinstance(node, Not):
        return not _eval(node.item, scope)
    if isinstance(node, Const):
        return bool(node.value)
    if isinstance(node, Ref):
        return bool(scope.resolve(node))
    if isinstance(node, Comparison):
        equal = _value(node.left, scope) == _value(node.right, scope)
        return equal if node.op == "==" else not equal
    if isinstance(node, EventMatch):
        return scope.context.event == node.kind
    if isinstance(node, BranchMatch):
        actual = getattr(scope.context, node.field) or ""
        if node.glob:
            return fnmatch(actual, node.pattern)
        return actual == node.pattern
    if isinstance(node, JobStatusRef):
        return scope.needs.get(node.job) == node.status
    if isinstance(node, StatusCheck):
        return _status_check(node.name, scope)
    if isinstance(node, Call):
        a, b = (str(_value(arg, scope)) for arg in node.args)
        if node.name == "startsWith":
            return a.startswith(b)
        if node.name == "endsWith":
            return a.endswith(b)
        return b in a
    raise TypeError(f"Unknown condition node: {node!r}")


def _status_check(name: str, scope: Scope) -> bool:
    if name == "always":
        return True
    if name == "cancelled":
        return scope.cancelled
    outcomes = list(scope.needs.values())
    if name == "failure":
        return FAILURE in outcomes
    # success(): every dependency succeeded and the run is still live
    return not scope.cancelled and all(o == SUCCESS for o in outcomes)


def evaluate(
    condition: Union[str, Node, None],
    context: RunContext,
    *,
    matrix: Optional[Mapping[str, str]] = None,
    needs: Optional[Mapping[str, str]] = None,
    cancelled: bool = False,
    steps: Optional[Mapping[str, Mapping[str, str]]] = None,
) -> bool:
    """
    Evaluate a condition against a run context.

    `needs` maps dependency job names to their aggregated outcome. A missing
    condition is true.
    """
    if condition is None:
        return True
    node = parse(condition) if isinstance(condition, str) else condition
    return _eval(node, Scope(context, matrix or {}, needs or {}, cancelled, steps or {}))


# ---------------------------------------------------------------------
# Template rendering for step commands / action parameters
# ---------------------------------------------------------------------

_TEMPLATE_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")


def template_refs(template: str) -> List[Ref]:
    """All references used in `${{ ... }}` placeholders (validates them)."""
    refs = []
    for m in _TEMPLATE_RE.finditer(template):
        node = parse(m.group(1))
        if not isinstance(node, Ref):
            raise ConfigurationError(f"Only plain references may be interpolated, got {m.group(0)!r}")
        refs.append(node)
    return refs


def render(template: str, scope: Scope) -> str:
    def _sub(m: "re.Match[str]") -> str:
        node = parse(m.group(1))
        if not isinstance(node, Ref):
            raise ConfigurationError(f"Only plain references may be interpolated, got {m.group(0)!r}")
        return str(scope.resolve(node))

    return _TEMPLATE_RE.sub(_sub, template)
