#!/usr/bin/env python3
"""
Guardlint - Guard verification for risky calls in Python

High-level goals:
- Parse Python (via the ast module) into a read-only syntax view with parent links
- Load declarative rules from YAML (operation matcher + guard spec + fix shape)
- For every call a rule matches, decide whether a guard (if, early return,
  conditional expression, wrapper) makes the call safe
- Emit structured JSON diagnostics for CI / IDEs and synthesize guard-inserting fixes

The engine approximates dominance by lexical containment: one recognized guard
on the ancestor chain of a call is enough. Anything it does not recognize is
reported, so a guarded-but-unusual call shows up as a false positive rather than
a real defect slipping through.
"""

from __future__ import annotations
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple
import argparse
import ast
import json
import os
import re
import sys

import yaml

__version__ = "0.1.0"


# ============================================================
# ===================== ERROR TYPES ==========================
# ============================================================

class GuardlintError(Exception):
    """Base class for errors raised by guardlint."""


class RuleDefinitionError(GuardlintError, ValueError):
    """Raised when a rule declaration is incomplete or inconsistent."""


class EditConflictError(GuardlintError):
    """Raised when overlapping edits are applied to the same source text."""


def _warn(message: str) -> None:
    sys.stderr.write(f"[guardlint] {message}\n")


# ============================================================
# =============== SOURCE RANGES & SYNTAX NODES ===============
# ============================================================

@dataclass(frozen=True)
class SourceRange:
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length

    def contains(self, other: "SourceRange") -> bool:
        return self.offset <= other.offset and other.end <= self.end

    def intersects(self, other: "SourceRange") -> bool:
        return self.offset < other.end and other.offset < self.end


FUNCTION_KINDS = frozenset({"FunctionDef", "AsyncFunctionDef", "Lambda"})


@dataclass(eq=False)
class SyntaxNode:
    """
    Read-only view of one node of a parsed file.

    Identity is (kind, offset, length). ``parent`` is a back-reference used for
    upward search only. ``role`` is the field of the parent the node sits in
    (``test``, ``body``, ``args`` ...) and ``index`` its position when that
    field is a list. Operators and scalar fields live in ``attrs``.
    """
    kind: str
    offset: int
    length: int
    role: str = ""
    index: Optional[int] = None
    attrs: Dict[str, Any] = field(default_factory=dict)
    static_type: Optional[str] = None
    parent: Optional["SyntaxNode"] = field(default=None, repr=False)
    children: List["SyntaxNode"] = field(default_factory=list, repr=False)

    @property
    def end(self) -> int:
        return self.offset + self.length

    @property
    def range(self) -> SourceRange:
        return SourceRange(self.offset, self.length)

    @property
    def key(self) -> Tuple[str, int, int]:
        return (self.kind, self.offset, self.length)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SyntaxNode):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def child(self, role: str) -> Optional["SyntaxNode"]:
        for node in self.children:
            if node.role == role:
                return node
        return None

    def children_in(self, role: str) -> List["SyntaxNode"]:
        return [node for node in self.children if node.role == role]

    def ancestors(self) -> Iterator["SyntaxNode"]:
        current = self.parent
        while current is not None:
            yield current
            current = current.parent

    def walk(self) -> Iterator["SyntaxNode"]:
        """Pre-order traversal in document order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def contains(self, other: "SyntaxNode") -> bool:
        return self.offset <= other.offset and other.end <= self.end


def _compute_line_starts(source: str) -> List[int]:
    # ast counts \r\n, \r and \n as line breaks; str.splitlines knows more.
    return [0] + [match.end() for match in re.finditer(r"\r\n|\r|\n", source)]


@dataclass
class SyntaxTree:
    path: str
    source: str
    root: SyntaxNode
    line_starts: List[int] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        if not self.line_starts:
            self.line_starts = _compute_line_starts(self.source)

    @property
    def newline(self) -> str:
        return "\r\n" if "\r\n" in self.source else "\n"

    def walk(self) -> Iterator[SyntaxNode]:
        return self.root.walk()

    def text(self, node: SyntaxNode) -> str:
        return self.source[node.offset:node.end]

    def line_start(self, offset: int) -> int:
        return self.line_starts[bisect_right(self.line_starts, offset) - 1]

    def line_end(self, offset: int) -> int:
        position = bisect_right(self.line_starts, offset)
        if position >= len(self.line_starts):
            return len(self.source)
        end = self.line_starts[position]
        while end > offset and self.source[end - 1] in "\r\n":
            end -= 1
        return end

    def line_prefix(self, offset: int) -> str:
        return self.source[self.line_start(offset):offset]

    def position(self, offset: int) -> Tuple[int, int]:
        """1-based (line, column) of a character offset."""
        line_index = bisect_right(self.line_starts, offset) - 1
        return line_index + 1, offset - self.line_starts[line_index] + 1

    def find(self, offset: int, length: int, kind: Optional[str] = None) -> Optional[SyntaxNode]:
        """Deepest node with exactly this range (and kind, when given)."""
        target_end = offset + length
        found: Optional[SyntaxNode] = None
        node: Optional[SyntaxNode] = self.root
        while node is not None:
            if node.offset == offset and node.length == length and (kind is None or node.kind == kind):
                found = node
            next_node = None
            for child in node.children:
                if child.offset <= offset and target_end <= child.end:
                    next_node = child
                    break
            node = next_node
        return found


# ============================================================
# ==================== PYTHON FRONTEND =======================
# ============================================================

_SCALAR_AST_TYPES = (ast.expr_context, ast.boolop, ast.operator, ast.unaryop, ast.cmpop)


class _AstConverter:
    """
    Converts an ``ast`` tree into SyntaxNodes with character offsets.
    ``ast`` reports columns as UTF-8 byte offsets, so non-ASCII lines are
    re-measured.
    """

    def __init__(self, source: str) -> None:
        self.source = source
        self.line_starts = _compute_line_starts(source)

    def convert(self, root: ast.AST, role: str = "", index: Optional[int] = None) -> Optional[SyntaxNode]:
        # Iterative: long operator chains nest deeper than the recursion limit.
        # entries: (ast node, role, index, push order, parent entry position)
        entries: List[Tuple[ast.AST, str, Optional[int], int, int]] = []
        stack: List[Tuple[ast.AST, str, Optional[int], int, int]] = [(root, role, index, 0, -1)]
        pushed = 1
        while stack:
            entry = stack.pop()
            position = len(entries)
            entries.append(entry)
            pending = []
            for name, value in ast.iter_fields(entry[0]):
                if isinstance(value, list):
                    for item_index, item in enumerate(value):
                        if isinstance(item, ast.AST) and not isinstance(item, _SCALAR_AST_TYPES):
                            pending.append((item, name, item_index, pushed + len(pending), position))
                elif isinstance(value, ast.AST) and not isinstance(value, _SCALAR_AST_TYPES):
                    pending.append((value, name, None, pushed + len(pending), position))
            pushed += len(pending)
            stack.extend(reversed(pending))

        # Children always come after their parent, so a reverse pass builds them first.
        children_of: Dict[int, List[Tuple[int, SyntaxNode]]] = {}
        converted: Optional[SyntaxNode] = None
        for position in range(len(entries) - 1, -1, -1):
            node, node_role, node_index, order, parent_position = entries[position]
            children = [child for _, child in sorted(children_of.pop(position, []), key=lambda pair: pair[0])]
            syntax = self._build(node, node_role, node_index, children)
            if syntax is None:
                continue
            if parent_position < 0:
                converted = syntax
            else:
                children_of.setdefault(parent_position, []).append((order, syntax))
        return converted

    def _build(
        self,
        node: ast.AST,
        role: str,
        index: Optional[int],
        children: List[SyntaxNode],
    ) -> Optional[SyntaxNode]:
        attrs: Dict[str, Any] = {}
        for name, value in ast.iter_fields(node):
            if isinstance(value, list):
                operators = [type(item).__name__ for item in value if isinstance(item, _SCALAR_AST_TYPES)]
                if operators:
                    attrs[name] = operators
                elif value and not any(isinstance(item, ast.AST) for item in value):
                    attrs[name] = list(value)  # Global/Nonlocal names
            elif isinstance(value, _SCALAR_AST_TYPES):
                attrs[name] = type(value).__name__
            elif not isinstance(value, ast.AST):
                attrs[name] = value

        if isinstance(node, (ast.Module, ast.Interactive, ast.Expression)):
            start, end = 0, len(self.source)
        elif getattr(node, "lineno", None) is not None and getattr(node, "end_lineno", None) is not None:
            start = self._offset(node.lineno, node.col_offset)
            end = self._offset(node.end_lineno, node.end_col_offset)
        elif children:
            start = min(child.offset for child in children)
            end = max(child.end for child in children)
        else:
            return None

        # Decorators sit before the ``def`` line.
        decorators = [child.offset for child in children if child.role == "decorator_list"]
        if decorators:
            start = min(start, min(decorators))

        children.sort(key=lambda child: child.offset)
        syntax = SyntaxNode(
            kind=type(node).__name__,
            offset=start,
            length=end - start,
            role=role,
            index=index,
            attrs=attrs,
        )
        for child in children:
            child.parent = syntax
        syntax.children = children
        return syntax

    def _offset(self, lineno: int, col_offset: int) -> int:
        if lineno - 1 >= len(self.line_starts):
            return len(self.source)
        line_start = self.line_starts[lineno - 1]
        line_end = self.line_starts[lineno] if lineno < len(self.line_starts) else len(self.source)
        line = self.source[line_start:line_end]
        if line.isascii():
            return line_start + col_offset
        encoded = line.encode("utf-8")
        return line_start + len(encoded[:col_offset].decode("utf-8", errors="ignore"))


def parse_source(source: str, path: str = "<string>") -> SyntaxTree:
    """
    Parse Python source into a SyntaxTree and resolve the static types the
    receiver predicates rely on. Raises SyntaxError for invalid source.
    """
    module = ast.parse(source, filename=path)
    root = _AstConverter(source).convert(module)
    assert root is not None
    tree = SyntaxTree(path=path, source=source, root=root)
    resolve_static_types(tree)
    return tree


def parse_file(path: str) -> SyntaxTree:
    with open(path, "r", encoding="utf-8", newline="") as handle:
        source = handle.read()
    return parse_source(source, path)


# ============================================================
# ===================== STATIC TYPES =========================
# ============================================================

def _normalized_text(tree: SyntaxTree, node: SyntaxNode) -> str:
    return " ".join(tree.text(node).split())


def _annotation_text(tree: SyntaxTree, node: SyntaxNode) -> str:
    # String annotations ("Box[int]") are forward references.
    if node.kind == "Constant" and isinstance(node.attrs.get("value"), str):
        return " ".join(node.attrs["value"].split())
    return _normalized_text(tree, node)


def _constructor_type(tree: SyntaxTree, value: Optional[SyntaxNode]) -> Optional[str]:
    """``Box(...)`` / ``hive.Box(...)`` -> the constructor text; anything else -> None."""
    if value is None or value.kind != "Call":
        return None
    func = value.child("func")
    if func is None:
        return None
    name = callee_name(value)
    if name and name[:1].isupper():
        return _normalized_text(tree, func)
    return None


def _scope_nodes(scope: SyntaxNode) -> Iterator[SyntaxNode]:
    """Nodes of a scope, yielding nested functions and classes without entering them."""
    stack = list(reversed(scope.children))
    while stack:
        node = stack.pop()
        yield node
        if node.kind in FUNCTION_KINDS or node.kind == "ClassDef":
            continue
        stack.extend(reversed(node.children))


def _first_parameter(function: SyntaxNode) -> Optional[str]:
    arguments = function.child("args")
    if arguments is None:
        return None
    params = sorted(
        arguments.children_in("posonlyargs") + arguments.children_in("args"),
        key=lambda param: param.offset,
    )
    if not params:
        return None
    return params[0].attrs.get("arg")


class _TypeResolver:
    """
    Flow-insensitive, per-scope type resolution. Sources of truth, strongest
    first: annotations (parameters, annotated assignments), then constructor
    assignments ``name = Ctor(...)``. ``self.attr`` loads are resolved from the
    enclosing class (class-level annotations and assignments in its methods).
    """

    def __init__(self, tree: SyntaxTree) -> None:
        self.tree = tree
        self.scopes: Dict[SyntaxNode, Dict[str, str]] = {}
        self.class_attributes: Dict[SyntaxNode, Dict[str, str]] = {}

    def run(self) -> None:
        for node in self.tree.walk():
            if node.kind == "Module" or node.kind in FUNCTION_KINDS:
                self.scopes[node] = self._collect_bindings(node)
            elif node.kind == "ClassDef":
                self.class_attributes[node] = self._collect_class_attributes(node)

        for node in self.tree.walk():
            if node.kind == "Name":
                node.static_type = self._lookup_name(node)
            elif node.kind == "Attribute":
                node.static_type = self._lookup_attribute(node)

    def _collect_bindings(self, scope: SyntaxNode) -> Dict[str, str]:
        annotated: Dict[str, str] = {}
        inferred: Dict[str, str] = {}
        for node in _scope_nodes(scope):
            if node.kind == "arg":
                annotation = node.child("annotation")
                if annotation is not None and node.attrs.get("arg"):
                    annotated.setdefault(node.attrs["arg"], _annotation_text(self.tree, annotation))
            elif node.kind == "AnnAssign":
                target = node.child("target")
                annotation = node.child("annotation")
                if target is not None and target.kind == "Name" and annotation is not None:
                    annotated.setdefault(target.attrs["id"], _annotation_text(self.tree, annotation))
            elif node.kind == "Assign":
                targets = node.children_in("targets")
                if len(targets) == 1 and targets[0].kind == "Name":
                    ctor = _constructor_type(self.tree, node.child("value"))
                    if ctor:
                        inferred.setdefault(targets[0].attrs["id"], ctor)
        inferred.update(annotated)
        return inferred

    def _collect_class_attributes(self, cls: SyntaxNode) -> Dict[str, str]:
        annotated: Dict[str, str] = {}
        inferred: Dict[str, str] = {}
        for statement in cls.children_in("body"):
            if statement.kind == "AnnAssign":
                target = statement.child("target")
                annotation = statement.child("annotation")
                if target is not None and target.kind == "Name" and annotation is not None:
                    annotated.setdefault(target.attrs["id"], _annotation_text(self.tree, annotation))
                continue
            if statement.kind not in ("FunctionDef", "AsyncFunctionDef"):
                continue
            self_name = _first_parameter(statement)
            if not self_name:
                continue
            for node in _scope_nodes(statement):
                if node.kind == "AnnAssign":
                    target = node.child("target")
                    annotation = node.child("annotation")
                    if _is_self_attribute(target, self_name) and annotation is not None:
                        annotated.setdefault(target.attrs["attr"], _annotation_text(self.tree, annotation))
                elif node.kind == "Assign":
                    targets = node.children_in("targets")
                    if len(targets) == 1 and _is_self_attribute(targets[0], self_name):
                        ctor = _constructor_type(self.tree, node.child("value"))
                        if ctor:
                            inferred.setdefault(targets[0].attrs["attr"], ctor)
        inferred.update(annotated)
        return inferred

    def _lookup_name(self, node: SyntaxNode) -> Optional[str]:
        name = node.attrs.get("id")
        for ancestor in node.ancestors():
            bindings = self.scopes.get(ancestor)
            if bindings is not None and name in bindings:
                return bindings[name]
        return None

    def _lookup_attribute(self, node: SyntaxNode) -> Optional[str]:
        value = node.child("value")
        if value is None or value.kind != "Name":
            return None
        name = value.attrs.get("id")
        for ancestor in node.ancestors():
            if ancestor.kind not in FUNCTION_KINDS:
                continue
            owner = ancestor.parent
            if ancestor.kind != "Lambda" and owner is not None and owner.kind == "ClassDef":
                if _first_parameter(ancestor) != name:
                    return None
                return self.class_attributes.get(owner, {}).get(node.attrs.get("attr"))
            # Closures inside a method see its ``self`` unless they rebind it.
            if _binds_name(ancestor, name):
                return None
        return None


def _binds_name(function: SyntaxNode, name: Optional[str]) -> bool:
    for node in _scope_nodes(function):
        if node.kind == "arg" and node.attrs.get("arg") == name:
            return True
        if node.kind == "Name" and node.attrs.get("ctx") == "Store" and node.attrs.get("id") == name:
            return True
    return False


def _is_self_attribute(node: Optional[SyntaxNode], self_name: str) -> bool:
    if node is None or node.kind != "Attribute":
        return False
    value = node.child("value")
    return value is not None and value.kind == "Name" and value.attrs.get("id") == self_name


def resolve_static_types(tree: SyntaxTree) -> None:
    _TypeResolver(tree).run()


# ============================================================
# ==================== SYNTAX HELPERS ========================
# ============================================================

def callee_name(call: SyntaxNode) -> Optional[str]:
    """Last segment of the callee: ``emit`` for ``self.emit(x)``, ``Text`` for ``ft.Text(...)``."""
    func = call.child("func")
    if func is None:
        return None
    if func.kind == "Name":
        return func.attrs.get("id")
    if func.kind == "Attribute":
        return func.attrs.get("attr")
    return None


def call_receiver(call: SyntaxNode) -> Optional[SyntaxNode]:
    func = call.child("func")
    if func is not None and func.kind == "Attribute":
        return func.child("value")
    return None


_ATOMIC_KINDS = frozenset({
    "Name", "Attribute", "Subscript", "Call", "Constant",
    "List", "Dict", "Set", "ListComp", "SetComp", "DictComp",
})


def canonical_text(tree: SyntaxTree, node: SyntaxNode) -> str:
    """
    Dotted path for names and attribute chains, whitespace-collapsed source
    otherwise. Compound expressions come back parenthesized so the text can
    take an attribute suffix: ``(a or b)`` + ``.is_closed``.
    """
    if node.kind == "Name":
        return str(node.attrs.get("id"))
    if node.kind == "Attribute":
        value = node.child("value")
        if value is not None and value.kind in ("Name", "Attribute"):
            return f"{canonical_text(tree, value)}.{node.attrs.get('attr')}"
    text = _normalized_text(tree, node)
    if node.kind in _ATOMIC_KINDS:
        return text
    return f"({text})"


def enclosing_function(node: SyntaxNode) -> Optional[SyntaxNode]:
    for ancestor in node.ancestors():
        if ancestor.kind in FUNCTION_KINDS:
            return ancestor
    return None


def enclosing_async_function(node: SyntaxNode) -> Optional[SyntaxNode]:
    # Synchronous closures inside a coroutine still run after its awaits.
    for ancestor in node.ancestors():
        if ancestor.kind == "AsyncFunctionDef":
            return ancestor
    return None


# ============================================================
# ======================= RULE MODELS ========================
# ============================================================

GUARD_DIRECT_IF = "DirectIf"
GUARD_EARLY_RETURN = "EarlyReturn"
GUARD_CONDITIONAL = "Conditional"
GUARD_NESTED_CALLBACK = "NestedCallback"
GUARD_WRAPPER = "Wrapper"

FORM_POSITIVE = "positive"
FORM_NEGATIVE = "negative"

APPLICABILITY_KINDS = ("always", "async_function", "after_suspension", "container_element")
RECEIVER_POLICIES = ("any", "required", "absent")

DEFAULT_COMBINATORS: Tuple[str, ...] = (
    "add_done_callback",
    "then",
    "when_complete",
    "catch_error",
    "on_error",
    "call_soon",
    "call_soon_threadsafe",
    "call_later",
    "call_at",
)


@dataclass(frozen=True)
class Applicability:
    """
    Context a matched call must sit in before the guard is even checked.

    - always: no constraint
    - async_function: inside an ``async def``
    - after_suspension: after at least one suspension point of the nearest ``async def``
    - container_element: the call is an element (possibly through ``passthrough``
      keyword slots and conditional branches) of a ``slots`` list of one of the
      ``containers`` constructors
    """
    kind: str = "always"
    containers: Tuple[str, ...] = ()
    slots: Tuple[str, ...] = ("children",)
    passthrough: Tuple[str, ...] = ("child",)

    def __post_init__(self) -> None:
        if self.kind not in APPLICABILITY_KINDS:
            raise RuleDefinitionError(
                f"unknown applicability '{self.kind}' (expected one of {list(APPLICABILITY_KINDS)})"
            )
        if self.kind == "container_element" and not self.containers:
            raise RuleDefinitionError("container_element applicability needs at least one container")


@dataclass(frozen=True)
class OperationMatcher:
    operations: Tuple[str, ...]
    receiver: str = "any"  # "any" | "required" | "absent"
    receiver_type: Optional[str] = None  # regex searched in the receiver's static type
    applicability: Applicability = field(default_factory=Applicability)

    def __post_init__(self) -> None:
        if not self.operations:
            raise RuleDefinitionError("operation matcher needs at least one operation name")
        if self.receiver not in RECEIVER_POLICIES:
            raise RuleDefinitionError(
                f"unknown receiver policy '{self.receiver}' (expected one of {list(RECEIVER_POLICIES)})"
            )
        if self.receiver_type is not None:
            try:
                re.compile(self.receiver_type)
            except re.error as exc:
                raise RuleDefinitionError(f"invalid receiver_type pattern {self.receiver_type!r}: {exc}") from exc


@dataclass(frozen=True)
class GuardSpec:
    """
    How a guard looks for one rule.

    ``subject`` is a template; ``{receiver}`` is replaced by the receiver of the
    matched call. Receiver-less calls use ``implicit_subject``. An empty subject
    means the predicates are bare names (``is_closed`` rather than ``x.is_closed``).
    ``affirm`` predicates are true when the call is safe, ``deny`` predicates
    when it is not. ``wrappers`` turns this into a wrapper guard: the call
    is safe when nested in a call to one of those constructors.
    """
    subject: Optional[str] = "{receiver}"
    implicit_subject: Optional[str] = None
    affirm: Tuple[str, ...] = ()
    deny: Tuple[str, ...] = ()
    invoke: bool = False
    wrappers: Tuple[str, ...] = ()
    combinators: Tuple[str, ...] = DEFAULT_COMBINATORS

    def __post_init__(self) -> None:
        if not (self.affirm or self.deny or self.wrappers):
            raise RuleDefinitionError("guard needs affirm/deny predicates or wrapper constructors")

    @property
    def is_wrapper(self) -> bool:
        return bool(self.wrappers)

    def subject_of(self, receiver: Optional[str]) -> Optional[str]:
        """Subject expression for a call, '' for bare predicates, None when undeterminable."""
        if not self.subject:
            return ""
        if "{receiver}" not in self.subject:
            return self.subject
        if receiver is None:
            return self.implicit_subject
        return self.subject.replace("{receiver}", receiver)

    def predicate_text(self, subject: str, name: str) -> str:
        text = f"{subject}.{name}" if subject else name
        return f"{text}()" if self.invoke else text

    def positive_form(self, subject: str) -> str:
        if self.affirm:
            return self.predicate_text(subject, self.affirm[0])
        if self.deny:
            return f"not {self.predicate_text(subject, self.deny[0])}"
        return ""

    def negative_form(self, subject: str) -> str:
        if self.deny:
            return self.predicate_text(subject, self.deny[0])
        if self.affirm:
            return f"not {self.predicate_text(subject, self.affirm[0])}"
        return ""


@dataclass(frozen=True)
class FixSpec:
    enabled: bool = True
    neutral: str = "None"  # value of the else branch for inline conditionals
    wrapper_slot: str = "child"  # keyword the leaf is passed under; "" passes it positionally
    replace_callee: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class Rule:
    """
    One lint rule as data: which calls are risky (matcher), what makes them
    safe (guard, optional) and how to rewrite them (fix).

    Rules without a guard report every applicable match.
    """
    id: str
    message: str
    matcher: OperationMatcher
    guard: Optional[GuardSpec] = None
    correction: str = ""
    severity: str = "warning"
    description: str = ""
    tags: Tuple[str, ...] = ()
    fix: FixSpec = field(default_factory=FixSpec)

    def __post_init__(self) -> None:
        if not self.id:
            raise RuleDefinitionError("rule id must not be empty")
        if not self.message:
            raise RuleDefinitionError(f"rule '{self.id}' has no message")


@dataclass(frozen=True)
class GuardMatch:
    kind: str
    scope: Optional[SyntaxNode]
    guard_node: SyntaxNode
    inner: Optional["GuardMatch"] = None


@dataclass(frozen=True)
class Diagnostic:
    rule_id: str
    severity: str
    location: SourceRange
    message: str
    correction: str = ""
    subject: Optional[str] = None
    path: str = "<string>"


@dataclass(frozen=True)
class Edit:
    offset: int
    length: int
    replacement: str

    @property
    def end(self) -> int:
        return self.offset + self.length

    @property
    def range(self) -> SourceRange:
        return SourceRange(self.offset, self.length)


@dataclass(frozen=True)
class Fix:
    rule_id: str
    message: str
    edits: Tuple[Edit, ...]


# ============================================================
# =================== CONDITION MATCHER ======================
# ============================================================

_NEGATION_WORD = re.compile(r"(?<![\w.])not\b")


class ConditionMatcher:
    """
    Decides whether a boolean expression asserts (positive form) or denies
    (negative form) a guard on a subject.

    positive: the condition being truthy implies the guard holds
    negative: the condition being falsy implies the guard holds

    Matching walks the expression shape: ``not``, ``and``/``or``, comparisons
    against ``True``/``False``, walrus, attribute predicates and zero-argument
    predicate calls. Only operands of any other shape fall back to a textual
    scan, which is anchored on the subject so ``self.box.is_open`` never counts
    for a subject ``box``.
    """

    _STRUCTURAL_KINDS = frozenset({"BoolOp", "UnaryOp", "Compare", "Attribute", "Name", "NamedExpr", "Constant"})

    def __init__(self, tree: SyntaxTree, guard: GuardSpec) -> None:
        self.tree = tree
        self.guard = guard
        self._reference_cache: Dict[str, re.Pattern[str]] = {}

    def matches(self, condition: SyntaxNode, subject: str, form: str) -> bool:
        if form == FORM_POSITIVE:
            return self._truthy_implies_guard(condition, subject)
        if form == FORM_NEGATIVE:
            return self._falsy_implies_guard(condition, subject)
        raise ValueError(f"unknown condition form {form!r}")

    def _truthy_implies_guard(self, node: SyntaxNode, subject: str) -> bool:
        polarity = self._polarity(node, subject)
        if polarity is not None:
            return polarity
        if node.kind == "BoolOp":
            operands = node.children_in("values")
            if node.attrs.get("op") == "And":
                return any(self._truthy_implies_guard(operand, subject) for operand in operands)
            return bool(operands) and all(self._truthy_implies_guard(operand, subject) for operand in operands)
        if node.kind == "UnaryOp" and node.attrs.get("op") == "Not":
            operand = node.child("operand")
            return operand is not None and self._falsy_implies_guard(operand, subject)
        if node.kind == "NamedExpr":
            value = node.child("value")
            return value is not None and self._truthy_implies_guard(value, subject)
        if node.kind in self._STRUCTURAL_KINDS:
            return False
        return self._textual_fallback(node, subject, FORM_POSITIVE)

    def _falsy_implies_guard(self, node: SyntaxNode, subject: str) -> bool:
        polarity = self._polarity(node, subject)
        if polarity is not None:
            return not polarity
        if node.kind == "BoolOp":
            operands = node.children_in("values")
            if node.attrs.get("op") == "Or":
                return any(self._falsy_implies_guard(operand, subject) for operand in operands)
            return bool(operands) and all(self._falsy_implies_guard(operand, subject) for operand in operands)
        if node.kind == "UnaryOp" and node.attrs.get("op") == "Not":
            operand = node.child("operand")
            return operand is not None and self._truthy_implies_guard(operand, subject)
        if node.kind == "NamedExpr":
            value = node.child("value")
            return value is not None and self._falsy_implies_guard(value, subject)
        if node.kind in self._STRUCTURAL_KINDS:
            return False
        return self._textual_fallback(node, subject, FORM_NEGATIVE)

    def _polarity(self, node: SyntaxNode, subject: str) -> Optional[bool]:
        """
        True when the node is truthy exactly when the guard holds, False when it
        is truthy exactly when the guard is violated, None for anything else.
        """
        if node.kind == "Compare":
            return self._compare_polarity(node, subject)
        name = self._predicate_name(node, subject)
        if name is None:
            return None
        if name in self.guard.affirm:
            return True
        if name in self.guard.deny:
            return False
        return None

    def _predicate_name(self, node: SyntaxNode, subject: str) -> Optional[str]:
        target: Optional[SyntaxNode] = node
        if node.kind == "Call":
            if node.children_in("args") or node.children_in("keywords"):
                return None
            target = node.child("func")
        if target is None:
            return None
        if target.kind == "Attribute":
            value = target.child("value")
            if subject and value is not None and canonical_text(self.tree, value) == subject:
                return target.attrs.get("attr")
            return None
        if target.kind == "Name" and not subject:
            return target.attrs.get("id")
        return None

    def _compare_polarity(self, node: SyntaxNode, subject: str) -> Optional[bool]:
        ops = node.attrs.get("ops") or []
        left = node.child("left")
        comparators = node.children_in("comparators")
        if len(ops) != 1 or len(comparators) != 1 or left is None:
            return None
        op = ops[0]
        if op not in ("Eq", "NotEq", "Is", "IsNot"):
            return None
        constant, other = comparators[0], left
        if not _is_bool_constant(constant):
            constant, other = left, comparators[0]
            if not _is_bool_constant(constant):
                return None
        inner = self._polarity(other, subject)
        if inner is None:
            return None
        expected = constant.attrs.get("value") is True
        if op in ("NotEq", "IsNot"):
            expected = not expected
        return inner if expected else not inner

    def _textual_fallback(self, node: SyntaxNode, subject: str, form: str) -> bool:
        text = " ".join(self._code_text(node).split())
        names = self._reference_pattern(subject).findall(text)
        referenced = [name for name in names if name in self.guard.affirm or name in self.guard.deny]
        if not referenced or _NEGATION_WORD.search(text):
            return False
        if form == FORM_POSITIVE:
            return all(name in self.guard.affirm for name in referenced)
        return all(name in self.guard.deny for name in referenced)

    def _code_text(self, node: SyntaxNode) -> str:
        """Source of ``node`` with string literals blanked out."""
        chars = list(self.tree.text(node))
        for inner in node.walk():
            if _is_string_literal(inner):
                start = max(inner.offset - node.offset, 0)
                end = min(inner.end - node.offset, len(chars))
                if start < end:
                    chars[start:end] = " " * (end - start)
        return "".join(chars)

    def _reference_pattern(self, subject: str) -> "re.Pattern[str]":
        pattern = self._reference_cache.get(subject)
        if pattern is None:
            if subject:
                pattern = re.compile(r"(?<![\w.])" + re.escape(subject) + r"\s*\.\s*(\w+)\b")
            else:
                pattern = re.compile(r"(?<![\w.])(\w+)\b")
            self._reference_cache[subject] = pattern
        return pattern


def _is_string_literal(node: SyntaxNode) -> bool:
    return node.kind == "JoinedStr" or (node.kind == "Constant" and isinstance(node.attrs.get("value"), (str, bytes)))


def _is_bool_constant(node: SyntaxNode) -> bool:
    return node.kind == "Constant" and isinstance(node.attrs.get("value"), bool)


# ============================================================
# ================= SUSPENSION-POINT SCANNER =================
# ============================================================

def _suspension_offset(node: SyntaxNode) -> Optional[int]:
    # A suspension happens once its operand has been evaluated, so the
    # position that matters is where that operand ends.
    if node.kind == "Await":
        return node.end
    if node.kind == "AsyncFor":
        iterable = node.child("iter")
        return iterable.end if iterable is not None else node.offset
    if node.kind == "AsyncWith":
        items = node.children_in("items")
        return max(item.end for item in items) if items else node.offset
    if node.kind == "comprehension" and node.attrs.get("is_async"):
        iterable = node.child("iter")
        return iterable.end if iterable is not None else node.offset
    return None


def suspension_points(function: SyntaxNode) -> List[int]:
    """
    Offsets of every suspension point of ``function`` in document order.
    Nested ``def``/``async def``/``lambda`` bodies have their own suspension
    scope and are not entered; comprehensions are, since their awaits suspend
    the enclosing coroutine.
    """
    points: List[int] = []
    stack = list(reversed(function.children))
    while stack:
        node = stack.pop()
        if node.kind in FUNCTION_KINDS:
            continue
        offset = _suspension_offset(node)
        if offset is not None:
            points.append(offset)
        stack.extend(reversed(node.children))
    return sorted(points)


def has_suspension_before(call: SyntaxNode) -> bool:
    function = enclosing_async_function(call)
    if function is None:
        return False
    return any(point <= call.offset for point in suspension_points(function))


# ============================================================
# =================== GUARD SEARCH ENGINE ====================
# ============================================================

_STATEMENT_LIST_ROLES = frozenset({"body", "orelse", "finalbody"})
_EXIT_KINDS = frozenset({"Return", "Raise", "Continue", "Break"})
_ELEMENT_PATH_KINDS = frozenset({"keyword", "Call", "IfExp", "Starred"})


class GuardSearch:
    """
    Ancestor-chain guard search for one tree and one guard spec.

    From the call site the search climbs toward the root and tries, at every
    ancestor, the DirectIf, EarlyReturn and Conditional idioms. It stops at
    the first enclosing function boundary: outer guards say nothing about a
    closure that may run later. A lambda handed to a continuation combinator
    gets its own scope and any guard found inside it is reported as a
    NestedCallback match.
    """

    def __init__(self, tree: SyntaxTree, guard: GuardSpec) -> None:
        self.tree = tree
        self.guard = guard
        self.conditions = ConditionMatcher(tree, guard)

    def find_guard(self, call: SyntaxNode, subject: str = "") -> Optional[GuardMatch]:
        if self.guard.is_wrapper:
            return self._find_wrapper(call)
        return self._search(call, subject, enclosing_function(call))

    def _search(self, call: SyntaxNode, subject: str, scope: Optional[SyntaxNode]) -> Optional[GuardMatch]:
        match = self._ascend(call, subject, scope)
        if match is None:
            return None
        if scope is not None and self.is_combinator_callback(scope):
            return GuardMatch(GUARD_NESTED_CALLBACK, scope, match.guard_node, inner=match)
        return match

    def _ascend(self, call: SyntaxNode, subject: str, scope: Optional[SyntaxNode]) -> Optional[GuardMatch]:
        child, current = call, call.parent
        while current is not None:
            match = self._match_ancestor(current, child, subject, scope)
            if match is not None:
                return match
            if scope is not None and current is scope:
                break
            child, current = current, current.parent
        return None

    def _match_ancestor(
        self,
        current: SyntaxNode,
        child: SyntaxNode,
        subject: str,
        scope: Optional[SyntaxNode],
    ) -> Optional[GuardMatch]:
        kind = current.kind
        role = child.role

        if kind in ("If", "While") and role in ("body", "orelse"):
            test = current.child("test")
            if test is not None:
                if role == "body" and self.conditions.matches(test, subject, FORM_POSITIVE):
                    return GuardMatch(GUARD_DIRECT_IF, scope, current)
                if role == "orelse" and kind == "If" and self.conditions.matches(test, subject, FORM_NEGATIVE):
                    return GuardMatch(GUARD_DIRECT_IF, scope, current)

        if kind == "IfExp" and role in ("body", "orelse"):
            test = current.child("test")
            form = FORM_POSITIVE if role == "body" else FORM_NEGATIVE
            if test is not None and self.conditions.matches(test, subject, form):
                return GuardMatch(GUARD_CONDITIONAL, scope, current)

        if kind == "BoolOp" and role == "values" and child.index is not None:
            # ``guard and call()`` / ``not_guard or call()`` short-circuit
            form = FORM_POSITIVE if current.attrs.get("op") == "And" else FORM_NEGATIVE
            for operand in current.children_in("values"):
                if operand.index is not None and operand.index < child.index:
                    if self.conditions.matches(operand, subject, form):
                        return GuardMatch(GUARD_CONDITIONAL, scope, current)

        if role in _STATEMENT_LIST_ROLES and child.index is not None:
            return self._early_exit(current, child, subject, scope)
        return None

    def _early_exit(
        self,
        block: SyntaxNode,
        child: SyntaxNode,
        subject: str,
        scope: Optional[SyntaxNode],
    ) -> Optional[GuardMatch]:
        for statement in block.children_in(child.role):
            if statement.index is None or statement.index >= child.index:
                break
            test = statement.child("test")
            if test is None:
                continue
            if statement.kind == "If":
                if self.conditions.matches(test, subject, FORM_NEGATIVE) and _exits(statement.children_in("body")):
                    return GuardMatch(GUARD_EARLY_RETURN, scope, statement)
            elif statement.kind == "Assert":
                if self.conditions.matches(test, subject, FORM_POSITIVE):
                    return GuardMatch(GUARD_EARLY_RETURN, scope, statement)
        return None

    def is_combinator_callback(self, function: SyntaxNode) -> bool:
        if function.kind != "Lambda":
            return False
        owner = function.parent
        if owner is not None and owner.kind == "keyword":
            owner = owner.parent
        if owner is None or owner.kind != "Call" or function.role == "func":
            return False
        return callee_name(owner) in self.guard.combinators

    def _find_wrapper(self, leaf: SyntaxNode) -> Optional[GuardMatch]:
        current = leaf.parent
        while current is not None and current.kind in _ELEMENT_PATH_KINDS:
            if current.kind == "Call" and callee_name(current) in self.guard.wrappers:
                return GuardMatch(GUARD_WRAPPER, current, current)
            current = current.parent
        return None


def _exits(statements: Sequence[SyntaxNode]) -> bool:
    return any(statement.kind in _EXIT_KINDS for statement in statements)


def find_guard(tree: SyntaxTree, call: SyntaxNode, guard: GuardSpec, subject: str = "") -> Optional[GuardMatch]:
    return GuardSearch(tree, guard).find_guard(call, subject)


# ============================================================
# ==================== RULE EVALUATION =======================
# ============================================================

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def _render_template(template: str, values: Dict[str, str]) -> str:
    def replace(match: "re.Match[str]") -> str:
        key = match.group(1).strip()
        return values[key] if key in values else match.group(0)

    return TEMPLATE_PATTERN.sub(replace, template)


def container_element_path(
    call: SyntaxNode,
    applicability: Applicability,
    leaves: Sequence[str] = (),
) -> Optional[SyntaxNode]:
    """
    The container call ``call`` is an element of, or None.

    The path from the leaf may pass through ``passthrough`` keyword slots of
    intermediate constructors (``Padding(child=Text(...))``), positional
    arguments of those constructors and both branches of conditional expressions.
    Arguments of another leaf (``Text(Text(...))``) are not elements.
    """
    child, current = call, call.parent
    while current is not None:
        if current.kind == "keyword":
            owner = current.parent
            if current.attrs.get("arg") in applicability.slots and child.kind in ("List", "Tuple"):
                if owner is not None and callee_name(owner) in applicability.containers:
                    return owner
                return None
            if current.attrs.get("arg") not in applicability.passthrough or owner is None:
                return None
            child, current = owner, owner.parent
        elif current.kind == "IfExp" and child.role in ("body", "orelse"):
            child, current = current, current.parent
        elif current.kind in ("List", "Tuple") and child.role == "elts":
            holder = current.parent
            if holder is not None and holder.kind == "Call" and current.role == "args":
                if callee_name(holder) in applicability.containers:
                    return holder
                return None
            child, current = current, holder
        elif current.kind == "Call" and child.role == "args":
            owner_name = callee_name(current)
            if owner_name in applicability.containers or owner_name in leaves:
                return None
            child, current = current, current.parent
        else:
            return None
    return None


def _applicable(call: SyntaxNode, matcher: OperationMatcher) -> bool:
    applicability = matcher.applicability
    kind = applicability.kind
    if kind == "always":
        return True
    if kind == "async_function":
        return enclosing_async_function(call) is not None
    if kind == "after_suspension":
        return has_suspension_before(call)
    if kind == "container_element":
        return container_element_path(call, applicability, matcher.operations) is not None
    return False


class RuleEvaluator:
    """
    Binds one rule to one tree. Every call is checked against the rule's
    matcher in document order; unguarded matches become diagnostics, at most
    one per offset.
    """

    def __init__(self, tree: SyntaxTree, rule: Rule) -> None:
        self.tree = tree
        self.rule = rule
        self.matcher = rule.matcher
        self._receiver_pattern = re.compile(rule.matcher.receiver_type) if rule.matcher.receiver_type else None
        self.search = GuardSearch(tree, rule.guard) if rule.guard is not None else None

    def run(self) -> List[Diagnostic]:
        diagnostics: List[Diagnostic] = []
        seen: Set[Tuple[str, int]] = set()
        for node in self.tree.walk():
            if node.kind != "Call":
                continue
            diagnostic = self.check(node)
            if diagnostic is None:
                continue
            key = (diagnostic.rule_id, diagnostic.location.offset)
            if key in seen:
                continue
            seen.add(key)
            diagnostics.append(diagnostic)
        return diagnostics

    def check(self, call: SyntaxNode) -> Optional[Diagnostic]:
        operation = callee_name(call)
        if operation is None or operation not in self.matcher.operations:
            return None
        receiver = call_receiver(call)
        if not self._receiver_allowed(receiver):
            return None
        if not _applicable(call, self.matcher):
            return None

        receiver_text = canonical_text(self.tree, receiver) if receiver is not None else None
        subject: Optional[str] = None
        guard = self.rule.guard
        if guard is not None and self.search is not None:
            if not guard.is_wrapper:
                subject = guard.subject_of(receiver_text)
                if subject is None:
                    return None
            if self.search.find_guard(call, subject or "") is not None:
                return None
        return self._diagnostic(call, operation, receiver_text, subject)

    def _receiver_allowed(self, receiver: Optional[SyntaxNode]) -> bool:
        policy = self.matcher.receiver
        if policy == "absent" and receiver is not None:
            return False
        if policy == "required" and receiver is None:
            return False
        if self._receiver_pattern is not None:
            # Unresolved receiver types are skipped, not reported.
            if receiver is None or not receiver.static_type:
                return False
            return self._receiver_pattern.search(receiver.static_type) is not None
        return True

    def _diagnostic(
        self,
        call: SyntaxNode,
        operation: str,
        receiver_text: Optional[str],
        subject: Optional[str],
    ) -> Diagnostic:
        guard = self.rule.guard
        guard_text = ""
        if guard is not None:
            guard_text = guard.wrappers[0] if guard.is_wrapper else guard.positive_form(subject or "")
        values = {
            "operation": operation,
            "receiver": receiver_text or "",
            "subject": subject or "",
            "guard": guard_text,
        }
        return Diagnostic(
            rule_id=self.rule.id,
            severity=self.rule.severity,
            location=call.range,
            message=_render_template(self.rule.message, values),
            correction=_render_template(self.rule.correction, values),
            subject=subject,
            path=self.tree.path,
        )


def evaluate(tree: SyntaxTree, rule: Rule) -> List[Diagnostic]:
    return RuleEvaluator(tree, rule).run()


# ============================================================
# ==================== FIX SYNTHESIS =========================
# ============================================================

class FixSynthesizer:
    """
    Turns a diagnostic back into a source edit. The shape depends on where the
    call sits:

    - alone on its line as an expression statement: ``if <guard>:`` block
    - as the body of a lambda: ``<call> if <guard> else <neutral>``
    - a leaf of the wrapper family: ``Wrapper(child=<leaf>)``, leaf range only
    - rules that replace the callee: the callee range only

    Contexts outside these shapes get no fix.
    """

    def __init__(self, tree: SyntaxTree, rule: Rule) -> None:
        self.tree = tree
        self.rule = rule

    def synthesize(self, diagnostic: Diagnostic) -> Optional[Fix]:
        if not self.rule.fix.enabled or diagnostic.rule_id != self.rule.id:
            return None
        call = self.tree.find(diagnostic.location.offset, diagnostic.location.length, kind="Call")
        if call is None:
            return None
        if self.rule.fix.replace_callee:
            return self._replace_callee(call)

        guard = self.rule.guard
        if guard is None:
            return None
        if guard.is_wrapper:
            return self._wrap_leaf(call, guard)
        if diagnostic.subject is None:
            return None
        receiver = call_receiver(call)
        if receiver is not None and _evaluates_twice(receiver):
            return None
        positive = guard.positive_form(diagnostic.subject)

        statement = _standalone_statement(call)
        if statement is not None:
            return self._block_guard(statement, positive)
        if call.role == "body" and call.parent is not None and call.parent.kind == "Lambda":
            return self._inline_conditional(call, positive)
        return None

    def _make_fix(self, default_message: str, edit: Edit) -> Fix:
        return Fix(rule_id=self.rule.id, message=self.rule.fix.message or default_message, edits=(edit,))

    def _block_guard(self, statement: SyntaxNode, positive: str) -> Optional[Fix]:
        prefix = self.tree.line_prefix(statement.offset)
        if prefix.strip():
            return None
        suffix = self.tree.source[statement.end:self.tree.line_end(statement.end)].strip()
        if suffix and not suffix.startswith("#"):
            return None
        if _has_multiline_string(self.tree, statement):
            return None

        newline = self.tree.newline
        unit = "\t" if prefix.startswith("\t") else "    "
        lines = re.split(r"\r\n|\r|\n", self.tree.text(statement))
        body = (newline + unit).join(lines)
        replacement = f"if {positive}:{newline}{prefix}{unit}{body}"
        return self._make_fix(f"Add 'if {positive}:' guard", Edit(statement.offset, statement.length, replacement))

    def _inline_conditional(self, call: SyntaxNode, positive: str) -> Fix:
        replacement = f"{self.tree.text(call)} if {positive} else {self.rule.fix.neutral}"
        return self._make_fix(f"Guard with '{positive}'", Edit(call.offset, call.length, replacement))

    def _wrap_leaf(self, call: SyntaxNode, guard: GuardSpec) -> Fix:
        func = call.child("func")
        qualifier = ""
        if func is not None and func.kind == "Attribute":
            value = func.child("value")
            if value is not None:
                qualifier = self.tree.text(value) + "."
        wrapper = f"{qualifier}{guard.wrappers[0]}"
        slot = self.rule.fix.wrapper_slot
        argument = f"{slot}={self.tree.text(call)}" if slot else self.tree.text(call)
        return self._make_fix(
            f"Wrap with {guard.wrappers[0]}",
            Edit(call.offset, call.length, f"{wrapper}({argument})"),
        )

    def _replace_callee(self, call: SyntaxNode) -> Optional[Fix]:
        func = call.child("func")
        replacement = self.rule.fix.replace_callee
        if func is None or not replacement:
            return None
        return self._make_fix(f"Replace with {replacement}", Edit(func.offset, func.length, replacement))


_ONE_SHOT_KINDS = frozenset({"Await", "NamedExpr", "Yield", "YieldFrom"})


def _evaluates_twice(receiver: SyntaxNode) -> bool:
    # The inserted guard repeats the receiver expression.
    return any(node.kind in _ONE_SHOT_KINDS for node in receiver.walk())


def _standalone_statement(call: SyntaxNode) -> Optional[SyntaxNode]:
    node = call
    if node.parent is not None and node.parent.kind == "Await" and node.role == "value":
        node = node.parent
    parent = node.parent
    if parent is not None and parent.kind == "Expr" and node.role == "value":
        return parent
    return None


def _has_multiline_string(tree: SyntaxTree, statement: SyntaxNode) -> bool:
    for node in statement.walk():
        if _is_string_literal(node):
            if "\n" in tree.text(node) or "\r" in tree.text(node):
                return True
    return False


def synthesize(diagnostic: Diagnostic, tree: SyntaxTree, rule: Rule) -> Optional[Fix]:
    return FixSynthesizer(tree, rule).synthesize(diagnostic)


def synthesize_all(diagnostics: Sequence[Diagnostic], tree: SyntaxTree, rules: Sequence[Rule]) -> List[Fix]:
    """Fixes for every diagnostic whose edits do not overlap an earlier accepted fix."""
    return GuardLinter(rules).fix_all(diagnostics, tree)


def apply_edits(source: str, edits: Sequence[Edit]) -> str:
    """Apply non-overlapping edits; raises EditConflictError on overlap."""
    ordered = sorted(edits, key=lambda edit: (edit.offset, edit.length))
    for previous, current in zip(ordered, ordered[1:]):
        if current.offset < previous.end:
            raise EditConflictError(
                f"edit at {current.offset} overlaps edit {previous.offset}..{previous.end}"
            )
    text = source
    for edit in reversed(ordered):
        text = text[:edit.offset] + edit.replacement + text[edit.end:]
    return text


# ============================================================
# ======================= LINTER =============================
# ============================================================

class GuardLinter:
    """
    Runs an ordered rule registry over syntax trees.

    A failure inside one rule is reported once per (file, rule) and does not
    stop the other rules.
    """

    def __init__(self, rules: Sequence[Rule]) -> None:
        self.rules: List[Rule] = list(rules)
        self._rules_by_id: Dict[str, Rule] = {rule.id: rule for rule in self.rules}
        self._failure_reported: Set[Tuple[str, str]] = set()

    def rule(self, rule_id: str) -> Optional[Rule]:
        return self._rules_by_id.get(rule_id)

    def analyze(self, tree: SyntaxTree) -> List[Diagnostic]:
        diagnostics: List[Diagnostic] = []
        for rule in self.rules:
            try:
                diagnostics.extend(evaluate(tree, rule))
            except Exception as exc:  # isolate the failing (file, rule) pair
                self._report_rule_failure(rule, tree, exc)
        diagnostics.sort(key=lambda diagnostic: diagnostic.location.offset)
        return diagnostics

    def analyze_path(self, path: str) -> Tuple[Optional[SyntaxTree], List[Diagnostic]]:
        try:
            tree = parse_file(path)
        except FileNotFoundError:
            _warn(f"Input file not found: {path}")
            return None, []
        except (OSError, UnicodeDecodeError) as exc:
            _warn(f"Could not read {path}: {exc}")
            return None, []
        except SyntaxError as exc:
            _warn(f"Could not parse '{path}': {exc}")
            return None, []
        except (RecursionError, ValueError) as exc:
            # too deeply nested for the parser, or null bytes in the source
            _warn(f"Could not analyze '{path}': {exc!r}")
            return None, []
        return tree, self.analyze(tree)

    def fix(self, diagnostic: Diagnostic, tree: SyntaxTree) -> Optional[Fix]:
        rule = self.rule(diagnostic.rule_id)
        if rule is None:
            return None
        try:
            return synthesize(diagnostic, tree, rule)
        except Exception as exc:  # a broken fix must not take the diagnostics down
            self._report_rule_failure(rule, tree, exc)
            return None

    def fix_all(self, diagnostics: Sequence[Diagnostic], tree: SyntaxTree) -> List[Fix]:
        """Fixes for ``diagnostics`` whose edits never overlap; later overlapping fixes are dropped."""
        fixes: List[Fix] = []
        taken: List[SourceRange] = []
        for diagnostic in sorted(diagnostics, key=lambda d: d.location.offset):
            fix = self.fix(diagnostic, tree)
            if fix is None:
                continue
            ranges = [edit.range for edit in fix.edits]
            if any(_overlaps(new, old) for new in ranges for old in taken):
                continue
            taken.extend(ranges)
            fixes.append(fix)
        return fixes

    def _report_rule_failure(self, rule: Rule, tree: SyntaxTree, exc: Exception) -> None:
        key = (rule.id, tree.path)
        if key in self._failure_reported:
            return
        _warn(f"Rule '{rule.id}' failed on {tree.path}: {exc!r}")
        self._failure_reported.add(key)


def _overlaps(first: SourceRange, second: SourceRange) -> bool:
    if first.length == 0 or second.length == 0:
        return first.offset == second.offset
    return first.intersects(second)


# ============================================================
# ==================== YAML RULE LOADING =====================
# ============================================================

def _to_str_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value if v is not None)
    return (str(value),)


def _applicability_from(raw: Any) -> Applicability:
    if raw is None:
        return Applicability()
    if isinstance(raw, str):
        return Applicability(kind=raw)
    if not isinstance(raw, dict):
        raise RuleDefinitionError(f"applicability must be a name or a mapping, got {type(raw).__name__}")
    defaults = Applicability()
    return Applicability(
        kind=str(raw.get("kind", "always")),
        containers=_to_str_tuple(raw.get("containers")),
        slots=_to_str_tuple(raw["slots"]) if "slots" in raw else defaults.slots,
        passthrough=_to_str_tuple(raw["passthrough"]) if "passthrough" in raw else defaults.passthrough,
    )


def _guard_from(raw: Any, combinators: Tuple[str, ...]) -> Optional[GuardSpec]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise RuleDefinitionError("guard must be a mapping")
    subject = raw.get("subject", "{receiver}")
    implicit = raw.get("implicit_subject")
    return GuardSpec(
        subject=None if subject is None else str(subject),
        implicit_subject=None if implicit is None else str(implicit),
        affirm=_to_str_tuple(raw.get("affirm")),
        deny=_to_str_tuple(raw.get("deny")),
        invoke=bool(raw.get("invoke", False)),
        wrappers=_to_str_tuple(raw.get("wrappers")),
        combinators=_to_str_tuple(raw["combinators"]) if "combinators" in raw else combinators,
    )


def _fix_from(raw: Any) -> FixSpec:
    if raw is None or raw is True:
        return FixSpec()
    if raw is False:
        return FixSpec(enabled=False)
    if not isinstance(raw, dict):
        raise RuleDefinitionError("fix must be a mapping or a boolean")
    return FixSpec(
        enabled=bool(raw.get("enabled", True)),
        neutral=str(raw.get("neutral", "None")),
        wrapper_slot=str(raw.get("wrapper_slot", "child") or ""),
        replace_callee=str(raw["replace_callee"]) if raw.get("replace_callee") else None,
        message=str(raw["message"]) if raw.get("message") else None,
    )


def rule_from_dict(raw: Dict[str, Any], *, combinators: Tuple[str, ...] = DEFAULT_COMBINATORS) -> Rule:
    """
    Build a Rule from its YAML mapping:

        id: check_box_is_open
        severity: warning
        message: "..."
        correction: "..."
        match:
          operations: [put, delete]
          receiver_type: "\\bBox\\b"
          applicability: always
        guard:
          subject: "{receiver}"
          affirm: [is_open]
          deny: [is_closed]
        fix:
          neutral: "None"
    """
    missing = [name for name in ("id", "message", "match") if raw.get(name) in (None, "")]
    if missing:
        raise RuleDefinitionError(f"missing required field(s) {missing}")
    match = raw["match"]
    if not isinstance(match, dict):
        raise RuleDefinitionError("match must be a mapping")

    matcher = OperationMatcher(
        operations=_to_str_tuple(match.get("operations", match.get("operation"))),
        receiver=str(match.get("receiver", "any")),
        receiver_type=str(match["receiver_type"]) if match.get("receiver_type") else None,
        applicability=_applicability_from(match.get("applicability")),
    )
    return Rule(
        id=str(raw["id"]),
        message=str(raw["message"]),
        matcher=matcher,
        guard=_guard_from(raw.get("guard"), combinators),
        correction=str(raw.get("correction", "")),
        severity=str(raw.get("severity", "warning")),
        description=str(raw.get("description", "")),
        tags=_to_str_tuple(raw.get("tags")),
        fix=_fix_from(raw.get("fix")),
    )


def _normalize_rule_docs(doc: Any) -> Tuple[List[Dict[str, Any]], Tuple[str, ...]]:
    if doc is None:
        return [], DEFAULT_COMBINATORS
    if isinstance(doc, list):
        return [item for item in doc if isinstance(item, dict)], DEFAULT_COMBINATORS
    if isinstance(doc, dict):
        combinators = _to_str_tuple(doc["combinators"]) if "combinators" in doc else DEFAULT_COMBINATORS
        if isinstance(doc.get("rules"), list):
            return [item for item in doc["rules"] if isinstance(item, dict)], combinators
        return [doc], combinators
    return [], DEFAULT_COMBINATORS


def load_rules_from_yaml(yaml_paths: Sequence[str]) -> List[Rule]:
    """
    Load Rule objects from YAML rule files. Unreadable files and malformed
    rules are reported on stderr and skipped so the remaining rules still run.
    """
    rules: List[Rule] = []
    seen_ids: Set[str] = set()
    for path in yaml_paths:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                documents = list(yaml.safe_load_all(handle))
        except FileNotFoundError:
            _warn(f"Rule file not found: {path}")
            continue
        except OSError as exc:
            _warn(f"Could not read rule file {path}: {exc}")
            continue
        except yaml.YAMLError as exc:
            _warn(f"Invalid YAML in rule file {path}: {exc}")
            continue

        for doc_index, doc in enumerate(documents):
            raw_rules, combinators = _normalize_rule_docs(doc)
            for raw_rule in raw_rules:
                origin = f"{path}#doc{doc_index + 1}"
                try:
                    rule = rule_from_dict(raw_rule, combinators=combinators)
                except RuleDefinitionError as exc:
                    _warn(f"Skipping rule from {origin}: {exc}.")
                    continue
                if rule.id in seen_ids:
                    _warn(f"Skipping duplicate rule '{rule.id}' from {origin}.")
                    continue
                seen_ids.add(rule.id)
                rules.append(rule)

    return rules


# ============================================================
# ==================== DIAGNOSTIC OUTPUT =====================
# ============================================================

def diagnostic_to_json_obj(diagnostic: Diagnostic, tree: Optional[SyntaxTree] = None) -> Dict[str, Any]:
    """
    Convert a Diagnostic into a JSON-friendly dict with a stable field order.
    Line/column spans are included when the tree is known.
    """
    location: Dict[str, Any] = {
        "file": diagnostic.path,
        "offset": diagnostic.location.offset,
        "length": diagnostic.location.length,
    }
    if tree is not None:
        line_start, col_start = tree.position(diagnostic.location.offset)
        line_end, col_end = tree.position(diagnostic.location.end)
        location.update(
            {"line_start": line_start, "col_start": col_start, "line_end": line_end, "col_end": col_end}
        )
    return {
        "rule_id": diagnostic.rule_id,
        "severity": diagnostic.severity,
        "message": diagnostic.message,
        "correction": diagnostic.correction,
        "location": location,
        "tool": "guardlint",
        "version": __version__,
    }


def emit_diagnostics_json(
    results: Sequence[Tuple[Optional[SyntaxTree], Diagnostic]],
    out: Optional[str] = None,
) -> None:
    as_json = [diagnostic_to_json_obj(diagnostic, tree) for tree, diagnostic in results]
    text = json.dumps(as_json, indent=2, sort_keys=False)
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)


# ============================================================
# ============================ CLI ===========================
# ============================================================

def _rule_paths(cli_paths: Optional[Sequence[str]]) -> List[str]:
    """
    Rule files from --rules, falling back to the GUARDLINT_RULES environment
    variable (os.pathsep separated).
    """
    if cli_paths:
        return list(cli_paths)
    env_value = os.environ.get("GUARDLINT_RULES", "")
    return [path for path in env_value.split(os.pathsep) if path.strip()]


def _select_rules(rules: Sequence[Rule], disabled: Sequence[str]) -> List[Rule]:
    disabled_ids = set(disabled)
    unknown = disabled_ids - {rule.id for rule in rules}
    for rule_id in sorted(unknown):
        _warn(f"--disable names unknown rule '{rule_id}'.")
    return [rule for rule in rules if rule.id not in disabled_ids]


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--rules",
        action="append",
        metavar="RULE_FILE",
        help="YAML rule file (repeatable). Defaults to $GUARDLINT_RULES.",
        required=False,
    )
    parser.add_argument(
        "--disable",
        action="append",
        metavar="RULE_ID",
        default=[],
        help="Turn off a rule by id (repeatable).",
    )
    parser.add_argument(
        "files",
        nargs="+",
        help="Python source files to check."
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for guardlint.
    Intended usage:
      guardlint analyze --rules rules/default.yaml app/blocs.py app/storage.py
      guardlint fix --rules rules/default.yaml app/blocs.py
    """
    parser = argparse.ArgumentParser(
        prog="guardlint",
        description="Guardlint: guard verification for risky calls in Python"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_p = subparsers.add_parser(
        "analyze",
        help="Check source files and emit JSON diagnostics."
    )
    _add_common_arguments(analyze_p)
    analyze_p.add_argument(
        "--out",
        metavar="OUT_JSON",
        help="Write diagnostics to this JSON file instead of stdout.",
        required=False,
    )

    fix_p = subparsers.add_parser(
        "fix",
        help="Apply the synthesized guard fixes to source files."
    )
    _add_common_arguments(fix_p)
    fix_p.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the patched sources instead of writing them.",
    )

    args = parser.parse_args(argv)

    rule_paths = _rule_paths(args.rules)
    if not rule_paths:
        _warn("No rule files given (--rules or $GUARDLINT_RULES); nothing to check.")
    rules = _select_rules(load_rules_from_yaml(rule_paths), args.disable)
    linter = GuardLinter(rules)

    if args.command == "analyze":
        results: List[Tuple[Optional[SyntaxTree], Diagnostic]] = []
        for path in args.files:
            tree, diagnostics = linter.analyze_path(path)
            results.extend((tree, diagnostic) for diagnostic in diagnostics)
        emit_diagnostics_json(results, out=args.out)
        return 0

    if args.command == "fix":
        summary: List[Dict[str, Any]] = []
        for path in args.files:
            tree, diagnostics = linter.analyze_path(path)
            if tree is None:
                continue
            fixes = linter.fix_all(diagnostics, tree)
            patched = apply_edits(tree.source, [edit for fix in fixes for edit in fix.edits])
            if args.dry_run:
                sys.stdout.write(patched)
                continue
            if fixes:
                with open(path, "w", encoding="utf-8", newline="") as handle:
                    handle.write(patched)
            summary.append({"file": path, "diagnostics": len(diagnostics), "fixes": len(fixes)})
        if not args.dry_run:
            print(json.dumps(summary, indent=2))
        return 0

    # unreachable if parser is correct
    return 1


if __name__ == "__main__":
    sys.exit(main())
