"""Statement classification for REPL submissions.

A submission is parsed once into top-level statements, each classified into
one of four kinds:

- BINDING: assignments and imports that bind at least one name
  (``x = 1``, ``a, *rest = seq``, ``x += 1``, ``import json``,
  ``globals()["x"] = 1``).
- DECLARATION: ``def``, ``async def``, ``class`` and ``type`` aliases.
- CONTROL_FLOW: statements executed for effect only, including bare calls to
  the console surface (``console.log(...)``, ``clear()``, ``print(...)``) and
  type-only annotations (``x: int``).
- EXPRESSION: any other expression statement. Only a trailing expression
  produces a REPL result.

Names are collected per statement for the submission scope: nested function,
lambda, class and comprehension scopes are not entered, except for walrus
targets which bind in the enclosing scope.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass
from enum import Enum

from .constants import CLEAR_NAME, CONSOLE_NAME, PRINT_NAME

PARSE_FLAGS = ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT

_TYPE_ALIAS = getattr(ast, "TypeAlias", None)


class StatementKind(str, Enum):
    """Classification of a top-level statement."""

    BINDING = "binding"
    DECLARATION = "declaration"
    CONTROL_FLOW = "control_flow"
    EXPRESSION = "expression"


@dataclass(frozen=True)
class Statement:
    """A classified top-level statement of one submission."""

    kind: StatementKind
    node: ast.stmt
    source: str
    names: tuple[str, ...] = ()

    @property
    def is_type_only(self) -> bool:
        """Bare annotations (``x: int``) have no runtime effect."""
        return isinstance(self.node, ast.AnnAssign) and self.node.value is None


def global_assignment_name(node: ast.AST) -> str | None:
    """Return ``x`` for a ``globals()["x"]`` subscript, else None."""
    if not isinstance(node, ast.Subscript):
        return None
    func = node.value
    if not (
        isinstance(func, ast.Call)
        and isinstance(func.func, ast.Name)
        and func.func.id == "globals"
        and not func.args
        and not func.keywords
    ):
        return None
    key = node.slice
    if isinstance(key, ast.Constant) and isinstance(key.value, str) and key.value.isidentifier():
        return key.value
    return None


def bound_names(target: ast.expr) -> list[str]:
    """Expand an assignment target into the names it binds.

    Unpacking patterns are flattened leaf by leaf, in source order. Attribute
    and subscript targets bind nothing except the ``globals()["x"]`` form.
    """
    if isinstance(target, ast.Name):
        return [target.id]
    if isinstance(target, ast.Starred):
        return bound_names(target.value)
    if isinstance(target, (ast.Tuple, ast.List)):
        names: list[str] = []
        for element in target.elts:
            names.extend(bound_names(element))
        return names
    name = global_assignment_name(target)
    return [name] if name else []


def is_console_call(node: ast.stmt) -> bool:
    """True for bare calls to the console surface."""
    if not isinstance(node, ast.Expr) or not isinstance(node.value, ast.Call):
        return False
    func = node.value.func
    if isinstance(func, ast.Attribute):
        return isinstance(func.value, ast.Name) and func.value.id == CONSOLE_NAME
    return isinstance(func, ast.Name) and func.id in (CLEAR_NAME, PRINT_NAME)


class _ScopeNames(ast.NodeVisitor):
    """Collects names a statement binds in the submission scope."""

    def __init__(self) -> None:
        self.names: list[str] = []

    def add(self, name: str) -> None:
        if name not in self.names:
            self.names.append(name)

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, ast.Store):
            self.add(node.id)

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:
        self.add(node.target.id)
        self.visit(node.value)

    def visit_Subscript(self, node: ast.Subscript) -> None:
        if isinstance(node.ctx, ast.Store):
            name = global_assignment_name(node)
            if name:
                self.add(name)
                return
        self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> None:
        self.add(node.name)
        for decorator in node.decorator_list:
            self.visit(decorator)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self.add(node.name)
        for expr in [*node.decorator_list, *node.bases, *(k.value for k in node.keywords)]:
            self.visit(expr)

    def visit_Lambda(self, node: ast.Lambda) -> None:
        pass

    def _visit_comprehension(self, node: ast.AST) -> None:
        for child in ast.walk(node):
            if isinstance(child, ast.NamedExpr):
                self.add(child.target.id)

    visit_ListComp = _visit_comprehension
    visit_SetComp = _visit_comprehension
    visit_DictComp = _visit_comprehension
    visit_GeneratorExp = _visit_comprehension

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self.add(alias.asname or alias.name.split(".", 1)[0])

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        for alias in node.names:
            if alias.name != "*":
                self.add(alias.asname or alias.name)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.name:
            self.add(node.name)
        self.generic_visit(node)

    def visit_MatchAs(self, node: ast.MatchAs) -> None:
        if node.name:
            self.add(node.name)
        self.generic_visit(node)

    def visit_MatchStar(self, node: ast.MatchStar) -> None:
        if node.name:
            self.add(node.name)

    def visit_MatchMapping(self, node: ast.MatchMapping) -> None:
        self.generic_visit(node)
        if node.rest:
            self.add(node.rest)

    def visit_TypeAlias(self, node: ast.AST) -> None:
        self.add(node.name.id)  # type: ignore[attr-defined]


def scope_names(node: ast.stmt) -> tuple[str, ...]:
    """Names bound by ``node`` in the submission scope, in first-seen order."""
    collector = _ScopeNames()
    collector.visit(node)
    return tuple(collector.names)


def _reject_star_import(node: ast.stmt) -> None:
    if isinstance(node, ast.ImportFrom) and any(alias.name == "*" for alias in node.names):
        raise SyntaxError(
            "import * is not supported in the REPL; import names explicitly",
            ("<repl>", node.lineno, node.col_offset + 1, None),
        )


def classify_statement(node: ast.stmt) -> tuple[StatementKind, tuple[str, ...]]:
    """Classify one top-level statement and return its kind and bound names."""
    _reject_star_import(node)

    if isinstance(node, ast.AnnAssign) and node.value is None:
        # type-only: no binding, no runtime effect
        return StatementKind.CONTROL_FLOW, ()

    names = scope_names(node)

    if isinstance(node, ast.Assign):
        declared = [name for target in node.targets for name in bound_names(target)]
        return (StatementKind.BINDING if declared else StatementKind.CONTROL_FLOW), names
    if isinstance(node, (ast.AnnAssign, ast.AugAssign)):
        declared = bound_names(node.target)
        return (StatementKind.BINDING if declared else StatementKind.CONTROL_FLOW), names
    if isinstance(node, (ast.Import, ast.ImportFrom)):
        return StatementKind.BINDING, names
    if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
        return StatementKind.DECLARATION, names
    if _TYPE_ALIAS is not None and isinstance(node, _TYPE_ALIAS):
        return StatementKind.DECLARATION, names
    if isinstance(node, ast.Expr):
        if is_console_call(node):
            return StatementKind.CONTROL_FLOW, names
        return StatementKind.EXPRESSION, names
    return StatementKind.CONTROL_FLOW, names


def parse(source: str, filename: str = "<repl>") -> ast.Module:
    """Parse a submission, accepting top-level ``await``."""
    return compile(source, filename, "exec", PARSE_FLAGS, dont_inherit=True)


def classify(source: str, filename: str = "<repl>") -> list[Statement]:
    """Split ``source`` into classified top-level statements.

    Raises:
        SyntaxError: If the source does not parse, or uses ``import *``.
    """
    module = parse(source, filename)
    statements = []
    for node in module.body:
        kind, names = classify_statement(node)
        segment = ast.get_source_segment(source, node) or ""
        statements.append(Statement(kind=kind, node=node, source=segment, names=names))
    return statements


class GlobalAssignmentRewriter(ast.NodeTransformer):
    """Turns ``globals()["x"] = v`` targets into plain ``x`` targets.

    Nested function and class bodies are left alone.
    """

    def visit_Subscript(self, node: ast.Subscript) -> ast.AST:
        if isinstance(node.ctx, ast.Store):
            name = global_assignment_name(node)
            if name:
                return ast.copy_location(ast.Name(id=name, ctx=ast.Store()), node)
        return self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.AST) -> ast.AST:
        return node

    visit_AsyncFunctionDef = visit_FunctionDef
    visit_ClassDef = visit_FunctionDef
    visit_Lambda = visit_FunctionDef
