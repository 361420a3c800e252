"""Unit tests for top-level statement classification."""

import ast

import pytest

from replbox.sandbox.classifier import (
    GlobalAssignmentRewriter,
    StatementKind,
    bound_names,
    classify,
    scope_names,
)


def kinds(source: str) -> list[StatementKind]:
    return [statement.kind for statement in classify(source)]


@pytest.mark.unit
class TestStatementKinds:
    """Each top-level statement gets exactly one kind."""

    def test_assignment_is_binding(self):
        statements = classify("x = 1")
        assert statements[0].kind == StatementKind.BINDING
        assert statements[0].names == ("x",)

    def test_unpacking_binds_every_leaf(self):
        statements = classify("a, *rest = [1, 2, 3]")
        assert statements[0].kind == StatementKind.BINDING
        assert statements[0].names == ("a", "rest")

    def test_nested_unpacking(self):
        statements = classify("(a, [b, c]), d = ((1, [2, 3]), 4)")
        assert statements[0].names == ("a", "b", "c", "d")

    def test_augmented_and_annotated_assignment(self):
        assert kinds("x += 1\ny: int = 2") == [StatementKind.BINDING, StatementKind.BINDING]

    def test_attribute_assignment_is_control_flow(self):
        statements = classify("obj.attr = 1")
        assert statements[0].kind == StatementKind.CONTROL_FLOW
        assert statements[0].names == ()

    def test_imports_are_bindings(self):
        statements = classify("import os.path\nfrom json import dumps as d, loads")
        assert [s.kind for s in statements] == [StatementKind.BINDING, StatementKind.BINDING]
        assert statements[0].names == ("os",)
        assert statements[1].names == ("d", "loads")

    def test_declarations(self):
        source = "def f(): pass\nasync def g(): pass\nclass C: pass"
        statements = classify(source)
        assert [s.kind for s in statements] == [StatementKind.DECLARATION] * 3
        assert [s.names for s in statements] == [("f",), ("g",), ("C",)]

    def test_console_calls_are_control_flow(self):
        source = "console.log(1)\nprint('hi')\nclear()"
        assert kinds(source) == [StatementKind.CONTROL_FLOW] * 3

    def test_other_expressions(self):
        assert kinds("1 + 1\nlen([1])\nawait thing()") == [StatementKind.EXPRESSION] * 3

    def test_type_only_annotation(self):
        statement = classify("x: int")[0]
        assert statement.kind == StatementKind.CONTROL_FLOW
        assert statement.names == ()
        assert statement.is_type_only

    def test_compound_statements_are_control_flow(self):
        statement = classify("for i in range(3):\n    total = i")[0]
        assert statement.kind == StatementKind.CONTROL_FLOW
        assert statement.names == ("i", "total")

    def test_source_segment_is_kept(self):
        statements = classify("x = 1\ny = x + 1")
        assert [s.source for s in statements] == ["x = 1", "y = x + 1"]

    def test_star_import_rejected(self):
        with pytest.raises(SyntaxError):
            classify("from os.path import *")

    def test_invalid_source_raises(self):
        with pytest.raises(SyntaxError):
            classify("x = = 1")


@pytest.mark.unit
class TestScopeNames:
    """Name collection stops at nested scopes."""

    def test_function_body_not_entered(self):
        node = ast.parse("def f():\n    inner = 1").body[0]
        assert scope_names(node) == ("f",)

    def test_walrus_in_comprehension_binds_outside(self):
        node = ast.parse("[last := v for v in range(3)]").body[0]
        assert scope_names(node) == ("last",)

    def test_comprehension_variable_is_local(self):
        node = ast.parse("[v for v in range(3)]").body[0]
        assert scope_names(node) == ()

    def test_with_and_except_names(self):
        node = ast.parse(
            "try:\n    with open('f') as fh:\n        pass\nexcept OSError as err:\n    pass"
        ).body[0]
        assert scope_names(node) == ("fh", "err")

    def test_match_capture_names(self):
        node = ast.parse("match p:\n    case [x, *others]:\n        pass\n    case {'k': v, **rest}:\n        pass").body[0]
        assert scope_names(node) == ("x", "others", "v", "rest")


@pytest.mark.unit
class TestGlobalAssignment:
    """``globals()["x"] = v`` is a plain binding of ``x``."""

    def test_bound_names_for_globals_subscript(self):
        target = ast.parse('globals()["answer"] = 42').body[0].targets[0]
        assert bound_names(target) == ["answer"]

    def test_classified_as_binding(self):
        statement = classify('globals()["answer"] = 42')[0]
        assert statement.kind == StatementKind.BINDING
        assert statement.names == ("answer",)

    def test_non_identifier_key_binds_nothing(self):
        statement = classify('globals()["not a name"] = 1')[0]
        assert statement.kind == StatementKind.CONTROL_FLOW

    def test_rewriter_replaces_target(self):
        tree = ast.parse('globals()["answer"] = 42')
        rewritten = GlobalAssignmentRewriter().visit(tree)
        assert ast.unparse(rewritten) == "answer = 42"

    def test_rewriter_leaves_functions_alone(self):
        source = "def f():\n    globals()['answer'] = 1"
        tree = GlobalAssignmentRewriter().visit(ast.parse(source))
        assert "globals()" in ast.unparse(tree)
