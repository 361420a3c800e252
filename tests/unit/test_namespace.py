"""Unit tests for the session binding context."""

import builtins

import pytest

from replbox.sandbox.namespace import MISSING, BindingContext


@pytest.mark.unit
class TestBindingContext:
    """Atomic updates and change notification."""

    def test_apply_new_bindings(self):
        context = BindingContext()
        changed = context.apply({"x": 1, "y": [2]})
        assert changed == {"x": 1, "y": [2]}
        assert dict(context) == {"x": 1, "y": [2]}
        assert context.names() == ["x", "y"]

    def test_identical_object_is_not_a_change(self):
        context = BindingContext()
        value = object()
        context.apply({"x": value})
        events = []
        context.subscribe(lambda *args: events.append(args))

        assert context.apply({"x": value}) == {}
        assert events == []

    def test_equal_but_distinct_object_is_a_change(self):
        context = BindingContext()
        context.apply({"x": [1]})
        new = [1]
        assert context.apply({"x": new}) == {"x": new}
        assert context["x"] is new

    def test_observers_see_old_and_new(self):
        context = BindingContext()
        events = []
        context.subscribe(lambda name, old, new: events.append((name, old, new)))

        context.apply({"x": 1})
        context.apply({"x": 2})
        context.apply({}, deleted=["x"])

        assert events == [("x", MISSING, 1), ("x", 1, 2), ("x", 2, MISSING)]

    def test_unsubscribe(self):
        context = BindingContext()
        events = []
        unsubscribe = context.subscribe(lambda *args: events.append(args))
        unsubscribe()
        unsubscribe()
        context.apply({"x": 1})
        assert events == []

    def test_failing_observer_does_not_break_apply(self):
        context = BindingContext()
        seen = []

        def broken(name, old, new):
            raise RuntimeError("observer failure")

        context.subscribe(broken)
        context.subscribe(lambda name, old, new: seen.append(name))
        context.apply({"x": 1, "y": 2})

        assert dict(context) == {"x": 1, "y": 2}
        assert seen == ["x", "y"]

    def test_reserved_names_are_ignored(self):
        context = BindingContext()
        assert context.apply({"console": 1, "__repl_result__": 2, "ok": 3}) == {"ok": 3}
        assert "console" not in context

    def test_delete_unknown_name_is_noop(self):
        context = BindingContext()
        assert context.apply({}, deleted=["ghost"]) == {}

    def test_globals_mirror(self):
        context = BindingContext()
        assert context.globals["__builtins__"] is builtins
        assert context.globals["__name__"] == "__main__"

        context.apply({"x": 1})
        assert context.globals["x"] == 1
        context.apply({}, deleted=["x"])
        assert "x" not in context.globals

    def test_snapshot_is_a_copy(self):
        context = BindingContext()
        context.apply({"x": 1})
        snapshot = context.snapshot()
        snapshot["x"] = 2
        assert context["x"] == 1

    def test_clear(self):
        context = BindingContext()
        context.apply({"x": 1, "y": 2})
        context.clear()
        assert len(context) == 0
        assert "x" not in context.globals

    def test_diff(self):
        context = BindingContext()
        value = object()
        context.apply({"same": value, "gone": 1})
        changes, removed = context.diff({"same": value, "new": 2}, deleted=["gone", "missing"])
        assert changes == {"new": 2}
        assert removed == ["gone"]

    def test_global_writes(self):
        context = BindingContext()
        context.apply({"kept": 1, "rebound": 2, "removed": 3})
        context.globals["rebound"] = 20
        context.globals["created"] = 4
        del context.globals["removed"]

        written, unset = context.global_writes()
        assert written == {"rebound": 20, "created": 4}
        assert unset == ["removed"]

        context.apply(written, unset)
        assert context.snapshot() == {"kept": 1, "rebound": 20, "created": 4}
        assert context.global_writes() == ({}, [])

    def test_global_writes_skip_module_attributes_and_helpers(self):
        context = BindingContext()
        context.globals["__doc__"] = "changed"
        context.globals["console"] = object()
        assert context.global_writes() == ({}, [])

    def test_reset_globals(self):
        context = BindingContext()
        context.apply({"x": 1})
        context.globals["x"] = 2
        context.globals["stray"] = 3

        context.reset_globals()
        assert context.globals["x"] == 1
        assert "stray" not in context.globals
        assert context.globals["__name__"] == "__main__"
