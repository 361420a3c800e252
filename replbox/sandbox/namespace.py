from __future__ import annotations

import builtins
from collections.abc import Callable, Iterable, Iterator, Mapping
from typing import Any

import structlog

from .constants import ENGINE_HELPERS, EXEC_FUNCTION_NAME, RESULT_NAME

logger = structlog.get_logger()

BindingObserver = Callable[[str, Any, Any], None]

# Sentinel passed to observers as the old value of a new binding and as the
# new value of a deleted one.
MISSING: Any = type("Missing", (), {"__repr__": lambda self: "<missing>"})()

RESERVED_NAMES = frozenset({*ENGINE_HELPERS, EXEC_FUNCTION_NAME, RESULT_NAME})

# Module attributes every globals mapping starts with
GLOBALS_KEYS = frozenset({"__name__", "__doc__", "__package__", "__loader__", "__spec__", "__builtins__"})


class BindingContext(Mapping[str, Any]):
    """Session-scoped identifier -> value mapping with atomic updates.

    The context is the unit of REPL state. It only changes through
    :meth:`apply`, which takes every change of one submission at once, so a
    failed submission never leaves it half-updated. Reassignments to the same
    object are not changes: observers are only told about names whose value
    is no longer the identical object.
    """

    def __init__(self) -> None:
        self._bindings: dict[str, Any] = {}
        self._observers: list[BindingObserver] = []
        # Globals of user-defined functions: builtins plus current bindings,
        # so a function can see names bound by later submissions.
        self._globals: dict[str, Any] = {}
        self._setup_globals()

    def _setup_globals(self) -> None:
        """Setup the globals mapping. It is updated in place, never replaced."""
        self._globals.update(
            {
                "__name__": "__main__",
                "__doc__": None,
                "__package__": None,
                "__loader__": None,
                "__spec__": None,
                "__builtins__": builtins,
            }
        )

    @property
    def globals(self) -> dict[str, Any]:
        """Live globals mapping for compiled submissions."""
        return self._globals

    def __getitem__(self, name: str) -> Any:
        return self._bindings[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._bindings)

    def __len__(self) -> int:
        return len(self._bindings)

    def names(self) -> list[str]:
        return list(self._bindings)

    def snapshot(self) -> dict[str, Any]:
        """Shallow copy of the current bindings."""
        return dict(self._bindings)

    def diff(self, updates: Mapping[str, Any], deleted: Iterable[str] = ()) -> tuple[dict[str, Any], list[str]]:
        """Compute the effective changes ``updates`` and ``deleted`` would make.

        A name only counts as changed when the new value is not the identical
        object already bound.
        """
        changes = {
            name: value
            for name, value in updates.items()
            if name not in RESERVED_NAMES
            and (name not in self._bindings or self._bindings[name] is not value)
        }
        removed = [name for name in deleted if name in self._bindings and name not in changes]
        return changes, removed

    def apply(self, updates: Mapping[str, Any], deleted: Iterable[str] = ()) -> dict[str, Any]:
        """Apply one submission's bindings atomically and notify observers.

        Args:
            updates: Name -> value returned by the submission
            deleted: Names the submission removed (``del x``)

        Returns:
            Dict of the bindings that actually changed
        """
        changes, removed = self.diff(updates, deleted)
        if not changes and not removed:
            return {}

        previous = {name: self._bindings.get(name, MISSING) for name in [*changes, *removed]}
        self._bindings.update(changes)
        self._globals.update(changes)
        for name in removed:
            del self._bindings[name]
            self._globals.pop(name, None)

        logger.debug("bindings_applied", changed=list(changes), deleted=removed)

        for name, value in changes.items():
            self._notify(name, previous[name], value)
        for name in removed:
            self._notify(name, previous[name], MISSING)
        return changes

    def global_writes(self) -> tuple[dict[str, Any], list[str]]:
        """Writes user code made straight into the globals mapping.

        A function declaring ``global x`` (or touching ``globals()``) changes
        the mapping but not the bindings; these are the differences, ready to
        be passed to :meth:`apply`.

        Returns:
            Tuple of (name -> value for new or rebound names, names removed)
        """
        written = {
            name: value
            for name, value in self._globals.items()
            if name not in GLOBALS_KEYS
            and name not in RESERVED_NAMES
            and (name not in self._bindings or self._bindings[name] is not value)
        }
        unset = [name for name in self._bindings if name not in self._globals]
        return written, unset

    def reset_globals(self) -> None:
        """Discard globals writes that did not go through :meth:`apply`."""
        for name in list(self._globals):
            if name not in GLOBALS_KEYS and name not in self._bindings:
                del self._globals[name]
        self._globals.update(self._bindings)

    def clear(self) -> None:
        """Remove every binding (``:reset``)."""
        self.apply({}, deleted=list(self._bindings))
        self.reset_globals()

    def subscribe(self, observer: BindingObserver) -> Callable[[], None]:
        """Register ``observer(name, old, new)``; returns an unsubscribe callable."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, name: str, old: Any, new: Any) -> None:
        for observer in list(self._observers):
            try:
                observer(name, old, new)
            except Exception as e:
                # log and continue with the remaining observers
                logger.warning(
                    "binding_observer_error",
                    name=name,
                    error=str(e),
                    observer=getattr(observer, "__name__", str(observer)),
                )
