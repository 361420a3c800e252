"""Console surface for user code and the listener that records it.

User code never writes to the host console. The ``console`` object injected
into every submission forwards each call as ``(method, *args)`` to the
sandbox's listeners; :class:`ConsoleCapture` is the listener that turns those
calls into history entries.
"""

from __future__ import annotations

import builtins
import time
from collections.abc import Callable, Sequence
from typing import Any

import structlog

from ..protocol.history import HistorySink, OutputVariant
from .render import is_tabular, show, show_args, show_table

logger = structlog.get_logger()

ConsoleListener = Callable[..., None]

DEFAULT_LABEL = "default"


class ConsoleProxy:
    """The ``console`` object seen by user code: one method per operation."""

    def __init__(self, emit: Callable[..., None]) -> None:
        self._emit = emit

    def __repr__(self) -> str:
        return "<console>"

    def log(self, *args: Any) -> None:
        self._emit("log", *args)

    def info(self, *args: Any) -> None:
        self._emit("info", *args)

    def debug(self, *args: Any) -> None:
        self._emit("debug", *args)

    def warn(self, *args: Any) -> None:
        self._emit("warn", *args)

    warning = warn

    def error(self, *args: Any) -> None:
        self._emit("error", *args)

    def trace(self, *args: Any) -> None:
        self._emit("trace", *args)

    def dir(self, item: Any = None, options: Any = None) -> None:
        self._emit("dir", item, options)

    def dirxml(self, *args: Any) -> None:
        self._emit("dirxml", *args)

    def assert_(self, condition: Any = False, *args: Any) -> None:
        self._emit("assert", condition, *args)

    def clear(self) -> None:
        self._emit("clear")

    def count(self, label: Any = DEFAULT_LABEL) -> None:
        self._emit("count", label)

    def count_reset(self, label: Any = DEFAULT_LABEL) -> None:
        self._emit("count_reset", label)

    def group(self, *args: Any) -> None:
        self._emit("group", *args)

    def group_collapsed(self, *args: Any) -> None:
        self._emit("group_collapsed", *args)

    def group_end(self) -> None:
        self._emit("group_end")

    def table(self, data: Any, properties: Any = None) -> None:
        self._emit("table", data, properties)

    def time(self, label: Any = DEFAULT_LABEL) -> None:
        self._emit("time", label)

    def time_end(self, label: Any = DEFAULT_LABEL) -> None:
        self._emit("time_end", label)

    def time_log(self, label: Any = DEFAULT_LABEL, *args: Any) -> None:
        self._emit("time_log", label, *args)

    def time_stamp(self, label: Any = None) -> None:
        self._emit("time_stamp", label)


def make_print(console: ConsoleProxy) -> Callable[..., None]:
    """Build the ``print`` seen by user code.

    Output goes to ``console.log`` unless an explicit ``file`` is given.
    """

    def print(*args: Any, sep: str | None = " ", end: str | None = "\n", file: Any = None, flush: bool = False) -> None:
        if file is not None:
            builtins.print(*args, sep=sep, end=end, file=file, flush=flush)
            return
        text = (" " if sep is None else sep).join(str(arg) for arg in args)
        console.log(text)

    return print


class ConsoleCapture:
    """Console listener that appends console activity to a history sink.

    Holds the per-session console state: group indent level, ``count``
    counters and ``time`` timers.
    """

    def __init__(self, sink: HistorySink) -> None:
        self._sink = sink
        self.level = 0
        self.counts: dict[str, int] = {}
        self.timers: dict[str, float] = {}
        self._handlers: dict[str, Callable[[Sequence[Any]], None]] = {
            "clear": self._clear,
            "assert": self._assert,
            "count": self._count,
            "count_reset": self._count_reset,
            "dir": self._dir,
            "dirxml": self._log,
            "debug": self._log,
            "log": self._log,
            "info": lambda args: self._output(show_args(args), OutputVariant.INFO),
            "warn": lambda args: self._output(show_args(args), OutputVariant.WARN),
            "error": lambda args: self._output(show_args(args), OutputVariant.ERROR),
            "trace": lambda args: self._output("Trace: " + show_args(args)),
            "group": self._group,
            "group_collapsed": self._group,
            "group_end": self._group_end,
            "table": self._table,
            "time": self._time,
            "time_end": self._time_end,
            "time_log": self._time_log,
            "time_stamp": self._time_stamp,
        }

    def __call__(self, method: str, *args: Any) -> None:
        handler = self._handlers.get(method)
        if handler is None:
            logger.debug("console_method_ignored", method=method)
            return
        handler(args)

    def indent(self, text: str) -> str:
        prefix = " " * (self.level * 2)
        return "\n".join(prefix + line for line in text.split("\n"))

    def _output(self, text: str, variant: OutputVariant | None = None) -> None:
        self._sink.append_output(self.indent(text), variant)

    def _label(self, args: Sequence[Any]) -> str:
        return str(args[0]) if args and args[0] is not None else DEFAULT_LABEL

    def _clear(self, args: Sequence[Any]) -> None:
        self._sink.clear()

    def _assert(self, args: Sequence[Any]) -> None:
        if args and args[0]:
            return
        message = "Assertion failed"
        if len(args) > 1:
            message += ": " + show_args(args[1:])
        self._output(message, OutputVariant.ERROR)

    def _count(self, args: Sequence[Any]) -> None:
        label = self._label(args)
        self.counts[label] = self.counts.get(label, 0) + 1
        self._output(f"{label}: {self.counts[label]}")

    def _count_reset(self, args: Sequence[Any]) -> None:
        self.counts.pop(self._label(args), None)

    def _dir(self, args: Sequence[Any]) -> None:
        self._output(show(args[0] if args else None))

    def _log(self, args: Sequence[Any]) -> None:
        self._output(show_args(args))

    def _group(self, args: Sequence[Any]) -> None:
        # the label is indented with the group contents
        self.level += 1
        self._output(show_args(args))

    def _group_end(self, args: Sequence[Any]) -> None:
        self.level = max(0, self.level - 1)

    def _table(self, args: Sequence[Any]) -> None:
        data = args[0] if args else None
        properties = args[1] if len(args) > 1 else None
        if properties is not None and not isinstance(properties, (list, tuple)):
            self._sink.append_error(
                TypeError(
                    'The "properties" argument must be an instance of list. Received type '
                    + type(properties).__name__
                )
            )
        elif not is_tabular(data):
            self._output(show_args([data]))
        else:
            columns = [str(prop) for prop in properties] if properties is not None else None
            self._output(show_table(data, columns))

    def _time(self, args: Sequence[Any]) -> None:
        label = self._label(args)
        if label in self.timers:
            self._output(f'Timer "{label}" already exists', OutputVariant.WARN)
            return
        self.timers[label] = time.perf_counter()

    def _elapsed(self, label: str) -> int | None:
        start = self.timers.get(label)
        if start is None:
            self._output(f'Timer "{label}" does not exist', OutputVariant.WARN)
            return None
        return int((time.perf_counter() - start) * 1000)

    def _time_end(self, args: Sequence[Any]) -> None:
        label = self._label(args)
        elapsed = self._elapsed(label)
        if elapsed is not None:
            del self.timers[label]
            self._output(f"{label}: {elapsed}ms")

    def _time_log(self, args: Sequence[Any]) -> None:
        label = self._label(args)
        elapsed = self._elapsed(label)
        if elapsed is not None:
            extra = " " + show_args(args[1:]) if len(args) > 1 else ""
            self._output(f"{label}: {elapsed}ms{extra}")

    def _time_stamp(self, args: Sequence[Any]) -> None:
        logger.debug("console_time_stamp", label=args[0] if args else None)
