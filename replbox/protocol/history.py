from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from enum import Enum
from typing import Any, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field

from ..sandbox.constants import CANCELLED_OUTPUT, COMMAND_PREFIX
from ..sandbox.render import show


class EntryType(str, Enum):
    INPUT = "input"
    OUTPUT = "output"
    ERROR = "error"
    RECOVERED_MARK = "recovered-mark"


class OutputVariant(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class BaseEntry(BaseModel):
    # Type field will be defined by subclasses with specific Literal values
    pass


class InputEntry(BaseEntry):
    type: Literal[EntryType.INPUT] = Field(default=EntryType.INPUT)
    value: str = Field(description="Submitted source text")


class OutputEntry(BaseEntry):
    type: Literal[EntryType.OUTPUT] = Field(default=EntryType.OUTPUT)
    value: str = Field(description="Rendered output text")
    variant: Optional[OutputVariant] = Field(
        default=None, description="Severity of console output; None for plain output"
    )


class ErrorEntry(BaseEntry):
    type: Literal[EntryType.ERROR] = Field(default=EntryType.ERROR)
    value: str = Field(description="Error rendered as 'Name: message'")


class RecoveredMark(BaseEntry):
    type: Literal[EntryType.RECOVERED_MARK] = Field(default=EntryType.RECOVERED_MARK)


HistoryEntry = Union[InputEntry, OutputEntry, ErrorEntry, RecoveredMark]


def parse_entry(data: HistoryEntry | dict[str, Any]) -> HistoryEntry:
    """Parse a history entry from a dictionary.

    Args:
        data: Dictionary containing entry data, or an entry model

    Returns:
        Parsed entry object

    Raises:
        ValueError: If entry type is unknown or data is invalid
    """
    if isinstance(data, BaseEntry):
        return data  # type: ignore[return-value]

    entry_type = data.get("type")
    if entry_type is None:
        raise ValueError("Entry type is missing")

    entry_classes: dict[str, type[BaseEntry]] = {
        EntryType.INPUT.value: InputEntry,
        EntryType.OUTPUT.value: OutputEntry,
        EntryType.ERROR.value: ErrorEntry,
        EntryType.RECOVERED_MARK.value: RecoveredMark,
    }

    entry_class = entry_classes.get(entry_type)
    if not entry_class:
        raise ValueError(f"Unknown entry type: {entry_type}")

    return entry_class(**data)  # type: ignore[return-value]


def format_error(error: Any) -> str:
    """Render an error as ``Name: message``; non-exceptions are shown."""
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return show(error)


class HistorySink(Protocol):
    """Where the session and console capture append history."""

    def append_input(self, value: str) -> None: ...

    def append_output(self, value: str, variant: OutputVariant | None = None) -> None: ...

    def append_error(self, error: Any) -> None: ...

    def append_entry(self, entry: HistoryEntry) -> None: ...

    def clear(self) -> None: ...


_COMMAND_RE = re.compile(r"^\s*" + re.escape(COMMAND_PREFIX))


def is_repl_command(value: str) -> bool:
    """True if the input is a REPL meta-command (``:`` after optional spaces)."""
    return bool(_COMMAND_RE.match(value))


def _is_block_end(entry: HistoryEntry) -> bool:
    return isinstance(entry, (InputEntry, RecoveredMark))


def scan_history_block(history: Sequence[HistoryEntry], start: int) -> tuple[int, bool]:
    """Scan the block of the input entry at ``start``.

    A block runs up to the next input or recovered mark. It should be
    re-executed unless one of its trailing entries is an error or the
    "Execution cancelled" info output, or the input is a meta-command.

    Returns:
        ``(end_index, should_recover)``
    """
    entry = history[start] if 0 <= start < len(history) else None
    if not isinstance(entry, InputEntry):
        return start + 1, False

    end = start + 1
    should_recover = not is_repl_command(entry.value)
    while end < len(history) and not _is_block_end(history[end]):
        trailing = history[end]
        if isinstance(trailing, ErrorEntry) or (
            isinstance(trailing, OutputEntry)
            and trailing.variant == OutputVariant.INFO
            and trailing.value == CANCELLED_OUTPUT
        ):
            should_recover = False
        end += 1
    return end, should_recover


def filter_history_for_rerun(history: Sequence[HistoryEntry]) -> list[HistoryEntry]:
    """Drop the outputs of blocks that recovery would re-execute."""
    result: list[HistoryEntry] = []
    index = 0
    while index < len(history):
        entry = history[index]
        if not isinstance(entry, InputEntry):
            result.append(entry)
            index += 1
            continue
        end, should_recover = scan_history_block(history, index)
        if should_recover:
            result.append(entry)
        else:
            result.extend(history[index:end])
        index = end
    return result


class History:
    """In-memory history list implementing :class:`HistorySink`."""

    def __init__(self, entries: Iterable[HistoryEntry | dict[str, Any]] = ()) -> None:
        self.entries: list[HistoryEntry] = [parse_entry(entry) for entry in entries]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def input_history(self) -> list[str]:
        return [entry.value for entry in self.entries if isinstance(entry, InputEntry)]

    def append_input(self, value: str) -> None:
        self.entries.append(InputEntry(value=value))

    def append_output(self, value: str, variant: OutputVariant | None = None) -> None:
        self.entries.append(OutputEntry(value=value, variant=variant))

    def append_error(self, error: Any) -> None:
        self.entries.append(ErrorEntry(value=format_error(error)))

    def append_entry(self, entry: HistoryEntry) -> None:
        self.entries.append(entry)

    def clear(self) -> None:
        self.entries.clear()

    def remove_input_block_at(self, index: int) -> None:
        """Remove an input entry and its outputs up to the next input or recovered mark.

        No-op if the index is invalid or not an input.
        """
        if not 0 <= index < len(self.entries) or not isinstance(self.entries[index], InputEntry):
            return
        end = index + 1
        while end < len(self.entries) and not _is_block_end(self.entries[end]):
            end += 1
        del self.entries[index:end]
