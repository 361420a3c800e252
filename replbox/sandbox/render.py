"""Text rendering of REPL values and ``console.table`` output."""

from __future__ import annotations

import pprint
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

INDEX_HEADER = "(index)"
VALUES_HEADER = "Values"


def show(value: Any, width: int = 80) -> str:
    """Render a value the way the REPL echoes results."""
    try:
        return pprint.pformat(value, width=width, sort_dicts=False)
    except Exception:
        # broken __repr__
        return object.__repr__(value)


def show_args(args: Iterable[Any]) -> str:
    """Join console arguments: strings verbatim, everything else rendered."""
    return " ".join(arg if isinstance(arg, str) else show(arg) for arg in args)


def _cell(value: Any) -> str:
    try:
        return repr(value)
    except Exception:
        return object.__repr__(value)


def is_tabular(value: Any) -> bool:
    """Mappings and non-string sequences can be rendered as tables."""
    return isinstance(value, Mapping) or (
        isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))
    )


def _entries(value: Any) -> list[tuple[str, Any]]:
    if isinstance(value, Mapping):
        return [(str(key), item) for key, item in value.items()]
    return [(str(index), item) for index, item in enumerate(value)]


def show_table(data: Any, properties: Sequence[str] | None = None) -> str:
    """Render ``data`` as a box-drawn table with an ``(index)`` column.

    Rows come from the entries of ``data``. Tabular rows contribute one column
    per key (restricted to ``properties`` when given); primitive rows go to a
    trailing ``Values`` column, which only exists when no properties were
    requested.
    """
    rows = _entries(data)

    has_values = False
    if properties is None:
        columns: list[str] = []
        for _, row in rows:
            if is_tabular(row):
                for key, _ in _entries(row):
                    if key not in columns:
                        columns.append(key)
            else:
                has_values = True
    else:
        columns = list(dict.fromkeys(str(prop) for prop in properties))

    index_width = len(INDEX_HEADER)
    widths = {column: len(column) for column in columns}
    values_width = len(VALUES_HEADER)
    table: list[tuple[str, dict[str, str], str | None]] = []

    for key, row in rows:
        index_width = max(index_width, len(key))
        if is_tabular(row):
            cells = {}
            for column, item in _entries(row):
                if column in widths:
                    cells[column] = _cell(item)
                    widths[column] = max(widths[column], len(cells[column]))
            table.append((key, cells, None))
        elif has_values:
            text = _cell(row)
            values_width = max(values_width, len(text))
            table.append((key, {}, text))
        else:
            table.append((key, {}, None))

    all_widths = [index_width, *widths.values()] + ([values_width] if has_values else [])

    def border(left: str, middle: str, right: str) -> str:
        return left + middle.join("─" * (width + 2) for width in all_widths) + right

    def line(cells: list[str]) -> str:
        padded = (f" {cell}{' ' * (width - len(cell))} " for cell, width in zip(cells, all_widths))
        return "│" + "│".join(padded) + "│"

    headers = [INDEX_HEADER, *columns] + ([VALUES_HEADER] if has_values else [])
    output = [border("┌", "┬", "┐"), line(headers), border("├", "┼", "┤")]
    for key, cells, value in table:
        row_cells = [key, *(cells.get(column, "") for column in columns)]
        if has_values:
            row_cells.append(value if value is not None else "")
        output.append(line(row_cells))
    output.append(border("└", "┴", "┘"))
    return "\n".join(output)
