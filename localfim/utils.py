# localfim/utils.py
from __future__ import annotations

from .stream_utils import ColumnUnits
from .types import Position


def position_to_tkindex(pos: Position) -> str:
    return f"{pos.line + 1}.{pos.column}"


def tkindex_to_position(index: str) -> Position:
    line_str, col_str = index.split(".", 1)
    return Position(int(line_str) - 1, int(col_str))


def column_to_index(line: str, column: int, units: ColumnUnits = "utf-16") -> int:
    """Convert an editor column on ``line`` into a Python string index.

    Columns past the end of the line clamp to its length; a column that
    falls inside a surrogate pair rounds up to the whole character.
    """

    if units == "codepoint":
        return max(0, min(column, len(line)))
    consumed = 0
    for idx, ch in enumerate(line):
        if consumed >= column:
            return idx
        consumed += 2 if ord(ch) > 0xFFFF else 1
    return len(line)


def position_to_offset(content: str, pos: Position, units: ColumnUnits = "utf-16") -> int:
    """Convert a Position into a Python-string offset within ``content``."""

    lines = content.split("\n")
    line_no = max(0, min(pos.line, len(lines) - 1))
    offset = sum(len(line) + 1 for line in lines[:line_no])
    return offset + column_to_index(lines[line_no], pos.column, units)


def offset_to_position(content: str, offset: int, units: ColumnUnits = "utf-16") -> Position:
    prefix = content[: max(0, offset)]
    line_no = prefix.count("\n")
    col_text = prefix[prefix.rfind("\n") + 1 :]
    if units == "codepoint":
        return Position(line_no, len(col_text))
    return Position(line_no, len(col_text.encode("utf-16-le")) // 2)
