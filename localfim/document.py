from __future__ import annotations

from typing import Protocol

from .stream_utils import ColumnUnits
from .types import Position, Range
from .utils import offset_to_position, position_to_offset


class Document(Protocol):
    """The editor operations the streaming inserter needs."""

    def cursor(self) -> Position: ...

    def text_before(self, pos: Position) -> str: ...

    def text_after(self, pos: Position) -> str: ...

    def insert(self, pos: Position, text: str) -> None: ...

    def delete(self, span: Range) -> None: ...

    def set_pending(self, span: Range | None) -> None: ...

    def set_cursor(self, pos: Position) -> None: ...


class TextDocument:
    """An in-memory :class:`Document` over a plain string."""

    def __init__(
        self, content: str = "", cursor: Position | None = None, units: ColumnUnits = "utf-16"
    ) -> None:
        self.content = content
        self.units = units
        self._cursor = cursor or Position(0, 0)
        self.pending: Range | None = None

    def _offset(self, pos: Position) -> int:
        return position_to_offset(self.content, pos, self.units)

    def cursor(self) -> Position:
        return self._cursor

    def text_before(self, pos: Position) -> str:
        return self.content[: self._offset(pos)]

    def text_after(self, pos: Position) -> str:
        return self.content[self._offset(pos) :]

    def insert(self, pos: Position, text: str) -> None:
        offset = self._offset(pos)
        self.content = self.content[:offset] + text + self.content[offset:]

    def delete(self, span: Range) -> None:
        start, end = sorted((self._offset(span.start), self._offset(span.end)))
        self.content = self.content[:start] + self.content[end:]

    def set_pending(self, span: Range | None) -> None:
        self.pending = span

    def set_cursor(self, pos: Position) -> None:
        self._cursor = pos

    def end(self) -> Position:
        return offset_to_position(self.content, len(self.content), self.units)
