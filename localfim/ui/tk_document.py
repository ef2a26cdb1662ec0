from __future__ import annotations

import contextlib
import tkinter as tk

from ..types import Position, Range
from ..utils import position_to_tkindex, tkindex_to_position

PENDING_TAG = "pending_suggestion"


class TkDocument:
    """Adapts a ``tk.Text`` widget to the inserter's document operations.

    Tk columns are treated as UTF-16 code units, so a character outside
    the Basic Multilingual Plane takes two columns.
    """

    def __init__(self, text: tk.Text, pending_fg: str = "#808080") -> None:
        self.text = text
        with contextlib.suppress(tk.TclError):
            text.tag_configure(PENDING_TAG, foreground=pending_fg)

    def cursor(self) -> Position:
        return tkindex_to_position(self.text.index(tk.INSERT))

    def text_before(self, pos: Position) -> str:
        return self.text.get("1.0", position_to_tkindex(pos))

    def text_after(self, pos: Position) -> str:
        # Tk always keeps a trailing newline after the last line.
        return self.text.get(position_to_tkindex(pos), "end-1c")

    def insert(self, pos: Position, text: str) -> None:
        self.text.insert(position_to_tkindex(pos), text)

    def delete(self, span: Range) -> None:
        self.text.delete(position_to_tkindex(span.start), position_to_tkindex(span.end))

    def set_pending(self, span: Range | None) -> None:
        self.text.tag_remove(PENDING_TAG, "1.0", tk.END)
        if span is not None and not span.is_empty:
            self.text.tag_add(
                PENDING_TAG, position_to_tkindex(span.start), position_to_tkindex(span.end)
            )

    def set_cursor(self, pos: Position) -> None:
        index = position_to_tkindex(pos)
        self.text.mark_set(tk.INSERT, index)
        self.text.see(index)
