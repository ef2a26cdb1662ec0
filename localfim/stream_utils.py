"""Helpers for cleaning streamed fragments and tracking where they land.

These utilities are pure functions so they can be unit-tested without the
tkinter event loop used by :mod:`localfim.app`.
"""
from __future__ import annotations

from typing import Literal

from .types import Position

ColumnUnits = Literal["utf-16", "codepoint"]

EOS_MARKER = "<EOT>"


def text_units(text: str, units: ColumnUnits = "utf-16") -> int:
    """Length of ``text`` in the editor's column units."""

    if units == "codepoint":
        return len(text)
    return len(text.encode("utf-16-le")) // 2


def strip_trailing_spaces(text: str) -> str:
    return "\n".join(line.rstrip(" ") for line in text.split("\n"))


def clean_fragment(piece: str, eos_marker: str = EOS_MARKER) -> str:
    """Remove the end-of-sequence marker and trailing spaces on every line."""

    if eos_marker:
        piece = piece.replace(eos_marker, "")
    return strip_trailing_spaces(piece)


def _partial_marker_len(text: str, marker: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``marker``."""

    for size in range(min(len(marker) - 1, len(text)), 0, -1):
        if marker.startswith(text[-size:]):
            return size
    return 0


class FragmentCleaner:
    """Incremental version of :func:`clean_fragment` for a fragment stream.

    Trailing spaces and a partial end marker at the end of a fragment are
    held back until the next fragment shows whether they end a line, belong
    to the marker, or are ordinary text.
    """

    def __init__(self, eos_marker: str = EOS_MARKER) -> None:
        self.eos_marker = eos_marker
        self._held = ""

    def feed(self, piece: str) -> str:
        combined = self._held + piece
        if self.eos_marker:
            combined = combined.replace(self.eos_marker, "")
        held_marker = _partial_marker_len(combined, self.eos_marker) if self.eos_marker else 0
        body = combined[: len(combined) - held_marker]
        tail = combined[len(body) :]
        head, sep, last = body.rpartition("\n")
        kept_last = last.rstrip(" ")
        # Spaces in front of a held marker prefix stay with it; they survive
        # if the prefix turns out to be text.
        self._held = last[len(kept_last) :] + tail
        if sep:
            return strip_trailing_spaces(head) + sep + kept_last
        return kept_last

    def flush(self) -> str:
        """Return what is still held at the end of the stream."""

        held, self._held = self._held, ""
        return held.rstrip(" ")


def span_end(anchor: Position, accumulated: str, units: ColumnUnits = "utf-16") -> Position:
    """Where text ``accumulated`` inserted at ``anchor`` ends.

    A single-line insertion ends ``len(accumulated)`` columns after the
    anchor; once it spans lines, the end column is the length of its last
    line.
    """

    newlines = accumulated.count("\n")
    if newlines == 0:
        return Position(anchor.line, anchor.column + text_units(accumulated, units))
    last_line = accumulated[accumulated.rfind("\n") + 1 :]
    return Position(anchor.line + newlines, text_units(last_line, units))
