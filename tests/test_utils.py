import pytest

from localfim.types import Position
from localfim.utils import (
    column_to_index,
    offset_to_position,
    position_to_offset,
    position_to_tkindex,
    tkindex_to_position,
)


def test_tkindex_round_trip_is_zero_based():
    assert position_to_tkindex(Position(0, 4)) == "1.4"
    assert tkindex_to_position("3.7") == Position(2, 7)


@pytest.mark.parametrize(
    "line, column, units, expected",
    [
        ("A😊B", 1, "utf-16", 1),
        ("A😊B", 3, "utf-16", 2),
        ("A😊B", 2, "utf-16", 2),
        ("A😊B", 2, "codepoint", 2),
        ("abc", 10, "utf-16", 3),
    ],
)
def test_column_to_index(line, column, units, expected):
    assert column_to_index(line, column, units) == expected


def test_position_offset_conversions_agree():
    content = "x = '😊'\ny = 2\n"
    pos = Position(1, 3)
    offset = position_to_offset(content, pos)

    assert content[offset:].startswith(" 2")
    assert offset_to_position(content, offset) == pos
    assert offset_to_position(content, content.index("'") + 2) == Position(0, 7)
    assert offset_to_position(content, content.index("'") + 2, "codepoint") == Position(0, 6)
