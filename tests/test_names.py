import pytest

from oche.names import capitalize_player_name


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("john smith", "John Smith"),
        ("JOHN SMITH", "John Smith"),
        ("mary-jane o'brien", "Mary-Jane O'Brien"),
        ("  phil   taylor ", "Phil   Taylor"),
        ("", ""),
        (None, ""),
    ],
)
def test_capitalize_player_name(raw, expected):
    assert capitalize_player_name(raw) == expected
