import pytest

from oche.errors import ValidationError
from oche.standings import (
    ScoringSystem,
    add_tiebreaker,
    calculate_standings,
    head_to_head,
    move_tiebreaker,
    normalize_tiebreak_order,
    parse_advancement_count,
    remove_tiebreaker,
)

PLAYERS = [
    {"id": "ann", "name": "Ann"},
    {"id": "bob", "name": "Bob"},
    {"id": "cat", "name": "Cat"},
    {"id": "dan", "name": "Dan"},
]


def match(p1, p2, legs1, legs2, status="completed"):
    winner = None
    if status == "completed":
        winner = p1 if legs1 > legs2 else p2 if legs2 > legs1 else None
    return {
        "player1_id": p1,
        "player2_id": p2,
        "player1_legs": legs1,
        "player2_legs": legs2,
        "winner_id": winner,
        "status": status,
    }


def test_standings_count_results_and_points():
    matches = [
        match("ann", "bob", 3, 1),
        match("cat", "dan", 3, 2),
        match("ann", "cat", 3, 0),
        match("bob", "dan", 2, 2),
        match("ann", "dan", 1, 0, status="in-progress"),
    ]

    standings = calculate_standings(PLAYERS, matches)
    by_id = {s.player_id: s for s in standings}

    assert [s.player_id for s in standings][0] == "ann"
    assert by_id["ann"].matches_played == 2
    assert by_id["ann"].points == 4
    assert by_id["ann"].legs_won == 6
    assert by_id["ann"].leg_difference == 5
    assert by_id["bob"].ties == 1
    assert by_id["bob"].points == 1
    assert by_id["cat"].to_dict()["legs_played"] == 8
    assert [s.rank for s in standings] == [1, 2, 3, 4]


def test_head_to_head_breaks_a_points_tie():
    matches = [
        match("bob", "ann", 3, 2),
        match("ann", "cat", 3, 0),
        match("dan", "bob", 3, 0),
    ]

    standings = calculate_standings(PLAYERS, matches)

    # Dan beat Bob, Bob beat Ann, Dan has the better leg difference over Ann
    assert [s.player_id for s in standings] == ["dan", "bob", "ann", "cat"]


def test_tiebreak_order_is_configurable():
    matches = [
        match("bob", "ann", 3, 2),
        match("ann", "cat", 3, 0),
        match("dan", "bob", 3, 0),
    ]
    scoring = ScoringSystem(tiebreak_order=["leg_difference", "head_to_head"])

    standings = calculate_standings(PLAYERS, matches, scoring)
    ranks = {s.player_id: s.rank for s in standings}

    # Ann +2, Bob -2 on legs
    assert ranks["ann"] < ranks["bob"]


def test_primary_metric_leg_wins():
    matches = [match("ann", "bob", 3, 2), match("bob", "cat", 3, 0)]
    scoring = ScoringSystem(primary_metric="leg_wins")

    standings = calculate_standings(PLAYERS[:3], matches, scoring)

    assert standings[0].player_id == "bob"
    assert standings[0].legs_won == 5


def test_names_break_a_complete_tie():
    standings = calculate_standings(PLAYERS, [])

    assert [s.player_name for s in standings] == ["Ann", "Bob", "Cat", "Dan"]


def test_advancing_only_after_group_stage_completed():
    matches = [match("ann", "bob", 3, 0), match("cat", "dan", 3, 0)]

    open_stage = calculate_standings(PLAYERS, matches, advancing_count=2)
    assert not any(s.is_advancing for s in open_stage)

    closed = calculate_standings(
        PLAYERS, matches, advancing_count=2, group_stage_completed=True
    )
    assert [s.is_advancing for s in closed] == [True, True, False, False]


def test_custom_points():
    matches = [match("ann", "bob", 3, 0), match("cat", "dan", 1, 1)]
    scoring = ScoringSystem(points_for_win=3, points_for_draw=1, points_for_loss=0)

    by_id = {s.player_id: s for s in calculate_standings(PLAYERS, matches, scoring)}

    assert by_id["ann"].points == 3
    assert by_id["cat"].points == 1


def test_head_to_head_function():
    matches = [match("ann", "bob", 3, 1)]

    assert head_to_head("ann", "bob", matches) == -1
    assert head_to_head("bob", "ann", matches) == 1
    assert head_to_head("ann", "cat", matches) == 0


def test_scoring_system_from_dict():
    scoring = ScoringSystem.from_dict(
        {"points_for_win": "3", "tiebreak_order": ["legs_won"], "roundrobin_format": "x"}
    )

    assert scoring.points_for_win == 3
    assert scoring.tiebreak_order == ["legs_won"]
    assert ScoringSystem.from_dict(None) == ScoringSystem()


def test_scoring_system_rejects_bad_values():
    with pytest.raises(ValidationError):
        ScoringSystem(primary_metric="style_points")
    with pytest.raises(ValidationError):
        ScoringSystem.from_dict({"points_for_win": "lots"})
    with pytest.raises(ValidationError):
        normalize_tiebreak_order(["coin_toss"])


def test_tiebreak_order_editing():
    order = ["head_to_head", "leg_difference"]

    assert add_tiebreaker(order, "legs_won") == ["head_to_head", "leg_difference", "legs_won"]
    assert add_tiebreaker(order, "head_to_head") == order
    assert remove_tiebreaker(order, 0) == ["leg_difference"]
    assert move_tiebreaker(order, 1, -1) == ["leg_difference", "head_to_head"]
    assert move_tiebreaker(order, 0, -1) == order


@pytest.mark.parametrize(
    "rules, expected",
    [("Top 2 advance", 2), ("top3 from each group", 3), ("Winners only", 2), (None, 2)],
)
def test_parse_advancement_count(rules, expected):
    assert parse_advancement_count(rules) == expected
