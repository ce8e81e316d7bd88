"""
Group standings, tiebreakers and advancement.
"""

import functools
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import ValidationError

TIEBREAKERS = {
    "leg_difference": "Leg Difference (+/-)",
    "head_to_head": "Head-to-Head Result",
    "legs_won": "Total Legs Won",
    "legs_lost": "Total Legs Lost",
    "match_wins": "Total Match Wins",
}

PRIMARY_METRICS = ("match_wins", "leg_wins", "tournament_points")

DEFAULT_TIEBREAK_ORDER = ["head_to_head", "leg_difference", "legs_won"]

_ADVANCEMENT_RE = re.compile(r"top\s*(\d+)", re.IGNORECASE)


def normalize_tiebreak_order(order: Sequence[str]) -> List[str]:
    """
    Validate a tiebreak order and drop repeated rules.

    @param order: Tiebreaker names, most important first
    @return: The order with duplicates removed, first position kept
    """
    normalized = []
    for rule in order:
        if rule not in TIEBREAKERS:
            raise ValidationError(f"Unknown tiebreaker: {rule}")
        if rule not in normalized:
            normalized.append(rule)
    return normalized


def add_tiebreaker(order: Sequence[str], rule: str) -> List[str]:
    """Append a tiebreaker unless it is already in the order."""
    return normalize_tiebreak_order(list(order) + [rule])


def remove_tiebreaker(order: Sequence[str], index: int) -> List[str]:
    return [rule for i, rule in enumerate(order) if i != index]


def move_tiebreaker(order: Sequence[str], index: int, offset: int) -> List[str]:
    """
    Swap the tiebreaker at index with its neighbour.

    @param order: Current order
    @param index: Position of the rule to move
    @param offset: -1 moves it up, +1 moves it down
    @return: New order, unchanged when the move would leave the list
    """
    target = index + offset
    new_order = list(order)
    if not 0 <= index < len(new_order) or not 0 <= target < len(new_order):
        return new_order
    new_order[index], new_order[target] = new_order[target], new_order[index]
    return new_order


def parse_advancement_count(rules: Optional[str], default: int = 2) -> int:
    """
    Read the advancement count out of free-text rules such as "Top 2 advance".

    @param rules: Tournament advancement rules
    @param default: Count used when the rules do not say
    @return: Players advancing per group
    """
    if rules:
        match = _ADVANCEMENT_RE.search(rules)
        if match:
            return int(match.group(1))
    return default


@dataclass
class ScoringSystem:
    primary_metric: str = "tournament_points"
    points_for_win: int = 2
    points_for_draw: int = 1
    points_for_loss: int = 0
    tiebreak_order: List[str] = field(
        default_factory=lambda: list(DEFAULT_TIEBREAK_ORDER)
    )

    def __post_init__(self) -> None:
        if self.primary_metric not in PRIMARY_METRICS:
            raise ValidationError(f"Unknown primary metric: {self.primary_metric}")
        self.tiebreak_order = normalize_tiebreak_order(self.tiebreak_order)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ScoringSystem":
        if not data:
            return cls()

        kwargs = {}
        for key in (
            "primary_metric",
            "points_for_win",
            "points_for_draw",
            "points_for_loss",
            "tiebreak_order",
        ):
            if data.get(key) is not None:
                kwargs[key] = data[key]

        for key in ("points_for_win", "points_for_draw", "points_for_loss"):
            if key in kwargs:
                try:
                    kwargs[key] = int(kwargs[key])
                except (TypeError, ValueError):
                    raise ValidationError(f"{key} must be an integer") from None

        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PlayerStanding:
    player_id: str
    player_name: str
    matches_played: int = 0
    wins: int = 0
    losses: int = 0
    ties: int = 0
    legs_won: int = 0
    legs_lost: int = 0
    points: int = 0
    is_advancing: bool = False
    rank: int = 0

    @property
    def legs_played(self) -> int:
        return self.legs_won + self.legs_lost

    @property
    def leg_difference(self) -> int:
        return self.legs_won - self.legs_lost

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["legs_played"] = self.legs_played
        data["leg_difference"] = self.leg_difference
        return data


def _is_completed(match: Mapping[str, Any]) -> bool:
    return match.get("status") == "completed"


def head_to_head(
    player1_id: str,
    player2_id: str,
    matches: Sequence[Mapping[str, Any]],
) -> int:
    """
    Compare two players on their completed meeting.

    @return: -1 if player1 won, 1 if player2 won, 0 otherwise
    """
    for match in matches:
        pair = {match.get("player1_id"), match.get("player2_id")}
        if pair != {player1_id, player2_id} or not _is_completed(match):
            continue
        if match.get("winner_id") == player1_id:
            return -1
        if match.get("winner_id") == player2_id:
            return 1
        return 0
    return 0


def _primary_value(standing: PlayerStanding, metric: str) -> int:
    if metric == "match_wins":
        return standing.wins
    if metric == "leg_wins":
        return standing.legs_won
    return standing.points


def _compare_desc(a: int, b: int) -> int:
    return (b > a) - (b < a)


def calculate_standings(
    players: Sequence[Mapping[str, Any]],
    matches: Sequence[Mapping[str, Any]],
    scoring: Optional[ScoringSystem] = None,
    advancing_count: int = 2,
    group_stage_completed: bool = False,
) -> List[PlayerStanding]:
    """
    Rank a group from its completed matches.

    Order is the primary metric, then each tiebreaker in the configured
    order, then name. Players are marked advancing only once the group stage
    is completed.

    @param players: Group players, dicts with "id" and "name"
    @param matches: Group matches, dicts as stored in the matches table
    @param scoring: Scoring system (default: 2 points per win)
    @param advancing_count: Players advancing from the group
    @param group_stage_completed: Whether advancement is final
    @return: Standings, best first, ranks from 1
    """
    scoring = scoring or ScoringSystem()
    standings = {
        p["id"]: PlayerStanding(player_id=p["id"], player_name=p["name"])
        for p in players
    }

    for match in matches:
        if not _is_completed(match):
            continue

        legs = {
            match.get("player1_id"): match.get("player1_legs") or 0,
            match.get("player2_id"): match.get("player2_legs") or 0,
        }
        winner = match.get("winner_id")

        for player_id, opponent_id in (
            (match.get("player1_id"), match.get("player2_id")),
            (match.get("player2_id"), match.get("player1_id")),
        ):
            standing = standings.get(player_id)
            if standing is None:
                continue

            standing.matches_played += 1
            standing.legs_won += legs[player_id]
            standing.legs_lost += legs[opponent_id]

            if winner == player_id:
                standing.wins += 1
            elif winner:
                standing.losses += 1
            else:
                standing.ties += 1

    for standing in standings.values():
        standing.points = (
            standing.wins * scoring.points_for_win
            + standing.ties * scoring.points_for_draw
            + standing.losses * scoring.points_for_loss
        )

    def compare(a: PlayerStanding, b: PlayerStanding) -> int:
        result = _compare_desc(
            _primary_value(a, scoring.primary_metric),
            _primary_value(b, scoring.primary_metric),
        )
        if result:
            return result

        for rule in scoring.tiebreak_order:
            if rule == "head_to_head":
                result = head_to_head(a.player_id, b.player_id, matches)
            elif rule == "leg_difference":
                result = _compare_desc(a.leg_difference, b.leg_difference)
            elif rule == "legs_won":
                result = _compare_desc(a.legs_won, b.legs_won)
            elif rule == "legs_lost":
                result = -_compare_desc(a.legs_lost, b.legs_lost)
            elif rule == "match_wins":
                result = _compare_desc(a.wins, b.wins)
            if result:
                return result

        name_a, name_b = a.player_name.casefold(), b.player_name.casefold()
        return (name_a > name_b) - (name_a < name_b)

    ranked = sorted(standings.values(), key=functools.cmp_to_key(compare))
    for rank, standing in enumerate(ranked, 1):
        standing.rank = rank
        standing.is_advancing = group_stage_completed and rank <= advancing_count

    return ranked
