"""
Knockout bracket seeding and progression.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import SchedulingError


@dataclass
class SeededPlayer:
    player_id: str
    name: str
    group_letter: str
    group_rank: int
    overall_seed: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BracketMatch:
    round_index: int
    position: int
    round_name: str
    player1_id: Optional[str] = None
    player2_id: Optional[str] = None
    player1_seed: Optional[int] = None
    player2_seed: Optional[int] = None
    winner_id: Optional[str] = None
    status: str = "pending"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Bracket:
    rounds: List[List[BracketMatch]] = field(default_factory=list)

    @property
    def champion(self) -> Optional[str]:
        if not self.rounds:
            return None
        return self.rounds[-1][0].winner_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rounds": [[m.to_dict() for m in matches] for matches in self.rounds],
            "champion": self.champion,
        }


def seed_advancing_players(
    advancing_by_group: Mapping[str, Sequence[Mapping[str, Any]]],
) -> List[SeededPlayer]:
    """
    Seed group qualifiers rank-major.

    All group winners come first in group letter order, then all runners-up,
    and so on. Groups may send different numbers of players.

    @param advancing_by_group: Group letter -> qualifiers in finishing order,
        each a dict with "id" and "name"
    @return: Seeded players, overall seed 1 first
    """
    letters = sorted(advancing_by_group)
    deepest = max((len(advancing_by_group[l]) for l in letters), default=0)
    seeded = []

    for rank in range(1, deepest + 1):
        for letter in letters:
            qualifiers = advancing_by_group[letter]
            if len(qualifiers) >= rank:
                player = qualifiers[rank - 1]
                seeded.append(
                    SeededPlayer(
                        player_id=player["id"],
                        name=player["name"],
                        group_letter=letter,
                        group_rank=rank,
                        overall_seed=len(seeded) + 1,
                    )
                )

    return seeded


def round_name(entrants: int) -> str:
    """Name of a knockout round by the number of players entering it."""
    if entrants <= 2:
        return "Final"
    if entrants <= 4:
        return "Semi-Final"
    if entrants <= 8:
        return "Quarter-Final"
    if entrants <= 16:
        return "Round of 16"
    if entrants <= 32:
        return "Round of 32"
    return "First Round"


def bracket_order(size: int) -> List[int]:
    """
    Seed numbers in bracket line order for a power-of-two bracket.

    Consecutive pairs meet in round one, e.g. 8 gives 1, 8, 4, 5, 2, 7, 3, 6,
    so seeds 1 and 2 can only meet in the final.
    """
    seeds = [1]
    while len(seeds) < size:
        mirror = len(seeds) * 2 + 1
        seeds = [s for seed in seeds for s in (seed, mirror - seed)]
    return seeds


def next_slot(round_index: int, position: int) -> Tuple[int, int, str]:
    """
    Where the winner of a match plays next.

    @return: (round_index, position, "player1" or "player2")
    """
    slot = "player1" if position % 2 == 0 else "player2"
    return round_index + 1, position // 2, slot


def build_bracket(seeded: Sequence[SeededPlayer]) -> Bracket:
    """
    Build a single-elimination bracket.

    The field is padded to the next power of two; seed 1 meets the last
    seed, seed 2 the second to last, and so on. Top seeds without an opponent
    get a bye and are advanced straight away.

    @param seeded: Players ordered by overall seed
    @return: Bracket with every round created
    """
    if len(seeded) < 2:
        raise SchedulingError("A knockout needs at least 2 players")

    size = 1
    while size < len(seeded):
        size *= 2

    by_seed = {i + 1: player for i, player in enumerate(seeded)}
    order = bracket_order(size)
    bracket = Bracket()

    first_round = []
    for position in range(size // 2):
        seed1, seed2 = order[2 * position], order[2 * position + 1]
        player1, player2 = by_seed.get(seed1), by_seed.get(seed2)
        first_round.append(
            BracketMatch(
                round_index=0,
                position=position,
                round_name=round_name(size),
                player1_id=player1.player_id if player1 else None,
                player2_id=player2.player_id if player2 else None,
                player1_seed=seed1 if player1 else None,
                player2_seed=seed2 if player2 else None,
            )
        )
    bracket.rounds.append(first_round)

    entrants = size // 2
    round_index = 1
    while entrants >= 2:
        bracket.rounds.append(
            [
                BracketMatch(
                    round_index=round_index,
                    position=position,
                    round_name=round_name(entrants),
                )
                for position in range(entrants // 2)
            ]
        )
        entrants //= 2
        round_index += 1

    for match in first_round:
        if match.player1_id and not match.player2_id:
            advance_winner(bracket, 0, match.position, match.player1_id)
            match.status = "bye"

    return bracket


def advance_winner(
    bracket: Bracket,
    round_index: int,
    position: int,
    winner_id: str,
) -> Optional[BracketMatch]:
    """
    Record a winner and move them into the next round.

    @param bracket: Bracket to update
    @param round_index: Round of the decided match
    @param position: Position of the match within its round
    @param winner_id: Id of the winning player
    @return: The next-round match, None after the final
    """
    try:
        match = bracket.rounds[round_index][position]
    except IndexError:
        raise SchedulingError(
            f"No match at round {round_index}, position {position}"
        ) from None

    if winner_id not in (match.player1_id, match.player2_id):
        raise SchedulingError(f"{winner_id} is not playing in this match")

    match.winner_id = winner_id
    match.status = "completed"

    next_round, next_position, slot = next_slot(round_index, position)
    if next_round >= len(bracket.rounds):
        return None

    seed = match.player1_seed if winner_id == match.player1_id else match.player2_seed
    target = bracket.rounds[next_round][next_position]
    setattr(target, f"{slot}_id", winner_id)
    setattr(target, f"{slot}_seed", seed)
    return target
