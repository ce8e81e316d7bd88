"""
Group distribution and round-robin scheduling for the group stage.

Groups are balanced so that no two groups differ by more than one entrant.
Round-robin schedules follow the circle method: fixed tables for the common
even group sizes, and a generated rotation for anything larger. Odd groups use
the next even schedule and every match against the phantom entrant is a bye.
"""

import logging
import random
import string
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import SchedulingError

logger = logging.getLogger(__name__)

# Standard circle-method schedules, 1-indexed entrant numbers per round.
ROUND_ROBIN_SCHEDULES: Dict[int, List[List[Tuple[int, int]]]] = {
    4: [
        [(1, 4), (2, 3)],
        [(4, 3), (1, 2)],
        [(2, 4), (3, 1)],
    ],
    6: [
        [(1, 6), (2, 5), (3, 4)],
        [(6, 4), (5, 3), (1, 2)],
        [(2, 6), (3, 1), (4, 5)],
        [(6, 5), (1, 4), (2, 3)],
        [(3, 6), (4, 2), (5, 1)],
    ],
    8: [
        [(1, 8), (2, 7), (3, 6), (4, 5)],
        [(8, 5), (6, 4), (7, 3), (1, 2)],
        [(2, 8), (3, 1), (4, 7), (5, 6)],
        [(8, 6), (7, 5), (1, 4), (2, 3)],
        [(3, 8), (4, 2), (5, 1), (6, 7)],
        [(8, 7), (1, 6), (2, 5), (3, 4)],
        [(4, 8), (5, 3), (6, 2), (7, 1)],
    ],
    10: [
        [(1, 10), (2, 9), (3, 8), (4, 7), (5, 6)],
        [(10, 6), (7, 5), (8, 4), (9, 3), (1, 2)],
        [(2, 10), (3, 1), (4, 9), (5, 8), (6, 7)],
        [(10, 7), (8, 6), (9, 5), (1, 4), (2, 3)],
        [(3, 10), (4, 2), (5, 1), (6, 9), (7, 8)],
        [(10, 8), (9, 7), (1, 6), (2, 5), (3, 4)],
        [(4, 10), (5, 3), (6, 2), (7, 1), (8, 9)],
        [(10, 9), (1, 8), (2, 7), (3, 6), (4, 5)],
        [(5, 10), (6, 4), (7, 3), (8, 2), (9, 1)],
    ],
    12: [
        [(1, 12), (2, 11), (3, 10), (4, 9), (5, 8), (6, 7)],
        [(12, 7), (8, 6), (9, 5), (10, 4), (11, 3), (1, 2)],
        [(2, 12), (3, 1), (4, 11), (5, 10), (6, 9), (7, 8)],
        [(12, 8), (9, 7), (10, 6), (11, 5), (1, 4), (2, 3)],
        [(3, 12), (4, 2), (5, 1), (6, 11), (7, 10), (8, 9)],
        [(12, 9), (10, 8), (11, 7), (1, 6), (2, 5), (3, 4)],
        [(4, 12), (5, 3), (6, 2), (7, 1), (8, 11), (9, 10)],
        [(12, 10), (11, 9), (1, 8), (2, 7), (3, 6), (4, 5)],
        [(5, 12), (6, 4), (7, 3), (8, 2), (9, 1), (10, 11)],
        [(12, 11), (1, 10), (2, 9), (3, 8), (4, 7), (5, 6)],
        [(6, 12), (7, 5), (8, 4), (9, 3), (10, 2), (11, 1)],
    ],
}


@dataclass
class GroupDistribution:
    group_sizes: List[int]
    base_size: int
    larger_groups: int


@dataclass
class ScheduledMatch:
    round: int
    player1: str
    player2: str
    board: int
    player1_id: Optional[str] = None
    player2_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GroupSchedule:
    group_index: int
    group_letter: str
    matches: List[ScheduledMatch] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_index": self.group_index,
            "group_letter": self.group_letter,
            "matches": [m.to_dict() for m in self.matches],
        }


def group_letter(index: int) -> str:
    """
    Letter label for a group index: A, B, ... Z, then AA, AB, ...

    @param index: Zero-based group index
    @return: Group letter(s)
    """
    letters = string.ascii_uppercase
    if index < len(letters):
        return letters[index]
    return group_letter(index // len(letters) - 1) + letters[index % len(letters)]


def calculate_group_distribution(
    total_players: int,
    total_groups: int,
) -> GroupDistribution:
    """
    Calculate balanced group sizes.

    The first ``total_players % total_groups`` groups get one extra player,
    so no group differs from another by more than one.

    @param total_players: Number of entrants (players or teams)
    @param total_groups: Number of groups to create
    @return: GroupDistribution with one size per group
    """
    if total_groups < 1:
        raise SchedulingError("At least one group is required")
    if total_players < 0:
        raise SchedulingError("Player count cannot be negative")

    base_size, remainder = divmod(total_players, total_groups)
    group_sizes = [
        base_size + 1 if i < remainder else base_size for i in range(total_groups)
    ]

    return GroupDistribution(
        group_sizes=group_sizes,
        base_size=base_size,
        larger_groups=remainder,
    )


def validate_group_distribution(group_sizes: Sequence[int]) -> bool:
    """No group may differ from another by more than one entrant."""
    if not group_sizes:
        return True
    return max(group_sizes) - min(group_sizes) <= 1


def distribute_players_into_groups(
    players: Sequence[Any],
    num_groups: int,
    shuffle: bool = True,
    rng: Optional[random.Random] = None,
) -> List[List[Any]]:
    """
    Split players into balanced groups.

    @param players: Players in seeding or registration order
    @param num_groups: Number of groups
    @param shuffle: Randomize the order before slicing
    @param rng: Random generator to use (default module random)
    @return: One list of players per group
    """
    player_list = list(players)
    if shuffle:
        (rng or random).shuffle(player_list)

    distribution = calculate_group_distribution(len(player_list), num_groups)
    groups = []
    start = 0

    for size in distribution.group_sizes:
        groups.append(player_list[start:start + size])
        start += size

    return groups


def _circle_schedule(size: int) -> List[List[Tuple[int, int]]]:
    """Generate a circle-method schedule for an even number of entrants."""
    positions = list(range(1, size + 1))
    rounds = []

    for _ in range(size - 1):
        rounds.append(
            [(positions[i], positions[size - 1 - i]) for i in range(size // 2)]
        )
        # Entrant 1 stays fixed, everyone else rotates one seat
        positions = [positions[0], positions[-1]] + positions[1:-1]

    return rounds


def _schedule_for(player_count: int) -> List[List[Tuple[int, int]]]:
    schedule_size = player_count if player_count % 2 == 0 else player_count + 1
    schedule = ROUND_ROBIN_SCHEDULES.get(schedule_size)

    if schedule is None:
        logger.debug(
            "No fixed schedule for %d players, generating circle rotation",
            player_count,
        )
        schedule = _circle_schedule(schedule_size)

    return schedule


def _round_robin_pairs(player_count: int) -> Iterator[Tuple[int, int, int]]:
    """
    Yield (round, index1, index2) for every real match, zero-based indexes.

    Matches against the phantom entrant of an odd group are byes and skipped.
    """
    seen = set()

    for round_number, pairings in enumerate(_schedule_for(player_count), 1):
        for p1, p2 in pairings:
            if p1 > player_count or p2 > player_count:
                bye = p2 if p1 > player_count else p1
                logger.debug("Round %d, bye: entrant %d", round_number, bye)
                continue

            key = (min(p1, p2), max(p1, p2))
            if key in seen:
                logger.error(
                    "Duplicate match %d vs %d in round %d skipped",
                    p1,
                    p2,
                    round_number,
                )
                continue

            seen.add(key)
            yield round_number, p1 - 1, p2 - 1


def _check_lengths(players: Sequence[str], player_ids: Sequence[str]) -> None:
    if len(players) != len(player_ids):
        raise SchedulingError("Players and player ids must have the same length")


def generate_round_robin(
    players: Sequence[str],
    player_ids: Sequence[str],
    total_boards: int = 2,
) -> List[ScheduledMatch]:
    """
    Generate a round robin where every player meets every other exactly once.

    Boards rotate 1..total_boards across all rounds.

    @param players: Player names
    @param player_ids: Player ids in the same order
    @param total_boards: Number of boards available to rotate through
    @return: Matches ordered by round
    """
    _check_lengths(players, player_ids)
    if len(players) < 2:
        return []

    boards = max(1, total_boards)
    matches = []

    for counter, (round_number, i, j) in enumerate(_round_robin_pairs(len(players))):
        matches.append(
            ScheduledMatch(
                round=round_number,
                player1=players[i],
                player2=players[j],
                board=(counter % boards) + 1,
                player1_id=player_ids[i],
                player2_id=player_ids[j],
            )
        )

    expected = len(players) * (len(players) - 1) // 2
    if len(matches) != expected:
        logger.warning(
            "Match count mismatch: created %d, expected %d", len(matches), expected
        )

    return matches


def generate_round_robin_on_boards(
    players: Sequence[str],
    player_ids: Sequence[str],
    board_numbers: Sequence[int],
) -> List[ScheduledMatch]:
    """
    Generate a round robin on a group's own boards.

    Boards are used lowest to highest in sequence across all rounds.

    @param players: Player names
    @param player_ids: Player ids in the same order
    @param board_numbers: Board numbers allocated to the group, e.g. [4, 5]
    @return: Matches ordered by round
    """
    _check_lengths(players, player_ids)
    if len(players) < 2:
        logger.warning("Cannot generate matches: need at least 2 players")
        return []

    boards = sorted(board_numbers) or [1]
    matches = []

    for counter, (round_number, i, j) in enumerate(_round_robin_pairs(len(players))):
        matches.append(
            ScheduledMatch(
                round=round_number,
                player1=players[i],
                player2=players[j],
                board=boards[counter % len(boards)],
                player1_id=player_ids[i],
                player2_id=player_ids[j],
            )
        )

    return matches


def allocate_boards(num_groups: int, total_boards: int) -> List[List[int]]:
    """
    Split boards 1..total_boards into contiguous blocks, one per group.

    With fewer boards than groups, boards are shared in rotation so every
    group still gets one.

    @param num_groups: Number of groups
    @param total_boards: Boards available at the venue
    @return: Board numbers per group
    """
    if total_boards < 1:
        raise SchedulingError("At least one board is required")

    if total_boards < num_groups:
        return [[(i % total_boards) + 1] for i in range(num_groups)]

    distribution = calculate_group_distribution(total_boards, num_groups)
    allocation = []
    next_board = 1

    for size in distribution.group_sizes:
        allocation.append(list(range(next_board, next_board + size)))
        next_board += size

    return allocation


def generate_group_stage_matches(
    groups: Sequence[Sequence[Dict[str, str]]],
    boards_per_group: Optional[Sequence[Sequence[int]]] = None,
) -> List[GroupSchedule]:
    """
    Generate round-robin schedules for every group.

    @param groups: Groups of players, each player a dict with "id" and "name"
    @param boards_per_group: Board numbers per group, e.g. [[1, 2], [3, 4]]
    @return: One GroupSchedule per group
    """
    boards_per_group = boards_per_group or []
    schedules = []

    for index, group in enumerate(groups):
        boards = boards_per_group[index] if index < len(boards_per_group) else [1]
        matches = generate_round_robin_on_boards(
            [p["name"] for p in group],
            [p["id"] for p in group],
            boards or [1],
        )
        schedules.append(
            GroupSchedule(
                group_index=index,
                group_letter=group_letter(index),
                matches=matches,
            )
        )

    return schedules


def get_bye_player(players: Sequence[str], round_number: int) -> Optional[str]:
    """Player sitting out a round in an odd group, None for even groups."""
    if not players or len(players) % 2 == 0:
        return None
    return players[(round_number - 1) % len(players)]


def board_usage(matches: Sequence[ScheduledMatch]) -> Dict[str, Any]:
    """
    Summarize how often each board is used, overall and per player.

    @param matches: A generated schedule
    @return: {"overall": {board: count}, "per_player": {player: {board: count}}}
    """
    overall: Dict[int, int] = {}
    per_player: Dict[str, Dict[int, int]] = {}

    for match in matches:
        overall[match.board] = overall.get(match.board, 0) + 1
        for player in (match.player1, match.player2):
            boards = per_player.setdefault(player, {})
            boards[match.board] = boards.get(match.board, 0) + 1

    return {"overall": overall, "per_player": per_player}


def format_schedule(players: Sequence[str], total_boards: int = 2) -> str:
    """
    Render a printable schedule with board usage statistics.

    @param players: Player names
    @param total_boards: Boards to rotate through
    @return: Multi-line text
    """
    ids = [f"player-{i}" for i in range(len(players))]
    matches = generate_round_robin(players, ids, total_boards)

    lines = [
        "=== Round-Robin Schedule ===",
        f"Players: {len(players)}, Boards: {total_boards}",
        f"Total Matches: {len(matches)}",
        "",
    ]

    rounds = sorted({m.round for m in matches})
    for round_number in rounds:
        lines.append(f"Round {round_number}:")
        for match in matches:
            if match.round == round_number:
                lines.append(
                    f"  Board {match.board}: {match.player1} vs {match.player2}"
                )
        playing = {
            name
            for m in matches
            if m.round == round_number
            for name in (m.player1, m.player2)
        }
        for name in players:
            if name not in playing:
                lines.append(f"  Bye: {name}")
        lines.append("")

    usage = board_usage(matches)
    lines.append("=== Board Usage Statistics ===")
    lines.append("Overall:")
    for board, count in sorted(usage["overall"].items()):
        lines.append(f"  Board {board}: {count} matches")
    lines.append("")
    lines.append("Per Player:")
    for player, boards in usage["per_player"].items():
        counts = ", ".join(f"Board {b}:{c}" for b, c in sorted(boards.items()))
        lines.append(f"  {player}: {counts}")

    return "\n".join(lines)
