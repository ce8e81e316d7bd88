"""
Tournament workflows built from the pure scheduling, standings and
knockout functions and the database.
"""

import logging
import random
from typing import Any, Dict, List, Optional

from .database import DatabaseManager
from .errors import ValidationError
from .knockout import Bracket, build_bracket, seed_advancing_players
from .mailer import (
    BulkResult,
    GroupAssignment,
    TournamentMailer,
    describe_boards,
    describe_match_format,
)
from .scheduling import (
    allocate_boards,
    calculate_group_distribution,
    distribute_players_into_groups,
    generate_group_stage_matches,
    group_letter,
)
from .standings import ScoringSystem, calculate_standings, parse_advancement_count

logger = logging.getLogger(__name__)


def advancing_count(tournament: Dict[str, Any]) -> int:
    """Players advancing per group: explicit setting, else parsed from the rules."""
    if tournament.get("players_advancing_per_group"):
        return int(tournament["players_advancing_per_group"])
    return parse_advancement_count(tournament.get("advancement_rules"))


def draw_entrants(
    players: List[Dict[str, Any]],
    game_type: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Units a group draw places: players in singles, teams in doubles.

    A doubles team enters under its first member's id, named after both
    partners, and counts as checked in once every member is. Players without
    a team enter on their own.

    @param players: Tournament players in registration order
    @param game_type: "singles" or "doubles"
    @return: Entrant dicts with "member_ids" added
    """
    if game_type != "doubles":
        return [{**p, "member_ids": [p["id"]]} for p in players]

    teams: Dict[str, Dict[str, Any]] = {}
    entrants = []
    for player in players:
        team_id = player.get("team_id")
        if not team_id:
            entrants.append({**player, "member_ids": [player["id"]]})
            continue

        team = teams.get(team_id)
        if team is None:
            team = teams[team_id] = {**player, "member_ids": [], "names": []}
            entrants.append(team)
        team["member_ids"].append(player["id"])
        team["names"].append(player["name"])
        team["checked_in"] = team["checked_in"] and player["checked_in"]

    for team in teams.values():
        team["name"] = " & ".join(team.pop("names"))
    return entrants


def preview_groups(
    player_count: int,
    num_groups: int,
    total_boards: int,
) -> Dict[str, Any]:
    """
    Group sizes and boards a group draw would produce.

    @return: {"group_sizes", "base_size", "larger_groups", "groups": [...]}
    """
    distribution = calculate_group_distribution(player_count, num_groups)
    boards = allocate_boards(num_groups, total_boards)
    return {
        "group_sizes": distribution.group_sizes,
        "base_size": distribution.base_size,
        "larger_groups": distribution.larger_groups,
        "groups": [
            {
                "name": group_letter(i),
                "size": size,
                "board_numbers": boards[i],
            }
            for i, size in enumerate(distribution.group_sizes)
        ],
    }


async def generate_groups(
    db: DatabaseManager,
    tournament: Dict[str, Any],
    num_groups: Optional[int] = None,
    total_boards: Optional[int] = None,
    checked_in_only: bool = True,
    shuffle: bool = True,
    rng: Optional[random.Random] = None,
) -> List[Dict[str, Any]]:
    """
    Draw players into groups and schedule every group's round robin.

    @param db: Database manager
    @param tournament: Tournament record
    @param num_groups: Groups to draw (default: tournament setting)
    @param total_boards: Boards available (default: tournament setting)
    @param checked_in_only: Only draw checked-in players
    @param shuffle: Shuffle players before the draw
    @param rng: Random source for the shuffle
    @return: The stored groups
    """
    num_groups = num_groups or tournament["num_groups"]
    total_boards = total_boards or tournament["total_boards"]

    unit = "teams" if tournament.get("game_type") == "doubles" else "players"
    entrants = draw_entrants(
        await db.list_players(tournament["id"]), tournament.get("game_type")
    )
    if checked_in_only:
        entrants = [e for e in entrants if e["checked_in"]]
    if len(entrants) < 2:
        raise ValidationError(f"At least 2 {unit} are needed to draw groups")
    if num_groups > len(entrants) // 2:
        raise ValidationError(
            f"{len(entrants)} {unit} cannot fill {num_groups} groups of at least 2"
        )

    drawn = distribute_players_into_groups(entrants, num_groups, shuffle=shuffle, rng=rng)
    boards = allocate_boards(num_groups, total_boards)

    groups = []
    for members, schedule in zip(drawn, generate_group_stage_matches(drawn, boards)):
        board_numbers = boards[schedule.group_index]
        groups.append(
            {
                "name": schedule.group_letter,
                "board_numbers": board_numbers,
                "player_ids": [pid for e in members for pid in e["member_ids"]],
                "matches": schedule.matches,
            }
        )
        logger.info(
            "Group %s: %d %s, %d matches on boards %s",
            schedule.group_letter,
            len(members),
            unit,
            len(schedule.matches),
            board_numbers,
        )

    return await db.replace_groups(tournament["id"], groups)


async def group_standings(
    db: DatabaseManager,
    tournament: Dict[str, Any],
) -> List[Dict[str, Any]]:
    """
    Standings of every group.

    @return: One {"group", "advancing_count", "standings"} dict per group,
        standings as PlayerStanding objects
    """
    scoring = ScoringSystem.from_dict(tournament.get("scoring_system"))
    advancing = advancing_count(tournament)
    players = await db.list_players(tournament["id"])
    matches = await db.list_matches(tournament["id"], stage="group")

    tables = []
    for group in await db.list_groups(tournament["id"]):
        tables.append(
            {
                "group": group,
                "advancing_count": advancing,
                "standings": calculate_standings(
                    draw_entrants(
                        [p for p in players if p["group_id"] == group["id"]],
                        tournament.get("game_type"),
                    ),
                    [m for m in matches if m["group_id"] == group["id"]],
                    scoring,
                    advancing_count=advancing,
                    group_stage_completed=bool(tournament["group_stage_completed"]),
                ),
            }
        )
    return tables


async def complete_group_stage(
    db: DatabaseManager,
    tournament: Dict[str, Any],
    force: bool = False,
) -> Dict[str, Any]:
    """
    Close the group stage so advancement becomes final.

    @param force: Close even if group matches are still open
    @return: The updated tournament
    """
    matches = await db.list_matches(tournament["id"], stage="group")
    if not matches:
        raise ValidationError("The group stage has no matches")

    open_matches = [m for m in matches if m["status"] != "completed"]
    if open_matches and not force:
        raise ValidationError(f"{len(open_matches)} group matches are not completed")

    return await db.update_tournament(tournament["id"], {"group_stage_completed": True})


async def create_knockout(
    db: DatabaseManager,
    tournament: Dict[str, Any],
) -> Bracket:
    """
    Seed the group qualifiers and store the knockout bracket.

    @return: The bracket as built, byes already advanced
    """
    if not tournament["group_stage_completed"]:
        raise ValidationError("Complete the group stage before creating the knockout")

    advancing_by_group = {}
    for table in await group_standings(db, tournament):
        advancing_by_group[table["group"]["name"]] = [
            {"id": s.player_id, "name": s.player_name}
            for s in table["standings"]
            if s.is_advancing
        ]

    seeded = seed_advancing_players(advancing_by_group)
    bracket = build_bracket(seeded)
    await db.save_knockout(tournament["id"], bracket)
    logger.info(
        "Knockout for %s created with %d players", tournament["name"], len(seeded)
    )
    return bracket


async def knockout_rounds(
    db: DatabaseManager,
    tournament_id: str,
) -> List[Dict[str, Any]]:
    """Stored knockout matches grouped by round."""
    rounds: Dict[int, Dict[str, Any]] = {}
    for match in await db.list_matches(tournament_id, stage="knockout"):
        entry = rounds.setdefault(
            match["bracket_round"],
            {"round": match["bracket_round"], "name": match["round_name"], "matches": []},
        )
        entry["matches"].append(match)
    return [rounds[key] for key in sorted(rounds)]


async def _call_match(
    db: DatabaseManager,
    mailer: TournamentMailer,
    tournament: Dict[str, Any],
    match: Dict[str, Any],
) -> Dict[str, Any]:
    match = await db.start_match(match["id"])
    player1 = await db.get_player(match["player1_id"])
    player2 = await db.get_player(match["player2_id"])
    await mailer.send_board_call(tournament, match["board_number"], player1, player2)
    return match


async def call_next_match(
    db: DatabaseManager,
    mailer: TournamentMailer,
    tournament: Dict[str, Any],
    board_number: int,
) -> Optional[Dict[str, Any]]:
    """
    Start the next scheduled match on a board and call its players.

    @return: The called match, None when the board has nothing left
    """
    match = await db.next_match_on_board(tournament["id"], board_number)
    if match is None:
        logger.info("Board %d has no more matches", board_number)
        return None

    logger.info("Board %d: calling round %d match", board_number, match["round_number"])
    return await _call_match(db, mailer, tournament, match)


async def start_board_calls(
    db: DatabaseManager,
    mailer: TournamentMailer,
    tournament: Dict[str, Any],
) -> List[Dict[str, Any]]:
    """
    Switch on automatic board calls and call every round 1 match.

    @return: The matches called
    """
    await db.update_tournament(tournament["id"], {"auto_board_call_enabled": True})

    called = []
    for match in await db.list_matches(tournament["id"], stage="group"):
        if match["round_number"] == 1 and match["status"] == "scheduled":
            called.append(await _call_match(db, mailer, tournament, match))

    logger.info("Auto board call on: %d round 1 matches started", len(called))
    return called


async def send_group_assignments(
    db: DatabaseManager,
    mailer: TournamentMailer,
    tournament: Dict[str, Any],
) -> BulkResult:
    """Email every grouped player with an address their group and boards."""
    match_format, play_style, details = describe_match_format(
        tournament.get("scoring_system")
    )
    groups = {g["id"]: g for g in await db.list_groups(tournament["id"])}

    assignments = []
    for player in await db.list_players(tournament["id"]):
        group = groups.get(player["group_id"])
        if group is None or not player["email"]:
            continue
        assignments.append(
            (
                player["email"],
                GroupAssignment(
                    player_name=player["name"],
                    event_name=tournament["name"],
                    group_name=f"Group {group['name']}",
                    board_numbers=describe_boards(group["board_numbers"]),
                    date=tournament.get("date") or "TBA",
                    start_time=tournament.get("start_time") or "TBA",
                    match_format=match_format,
                    play_style=play_style,
                    format_details=details,
                ),
            )
        )

    return await mailer.send_bulk_group_assignments(assignments)
