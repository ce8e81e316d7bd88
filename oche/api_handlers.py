"""
JSON API route handlers for the tournament desk.
"""

import logging
from typing import Any, Dict, Optional

from aiohttp import web

from . import tournament as ops
from .database import DatabaseManager
from .errors import ValidationError
from .mailer import TournamentMailer
from .names import capitalize_player_name
from .server import read_json
from .standings import (
    ScoringSystem,
    add_tiebreaker,
    move_tiebreaker,
    remove_tiebreaker,
)

logger = logging.getLogger(__name__)


def _int(
    body: Dict[str, Any],
    key: str,
    default: Optional[int] = None,
    minimum: int = 0,
    required: bool = False,
) -> Optional[int]:
    """Read an integer field of a request body."""
    value = body.get(key, default)
    if value is None:
        if required:
            raise ValidationError(f"Missing {key}")
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer") from None
    if number < minimum:
        raise ValidationError(f"{key} must be at least {minimum}")
    return number


def _standings_json(tables: Any) -> Any:
    return [
        {
            "group": table["group"],
            "advancing_count": table["advancing_count"],
            "standings": [s.to_dict() for s in table["standings"]],
        }
        for table in tables
    ]


class ApiHandlers:
    """Handles /api routes."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        config: Any,
        mailer: TournamentMailer,
    ) -> None:
        self.db = db_manager
        self.config = config
        self.mailer = mailer

    async def _tournament(self, request: web.Request) -> Dict[str, Any]:
        return await self.db.get_tournament(request.match_info["tournament"])

    # Tournaments

    async def list_tournaments(self, _: web.Request) -> web.Response:
        return web.json_response(await self.db.list_tournaments())

    async def create_tournament(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        if "scoring_system" in body:
            body["scoring_system"] = self._scoring_dict(body["scoring_system"])
        tournament = await self.db.create_tournament(body)
        return web.json_response(tournament, status=201)

    async def get_tournament(self, request: web.Request) -> web.Response:
        return web.json_response(await self._tournament(request))

    async def update_tournament(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        if "scoring_system" in body:
            body["scoring_system"] = self._scoring_dict(body["scoring_system"])
        tournament = await self.db.update_tournament(request.match_info["tournament"], body)
        return web.json_response(tournament)

    # Players

    async def list_players(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        return web.json_response(await self.db.list_players(tournament["id"]))

    async def add_player(self, request: web.Request) -> web.Response:
        """
        Add a player, or a doubles team when the body holds "players".

        @return: 201 with the player, or with the list of team members
        """
        body = await read_json(request)
        tournament_id = request.match_info["tournament"]
        if "players" in body:
            members = body["players"]
            if not isinstance(members, list) or not all(isinstance(m, dict) for m in members):
                raise ValidationError("players must be a list of player objects")
            for member in members:
                if member.get("name"):
                    member["name"] = capitalize_player_name(member["name"])
            team = await self.db.add_team(tournament_id, members)
            return web.json_response(team, status=201)

        if body.get("name"):
            body["name"] = capitalize_player_name(body["name"])
        player = await self.db.add_player(tournament_id, body)
        return web.json_response(player, status=201)

    async def register_player(self, request: web.Request) -> web.Response:
        """
        Public self registration.

        Doubles tournaments register a team: player2_name is required and
        player2_email is optional. Every member with an email is sent a
        confirmation.

        @param request: JSON body with name, email and optional phone_number
        @return: 201 with the player (singles) or the list of team members
            (doubles), 400 when registration is closed
        """
        tournament = await self._tournament(request)
        if not tournament["registration_enabled"]:
            raise ValidationError("Registration is closed for this tournament")

        body = await read_json(request)
        name = capitalize_player_name(body.get("name"))
        if not name:
            raise ValidationError("Player name is required")

        first = {
            "name": name,
            "email": body.get("email") or None,
            "phone_number": body.get("phone_number") or None,
        }
        if tournament.get("game_type") == "doubles":
            partner = capitalize_player_name(body.get("player2_name"))
            if not partner:
                raise ValidationError("Player 2 name is required for doubles")
            registered = await self.db.add_team(
                tournament["id"],
                [first, {"name": partner, "email": body.get("player2_email") or None}],
            )
        else:
            registered = [await self.db.add_player(tournament["id"], first)]

        for player in registered:
            if player["email"]:
                await self.mailer.send_registration_confirmation(
                    player["email"], player["name"], tournament
                )
        if tournament.get("game_type") == "doubles":
            return web.json_response(registered, status=201)
        return web.json_response(registered[0], status=201)

    async def update_player(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        if body.get("name"):
            body["name"] = capitalize_player_name(body["name"])
        player = await self.db.update_player(request.match_info["player"], body)
        return web.json_response(player)

    async def delete_player(self, request: web.Request) -> web.Response:
        await self.db.delete_player(request.match_info["player"])
        return web.json_response({"success": True})

    async def check_in(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        checked_in = body.get("checked_in")
        if checked_in is not None and not isinstance(checked_in, bool):
            raise ValidationError("checked_in must be true or false")
        player = await self.db.set_checked_in(request.match_info["player"], checked_in)
        return web.json_response(player)

    # Groups

    async def preview_groups(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        body = await read_json(request)
        entrants = ops.draw_entrants(
            await self.db.list_players(tournament["id"]), tournament.get("game_type")
        )
        if body.get("checked_in_only", True):
            entrants = [e for e in entrants if e["checked_in"]]

        preview = ops.preview_groups(
            len(entrants),
            _int(body, "num_groups", tournament["num_groups"], minimum=1),
            _int(body, "total_boards", tournament["total_boards"], minimum=1),
        )
        return web.json_response(preview)

    async def create_groups(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        body = await read_json(request)
        groups = await ops.generate_groups(
            self.db,
            tournament,
            num_groups=_int(body, "num_groups", minimum=1),
            total_boards=_int(body, "total_boards", minimum=1),
            checked_in_only=bool(body.get("checked_in_only", True)),
            shuffle=bool(body.get("shuffle", True)),
        )
        return web.json_response(groups, status=201)

    async def list_groups(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        players = await self.db.list_players(tournament["id"])
        groups = await self.db.list_groups(tournament["id"])
        for group in groups:
            group["players"] = [p for p in players if p["group_id"] == group["id"]]
        return web.json_response(groups)

    async def send_group_emails(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        if not self.mailer.enabled:
            raise ValidationError("Email is not configured")
        result = await ops.send_group_assignments(self.db, self.mailer, tournament)
        return web.json_response(result.to_dict())

    async def complete_group_stage(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        body = await read_json(request)
        updated = await ops.complete_group_stage(
            self.db, tournament, force=bool(body.get("force"))
        )
        return web.json_response(updated)

    # Matches

    async def list_matches(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        matches = await self.db.list_matches(
            tournament["id"],
            stage=request.query.get("stage"),
            group_id=request.query.get("group"),
        )
        return web.json_response(matches)

    async def start_match(self, request: web.Request) -> web.Response:
        return web.json_response(await self.db.start_match(request.match_info["match"]))

    async def record_score(self, request: web.Request) -> web.Response:
        """
        Enter a match score.

        When automatic board calls are on, finishing a group match calls the
        next match on the same board.
        """
        body = await read_json(request)
        match = await self.db.record_score(
            request.match_info["match"],
            _int(body, "player1_legs", required=True),
            _int(body, "player2_legs", required=True),
            allow_draw=bool(body.get("draw")),
            changed_by=body.get("changed_by"),
            change_reason=body.get("reason"),
        )

        response: Dict[str, Any] = {"match": match, "next_match": None}
        if match["status"] == "completed" and match["stage"] == "group":
            tournament = await self.db.get_tournament(match["tournament_id"])
            if tournament["auto_board_call_enabled"] and match["board_number"]:
                response["next_match"] = await ops.call_next_match(
                    self.db, self.mailer, tournament, match["board_number"]
                )
        return web.json_response(response)

    async def score_history(self, request: web.Request) -> web.Response:
        match = await self.db.get_match(request.match_info["match"])
        return web.json_response(await self.db.score_history(match["id"]))

    async def start_board_calls(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        called = await ops.start_board_calls(self.db, self.mailer, tournament)
        return web.json_response({"success": True, "matches": called})

    # Standings and scoring

    async def standings(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        tables = await ops.group_standings(self.db, tournament)
        return web.json_response(_standings_json(tables))

    def _scoring_dict(self, data: Any) -> Dict[str, Any]:
        """Validate scoring settings, keeping match format keys as given."""
        if not isinstance(data, dict):
            raise ValidationError("scoring_system must be an object")
        return {**data, **ScoringSystem.from_dict(data).to_dict()}

    async def get_scoring(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        scoring = tournament["scoring_system"] or {}
        return web.json_response({**scoring, **ScoringSystem.from_dict(scoring).to_dict()})

    async def update_scoring(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        body = await read_json(request)
        scoring = self._scoring_dict({**(tournament["scoring_system"] or {}), **body})
        updated = await self.db.update_tournament(
            tournament["id"], {"scoring_system": scoring}
        )
        return web.json_response(updated["scoring_system"])

    async def edit_tiebreakers(self, request: web.Request) -> web.Response:
        """
        Edit the tiebreak order.

        @param request: JSON body {"action": "add", "rule"},
            {"action": "remove", "index"} or {"action": "move", "index", "offset"}
        @return: The updated scoring settings
        """
        tournament = await self._tournament(request)
        body = await read_json(request)
        current = tournament["scoring_system"] or {}
        order = ScoringSystem.from_dict(current).tiebreak_order

        action = body.get("action")
        if action == "add":
            order = add_tiebreaker(order, body.get("rule"))
        elif action == "remove":
            order = remove_tiebreaker(order, _int(body, "index", required=True))
        elif action == "move":
            offset = _int(body, "offset", minimum=-1, required=True)
            if offset not in (-1, 1):
                raise ValidationError("offset must be -1 or 1")
            order = move_tiebreaker(order, _int(body, "index", required=True), offset)
        else:
            raise ValidationError(f"Unknown action: {action}")

        scoring = self._scoring_dict({**current, "tiebreak_order": order})
        updated = await self.db.update_tournament(
            tournament["id"], {"scoring_system": scoring}
        )
        return web.json_response(updated["scoring_system"])

    # Knockout

    async def create_knockout(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        bracket = await ops.create_knockout(self.db, tournament)
        return web.json_response(bracket.to_dict(), status=201)

    async def knockout(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        return web.json_response(await ops.knockout_rounds(self.db, tournament["id"]))

    # DartConnect results

    async def list_results(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        results = await self.db.list_pending_results(
            tournament["id"], status=request.query.get("status")
        )
        return web.json_response(results)

    async def approve_result(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        match = await self.db.approve_pending_result(
            request.match_info["result"], processed_by=body.get("processed_by")
        )
        return web.json_response({"success": True, "match": match})

    async def reject_result(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        result = await self.db.reject_pending_result(
            request.match_info["result"], processed_by=body.get("processed_by")
        )
        return web.json_response({"success": True, "result": result})

    async def list_sessions(self, request: web.Request) -> web.Response:
        tournament = await self._tournament(request)
        return web.json_response(await self.db.list_sessions(tournament["id"]))

    def add_routes(self, app: web.Application) -> None:
        router = app.router
        t = "/api/tournaments/{tournament}"

        router.add_get("/api/tournaments", self.list_tournaments)
        router.add_post("/api/tournaments", self.create_tournament)
        router.add_get(t, self.get_tournament)
        router.add_patch(t, self.update_tournament)

        router.add_get(f"{t}/players", self.list_players)
        router.add_post(f"{t}/players", self.add_player)
        router.add_post(f"{t}/register", self.register_player)
        router.add_patch("/api/players/{player}", self.update_player)
        router.add_delete("/api/players/{player}", self.delete_player)
        router.add_post("/api/players/{player}/check-in", self.check_in)

        router.add_post(f"{t}/groups/preview", self.preview_groups)
        router.add_post(f"{t}/groups", self.create_groups)
        router.add_get(f"{t}/groups", self.list_groups)
        router.add_post(f"{t}/groups/emails", self.send_group_emails)
        router.add_post(f"{t}/group-stage/complete", self.complete_group_stage)

        router.add_get(f"{t}/matches", self.list_matches)
        router.add_post("/api/matches/{match}/start", self.start_match)
        router.add_post("/api/matches/{match}/score", self.record_score)
        router.add_get("/api/matches/{match}/history", self.score_history)
        router.add_post(f"{t}/board-calls", self.start_board_calls)

        router.add_get(f"{t}/standings", self.standings)
        router.add_get(f"{t}/scoring", self.get_scoring)
        router.add_put(f"{t}/scoring", self.update_scoring)
        router.add_post(f"{t}/scoring/tiebreakers", self.edit_tiebreakers)

        router.add_post(f"{t}/knockout", self.create_knockout)
        router.add_get(f"{t}/knockout", self.knockout)

        router.add_get(f"{t}/results", self.list_results)
        router.add_post("/api/results/{result}/approve", self.approve_result)
        router.add_post("/api/results/{result}/reject", self.reject_result)
        router.add_get(f"{t}/scraper-sessions", self.list_sessions)
