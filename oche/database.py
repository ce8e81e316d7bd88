"""
Database operations for the tournament desk.
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from .errors import NotFoundError, ValidationError
from .knockout import Bracket, next_slot

logger = logging.getLogger(__name__)

_PLAYER_STATS = [
    ("name", "TEXT"),
    ("legs", "INTEGER DEFAULT 0"),
    ("sets", "INTEGER DEFAULT 0"),
    ("average", "REAL"),
    ("first_9_average", "REAL"),
    ("highest_checkout", "INTEGER"),
    ("checkout_attempts", "INTEGER DEFAULT 0"),
    ("checkouts_completed", "INTEGER DEFAULT 0"),
    ("checkout_percentage", "REAL"),
    ("180s", "INTEGER DEFAULT 0"),
    ("100_plus", "INTEGER DEFAULT 0"),
    ("120_plus", "INTEGER DEFAULT 0"),
    ("140_plus", "INTEGER DEFAULT 0"),
    ("160_plus", "INTEGER DEFAULT 0"),
    ("ton_plus_finishes", "INTEGER DEFAULT 0"),
    ("darts_thrown", "INTEGER"),
]

SCHEMA: Dict[str, List[Tuple[str, str]]] = {
    "tournaments": [
        ("id", "TEXT PRIMARY KEY"),
        ("name", "TEXT NOT NULL"),
        ("date", "TEXT"),
        ("start_time", "TEXT"),
        ("location", "TEXT"),
        ("format", "TEXT DEFAULT 'group-knockout'"),
        ("game_type", "TEXT DEFAULT 'singles'"),
        ("num_groups", "INTEGER DEFAULT 4"),
        ("total_boards", "INTEGER DEFAULT 4"),
        ("advancement_rules", "TEXT DEFAULT 'Top 2'"),
        ("players_advancing_per_group", "INTEGER"),
        ("status", "TEXT DEFAULT 'setup'"),
        ("registration_enabled", "INTEGER DEFAULT 0"),
        ("registration_price", "REAL"),
        ("auto_board_call_enabled", "INTEGER DEFAULT 0"),
        ("group_stage_completed", "INTEGER DEFAULT 0"),
        ("scoring_system", "TEXT"),
        ("dartconnect_integration_enabled", "INTEGER DEFAULT 0"),
        ("dartconnect_watch_codes", "TEXT DEFAULT '[]'"),
        ("dartconnect_auto_accept_scores", "INTEGER DEFAULT 0"),
        ("dartconnect_require_manual_approval", "INTEGER DEFAULT 1"),
        ("created_at", "TEXT"),
        ("updated_at", "TEXT"),
    ],
    "players": [
        ("id", "TEXT PRIMARY KEY"),
        ("tournament_id", "TEXT NOT NULL"),
        ("name", "TEXT NOT NULL"),
        ("email", "TEXT"),
        ("phone_number", "TEXT"),
        ("paid", "INTEGER DEFAULT 0"),
        ("checked_in", "INTEGER DEFAULT 0"),
        ("team_id", "TEXT"),
        ("group_id", "TEXT"),
        ("seed_ranking", "INTEGER"),
        ("created_at", "TEXT"),
        ("updated_at", "TEXT"),
    ],
    "groups": [
        ("id", "TEXT PRIMARY KEY"),
        ("tournament_id", "TEXT NOT NULL"),
        ("name", "TEXT NOT NULL"),
        ("position", "INTEGER"),
        ("board_numbers", "TEXT DEFAULT '[]'"),
        ("created_at", "TEXT"),
    ],
    "matches": [
        ("id", "TEXT PRIMARY KEY"),
        ("tournament_id", "TEXT NOT NULL"),
        ("stage", "TEXT DEFAULT 'group'"),
        ("group_id", "TEXT"),
        ("round_number", "INTEGER"),
        ("board_number", "INTEGER"),
        ("bracket_round", "INTEGER"),
        ("bracket_position", "INTEGER"),
        ("round_name", "TEXT"),
        ("player1_id", "TEXT"),
        ("player2_id", "TEXT"),
        ("player1_legs", "INTEGER DEFAULT 0"),
        ("player2_legs", "INTEGER DEFAULT 0"),
        ("winner_id", "TEXT"),
        ("status", "TEXT DEFAULT 'scheduled'"),
        ("legs_to_win", "INTEGER"),
        ("created_at", "TEXT"),
        ("started_at", "TEXT"),
        ("completed_at", "TEXT"),
    ],
    "pending_match_results": [
        ("id", "TEXT PRIMARY KEY"),
        ("tournament_id", "TEXT NOT NULL"),
        ("match_id", "TEXT"),
        ("watch_code", "TEXT"),
        ("scraper_session_id", "TEXT"),
    ]
    + [(f"player1_{c}", t) for c, t in _PLAYER_STATS]
    + [(f"player2_{c}", t) for c, t in _PLAYER_STATS]
    + [
        ("winner_name", "TEXT"),
        ("total_legs_played", "INTEGER"),
        ("confidence_score", "REAL"),
        ("match_found", "INTEGER DEFAULT 0"),
        ("matching_notes", "TEXT"),
        ("swapped", "INTEGER DEFAULT 0"),
        ("status", "TEXT DEFAULT 'pending'"),
        ("is_live", "INTEGER DEFAULT 0"),
        ("raw_scraper_data", "TEXT"),
        ("match_started_at", "TEXT"),
        ("match_completed_at", "TEXT"),
        ("live_updated_at", "TEXT"),
        ("created_at", "TEXT"),
        ("processed_at", "TEXT"),
        ("processed_by", "TEXT"),
    ],
    "scraper_sessions": [
        ("id", "TEXT PRIMARY KEY"),
        ("watch_code", "TEXT NOT NULL"),
        ("tournament_id", "TEXT"),
        ("status", "TEXT"),
        ("started_at", "TEXT"),
        ("ended_at", "TEXT"),
        ("last_update", "TEXT"),
        ("last_data", "TEXT"),
        ("match_completed", "INTEGER DEFAULT 0"),
        ("result_submitted", "INTEGER DEFAULT 0"),
    ],
    "match_score_history": [
        ("id", "TEXT PRIMARY KEY"),
        ("match_id", "TEXT NOT NULL"),
        ("tournament_id", "TEXT"),
        ("change_type", "TEXT"),
        ("old_player1_legs", "INTEGER"),
        ("old_player2_legs", "INTEGER"),
        ("old_winner_id", "TEXT"),
        ("old_status", "TEXT"),
        ("new_player1_legs", "INTEGER"),
        ("new_player2_legs", "INTEGER"),
        ("new_winner_id", "TEXT"),
        ("new_status", "TEXT"),
        ("source", "TEXT"),
        ("pending_result_id", "TEXT"),
        ("changed_by", "TEXT"),
        ("change_reason", "TEXT"),
        ("created_at", "TEXT"),
    ],
}

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_players_tournament ON players(tournament_id)",
    "CREATE INDEX IF NOT EXISTS idx_groups_tournament ON groups(tournament_id, position)",
    "CREATE INDEX IF NOT EXISTS idx_matches_tournament "
    "ON matches(tournament_id, stage, round_number)",
    "CREATE INDEX IF NOT EXISTS idx_matches_board ON matches(tournament_id, board_number)",
    "CREATE INDEX IF NOT EXISTS idx_pending_tournament "
    "ON pending_match_results(tournament_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_watch_code ON scraper_sessions(watch_code)",
]

BOOL_FIELDS = {
    "registration_enabled",
    "auto_board_call_enabled",
    "group_stage_completed",
    "dartconnect_integration_enabled",
    "dartconnect_auto_accept_scores",
    "dartconnect_require_manual_approval",
    "paid",
    "checked_in",
    "match_found",
    "swapped",
    "is_live",
    "match_completed",
    "result_submitted",
}

JSON_FIELDS = {
    "scoring_system",
    "dartconnect_watch_codes",
    "board_numbers",
    "raw_scraper_data",
    "last_data",
}

TOURNAMENT_FIELDS = {name for name, _ in SCHEMA["tournaments"]} - {
    "id",
    "created_at",
    "updated_at",
}
PLAYER_FIELDS = {
    "name",
    "email",
    "phone_number",
    "paid",
    "checked_in",
    "team_id",
    "seed_ranking",
}
PENDING_FIELDS = {name for name, _ in SCHEMA["pending_match_results"]} - {"id"}
SESSION_FIELDS = {name for name, _ in SCHEMA["scraper_sessions"]} - {"id"}


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def _encode(field: str, value: Any) -> Any:
    if field in JSON_FIELDS and value is not None:
        return json.dumps(value)
    if field in BOOL_FIELDS and value is not None:
        return 1 if value else 0
    return value


def _decode_row(row: Optional[aiosqlite.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None

    record = dict(row)
    for field, value in record.items():
        if field in JSON_FIELDS and isinstance(value, str):
            try:
                record[field] = json.loads(value)
            except json.JSONDecodeError:
                logger.warning("Corrupt JSON in column %s", field)
        elif field in BOOL_FIELDS and value is not None:
            record[field] = bool(value)
    return record


def _assignments(data: Dict[str, Any]) -> Tuple[str, List[Any]]:
    columns = ", ".join(f'"{field}" = ?' for field in data)
    values = [_encode(field, value) for field, value in data.items()]
    return columns, values


def match_winner(player1_legs: int, player2_legs: int, match: Dict[str, Any]) -> Optional[str]:
    if player1_legs > player2_legs:
        return match["player1_id"]
    if player2_legs > player1_legs:
        return match["player2_id"]
    return None


class DatabaseManager:
    """Manages database operations with a small read cache."""

    def __init__(
        self,
        db_path: str,
        config: Any = None,
    ) -> None:
        self.db_path = db_path
        self.config = config
        # Simple in-memory cache with TTL
        self._cache: Dict[str, Tuple[Any, float]] = {}
        self._cache_ttl = 30  # 30 seconds TTL

    def _get_cache_key(self, *args: Any) -> str:
        """
        Generate a cache key from arguments.

        @param args: Variable arguments to create cache key from
        @return: String cache key generated from arguments
        """
        return ":".join(str(arg) for arg in args)

    def _get_from_cache(
        self,
        cache_key: str,
    ) -> Optional[Any]:
        """
        Get value from cache if valid.

        @param cache_key: String cache key to lookup
        @return: Cached data if valid, None if expired or not found
        """
        if cache_key in self._cache:
            data, timestamp = self._cache[cache_key]

            if time.time() - timestamp < self._cache_ttl:
                return data
            else:
                del self._cache[cache_key]
        return None

    def _set_cache(
        self,
        cache_key: str,
        data: Any,
    ) -> None:
        self._cache[cache_key] = (data, time.time())

    def _invalidate_cache(
        self,
        pattern: Optional[str] = None,
    ) -> None:
        """
        Invalidate cache entries matching pattern or all if None.

        @param pattern: Optional string pattern to match cache keys against
        """
        if pattern is None:
            self._cache.clear()
        else:
            keys_to_remove = [k for k in self._cache if pattern in k]
            for key in keys_to_remove:
                del self._cache[key]

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            yield db

    async def init_db(self) -> None:
        """
        Initialize the SQLite database with schema and indexes.

        Creates tables, indexes, and adds columns missing from older files.
        """
        async with self._connect() as db:
            # WAL lets the scraper process write while the desk serves reads
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")

            for table, columns in SCHEMA.items():
                definition = ", ".join(f'"{name}" {decl}' for name, decl in columns)
                await db.execute(f"CREATE TABLE IF NOT EXISTS {table} ({definition})")

            await self._migrate_schema(db)

            for statement in INDEXES:
                await db.execute(statement)

            await db.commit()

    async def _migrate_schema(
        self,
        db: aiosqlite.Connection,
    ) -> None:
        """
        Add columns that exist in SCHEMA but not yet in the database file.

        @param db: Active database connection
        """
        for table, columns in SCHEMA.items():
            cursor = await db.execute(f"PRAGMA table_info({table})")
            existing = {row[1] for row in await cursor.fetchall()}

            for name, decl in columns:
                if name in existing:
                    continue
                logger.info("Migrating %s: adding column %s", table, name)
                decl = decl.replace("PRIMARY KEY", "").replace("NOT NULL", "")
                await db.execute(f'ALTER TABLE {table} ADD COLUMN "{name}" {decl}')

    async def _fetch_one(
        self,
        db: aiosqlite.Connection,
        query: str,
        params: Iterable[Any] = (),
    ) -> Optional[Dict[str, Any]]:
        cursor = await db.execute(query, tuple(params))
        return _decode_row(await cursor.fetchone())

    async def _fetch_all(
        self,
        db: aiosqlite.Connection,
        query: str,
        params: Iterable[Any] = (),
    ) -> List[Dict[str, Any]]:
        cursor = await db.execute(query, tuple(params))
        return [_decode_row(row) for row in await cursor.fetchall()]

    async def _insert(
        self,
        db: aiosqlite.Connection,
        table: str,
        data: Dict[str, Any],
    ) -> None:
        columns = ", ".join(f'"{field}"' for field in data)
        placeholders = ", ".join("?" for _ in data)
        await db.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            [_encode(field, value) for field, value in data.items()],
        )

    async def _update(
        self,
        db: aiosqlite.Connection,
        table: str,
        record_id: str,
        data: Dict[str, Any],
    ) -> None:
        if not data:
            return
        columns, values = _assignments(data)
        await db.execute(
            f"UPDATE {table} SET {columns} WHERE id = ?", values + [record_id]
        )

    # Tournaments

    async def create_tournament(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a tournament.

        @param data: Tournament fields, "name" required
        @return: The stored tournament
        """
        if not data.get("name"):
            raise ValidationError("Tournament name is required")

        unknown = set(data) - TOURNAMENT_FIELDS
        if unknown:
            raise ValidationError(f"Unknown tournament fields: {', '.join(sorted(unknown))}")

        now = utcnow()
        record = {"id": new_id(), **data, "created_at": now, "updated_at": now}

        async with self._connect() as db:
            await self._insert(db, "tournaments", record)
            await db.commit()

        self._invalidate_cache()
        logger.info("Created tournament %s (%s)", record["name"], record["id"])
        return await self.get_tournament(record["id"])

    async def list_tournaments(self) -> List[Dict[str, Any]]:
        cache_key = self._get_cache_key("tournaments")
        cached = self._get_from_cache(cache_key)
        if cached is not None:
            return cached

        async with self._connect() as db:
            tournaments = await self._fetch_all(
                db, "SELECT * FROM tournaments ORDER BY date DESC, created_at DESC"
            )

        self._set_cache(cache_key, tournaments)
        return tournaments

    async def get_tournament(self, tournament_id: str) -> Dict[str, Any]:
        async with self._connect() as db:
            tournament = await self._fetch_one(
                db, "SELECT * FROM tournaments WHERE id = ?", (tournament_id,)
            )
        if tournament is None:
            raise NotFoundError(f"Tournament not found: {tournament_id}")
        return tournament

    async def update_tournament(
        self,
        tournament_id: str,
        changes: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Update tournament fields.

        @param tournament_id: Tournament to update
        @param changes: Field -> new value
        @return: The updated tournament
        """
        unknown = set(changes) - TOURNAMENT_FIELDS
        if unknown:
            raise ValidationError(f"Unknown tournament fields: {', '.join(sorted(unknown))}")

        await self.get_tournament(tournament_id)
        async with self._connect() as db:
            await self._update(
                db, "tournaments", tournament_id, {**changes, "updated_at": utcnow()}
            )
            await db.commit()

        self._invalidate_cache()
        return await self.get_tournament(tournament_id)

    # Players

    async def _check_new_names(
        self,
        db: aiosqlite.Connection,
        tournament_id: str,
        names: List[str],
    ) -> None:
        """
        Reject names already taken in the tournament, ignoring case.
        """
        rows = await self._fetch_all(
            db, "SELECT name FROM players WHERE tournament_id = ?", (tournament_id,)
        )
        taken = {(row["name"] or "").strip().casefold() for row in rows}
        for name in names:
            key = name.strip().casefold()
            if key in taken:
                raise ValidationError(f'Player "{name.strip()}" already exists in this tournament')
            taken.add(key)

    def _player_record(self, tournament_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if not (data.get("name") or "").strip():
            raise ValidationError("Player name is required")

        unknown = set(data) - PLAYER_FIELDS
        if unknown:
            raise ValidationError(f"Unknown player fields: {', '.join(sorted(unknown))}")

        now = utcnow()
        return {
            "id": new_id(),
            "tournament_id": tournament_id,
            **data,
            "created_at": now,
            "updated_at": now,
        }

    async def add_player(
        self,
        tournament_id: str,
        data: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Register a player in a tournament.

        @param tournament_id: Tournament to join
        @param data: Player fields, "name" required and unique in the tournament
        @return: The stored player
        """
        await self.get_tournament(tournament_id)
        record = self._player_record(tournament_id, data)

        async with self._connect() as db:
            await self._check_new_names(db, tournament_id, [record["name"]])
            await self._insert(db, "players", record)
            await db.commit()

        logger.info("Added player %s to tournament %s", record["name"], tournament_id)
        return await self.get_player(record["id"])

    async def add_team(
        self,
        tournament_id: str,
        members: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        """
        Register a doubles team: two players sharing a team id.

        @param tournament_id: Tournament to join
        @param members: Player fields for both partners, "name" required on each
        @return: The stored players, in the order given
        """
        if len(members) != 2:
            raise ValidationError("A doubles team needs exactly two players")

        await self.get_tournament(tournament_id)
        team_id = new_id()
        records = [
            self._player_record(tournament_id, {**member, "team_id": team_id})
            for member in members
        ]

        async with self._connect() as db:
            await self._check_new_names(
                db, tournament_id, [record["name"] for record in records]
            )
            for record in records:
                await self._insert(db, "players", record)
            await db.commit()

        logger.info(
            "Added team %s & %s to tournament %s",
            records[0]["name"],
            records[1]["name"],
            tournament_id,
        )
        return [await self.get_player(record["id"]) for record in records]

    async def get_player(self, player_id: str) -> Dict[str, Any]:
        async with self._connect() as db:
            player = await self._fetch_one(
                db, "SELECT * FROM players WHERE id = ?", (player_id,)
            )
        if player is None:
            raise NotFoundError(f"Player not found: {player_id}")
        return player

    async def list_players(self, tournament_id: str) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            return await self._fetch_all(
                db,
                "SELECT * FROM players WHERE tournament_id = ? "
                "ORDER BY seed_ranking IS NULL, seed_ranking, created_at, rowid",
                (tournament_id,),
            )

    async def update_player(
        self,
        player_id: str,
        changes: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Update player fields. In doubles, "paid" applies to the whole team.
        """
        unknown = set(changes) - PLAYER_FIELDS
        if unknown:
            raise ValidationError(f"Unknown player fields: {', '.join(sorted(unknown))}")

        player = await self.get_player(player_id)
        now = utcnow()
        async with self._connect() as db:
            await self._update(db, "players", player_id, {**changes, "updated_at": now})
            if "paid" in changes and player.get("team_id"):
                tournament = await self._fetch_one(
                    db,
                    "SELECT game_type FROM tournaments WHERE id = ?",
                    (player["tournament_id"],),
                )
                if tournament and tournament["game_type"] == "doubles":
                    await db.execute(
                        "UPDATE players SET paid = ?, updated_at = ? "
                        "WHERE team_id = ? AND tournament_id = ?",
                        (
                            _encode("paid", changes["paid"]),
                            now,
                            player["team_id"],
                            player["tournament_id"],
                        ),
                    )
            await db.commit()
        return await self.get_player(player_id)

    async def set_checked_in(
        self,
        player_id: str,
        checked_in: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Check a player in or out; None toggles the current state.
        """
        player = await self.get_player(player_id)
        if checked_in is None:
            checked_in = not player["checked_in"]
        return await self.update_player(player_id, {"checked_in": checked_in})

    async def delete_player(self, player_id: str) -> None:
        await self.get_player(player_id)
        async with self._connect() as db:
            await db.execute("DELETE FROM players WHERE id = ?", (player_id,))
            await db.commit()

    # Groups and matches

    async def replace_groups(
        self,
        tournament_id: str,
        groups: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        """
        Replace a tournament's groups and group-stage matches.

        @param tournament_id: Tournament to regroup
        @param groups: One dict per group with "name", "board_numbers",
            "player_ids" and "matches" (ScheduledMatch objects)
        @return: The stored groups
        """
        await self.get_tournament(tournament_id)
        now = utcnow()

        async with self._connect() as db:
            await db.execute(
                "DELETE FROM matches WHERE tournament_id = ? AND stage = 'group'",
                (tournament_id,),
            )
            await db.execute("DELETE FROM groups WHERE tournament_id = ?", (tournament_id,))
            await db.execute(
                "UPDATE players SET group_id = NULL WHERE tournament_id = ?",
                (tournament_id,),
            )

            for position, group in enumerate(groups):
                group_id = new_id()
                await self._insert(
                    db,
                    "groups",
                    {
                        "id": group_id,
                        "tournament_id": tournament_id,
                        "name": group["name"],
                        "position": position,
                        "board_numbers": list(group["board_numbers"]),
                        "created_at": now,
                    },
                )
                for player_id in group["player_ids"]:
                    await db.execute(
                        "UPDATE players SET group_id = ? WHERE id = ?",
                        (group_id, player_id),
                    )
                for match in group["matches"]:
                    await self._insert(
                        db,
                        "matches",
                        {
                            "id": new_id(),
                            "tournament_id": tournament_id,
                            "stage": "group",
                            "group_id": group_id,
                            "round_number": match.round,
                            "board_number": match.board,
                            "player1_id": match.player1_id,
                            "player2_id": match.player2_id,
                            "status": "scheduled",
                            "created_at": now,
                        },
                    )

            await self._update(
                db,
                "tournaments",
                tournament_id,
                {
                    "num_groups": len(groups),
                    "status": "group-stage",
                    "group_stage_completed": False,
                    "updated_at": now,
                },
            )
            await db.commit()

        self._invalidate_cache()
        logger.info("Created %d groups for tournament %s", len(groups), tournament_id)
        return await self.list_groups(tournament_id)

    async def list_groups(self, tournament_id: str) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            return await self._fetch_all(
                db,
                "SELECT * FROM groups WHERE tournament_id = ? ORDER BY position",
                (tournament_id,),
            )

    async def list_matches(
        self,
        tournament_id: str,
        stage: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM matches WHERE tournament_id = ?"
        params: List[Any] = [tournament_id]
        if stage:
            query += " AND stage = ?"
            params.append(stage)
        if group_id:
            query += " AND group_id = ?"
            params.append(group_id)
        query += " ORDER BY bracket_round, round_number, bracket_position, board_number"

        async with self._connect() as db:
            return await self._fetch_all(db, query, params)

    async def get_match(self, match_id: str) -> Dict[str, Any]:
        async with self._connect() as db:
            match = await self._fetch_one(
                db, "SELECT * FROM matches WHERE id = ?", (match_id,)
            )
        if match is None:
            raise NotFoundError(f"Match not found: {match_id}")
        return match

    async def start_match(self, match_id: str) -> Dict[str, Any]:
        match = await self.get_match(match_id)
        if match["status"] == "scheduled":
            async with self._connect() as db:
                await self._update(
                    db, "matches", match_id, {"status": "in-progress", "started_at": utcnow()}
                )
                await db.commit()
        return await self.get_match(match_id)

    async def next_match_on_board(
        self,
        tournament_id: str,
        board_number: int,
    ) -> Optional[Dict[str, Any]]:
        """Earliest scheduled group match waiting for a board."""
        async with self._connect() as db:
            return await self._fetch_one(
                db,
                "SELECT * FROM matches WHERE tournament_id = ? AND board_number = ? "
                "AND status = 'scheduled' ORDER BY round_number LIMIT 1",
                (tournament_id, board_number),
            )

    async def record_score(
        self,
        match_id: str,
        player1_legs: int,
        player2_legs: int,
        winner_id: Optional[str] = None,
        allow_draw: bool = False,
        change_type: str = "manual_entry",
        source: Optional[str] = None,
        pending_result_id: Optional[str] = None,
        changed_by: Optional[str] = None,
        change_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Enter a match score and log the change.

        The winner is the player with more legs unless given explicitly. A
        match with a winner is completed, a level score stays in progress
        unless draws are allowed. Knockout winners move into their next match.

        @return: The updated match
        """
        if player1_legs < 0 or player2_legs < 0:
            raise ValidationError("Legs cannot be negative")

        match = await self.get_match(match_id)
        if not match["player1_id"] or not match["player2_id"]:
            raise ValidationError("Both players must be known before scoring")

        if winner_id is None:
            winner_id = match_winner(player1_legs, player2_legs, match)
        elif winner_id not in (match["player1_id"], match["player2_id"]):
            raise ValidationError(f"{winner_id} is not playing in match {match_id}")

        if match["stage"] == "knockout" and winner_id is None and allow_draw:
            raise ValidationError("Knockout matches cannot be drawn")

        completed = winner_id is not None or allow_draw
        now = utcnow()
        changes = {
            "player1_legs": player1_legs,
            "player2_legs": player2_legs,
            "winner_id": winner_id,
            "status": "completed" if completed else "in-progress",
            "completed_at": now if completed else None,
            "started_at": match["started_at"] or now,
        }

        async with self._connect() as db:
            await self._update(db, "matches", match_id, changes)
            await self._insert(
                db,
                "match_score_history",
                {
                    "id": new_id(),
                    "match_id": match_id,
                    "tournament_id": match["tournament_id"],
                    "change_type": change_type,
                    "old_player1_legs": match["player1_legs"],
                    "old_player2_legs": match["player2_legs"],
                    "old_winner_id": match["winner_id"],
                    "old_status": match["status"],
                    "new_player1_legs": player1_legs,
                    "new_player2_legs": player2_legs,
                    "new_winner_id": winner_id,
                    "new_status": changes["status"],
                    "source": source,
                    "pending_result_id": pending_result_id,
                    "changed_by": changed_by,
                    "change_reason": change_reason,
                    "created_at": now,
                },
            )

            if match["stage"] == "knockout" and winner_id:
                await self._advance_knockout_winner(db, match, winner_id)

            await db.commit()

        self._invalidate_cache()
        logger.info(
            "Score %s: %d-%d (%s)", match_id, player1_legs, player2_legs, changes["status"]
        )
        return await self.get_match(match_id)

    async def _advance_knockout_winner(
        self,
        db: aiosqlite.Connection,
        match: Dict[str, Any],
        winner_id: str,
    ) -> None:
        round_index, position, slot = next_slot(
            match["bracket_round"], match["bracket_position"]
        )
        cursor = await db.execute(
            f"UPDATE matches SET {slot}_id = ? WHERE tournament_id = ? AND stage = 'knockout' "
            "AND bracket_round = ? AND bracket_position = ?",
            (winner_id, match["tournament_id"], round_index, position),
        )
        if cursor.rowcount == 0:
            await self._update(
                db, "tournaments", match["tournament_id"], {"status": "completed"}
            )
            logger.info("Tournament %s won by %s", match["tournament_id"], winner_id)

    async def score_history(self, match_id: str) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            return await self._fetch_all(
                db,
                "SELECT * FROM match_score_history WHERE match_id = ? ORDER BY created_at",
                (match_id,),
            )

    async def save_knockout(
        self,
        tournament_id: str,
        bracket: Bracket,
    ) -> List[Dict[str, Any]]:
        """
        Store a knockout bracket, replacing any earlier one.

        @return: The stored knockout matches
        """
        now = utcnow()

        async with self._connect() as db:
            await db.execute(
                "DELETE FROM matches WHERE tournament_id = ? AND stage = 'knockout'",
                (tournament_id,),
            )
            for matches in bracket.rounds:
                for match in matches:
                    await self._insert(
                        db,
                        "matches",
                        {
                            "id": new_id(),
                            "tournament_id": tournament_id,
                            "stage": "knockout",
                            "bracket_round": match.round_index,
                            "bracket_position": match.position,
                            "round_name": match.round_name,
                            "player1_id": match.player1_id,
                            "player2_id": match.player2_id,
                            "winner_id": match.winner_id,
                            "status": "completed" if match.winner_id else "scheduled",
                            "completed_at": now if match.winner_id else None,
                            "created_at": now,
                        },
                    )
            await self._update(
                db,
                "tournaments",
                tournament_id,
                {"status": "knockout", "group_stage_completed": True, "updated_at": now},
            )
            await db.commit()

        self._invalidate_cache()
        return await self.list_matches(tournament_id, stage="knockout")

    # DartConnect results

    async def create_pending_result(self, data: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(data) - PENDING_FIELDS
        if unknown:
            raise ValidationError(f"Unknown result fields: {', '.join(sorted(unknown))}")

        record = {"id": new_id(), "created_at": utcnow(), **data}
        async with self._connect() as db:
            await self._insert(db, "pending_match_results", record)
            await db.commit()
        return await self.get_pending_result(record["id"])

    async def update_pending_result(
        self,
        result_id: str,
        changes: Dict[str, Any],
    ) -> None:
        unknown = set(changes) - PENDING_FIELDS
        if unknown:
            raise ValidationError(f"Unknown result fields: {', '.join(sorted(unknown))}")

        async with self._connect() as db:
            await self._update(db, "pending_match_results", result_id, changes)
            await db.commit()

    async def get_pending_result(self, result_id: str) -> Dict[str, Any]:
        async with self._connect() as db:
            result = await self._fetch_one(
                db, "SELECT * FROM pending_match_results WHERE id = ?", (result_id,)
            )
        if result is None:
            raise NotFoundError(f"Pending result not found: {result_id}")
        return result

    async def list_pending_results(
        self,
        tournament_id: str,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM pending_match_results WHERE tournament_id = ?"
        params: List[Any] = [tournament_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"

        async with self._connect() as db:
            return await self._fetch_all(db, query, params)

    async def _apply_pending_result(
        self,
        result: Dict[str, Any],
        change_type: str,
        processed_by: Optional[str],
    ) -> Dict[str, Any]:
        if not result["match_id"]:
            raise ValidationError("Result is not linked to a scheduled match")
        if result["status"] in ("approved", "auto-accepted", "rejected"):
            raise ValidationError(f"Result already {result['status']}")

        match = await self.get_match(result["match_id"])
        legs = (result["player1_legs"] or 0, result["player2_legs"] or 0)
        if result["swapped"]:
            legs = legs[::-1]

        winner_id = None
        if result["winner_name"]:
            winner_is_first = result["winner_name"] == result["player1_name"]
            if result["swapped"]:
                winner_is_first = not winner_is_first
            winner_id = match["player1_id"] if winner_is_first else match["player2_id"]

        return await self.record_score(
            match["id"],
            legs[0],
            legs[1],
            winner_id=winner_id,
            change_type=change_type,
            source="dartconnect",
            pending_result_id=result["id"],
            changed_by=processed_by,
        )

    async def approve_pending_result(
        self,
        result_id: str,
        processed_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Apply a scraped result to its match.

        @return: The updated match
        """
        result = await self.get_pending_result(result_id)
        match = await self._apply_pending_result(
            result, "dartconnect_approved", processed_by
        )
        await self.update_pending_result(
            result_id,
            {
                "status": "approved",
                "is_live": False,
                "processed_at": utcnow(),
                "processed_by": processed_by,
            },
        )
        return match

    async def reject_pending_result(
        self,
        result_id: str,
        processed_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        result = await self.get_pending_result(result_id)
        if result["status"] in ("approved", "auto-accepted"):
            raise ValidationError(f"Result already {result['status']}")

        await self.update_pending_result(
            result_id,
            {
                "status": "rejected",
                "is_live": False,
                "processed_at": utcnow(),
                "processed_by": processed_by,
            },
        )
        return await self.get_pending_result(result_id)

    async def auto_accept_pending_result(
        self,
        result_id: str,
        min_confidence: float,
    ) -> bool:
        """
        Apply a finished result without review when matching is confident.

        @return: True if the result was applied
        """
        result = await self.get_pending_result(result_id)
        if (
            not result["match_found"]
            or not result["winner_name"]
            or (result["confidence_score"] or 0) < min_confidence
        ):
            return False

        await self._apply_pending_result(result, "dartconnect_auto", "auto-accept")
        await self.update_pending_result(
            result_id,
            {"status": "auto-accepted", "is_live": False, "processed_at": utcnow()},
        )
        return True

    # Scraper sessions

    async def create_session(
        self,
        watch_code: str,
        tournament_id: Optional[str] = None,
        status: str = "active",
    ) -> Dict[str, Any]:
        now = utcnow()
        record = {
            "id": new_id(),
            "watch_code": watch_code,
            "tournament_id": tournament_id,
            "status": status,
            "started_at": now,
            "last_update": now,
        }
        async with self._connect() as db:
            await self._insert(db, "scraper_sessions", record)
            await db.commit()
        return await self.get_session(record["id"])

    async def get_session(self, session_id: str) -> Dict[str, Any]:
        async with self._connect() as db:
            session = await self._fetch_one(
                db, "SELECT * FROM scraper_sessions WHERE id = ?", (session_id,)
            )
        if session is None:
            raise NotFoundError(f"Scraper session not found: {session_id}")
        return session

    async def update_session(
        self,
        session_id: str,
        changes: Dict[str, Any],
    ) -> None:
        unknown = set(changes) - SESSION_FIELDS
        if unknown:
            raise ValidationError(f"Unknown session fields: {', '.join(sorted(unknown))}")

        async with self._connect() as db:
            await self._update(
                db, "scraper_sessions", session_id, {**changes, "last_update": utcnow()}
            )
            await db.commit()

    async def list_sessions(
        self,
        tournament_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM scraper_sessions"
        params: List[Any] = []
        if tournament_id:
            query += " WHERE tournament_id = ?"
            params.append(tournament_id)
        query += " ORDER BY started_at DESC"

        async with self._connect() as db:
            return await self._fetch_all(db, query, params)

    async def upsert_session(
        self,
        watch_code: str,
        status: str,
        last_data: Any = None,
    ) -> Dict[str, Any]:
        """
        Reuse the newest session of a watch code, creating one if needed.

        @return: The stored session
        """
        async with self._connect() as db:
            session = await self._fetch_one(
                db,
                "SELECT * FROM scraper_sessions WHERE watch_code = ? "
                "ORDER BY started_at DESC LIMIT 1",
                (watch_code,),
            )

        if session is None:
            session = await self.create_session(watch_code, status=status)

        changes: Dict[str, Any] = {"status": status}
        if status == "active":
            changes.update(started_at=utcnow(), ended_at=None)
        else:
            changes["ended_at"] = utcnow()
        if last_data is not None:
            changes["last_data"] = last_data

        await self.update_session(session["id"], changes)
        return await self.get_session(session["id"])
