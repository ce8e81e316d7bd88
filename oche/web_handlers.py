"""
HTML route handlers for the tournament desk.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from aiohttp import web
from jinja2 import Environment, FileSystemLoader, select_autoescape

from . import tournament as ops
from .database import DatabaseManager

TEMPLATES_PATH = Path(__file__).parent / "templates" / "pages"


def format_date(value: Optional[str]) -> str:
    """
    Format a stored date or timestamp for display.

    @param value: ISO date or timestamp
    @return: "Sat 14 Mar 2026" style date, the raw value if unparseable
    """
    if not value:
        return "TBA"
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return value[:19]
    return dt.strftime("%a %d %b %Y")


class WebHandlers:
    """Handles web routes and responses."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        config: Any,
        templates_path: Path = TEMPLATES_PATH,
    ) -> None:
        self.db = db_manager
        self.config = config

        self.jinja_env = Environment(
            loader=FileSystemLoader(str(templates_path)),
            autoescape=select_autoescape(["html"]),
            auto_reload=False,  # Disable auto-reload for performance
            cache_size=50,  # Cache up to 50 templates
        )
        self.jinja_env.filters["date"] = format_date

    def _render(self, template_name: str, **context: Any) -> web.Response:
        template = self.jinja_env.get_template(template_name)
        html = template.render(app_name=self.config.get("app_name"), **context)
        return web.Response(text=html, content_type="text/html")

    async def web_index(
        self,
        _: web.Request,
    ) -> web.Response:
        """
        Web interface main page.

        @param _: Unused request parameter
        @return: HTTP response with rendered tournament list
        """
        tournaments = await self.db.list_tournaments()
        return self._render("index.html", title="Tournaments", tournaments=tournaments)

    async def web_standings(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Public standings page of a tournament.

        @param request: HTTP request object containing tournament id
        @return: HTTP response with group tables and knockout rounds
        """
        tournament = await self.db.get_tournament(request.match_info["tournament"])
        tables = await ops.group_standings(self.db, tournament)
        players = {p["id"]: p for p in await self.db.list_players(tournament["id"])}
        rounds = await ops.knockout_rounds(self.db, tournament["id"])

        return self._render(
            "standings.html",
            title=tournament["name"],
            tournament=tournament,
            tables=tables,
            rounds=rounds,
            players=players,
        )

    async def web_display(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Live score display for one DartConnect watch code.

        @param request: HTTP request object containing the watch code
        @return: HTTP response with the display page
        """
        watch_code = request.match_info["watch_code"]
        return self._render(
            "display.html",
            title=f"Live {watch_code}",
            watch_code=watch_code,
            channel=f"match-{watch_code}",
        )

    def add_routes(self, app: web.Application) -> None:
        app.router.add_get("/", self.web_index)
        app.router.add_get("/tournaments/{tournament}", self.web_standings)
        app.router.add_get("/display/{watch_code}", self.web_display)
