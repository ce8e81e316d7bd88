"""
Main TournamentDesk class that orchestrates all components.
"""

import asyncio
import logging
from typing import Optional

from aiohttp import web, web_runner

from .api_handlers import ApiHandlers
from .config import DeskConfig
from .database import DatabaseManager
from .live import LiveHub
from .mailer import TournamentMailer
from .server import create_app, enable_cors, start_site
from .web_handlers import WebHandlers

logger = logging.getLogger(__name__)


class TournamentDesk:
    """Tournament desk with JSON API, public pages and live channels."""

    def __init__(
        self,
        config: Optional[DeskConfig] = None,
        config_path: str = "oche_config.json",
        db_path: Optional[str] = None,
        mailer: Optional[TournamentMailer] = None,
    ) -> None:
        self.config = config or DeskConfig(config_path)
        self.db_path = db_path or self.config.get("database", "path")

        self.db = DatabaseManager(self.db_path, self.config)
        self.hub = LiveHub()
        self.mailer = mailer or TournamentMailer.from_config(self.config)
        self.api_handlers = ApiHandlers(self.db, self.config, self.mailer)
        self.web_handlers = WebHandlers(self.db, self.config)

    async def init_db(self) -> None:
        """
        Initialize the database.

        Delegates to the database manager's init method.
        """
        await self.db.init_db()

    async def _close_mailer(self, _: web.Application) -> None:
        await self.mailer.close()

    def make_app(self) -> web.Application:
        """
        Build the desk application.

        @return: Application with every API, page and live route
        """
        app = create_app()

        self.web_handlers.add_routes(app)
        self.api_handlers.add_routes(app)
        self.hub.add_routes(app)

        enable_cors(app)

        app.on_cleanup.append(self._close_mailer)
        return app

    async def start_web_server(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> web_runner.AppRunner:
        """
        Start the web server.

        @param host: Host address to bind the server to (default configured host)
        @param port: Port number to use (default configured web port)
        @return: AppRunner instance for the web server
        """
        host = host or self.config.get("web", "host")
        port = port or self.config.get("web", "port")
        return await start_site(self.make_app(), host, port)

    async def run(
        self,
        stop_event: asyncio.Event,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> None:
        """
        Serve until stop_event is set.

        @param stop_event: Set by the signal handlers to shut down
        @param host: Host address to bind the server to
        @param port: Port number to use
        """
        await self.init_db()
        runner = await self.start_web_server(host, port)

        logger.info("%s running", self.config.get("app_name"))
        logger.info("Database: %s", self.db_path)
        logger.info("Email: %s", "enabled" if self.mailer.enabled else "disabled")

        try:
            await stop_event.wait()
        finally:
            logger.info("Shutting down web server...")
            await runner.cleanup()
