"""
HTTP front ends for a ProcessSupervisor.

The scraper control server supervises the scraper; the launcher supervises
the scraper control server so the desk can bring the whole chain up.
"""

import logging
from typing import Optional

from aiohttp import web, web_runner

from .errors import SupervisorError
from .server import create_app, enable_cors, start_site
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class ControlServer:
    """Exposes start/stop/status of a supervised process over HTTP."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        prefix: str,
        service_name: str,
        status_key: str = "child",
        allow_restart: bool = True,
    ) -> None:
        """
        @param supervisor: Supervisor of the child process
        @param prefix: Route prefix, routes live under /api/{prefix}/
        @param service_name: Used in the health message, e.g. "Scraper control server"
        @param status_key: Health body key carrying the child state
        @param allow_restart: Whether POST /api/{prefix}/restart exists
        """
        self.supervisor = supervisor
        self.prefix = prefix
        self.service_name = service_name
        self.status_key = status_key
        self.allow_restart = allow_restart

    async def health(self, _: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "message": f"{self.service_name} running",
                self.status_key: self.supervisor.status(),
            }
        )

    async def status(self, _: web.Request) -> web.Response:
        return web.json_response(self.supervisor.status())

    async def start(self, _: web.Request) -> web.Response:
        """
        Start the child.

        @return: 200 on start, 400 when already running, 500 when it fails
        """
        try:
            result = await self.supervisor.start()
        except SupervisorError as e:
            logger.error("%s", e)
            return web.json_response({"success": False, "error": str(e)}, status=500)

        return web.json_response(result, status=200 if result["success"] else 400)

    async def stop(self, _: web.Request) -> web.Response:
        return web.json_response(await self.supervisor.stop())

    async def restart(self, _: web.Request) -> web.Response:
        try:
            result = await self.supervisor.restart()
        except SupervisorError as e:
            logger.error("%s", e)
            return web.json_response({"success": False, "error": str(e)}, status=500)

        return web.json_response(result, status=200 if result["success"] else 400)

    def make_app(self) -> web.Application:
        app = create_app()

        app.router.add_get("/", self.health)
        app.router.add_get("/health", self.health)

        base = f"/api/{self.prefix}"
        app.router.add_get(f"{base}/status", self.status)
        app.router.add_post(f"{base}/start", self.start)
        app.router.add_post(f"{base}/stop", self.stop)
        if self.allow_restart:
            app.router.add_post(f"{base}/restart", self.restart)

        enable_cors(app)
        app.on_shutdown.append(self.supervisor.shutdown)
        return app

    async def serve(
        self,
        host: str = "0.0.0.0",
        port: int = 3001,
        app: Optional[web.Application] = None,
    ) -> web_runner.AppRunner:
        runner = await start_site(app or self.make_app(), host, port)
        logger.info("%s ready on port %d", self.service_name, port)
        return runner
