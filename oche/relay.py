"""
Email relay service.

Lets browser front ends send mail without holding the provider API key.
"""

import asyncio
import logging
from typing import Any, Optional

import aiohttp
from aiohttp import web, web_runner

from .errors import EmailDeliveryError, ValidationError
from .mailer import ResendClient
from .server import create_app, enable_cors, read_json, start_site

logger = logging.getLogger(__name__)


class EmailRelay:
    """Passes /api/send-email requests through to Resend."""

    def __init__(self, client: ResendClient) -> None:
        self.client = client

    @classmethod
    def from_config(cls, config: Any) -> "EmailRelay":
        if not config.get("email", "api_key"):
            logger.warning("RESEND_API_KEY is not set, sends will be rejected upstream")
        return cls(
            ResendClient(
                config.get("email", "api_key"),
                config.get("email", "from_address"),
                config.get("email", "api_url"),
            )
        )

    async def health(self, _: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "message": "Email server running"})

    async def send_email(self, request: web.Request) -> web.Response:
        """
        Relay one email.

        @param request: JSON body {to, subject, html, type}
        @return: {"success": true, "data"} or the provider status with
            {"success": false, "error"}
        """
        body = await read_json(request)
        missing = [key for key in ("to", "subject", "html") if not body.get(key)]
        if missing:
            raise ValidationError(f"Missing fields: {', '.join(missing)}")

        logger.info(
            "Email request to %s: %r (%s)", body["to"], body["subject"], body.get("type")
        )

        try:
            data = await self.client.send(body["to"], body["subject"], body["html"])
        except EmailDeliveryError as e:
            logger.error("Resend API error: %s", e)
            return web.json_response(
                {"success": False, "error": str(e)}, status=e.status or 502
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Resend API unreachable: %r", e)
            return web.json_response(
                {"success": False, "error": str(e) or "Email provider timed out"},
                status=500,
            )

        logger.info("Email sent: %s", data)
        return web.json_response({"success": True, "data": data})

    async def _close(self, _: web.Application) -> None:
        await self.client.close()

    def make_app(self) -> web.Application:
        app = create_app()
        app.router.add_get("/", self.health)
        app.router.add_get("/health", self.health)
        app.router.add_get("/api/health", self.health)
        app.router.add_post("/api/send-email", self.send_email)
        enable_cors(app)
        app.on_cleanup.append(self._close)
        return app

    async def serve(
        self,
        host: str = "0.0.0.0",
        port: int = 3000,
        app: Optional[web.Application] = None,
    ) -> web_runner.AppRunner:
        return await start_site(app or self.make_app(), host, port)
