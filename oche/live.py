"""
Live score channels.

Display screens subscribe to a channel over a websocket; the live feed
scraper publishes into it over HTTP.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Optional, Set

import aiohttp
from aiohttp import web

from .server import read_json
from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_EVENT = "live-score-update"


class LiveHub:
    """In-process broadcast channels backed by websockets."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[web.WebSocketResponse]] = defaultdict(set)
        self._last: Dict[str, Dict[str, Any]] = {}

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def last(self, channel: str) -> Optional[Dict[str, Any]]:
        return self._last.get(channel)

    async def publish(
        self,
        channel: str,
        event: str,
        payload: Any,
    ) -> int:
        """
        Broadcast a message to every subscriber of a channel.

        @param channel: Channel name, e.g. "match-ABC123"
        @param event: Event name
        @param payload: JSON serialisable payload
        @return: Number of subscribers reached
        """
        message = {"type": "broadcast", "event": event, "payload": payload}
        self._last[channel] = message

        delivered = 0
        for ws in list(self._subscribers.get(channel, ())):
            if ws.closed:
                self._subscribers[channel].discard(ws)
                continue
            try:
                await ws.send_json(message)
                delivered += 1
            except ConnectionResetError:
                logger.debug("Dropping dead subscriber on %s", channel)
                self._subscribers[channel].discard(ws)

        return delivered

    async def ws_subscribe(
        self,
        request: web.Request,
    ) -> web.WebSocketResponse:
        """
        Websocket endpoint; the last message on the channel is replayed on connect.

        @param request: HTTP request object containing channel name
        @return: The closed websocket response
        """
        channel = request.match_info["channel"]
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        self._subscribers[channel].add(ws)
        logger.debug("Subscriber joined %s (%d)", channel, self.subscriber_count(channel))

        try:
            if channel in self._last:
                await ws.send_json(self._last[channel])

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT and msg.data == "ping":
                    await ws.send_str("pong")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Websocket error on %s: %s", channel, ws.exception())
        finally:
            self._subscribers[channel].discard(ws)

        return ws

    async def api_publish(
        self,
        request: web.Request,
    ) -> web.Response:
        channel = request.match_info["channel"]
        body = await read_json(request)
        if "payload" not in body:
            raise ValidationError("Missing payload")

        delivered = await self.publish(
            channel, body.get("event") or DEFAULT_EVENT, body["payload"]
        )
        return web.json_response({"success": True, "delivered": delivered})

    async def api_last(
        self,
        request: web.Request,
    ) -> web.Response:
        channel = request.match_info["channel"]
        message = self.last(channel)
        if message is None:
            raise NotFoundError(f"Nothing published on {channel}")
        return web.json_response(message)

    def add_routes(self, app: web.Application) -> None:
        app.router.add_get("/ws/live/{channel}", self.ws_subscribe)
        app.router.add_post("/api/live/{channel}", self.api_publish)
        app.router.add_get("/api/live/{channel}", self.api_last)
        app.on_shutdown.append(self.close)

    async def close(self, _: Any = None) -> None:
        for subscribers in self._subscribers.values():
            for ws in list(subscribers):
                await ws.close(code=aiohttp.WSCloseCode.GOING_AWAY, message=b"Shutdown")
        self._subscribers.clear()


class LivePublisher:
    """Publishes live updates to a remote LiveHub."""

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=10)
            )
        return self._session

    async def publish(
        self,
        channel: str,
        event: str,
        payload: Any,
    ) -> bool:
        """
        Post an update to the hub.

        @return: True if the hub accepted it
        """
        session = await self._get_session()
        url = f"{self.base_url}/api/live/{channel}"
        try:
            async with session.post(url, json={"event": event, "payload": payload}) as resp:
                if resp.status != 200:
                    logger.warning("Broadcast to %s failed: HTTP %d", channel, resp.status)
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Broadcast to %s failed: %r", channel, e)
            return False
        return True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
