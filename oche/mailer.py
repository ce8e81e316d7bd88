"""
Transactional email: Resend API client, relay client and tournament mails.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import aiohttp
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .errors import EmailDeliveryError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
TEMPLATES_PATH = Path(__file__).parent / "templates" / "email"


async def _error_message(resp: aiohttp.ClientResponse) -> str:
    try:
        body = await resp.json(content_type=None)
    except ValueError:
        return await resp.text() or f"HTTP {resp.status}"
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)
    return str(body)


class _HTTPSender:
    def __init__(self, session: Optional[aiohttp.ClientSession] = None) -> None:
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30)
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None


class ResendClient(_HTTPSender):
    """Sends mail through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        api_url: str = RESEND_API_URL,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__(session)
        self.api_key = api_key
        self.from_address = from_address
        self.api_url = api_url

    async def send(
        self,
        to: Any,
        subject: str,
        html: str,
    ) -> Dict[str, Any]:
        """
        Send one email.

        @param to: Recipient address or list of addresses
        @param subject: Subject line
        @param html: HTML body
        @return: Provider response body
        @raise EmailDeliveryError: Provider answered with a non-2xx status
        """
        session = await self._get_session()
        payload = {
            "from": self.from_address,
            "to": to,
            "subject": subject,
            "html": html,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with session.post(self.api_url, json=payload, headers=headers) as resp:
            if resp.status >= 400:
                raise EmailDeliveryError(await _error_message(resp), status=resp.status)
            return await resp.json(content_type=None)


class RelayClient(_HTTPSender):
    """Sends mail through an EmailRelay service."""

    def __init__(
        self,
        relay_url: str,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__(session)
        self.relay_url = relay_url.rstrip("/")

    async def send(
        self,
        to: Any,
        subject: str,
        html: str,
        email_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        session = await self._get_session()
        payload = {"to": to, "subject": subject, "html": html, "type": email_type}

        async with session.post(f"{self.relay_url}/api/send-email", json=payload) as resp:
            if resp.status >= 400:
                raise EmailDeliveryError(await _error_message(resp), status=resp.status)
            body = await resp.json(content_type=None)
            return body.get("data") or {}


@dataclass
class BulkResult:
    sent: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GroupAssignment:
    player_name: str
    event_name: str
    group_name: str
    board_numbers: str
    date: str = ""
    start_time: str = ""
    match_format: Optional[str] = None
    play_style: Optional[str] = None
    format_details: Optional[str] = None


def describe_boards(boards: Sequence[int]) -> str:
    if not boards:
        return "TBA"
    if len(boards) == 1:
        return f"Board {boards[0]}"
    return "Boards " + ", ".join(str(b) for b in boards)


def describe_match_format(
    scoring: Optional[Mapping[str, Any]],
    stage: str = "roundrobin",
) -> Tuple[str, str, str]:
    """
    Human readable match format of a stage.

    @param scoring: Tournament scoring_system dict
    @param stage: "roundrobin" or "knockout"
    @return: (match format, play style, format details)
    """
    if not scoring:
        return "Match Play", "Best Of", "Best of 11 legs"

    match_format = scoring.get(f"{stage}_format") or "matchplay"
    style = scoring.get(f"{stage}_play_style") or "best_of"
    play_style = "Best Of" if style == "best_of" else "Play All"

    if match_format == "matchplay":
        legs = scoring.get(f"{stage}_legs_per_match") or 11
        if style == "best_of":
            details = f"Best of {legs} legs (first to {math.ceil(legs / 2)} wins)"
        else:
            details = f"Play all {legs} legs"
        return "Match Play", play_style, details

    sets = scoring.get(f"{stage}_sets_per_match") or 3
    legs_per_set = scoring.get(f"{stage}_legs_per_set") or 5
    if style == "best_of":
        details = (
            f"Best of {sets} sets (first to {math.ceil(sets / 2)} wins), "
            f"{legs_per_set} legs per set"
        )
    else:
        details = f"Play all {sets} sets, {legs_per_set} legs per set"
    return "Set Play", play_style, details


class TournamentMailer:
    """Renders and sends the tournament's emails."""

    def __init__(
        self,
        transport: Optional[Any] = None,
        app_name: str = "Oche Tournament Desk",
        templates_path: Path = TEMPLATES_PATH,
    ) -> None:
        """
        @param transport: ResendClient or RelayClient; None disables sending
        @param app_name: Shown in email footers
        @param templates_path: Directory holding the email templates
        """
        self.transport = transport
        self.app_name = app_name
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(templates_path)),
            autoescape=select_autoescape(["html"]),
            auto_reload=False,
            cache_size=50,
        )

    @classmethod
    def from_config(cls, config: Any) -> "TournamentMailer":
        """Relay when a relay URL is set, Resend when a key is set, else disabled."""
        transport = None
        if config.get("email", "enabled"):
            if config.get("email", "relay_url"):
                transport = RelayClient(config.get("email", "relay_url"))
            elif config.get("email", "api_key"):
                transport = ResendClient(
                    config.get("email", "api_key"),
                    config.get("email", "from_address"),
                    config.get("email", "api_url"),
                )

        if transport is None:
            logger.info("Email disabled: no relay URL or API key configured")
        return cls(transport, app_name=config.get("app_name"))

    @property
    def enabled(self) -> bool:
        return self.transport is not None

    def render(self, template_name: str, **context: Any) -> str:
        template = self.jinja_env.get_template(template_name)
        return template.render(app_name=self.app_name, **context)

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
    ) -> bool:
        """
        Send one email, logging rather than raising on failure.

        @return: True if the provider accepted it
        """
        if not self.enabled:
            logger.debug("Email disabled, not sending %r to %s", subject, to)
            return False

        try:
            await self.transport.send(to, subject, html)
        except EmailDeliveryError as e:
            logger.error("Failed to send %r to %s: %s (HTTP %s)", subject, to, e, e.status)
            return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Failed to send %r to %s: %r", subject, to, e)
            return False

        logger.info("Sent %r to %s", subject, to)
        return True

    async def send_registration_confirmation(
        self,
        email: str,
        player_name: str,
        tournament: Mapping[str, Any],
    ) -> bool:
        html = self.render(
            "registration_confirmation.html",
            player_name=player_name,
            event_name=tournament["name"],
            date=tournament.get("date") or "TBA",
            start_time=tournament.get("start_time") or "TBA",
            location=tournament.get("location") or "TBA",
        )
        return await self.send(email, f"Registration Confirmed - {tournament['name']}", html)

    async def send_group_assignment(
        self,
        email: str,
        assignment: GroupAssignment,
    ) -> bool:
        html = self.render("group_assignment.html", **asdict(assignment))
        return await self.send(email, f"Group Assignment - {assignment.event_name}", html)

    async def send_bulk_group_assignments(
        self,
        assignments: Sequence[Tuple[str, GroupAssignment]],
    ) -> BulkResult:
        """
        Send group assignments one after the other.

        @param assignments: (email, GroupAssignment) pairs
        @return: Counts of sent and failed mails with error messages
        """
        result = BulkResult()
        logger.info("Sending group assignments to %d recipients", len(assignments))

        for email, assignment in assignments:
            if await self.send_group_assignment(email, assignment):
                result.sent += 1
            else:
                result.failed += 1
                result.errors.append(f"Failed to send to {email}")

        logger.info("Group assignments: sent=%d, failed=%d", result.sent, result.failed)
        return result

    async def send_board_call(
        self,
        tournament: Mapping[str, Any],
        board_number: int,
        player1: Mapping[str, Any],
        player2: Mapping[str, Any],
    ) -> int:
        """
        Call both players of a match to their board.

        @return: Number of emails sent
        """
        sent = 0
        subject = f"Board Call - {tournament['name']}"
        for player, opponent in ((player1, player2), (player2, player1)):
            if not player.get("email"):
                continue
            html = self.render(
                "board_call.html",
                player_name=player["name"],
                opponent_name=opponent["name"],
                board_number=board_number,
                event_name=tournament["name"],
            )
            if await self.send(player["email"], subject, html):
                sent += 1
        return sent

    async def close(self) -> None:
        if self.transport is not None:
            await self.transport.close()
