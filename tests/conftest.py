import json
from unittest.mock import AsyncMock

import pytest

from oche.config import DeskConfig
from oche.database import DatabaseManager
from oche.desk import TournamentDesk
from oche.mailer import TournamentMailer

CONFIG_ENV_VARS = [
    "APP_NAME",
    "DB_PATH",
    "HOST",
    "WEB_PORT",
    "PUBLIC_URL",
    "RESEND_API_KEY",
    "RESEND_API_URL",
    "EMAIL_FROM",
    "EMAIL_RELAY_URL",
    "EMAIL_PORT",
    "TOURNAMENT_ID",
    "POLL_INTERVAL_MS",
    "SCRAPER_CHECK_INTERVAL_MS",
    "LIVE_INTERVAL_MS",
    "MAX_CONCURRENT_SCRAPERS",
    "AUTO_ACCEPT_CONFIDENCE",
    "SCRAPER_CONTROL_PORT",
    "LAUNCHER_PORT",
    "LOG_LEVEL",
    "LOG_FILE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keeps the developer's environment out of DeskConfig."""
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "oche_config.json"
    path.write_text(
        json.dumps(
            {
                "database": {"path": str(tmp_path / "desk.db")},
                "email": {"enabled": False},
            }
        )
    )
    return DeskConfig(str(path))


@pytest.fixture
async def db(tmp_path):
    manager = DatabaseManager(str(tmp_path / "test.db"))
    await manager.init_db()
    return manager


@pytest.fixture
def transport():
    """Email transport accepting every message."""
    sender = AsyncMock()
    sender.send.return_value = {"id": "email-1"}
    return sender


@pytest.fixture
def mailer(transport):
    return TournamentMailer(transport, app_name="Test Desk")


@pytest.fixture
async def desk(config, mailer):
    desk = TournamentDesk(config, mailer=mailer)
    await desk.init_db()
    return desk


@pytest.fixture
async def desk_client(aiohttp_client, desk):
    return await aiohttp_client(desk.make_app())


@pytest.fixture
def make_tournament(db):
    """Creates a tournament with players, all checked in.

    Usage::

        tournament, players = await make_tournament(["Ann", "Bob"], total_boards=2)
    """

    async def factory(names, **fields):
        fields.setdefault("name", "Friday Darts")
        tournament = await db.create_tournament(fields)
        players = []
        for name in names:
            player = await db.add_player(
                tournament["id"],
                {
                    "name": name,
                    "email": f"{name.split()[0].lower()}@example.com",
                    "checked_in": True,
                },
            )
            players.append(player)
        return tournament, players

    return factory


class FakePage:
    """Stands in for a BrowserPage, serving canned HTML.

    Every content() call returns the next page; the last one repeats.
    """

    def __init__(self, pages):
        self.pages = list(pages)
        self.opened = None
        self.closed = False

    async def open(self, url):
        self.opened = url

    async def content(self):
        if len(self.pages) > 1:
            return self.pages.pop(0)
        return self.pages[0]

    async def close(self):
        self.closed = True


def match_html(name1, legs1, name2, legs2, status="In Progress", average1="60.12"):
    return f"""
    <html><body>
      <div class="match-status">{status}</div>
      <span class="player1-name">{name1}</span>
      <span class="player1-legs">{legs1}</span>
      <span class="player1-average">{average1}</span>
      <span class="player1-checkout">3/10</span>
      <span class="player1-180s">2</span>
      <span class="player2-name">{name2}</span>
      <span class="player2-legs">{legs2}</span>
      <span class="player2-average">50.1</span>
    </body></html>
    """


def live_html(score1="501", score2="501", legs1="0", legs2="0", last_throw="60"):
    return f"""
    <html><body>
      <div class="player1 active"></div>
      <div id="p1_name">John Smith</div>
      <div id="p1_score">{score1}</div>
      <div id="p1_legs">{legs1}</div>
      <div id="p2_name">Jane Doe</div>
      <div id="p2_score">{score2}</div>
      <div id="p2_legs">{legs2}</div>
      <div class="match-format">501 Best of 5</div>
      <div class="current-leg">2</div>
      <div class="last-throw">{last_throw}</div>
    </body></html>
    """
