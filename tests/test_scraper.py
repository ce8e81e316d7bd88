import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from conftest import FakePage, live_html, match_html

from oche import tournament as ops
from oche.config import DeskConfig
from oche.scraper import LiveScoreFeed, MatchScraper, ScraperManager

LOADING = "<html><body><p>Loading...</p></body></html>"


@pytest.fixture
async def scheduled(db, make_tournament):
    """A tournament with one scheduled John Smith vs Jane Doe match."""

    async def factory(**fields):
        tournament, players = await make_tournament(
            ["John Smith", "Jane Doe"], num_groups=1, total_boards=1, **fields
        )
        await ops.generate_groups(db, tournament, shuffle=False)
        match = (await db.list_matches(tournament["id"]))[0]
        names = {p["id"]: p["name"] for p in players}
        return tournament, match, names[match["player1_id"]], names[match["player2_id"]]

    return factory


async def wait_until_done(scraper):
    async def done():
        while scraper.running:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(done(), 5)


async def test_match_is_followed_to_a_pending_result(db, scheduled):
    tournament, match, first, second = await scheduled()
    # DartConnect lists the players the other way round
    page = FakePage(
        [
            match_html(second, 0, first, 1),
            match_html(second, 1, first, 1),
            match_html(second, 1, first, 3, status="Match Complete"),
        ]
    )
    scraper = MatchScraper("ABC123", tournament, db, url="http://dc/ABC123", page=page)

    await scraper.check()
    [live] = await db.list_pending_results(tournament["id"])
    assert live["status"] == "live"
    assert live["is_live"] is True
    assert live["match_id"] == match["id"]
    assert live["swapped"] is True
    assert live["confidence_score"] == 100.0
    assert live["player2_legs"] == 1

    await scraper.check()
    live = await db.get_pending_result(live["id"])
    assert (live["player1_legs"], live["player2_legs"]) == (1, 1)
    assert not scraper.completed

    await scraper.check()
    result = await db.get_pending_result(live["id"])
    assert scraper.completed
    assert result["status"] == "pending"
    assert result["is_live"] is False
    assert result["winner_name"] == first
    assert result["total_legs_played"] == 4
    assert result["raw_scraper_data"]["is_complete"] is True

    updated = await db.approve_pending_result(result["id"], processed_by="desk")
    assert (updated["player1_legs"], updated["player2_legs"]) == (3, 1)
    assert updated["winner_id"] == match["player1_id"]


async def test_unknown_players_are_not_linked(db, scheduled):
    tournament, _, _, _ = await scheduled()
    page = FakePage([match_html("Phil Taylor", 3, "Raymond van Barneveld", 0, "Complete")])
    scraper = MatchScraper("ABC123", tournament, db, url="http://dc/ABC123", page=page)

    await scraper.check()

    [result] = await db.list_pending_results(tournament["id"])
    assert result["match_found"] is False
    assert result["match_id"] is None
    assert result["status"] == "pending"


async def test_confident_result_is_auto_accepted(db, scheduled):
    tournament, match, first, second = await scheduled(
        dartconnect_auto_accept_scores=True,
        dartconnect_require_manual_approval=False,
    )
    page = FakePage([match_html(first, 3, second, 2, status="Match Complete")])
    scraper = MatchScraper("ABC123", tournament, db, url="http://dc/ABC123", page=page)

    await scraper.check()

    [result] = await db.list_pending_results(tournament["id"])
    assert result["status"] == "auto-accepted"
    stored = await db.get_match(match["id"])
    assert stored["status"] == "completed"
    assert stored["winner_id"] == match["player1_id"]
    history = await db.score_history(match["id"])
    assert history[-1]["change_type"] == "dartconnect_auto"


async def test_manual_approval_wins_over_auto_accept(db, scheduled):
    tournament, match, first, second = await scheduled(dartconnect_auto_accept_scores=True)
    page = FakePage([match_html(first, 3, second, 2, status="Match Complete")])
    scraper = MatchScraper("ABC123", tournament, db, url="http://dc/ABC123", page=page)

    await scraper.check()

    [result] = await db.list_pending_results(tournament["id"])
    assert result["status"] == "pending"
    assert (await db.get_match(match["id"]))["status"] == "scheduled"


async def test_scraper_runs_until_match_completes(db, scheduled):
    tournament, _, first, second = await scheduled()
    page = FakePage(
        [
            LOADING,
            match_html(first, 2, second, 2),
            match_html(first, 3, second, 2, status="Match Complete"),
        ]
    )
    scraper = MatchScraper(
        "ABC123", tournament, db, url="http://dc/ABC123", page=page, check_interval=0
    )

    await scraper.start()
    await wait_until_done(scraper)

    assert page.opened == "http://dc/ABC123"
    assert page.closed
    [session] = await db.list_sessions(tournament["id"])
    assert session["status"] == "completed"
    assert session["match_completed"] is True
    assert session["result_submitted"] is True


class FlakyPage(FakePage):
    """Fails its first read with an error the parser never raises."""

    def __init__(self, pages):
        super().__init__(pages)
        self.failed = False

    async def content(self):
        if not self.failed:
            self.failed = True
            raise KeyError("player1")
        return await super().content()


async def test_scraper_survives_unexpected_errors(db, scheduled):
    tournament, _, first, second = await scheduled()
    page = FlakyPage([match_html(first, 3, second, 2, status="Match Complete")])
    scraper = MatchScraper(
        "ABC123", tournament, db, url="http://dc/ABC123", page=page, check_interval=0
    )

    await scraper.start()
    await wait_until_done(scraper)

    assert page.failed
    assert scraper.completed
    assert page.closed
    [session] = await db.list_sessions(tournament["id"])
    assert session["status"] == "completed"


async def test_stopped_scraper_marks_its_session(db, scheduled):
    tournament, _, _, _ = await scheduled()
    page = FakePage([LOADING])
    scraper = MatchScraper(
        "ABC123", tournament, db, url="http://dc/ABC123", page=page, check_interval=60
    )

    await scraper.start()
    await scraper.stop()

    assert page.closed
    [session] = await db.list_sessions(tournament["id"])
    assert session["status"] == "stopped"
    assert session["ended_at"]


@pytest.fixture
def manager_config(tmp_path):
    def factory(tournament_id):
        path = tmp_path / "scraper.json"
        path.write_text(
            json.dumps(
                {
                    "scraper": {
                        "tournament_id": tournament_id,
                        "max_concurrent": 1,
                        "check_interval_ms": 60000,
                    }
                }
            )
        )
        return DeskConfig(str(path))

    return factory


async def test_manager_follows_watch_codes(db, make_tournament, manager_config):
    tournament, _ = await make_tournament(
        [],
        dartconnect_integration_enabled=True,
        dartconnect_watch_codes=["AAA", "BBB"],
    )
    pages = []

    def page_factory():
        pages.append(FakePage([LOADING]))
        return pages[-1]

    manager = ScraperManager(db, manager_config(tournament["id"]), page_factory)

    await manager.poll()
    assert list(manager.scrapers) == ["AAA"]
    assert pages[0].opened == "https://tv.dartconnect.com/history/match/AAA"

    await db.update_tournament(tournament["id"], {"dartconnect_watch_codes": ["BBB"]})
    await manager.poll()
    assert list(manager.scrapers) == ["BBB"]
    assert pages[0].closed

    await db.update_tournament(tournament["id"], {"dartconnect_integration_enabled": False})
    await manager.poll()
    assert manager.scrapers == {}
    assert all(page.closed for page in pages)
    sessions = await db.list_sessions(tournament["id"])
    assert {s["status"] for s in sessions} == {"stopped"}


async def test_manager_restarts_a_dead_scraper(db, make_tournament, manager_config):
    tournament, _ = await make_tournament(
        [],
        dartconnect_integration_enabled=True,
        dartconnect_watch_codes=["AAA"],
    )
    pages = []

    def page_factory():
        pages.append(FakePage([LOADING]))
        return pages[-1]

    manager = ScraperManager(db, manager_config(tournament["id"]), page_factory)
    await manager.poll()
    dead = manager.scrapers["AAA"]

    # Let the first check run before the task dies in its sleep
    await asyncio.sleep(0.05)
    dead._task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await dead._task
    assert pages[0].closed

    await manager.poll()

    assert manager.scrapers["AAA"] is not dead
    assert manager.scrapers["AAA"].running
    assert len(pages) == 2
    await manager.stop_all()


async def test_manager_run_stops_on_request(db, make_tournament, manager_config):
    tournament, _ = await make_tournament([], dartconnect_integration_enabled=True)
    manager = ScraperManager(db, manager_config(tournament["id"]), lambda: FakePage([LOADING]))

    manager.request_stop()
    await asyncio.wait_for(manager.run(), 5)

    assert manager.scrapers == {}


async def test_manager_with_missing_tournament(db, manager_config):
    manager = ScraperManager(db, manager_config("missing"), lambda: FakePage([LOADING]))

    await manager.poll()

    assert manager.scrapers == {}


async def test_live_feed_publishes_changes(db):
    publisher = AsyncMock()
    page = FakePage(
        [
            live_html(score1="501"),
            live_html(score1="501"),
            live_html(score1="441", last_throw="60"),
        ]
    )
    feed = LiveScoreFeed("ABC123", db, publisher, url="http://dc/live/ABC123", page=page)

    await feed.start()
    assert await feed.tick() is True
    assert await feed.tick() is False
    assert await feed.tick() is True

    assert publisher.publish.await_count == 2
    channel, event, data = publisher.publish.await_args.args
    assert channel == "match-ABC123"
    assert event == "live-score-update"
    assert data["player1"] == {
        "name": "John Smith",
        "score": "441",
        "legs": "0",
        "isActive": True,
    }
    assert data["match"]["lastThrow"] == "60"

    session = await db.get_session(feed.session_id)
    assert session["status"] == "active"
    assert session["last_data"]["player1"]["score"] == "441"

    await feed.stop()
    assert page.closed
    publisher.close.assert_awaited_once()
    assert (await db.get_session(feed.session_id))["status"] == "stopped"


async def test_live_feed_run_loop(db):
    publisher = AsyncMock()
    feed = LiveScoreFeed(
        "ABC123", db, publisher, url="http://dc/live/ABC123", page=FakePage([live_html()]),
        interval=0.01,
    )

    task = asyncio.create_task(feed.run())
    while not publisher.publish.await_count:
        await asyncio.sleep(0.01)
    feed.request_stop()
    await asyncio.wait_for(task, 5)

    assert publisher.publish.await_count == 1
    publisher.close.assert_awaited_once()
