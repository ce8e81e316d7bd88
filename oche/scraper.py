"""
DartConnect scrapers.

MatchScraper follows one match history page and turns it into a pending
result; ScraperManager keeps one MatchScraper per watch code of the
tournament; LiveScoreFeed relays a live scoreboard page to a LiveHub channel.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import aiosqlite
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from .dartconnect import MatchSnapshot, has_changed, parse_live_page, parse_match_page
from .database import DatabaseManager, utcnow
from .errors import NotFoundError, OcheError
from .live import DEFAULT_EVENT, LivePublisher
from .results import MatchCandidate, match_players

logger = logging.getLogger(__name__)

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Failures of a single poll; the scraper logs them and tries again next tick
TICK_ERRORS = (PlaywrightError, aiosqlite.Error, OcheError)


class BrowserPage:
    """A headless Chromium page driven by Playwright."""

    def __init__(
        self,
        headless: bool = True,
        timeout_ms: int = 30000,
    ) -> None:
        self.headless = headless
        self.timeout_ms = timeout_ms
        self._playwright = None
        self._browser = None
        self._page = None

    async def open(self, url: str) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--no-sandbox", "--disable-setuid-sandbox"],
        )
        context = await self._browser.new_context(
            user_agent=DESKTOP_USER_AGENT,
            viewport={"width": 1280, "height": 720},
        )
        self._page = await context.new_page()
        await self.goto(url)

    async def goto(self, url: str) -> None:
        """
        Navigate, settling for a committed load when the page never goes idle.

        @param url: Page address
        """
        logger.info("Navigating to %s", url)
        try:
            await self._page.goto(url, wait_until="networkidle", timeout=self.timeout_ms)
        except PlaywrightTimeoutError:
            logger.warning("%s did not settle, continuing with partial load", url)
            await self._page.goto(url, wait_until="commit", timeout=self.timeout_ms)

    async def content(self) -> str:
        return await self._page.content()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self._page = None


PageFactory = Callable[[], Any]


def browser_factory(config: Any) -> PageFactory:
    def factory() -> BrowserPage:
        return BrowserPage(
            headless=config.get("scraper", "headless"),
            timeout_ms=config.get("scraper", "page_timeout_ms"),
        )

    return factory


class MatchScraper:
    """Follows one DartConnect match until it is finished."""

    def __init__(
        self,
        watch_code: str,
        tournament: Dict[str, Any],
        db: DatabaseManager,
        url: str,
        page: Any,
        check_interval: float = 5.0,
        auto_accept_confidence: float = 90,
        match_threshold: float = 0.6,
    ) -> None:
        self.watch_code = watch_code
        self.tournament_id = tournament["id"]
        self.auto_accept = bool(tournament.get("dartconnect_auto_accept_scores"))
        self.require_manual_approval = bool(
            tournament.get("dartconnect_require_manual_approval", True)
        )
        self.db = db
        self.url = url
        self.page = page
        self.check_interval = check_interval
        self.auto_accept_confidence = auto_accept_confidence
        self.match_threshold = match_threshold

        self.session_id: Optional[str] = None
        self.pending_result_id: Optional[str] = None
        self.last_snapshot: Optional[MatchSnapshot] = None
        self.completed = False
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _log(self, level: int, message: str, *args: Any) -> None:
        logger.log(level, "[%s] " + message, self.watch_code, *args)

    async def start(self) -> None:
        """Open the page and start checking it in the background."""
        session = await self.db.create_session(self.watch_code, self.tournament_id)
        self.session_id = session["id"]

        await self.page.open(self.url)
        self._task = asyncio.create_task(self._run())
        self._log(logging.INFO, "Scraper started, checking every %.1fs", self.check_interval)

    async def _run(self) -> None:
        try:
            while not self.completed:
                try:
                    await self.check()
                except TICK_ERRORS as e:
                    self._log(logging.ERROR, "Error checking match status: %s", e)
                except Exception:
                    logger.exception("[%s] Unexpected error checking match", self.watch_code)

                if self.completed:
                    break
                await asyncio.sleep(self.check_interval)
        finally:
            await self._close()

    async def check(self) -> Optional[MatchSnapshot]:
        """
        Read the page once and record what changed.

        @return: The parsed snapshot, None while the page has no match yet
        """
        snapshot = parse_match_page(await self.page.content())
        if snapshot is None:
            return None

        previous = self.last_snapshot
        if previous is None:
            self._log(
                logging.INFO,
                "Match is live: %s vs %s",
                snapshot.player1.name,
                snapshot.player2.name,
            )
            await self.create_live_result(snapshot)
        elif snapshot.score_key() != previous.score_key():
            self._log(
                logging.INFO,
                "Match update: %d-%d%s",
                snapshot.player1.legs,
                snapshot.player2.legs,
                " (complete)" if snapshot.is_complete else "",
            )
            await self.update_live_result(snapshot)

        if snapshot.is_complete and not (previous and previous.is_complete):
            self._log(
                logging.INFO,
                "Match completed: %s %d-%d %s, winner %s",
                snapshot.player1.name,
                snapshot.player1.legs,
                snapshot.player2.legs,
                snapshot.player2.name,
                snapshot.winner_name or "undecided",
            )
            await self.submit_final_result(snapshot)
            self.completed = True

        self.last_snapshot = snapshot
        return snapshot

    async def _find_match(self, snapshot: MatchSnapshot) -> MatchCandidate:
        matches = await self.db.list_matches(self.tournament_id)
        players = {p["id"]: p for p in await self.db.list_players(self.tournament_id)}
        candidate = match_players(
            snapshot.player1.name,
            snapshot.player2.name,
            matches,
            players,
            threshold=self.match_threshold,
        )
        self._log(
            logging.INFO,
            "Match found: %s, confidence %.1f",
            candidate.match_id,
            candidate.confidence,
        )
        return candidate

    def _candidate_fields(self, candidate: MatchCandidate) -> Dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "match_id": candidate.match_id,
            "watch_code": self.watch_code,
            "scraper_session_id": self.session_id,
            "confidence_score": candidate.confidence,
            "match_found": candidate.match_id is not None,
            "matching_notes": candidate.notes,
            "swapped": candidate.swapped,
        }

    async def create_live_result(self, snapshot: MatchSnapshot) -> None:
        candidate = await self._find_match(snapshot)
        now = utcnow()
        result = await self.db.create_pending_result(
            {
                **self._candidate_fields(candidate),
                **snapshot.columns(),
                "status": "live",
                "is_live": True,
                "match_started_at": now,
                "live_updated_at": now,
                "raw_scraper_data": snapshot.to_dict(),
            }
        )
        self.pending_result_id = result["id"]
        self._log(logging.INFO, "Live result created: %s", self.pending_result_id)

    async def update_live_result(self, snapshot: MatchSnapshot) -> None:
        if self.pending_result_id is None:
            await self.create_live_result(snapshot)
            return

        await self.db.update_pending_result(
            self.pending_result_id,
            {
                **snapshot.columns(),
                "live_updated_at": utcnow(),
                "raw_scraper_data": snapshot.to_dict(),
            },
        )

    async def submit_final_result(self, snapshot: MatchSnapshot) -> None:
        """
        Turn the match into a pending result awaiting review.

        Auto-accept is tried when the tournament allows results without
        manual approval.
        """
        final = {
            **snapshot.columns(),
            "status": "pending",
            "is_live": False,
            "winner_name": snapshot.winner_name,
            "total_legs_played": snapshot.total_legs,
            "match_completed_at": utcnow(),
            "raw_scraper_data": snapshot.to_dict(),
        }

        if self.pending_result_id is not None:
            await self.db.update_pending_result(self.pending_result_id, final)
            self._log(logging.INFO, "Live result moved to pending: %s", self.pending_result_id)
        else:
            candidate = await self._find_match(snapshot)
            result = await self.db.create_pending_result(
                {**self._candidate_fields(candidate), **final}
            )
            self.pending_result_id = result["id"]
            self._log(logging.INFO, "Pending result created: %s", self.pending_result_id)

        if self.auto_accept and not self.require_manual_approval:
            accepted = await self.db.auto_accept_pending_result(
                self.pending_result_id, self.auto_accept_confidence
            )
            if accepted:
                self._log(logging.INFO, "Result auto-accepted")
            else:
                self._log(logging.INFO, "Result requires manual approval")

        await self._update_session("completed")

    async def _update_session(self, status: str) -> None:
        if self.session_id is None:
            return
        await self.db.update_session(
            self.session_id,
            {
                "status": status,
                "ended_at": utcnow(),
                "match_completed": status == "completed",
                "result_submitted": status == "completed",
            },
        )

    async def _close(self) -> None:
        if self._closed:
            return
        self._closed = True

        await self.page.close()
        if not self.completed:
            try:
                await self._update_session("stopped")
            except TICK_ERRORS as e:
                self._log(logging.ERROR, "Error updating session: %s", e)
        self._log(logging.INFO, "Scraper stopped")

    async def stop(self) -> None:
        self._log(logging.INFO, "Stopping scraper")
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._close()


class ScraperManager:
    """Runs one MatchScraper per watch code of the configured tournament."""

    def __init__(
        self,
        db: DatabaseManager,
        config: Any,
        page_factory: Optional[PageFactory] = None,
    ) -> None:
        self.db = db
        self.config = config
        self.tournament_id = config.get("scraper", "tournament_id")
        self.poll_interval = config.interval("scraper", "poll_interval_ms")
        self.max_concurrent = config.get("scraper", "max_concurrent")
        self.page_factory = page_factory or browser_factory(config)

        self.scrapers: Dict[str, MatchScraper] = {}
        self._stop_event = asyncio.Event()

    @property
    def active_count(self) -> int:
        return sum(1 for scraper in self.scrapers.values() if scraper.running)

    def _make_scraper(self, watch_code: str, tournament: Dict[str, Any]) -> MatchScraper:
        return MatchScraper(
            watch_code,
            tournament,
            self.db,
            url=self.config.get("scraper", "history_url").format(watch_code=watch_code),
            page=self.page_factory(),
            check_interval=self.config.interval("scraper", "check_interval_ms"),
            auto_accept_confidence=self.config.get("scraper", "auto_accept_confidence"),
            match_threshold=self.config.get("scraper", "match_threshold"),
        )

    async def poll(self) -> None:
        """
        Sync running scrapers with the tournament's watch codes.

        Scrapers that finished their match stay registered so the same
        watch code is not scraped twice. Scrapers whose task ended before
        the match did are dropped and started again.
        """
        logger.debug("Polling tournament %s for watch codes", self.tournament_id)
        try:
            tournament = await self.db.get_tournament(self.tournament_id)
        except NotFoundError:
            logger.error("Tournament not found: %s", self.tournament_id)
            return

        if not tournament["dartconnect_integration_enabled"]:
            if self.scrapers:
                logger.info("DartConnect integration is disabled, stopping all scrapers")
            await self.stop_all()
            return

        watch_codes = list(tournament["dartconnect_watch_codes"] or [])

        for watch_code, scraper in list(self.scrapers.items()):
            if watch_code not in watch_codes:
                logger.info("Watch code %s removed, stopping its scraper", watch_code)
                await scraper.stop()
                del self.scrapers[watch_code]
            elif not scraper.running and not scraper.completed:
                logger.warning("Scraper for %s died, restarting it", watch_code)
                await scraper.stop()
                del self.scrapers[watch_code]

        for watch_code in watch_codes:
            if watch_code in self.scrapers:
                continue
            if self.active_count >= self.max_concurrent:
                logger.warning(
                    "%d scrapers running, postponing %s", self.active_count, watch_code
                )
                break
            await self.start_scraper(watch_code, tournament)

    async def start_scraper(self, watch_code: str, tournament: Dict[str, Any]) -> None:
        logger.info("Starting scraper for watch code %s", watch_code)
        scraper = self._make_scraper(watch_code, tournament)
        try:
            await scraper.start()
        except TICK_ERRORS as e:
            logger.error("Error starting scraper for %s: %s", watch_code, e)
            await scraper.stop()
            return
        self.scrapers[watch_code] = scraper

    async def stop_all(self) -> None:
        for watch_code, scraper in list(self.scrapers.items()):
            await scraper.stop()
            logger.info("Stopped scraper for watch code %s", watch_code)
        self.scrapers.clear()

    async def run(self) -> None:
        logger.info("DartConnect scraper service starting")
        logger.info("Tournament ID: %s", self.tournament_id)
        logger.info("Poll interval: %.1fs", self.poll_interval)
        logger.info("Max concurrent scrapers: %d", self.max_concurrent)

        while not self._stop_event.is_set():
            try:
                await self.poll()
            except (aiosqlite.Error, OcheError) as e:
                logger.error("Error polling database: %s", e)

            try:
                await asyncio.wait_for(self._stop_event.wait(), self.poll_interval)
            except asyncio.TimeoutError:
                pass

        await self.stop_all()
        logger.info("DartConnect scraper service stopped")

    def request_stop(self) -> None:
        self._stop_event.set()


class LiveScoreFeed:
    """Publishes a DartConnect live scoreboard to a live channel."""

    def __init__(
        self,
        watch_code: str,
        db: DatabaseManager,
        publisher: LivePublisher,
        url: str,
        page: Any,
        interval: float = 1.0,
    ) -> None:
        self.watch_code = watch_code
        self.db = db
        self.publisher = publisher
        self.url = url
        self.page = page
        self.interval = interval
        self.channel = f"match-{watch_code}"
        self.last_data: Optional[Dict[str, Any]] = None
        self.session_id: Optional[str] = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        logger.info("Starting live feed for watch code %s", self.watch_code)
        await self.page.open(self.url)
        session = await self.db.upsert_session(self.watch_code, "active")
        self.session_id = session["id"]

    async def tick(self) -> bool:
        """
        Scrape once and publish if anything changed.

        @return: True if an update was published
        """
        data = parse_live_page(await self.page.content())
        data["timestamp"] = utcnow()

        if not has_changed(self.last_data, data):
            return False

        await self.publisher.publish(self.channel, DEFAULT_EVENT, data)
        await self.db.update_session(self.session_id, {"last_data": data})
        self.last_data = data
        logger.debug("Broadcast update on %s: %s", self.channel, data)
        return True

    async def run(self) -> None:
        await self.start()
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except TICK_ERRORS as e:
                    logger.error("Scraping error on %s: %s", self.watch_code, e)
                except Exception:
                    logger.exception("Unexpected scraping error on %s", self.watch_code)

                try:
                    await asyncio.wait_for(self._stop_event.wait(), self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()

    def request_stop(self) -> None:
        self._stop_event.set()

    async def stop(self) -> None:
        logger.info("Stopping live feed for watch code %s", self.watch_code)
        await self.db.upsert_session(self.watch_code, "stopped")
        await self.page.close()
        await self.publisher.close()
