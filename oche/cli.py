"""
Command line entry points for the tournament desk services.
"""

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Callable, List, Optional

from .config import DeskConfig, LOG_LEVELS
from .control import ControlServer
from .database import DatabaseManager
from .desk import TournamentDesk
from .errors import ConfigurationError, OcheError
from .live import LivePublisher
from .log import setup_logging
from .relay import EmailRelay
from .scheduling import format_schedule
from .scraper import LiveScoreFeed, ScraperManager, browser_factory
from .supervisor import ProcessSupervisor, python_command

logger = logging.getLogger(__name__)


def _install_signal_handlers(callback: Callable[[], None]) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, callback)


async def _serve_until_signal(start) -> None:
    """Run an AppRunner producing coroutine until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event.set)

    runner = await start
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await runner.cleanup()


async def run_desk(args: argparse.Namespace, config: DeskConfig) -> None:
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event.set)

    desk = TournamentDesk(config, db_path=args.db)
    await desk.run(stop_event, host=args.host, port=args.port)


async def run_email_relay(args: argparse.Namespace, config: DeskConfig) -> None:
    relay = EmailRelay.from_config(config)
    port = args.port or config.get("email", "relay_port")
    await _serve_until_signal(relay.serve(args.host or "0.0.0.0", port))


def _child_args(args: argparse.Namespace, command: str) -> List[str]:
    # Global options go before the subcommand
    child = ["--config", args.config]
    if args.log_level:
        child += ["--log-level", args.log_level]
    return child + [command]


def _supervisor(config: DeskConfig, label: str, command: List[str]) -> ProcessSupervisor:
    return ProcessSupervisor(
        label,
        python_command(*command),
        cwd=os.getcwd(),
        start_grace=config.get("control", "start_grace_s"),
        stop_timeout=config.get("control", "stop_timeout_s"),
        restart_delay=config.get("control", "restart_delay_s"),
    )


async def run_scraper_control(args: argparse.Namespace, config: DeskConfig) -> None:
    supervisor = _supervisor(config, "scraper", _child_args(args, "scraper"))
    server = ControlServer(
        supervisor,
        prefix="scraper",
        service_name="Scraper control server",
        status_key="scraper",
    )
    port = args.port or config.get("control", "port")
    await _serve_until_signal(server.serve(args.host or "0.0.0.0", port))


async def run_launcher(args: argparse.Namespace, config: DeskConfig) -> None:
    supervisor = _supervisor(
        config, "scraper-control", _child_args(args, "scraper-control")
    )
    server = ControlServer(
        supervisor,
        prefix="launcher",
        service_name="Launcher server",
        status_key="controlServer",
        allow_restart=False,
    )
    port = args.port or config.get("launcher", "port")
    await _serve_until_signal(server.serve(args.host or "0.0.0.0", port))


async def _open_database(args: argparse.Namespace, config: DeskConfig) -> DatabaseManager:
    db = DatabaseManager(args.db or config.get("database", "path"), config)
    await db.init_db()
    return db


async def run_scraper(args: argparse.Namespace, config: DeskConfig) -> None:
    if not config.get("scraper", "tournament_id"):
        raise ConfigurationError("TOURNAMENT_ID is required to run the scraper")

    manager = ScraperManager(await _open_database(args, config), config)
    _install_signal_handlers(manager.request_stop)
    await manager.run()


async def run_live_feed(args: argparse.Namespace, config: DeskConfig) -> None:
    watch_code = args.watch_code
    feed = LiveScoreFeed(
        watch_code,
        await _open_database(args, config),
        LivePublisher(config.get("web", "public_url")),
        url=config.get("scraper", "live_url").format(watch_code=watch_code),
        page=browser_factory(config)(),
        interval=config.interval("scraper", "live_interval_ms"),
    )
    _install_signal_handlers(feed.request_stop)
    await feed.run()


def print_schedule(args: argparse.Namespace, _: DeskConfig) -> None:
    players = [f"Player {i}" for i in range(1, args.players + 1)]
    print(format_schedule(players, args.boards))


COMMANDS = {
    "serve": run_desk,
    "email-relay": run_email_relay,
    "scraper-control": run_scraper_control,
    "launcher": run_launcher,
    "scraper": run_scraper,
    "live-feed": run_live_feed,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oche",
        description="Darts tournament desk, email relay, DartConnect scraper and process control",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "oche_config.json"),
        help="Configuration file path (env: CONFIG_PATH)",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        help="Override the configured log level",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    def service(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("--host", help="Host to bind to (default: configured)")
        sub.add_argument("--port", type=int, help="Port to listen on (default: configured)")
        sub.add_argument("--db", help="SQLite database file path (default: configured)")
        return sub

    service("serve", "Run the tournament desk web server")
    service("email-relay", "Run the email relay server")
    service("scraper-control", "Run the scraper control server")
    service("launcher", "Run the launcher that supervises the scraper control server")
    service("scraper", "Scrape DartConnect match results for the configured tournament")

    live = service("live-feed", "Publish a DartConnect live scoreboard")
    live.add_argument("watch_code", help="DartConnect watch code")

    schedule = commands.add_parser("schedule", help="Print a round-robin schedule")
    schedule.add_argument("players", type=int, help="Number of players")
    schedule.add_argument("--boards", type=int, default=2, help="Boards available")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main function with command line interface.

    @param argv: Arguments, defaults to sys.argv
    @return: Process exit code
    """
    args = build_parser().parse_args(argv)

    config_path = Path(args.config)
    if config_path.exists() and not config_path.is_file():
        print(f"Error: {args.config} exists but is not a file")
        return 2

    config = DeskConfig(args.config)
    setup_logging(
        f"oche-{args.command}",
        level=args.log_level or config.get("logging", "level"),
        log_file=config.get("logging", "file") or None,
    )

    try:
        if args.command == "schedule":
            print_schedule(args, config)
        else:
            asyncio.run(COMMANDS[args.command](args, config))
    except OcheError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0
