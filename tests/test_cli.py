import asyncio
import json
import logging
from pathlib import Path

import pytest

from oche import cli
from oche.config import DeskConfig
from oche.supervisor import python_command

ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "oche_config.json"
    path.write_text(json.dumps({"database": {"path": str(tmp_path / "desk.db")}}))
    return str(path)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger("")
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_schedule(config_file, capsys):
    assert cli.main(["--config", config_file, "schedule", "4", "--boards", "2"]) == 0

    out = capsys.readouterr().out
    assert "Players: 4, Boards: 2" in out
    assert "Total Matches: 6" in out
    assert "Round 3:" in out


def test_config_directory_is_rejected(tmp_path, capsys):
    assert cli.main(["--config", str(tmp_path), "schedule", "4"]) == 2
    assert "is not a file" in capsys.readouterr().out


def test_scraper_needs_a_tournament(config_file):
    assert cli.main(["--config", config_file, "scraper"]) == 1


def test_parser():
    parser = cli.build_parser()

    with pytest.raises(SystemExit):
        parser.parse_args([])
    with pytest.raises(SystemExit):
        parser.parse_args(["--log-level", "loud", "serve"])

    args = parser.parse_args(["--log-level", "debug", "live-feed", "ABC123", "--port", "9000"])
    assert args.command == "live-feed"
    assert args.watch_code == "ABC123"
    assert args.port == 9000
    assert args.log_level == "debug"


def test_config_path_from_environment(monkeypatch):
    monkeypatch.setenv("CONFIG_PATH", "/etc/oche.json")

    assert cli.build_parser().parse_args(["serve"]).config == "/etc/oche.json"


def test_child_args_parse_as_a_command_line(config_file):
    parser = cli.build_parser()
    args = parser.parse_args(["--config", config_file, "--log-level", "debug", "launcher"])

    child = parser.parse_args(cli._child_args(args, "scraper-control"))

    assert child.command == "scraper-control"
    assert child.config == config_file
    assert child.log_level == "debug"


async def test_child_command_runs(config_file):
    args = cli.build_parser().parse_args(["--config", config_file, "scraper-control"])
    command = python_command(*cli._child_args(args, "schedule"), "4")

    process = await asyncio.create_subprocess_exec(
        *command,
        cwd=str(ROOT),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    out, err = await asyncio.wait_for(process.communicate(), 60)

    assert process.returncode == 0, err.decode()
    assert b"Total Matches: 6" in out


def test_service_commands_are_dispatched(config_file, mocker):
    serve = mocker.AsyncMock()
    mocker.patch.dict(cli.COMMANDS, {"serve": serve})

    assert cli.main(["--config", config_file, "serve", "--port", "9000"]) == 0

    args, config = serve.await_args.args
    assert args.port == 9000
    assert config.get("database", "path").endswith("desk.db")


async def test_scraper_control_supervises_the_scraper(config_file, mocker):
    serve = mocker.patch("oche.cli._serve_until_signal", new_callable=mocker.AsyncMock)
    control = mocker.patch("oche.cli.ControlServer")
    args = cli.build_parser().parse_args(
        ["--config", config_file, "scraper-control", "--port", "4001"]
    )

    await cli.run_scraper_control(args, DeskConfig(config_file))

    supervisor = control.call_args.args[0]
    assert supervisor.command[-4:] == ["oche", "--config", config_file, "scraper"]
    assert control.call_args.kwargs["prefix"] == "scraper"
    control.return_value.serve.assert_called_once_with("0.0.0.0", 4001)
    serve.assert_awaited_once()


async def test_launcher_supervises_the_control_server(config_file, mocker):
    mocker.patch("oche.cli._serve_until_signal", new_callable=mocker.AsyncMock)
    control = mocker.patch("oche.cli.ControlServer")
    args = cli.build_parser().parse_args(["--config", config_file, "launcher"])

    await cli.run_launcher(args, DeskConfig(config_file))

    supervisor = control.call_args.args[0]
    assert supervisor.command[-3:] == ["--config", config_file, "scraper-control"]
    assert control.call_args.kwargs["allow_restart"] is False
    control.return_value.serve.assert_called_once_with("0.0.0.0", 3002)
