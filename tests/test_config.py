import json

from oche.config import DeskConfig


def test_missing_file_writes_defaults(tmp_path):
    path = tmp_path / "oche_config.json"
    config = DeskConfig(str(path))

    assert path.exists()
    assert json.loads(path.read_text()) == DeskConfig.DEFAULT_CONFIG
    assert config.get("web", "port") == 8081
    assert config.get("scraper", "max_concurrent") == 4


def test_file_values_are_deep_merged(tmp_path):
    path = tmp_path / "oche_config.json"
    path.write_text(json.dumps({"web": {"port": 9090}, "app_name": "Club Night"}))

    config = DeskConfig(str(path))

    assert config.get("web", "port") == 9090
    assert config.get("web", "host") == "0.0.0.0"
    assert config.get("app_name") == "Club Night"


def test_defaults_are_not_shared_between_instances(tmp_path):
    first = DeskConfig(str(tmp_path / "a.json"))
    first.config["web"]["port"] = 1234

    second = DeskConfig(str(tmp_path / "b.json"))
    assert second.get("web", "port") == 8081
    assert DeskConfig.DEFAULT_CONFIG["web"]["port"] == 8081


def test_env_overrides_are_converted(tmp_path, monkeypatch):
    monkeypatch.setenv("WEB_PORT", "9000")
    monkeypatch.setenv("RESEND_API_KEY", "re_123")
    monkeypatch.setenv("TOURNAMENT_ID", "42")
    monkeypatch.setenv("LIVE_INTERVAL_MS", "1500")

    config = DeskConfig(str(tmp_path / "oche_config.json"))

    assert config.get("web", "port") == 9000
    assert config.get("email", "api_key") == "re_123"
    # Ids stay strings even when they look numeric
    assert config.get("scraper", "tournament_id") == "42"
    assert config.interval("scraper", "live_interval_ms") == 1.5


def test_invalid_values_fall_back_to_defaults(tmp_path):
    path = tmp_path / "oche_config.json"
    path.write_text(
        json.dumps(
            {
                "web": {"port": -1},
                "scraper": {"auto_accept_confidence": 150, "match_threshold": 0},
                "control": {"stop_timeout_s": "soon", "restart_delay_s": -3},
                "logging": {"level": "loud"},
            }
        )
    )

    config = DeskConfig(str(path))

    assert config.get("web", "port") == 8081
    assert config.get("scraper", "auto_accept_confidence") == 90
    assert config.get("scraper", "match_threshold") == 0.6
    assert config.get("control", "stop_timeout_s") == 5.0
    assert config.get("control", "restart_delay_s") == 1.0
    assert config.get("logging", "level") == "info"


def test_corrupt_file_uses_defaults(tmp_path):
    path = tmp_path / "oche_config.json"
    path.write_text("{not json")

    config = DeskConfig(str(path))

    assert config.get("web", "port") == 8081
    assert path.read_text() == "{not json"


def test_get_unknown_key_returns_none(tmp_path):
    config = DeskConfig(str(tmp_path / "oche_config.json"))

    assert config.get("nope") is None
    assert config.get("web", "port", "deeper") is None


def test_save_config(tmp_path):
    path = tmp_path / "oche_config.json"
    config = DeskConfig(str(path))
    config.config["web"]["public_url"] = "http://desk.local"

    assert config.save_config()
    assert json.loads(path.read_text())["web"]["public_url"] == "http://desk.local"
