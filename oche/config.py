"""
Configuration management for the tournament desk.
Supports both JSON file configuration and environment variable overrides.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Dict, Any

logger = logging.getLogger(__name__)

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class DeskConfig:
    """Configuration management for the tournament desk and its services."""

    DEFAULT_CONFIG = {
        "app_name": "Oche Tournament Desk",
        "database": {
            "path": "oche.db",
        },
        "web": {
            "host": "0.0.0.0",
            "port": 8081,
            "public_url": "http://localhost:8081",
        },
        "email": {
            "enabled": True,
            "api_url": "https://api.resend.com/emails",
            "api_key": "",
            "from_address": "Oche Tournament <noreply@example.com>",
            "relay_url": "",  # POST target for /api/send-email, empty sends direct
            "relay_port": 3000,
        },
        "scraper": {
            "tournament_id": "",
            "poll_interval_ms": 10000,  # tournament settings
            "check_interval_ms": 5000,  # match history pages
            "live_interval_ms": 1000,  # live score pages
            "max_concurrent": 4,
            "history_url": "https://tv.dartconnect.com/history/match/{watch_code}",
            "live_url": "https://tv.dartconnect.com/live/{watch_code}",
            "headless": True,
            "page_timeout_ms": 30000,
            "auto_accept_confidence": 90,
            "match_threshold": 0.6,
        },
        "control": {
            "port": 3001,
            "start_grace_s": 2.0,
            "stop_timeout_s": 5.0,
            "restart_delay_s": 1.0,
        },
        "launcher": {
            "port": 3002,
        },
        "logging": {
            "level": "info",
            "file": "",
        },
    }

    def __init__(
        self,
        config_path: str = "oche_config.json",
    ) -> None:
        """Initialize configuration from file, environment variables, or defaults."""
        self.config_path = Path(config_path)
        self.config = self._load_config()
        self._apply_env_overrides()
        self._validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """
        Load configuration from JSON file or create default.

        @return: Dictionary containing the loaded configuration
        """
        config = copy.deepcopy(self.DEFAULT_CONFIG)

        if not self.config_path.exists():
            self._create_default_config()
            return config

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                loaded_config = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error("Error loading config from %s: %s", self.config_path, e)
            logger.error("Using default configuration")
            return config

        self._deep_merge(config, loaded_config)
        return config

    def _deep_merge(
        self,
        base_dict: Dict[str, Any],
        update_dict: Dict[str, Any],
    ) -> None:
        """
        Recursively merge dictionaries.

        @param base_dict: Base dictionary to merge into
        @param update_dict: Dictionary with updates to merge
        """
        for key, value in update_dict.items():
            if (
                key in base_dict
                and isinstance(base_dict[key], dict)
                and isinstance(value, dict)
            ):
                self._deep_merge(base_dict[key], value)
            else:
                base_dict[key] = value

    def _apply_env_overrides(self) -> None:
        """
        Apply environment variable overrides to configuration.
        """
        env_mappings = {
            "APP_NAME": ("app_name",),
            "DB_PATH": ("database", "path"),
            # Web desk
            "HOST": ("web", "host"),
            "WEB_PORT": ("web", "port"),
            "PUBLIC_URL": ("web", "public_url"),
            # Email
            "RESEND_API_KEY": ("email", "api_key"),
            "RESEND_API_URL": ("email", "api_url"),
            "EMAIL_FROM": ("email", "from_address"),
            "EMAIL_RELAY_URL": ("email", "relay_url"),
            "EMAIL_PORT": ("email", "relay_port"),
            # Scraper
            "TOURNAMENT_ID": ("scraper", "tournament_id"),
            "POLL_INTERVAL_MS": ("scraper", "poll_interval_ms"),
            "SCRAPER_CHECK_INTERVAL_MS": ("scraper", "check_interval_ms"),
            "LIVE_INTERVAL_MS": ("scraper", "live_interval_ms"),
            "MAX_CONCURRENT_SCRAPERS": ("scraper", "max_concurrent"),
            "AUTO_ACCEPT_CONFIDENCE": ("scraper", "auto_accept_confidence"),
            # Process control
            "SCRAPER_CONTROL_PORT": ("control", "port"),
            "LAUNCHER_PORT": ("launcher", "port"),
            # Logging
            "LOG_LEVEL": ("logging", "level"),
            "LOG_FILE": ("logging", "file"),
        }

        for env_var, config_path in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                converted_value = self._convert_env_value(env_value)
                self._set_nested_config(config_path, converted_value)

    def _convert_env_value(self, value: str) -> Any:
        """
        Convert environment variable string to appropriate type.

        @param value: String value from environment variable
        @return: Converted value (bool, int, float or string)
        """
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _set_nested_config(self, path: tuple, value: Any) -> None:
        """
        Set a nested configuration value using a path tuple.

        @param path: Tuple representing the nested path (e.g., ("web", "port"))
        @param value: Value to set
        """
        current = self.config
        for key in path[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]
        current[path[-1]] = value

    def _create_default_config(self) -> None:
        """
        Write the default configuration to the configured file path.
        """
        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(self.DEFAULT_CONFIG, f, indent=2)
            logger.info("Created default configuration file: %s", self.config_path)
        except IOError as e:
            logger.warning("Could not create config file %s: %s", self.config_path, e)

    def _reset(self, *keys: str) -> None:
        default = self.DEFAULT_CONFIG
        for key in keys:
            default = default[key]
        logger.warning("Invalid %s, using %r", ".".join(keys), default)
        self._set_nested_config(keys, default)

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Resets invalid values to their defaults.
        """
        positive_numbers = [
            ("web", "port"),
            ("email", "relay_port"),
            ("scraper", "poll_interval_ms"),
            ("scraper", "check_interval_ms"),
            ("scraper", "live_interval_ms"),
            ("scraper", "max_concurrent"),
            ("scraper", "page_timeout_ms"),
            ("control", "port"),
            ("control", "start_grace_s"),
            ("control", "stop_timeout_s"),
            ("launcher", "port"),
        ]
        for path in positive_numbers:
            value = self.get(*path)
            if (
                isinstance(value, bool)
                or not isinstance(value, (int, float))
                or value <= 0
            ):
                self._reset(*path)

        restart_delay = self.get("control", "restart_delay_s")
        if not isinstance(restart_delay, (int, float)) or restart_delay < 0:
            self._reset("control", "restart_delay_s")

        confidence = self.get("scraper", "auto_accept_confidence")
        if not isinstance(confidence, (int, float)) or not 0 <= confidence <= 100:
            self._reset("scraper", "auto_accept_confidence")

        threshold = self.get("scraper", "match_threshold")
        if not isinstance(threshold, (int, float)) or not 0 < threshold <= 1:
            self._reset("scraper", "match_threshold")

        level = self.get("logging", "level")
        if not isinstance(level, str) or level.lower() not in LOG_LEVELS:
            self._reset("logging", "level")

        # Ids in env vars may look numeric
        self.config["scraper"]["tournament_id"] = str(
            self.config["scraper"]["tournament_id"] or ""
        )

    def get(
        self,
        *keys: str,
    ) -> Any:
        """
        Get nested configuration value.

        @param keys: Variable arguments representing nested keys to traverse
        @return: Configuration value at the specified path, None if not found
        """
        value = self.config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return None
        return value

    def interval(self, *keys: str) -> float:
        """
        Get a millisecond setting in seconds.

        @param keys: Path to the millisecond value
        @return: Interval in seconds
        """
        return self.get(*keys) / 1000.0

    def save_config(self) -> bool:
        """
        Save current configuration to file.

        @return: True if saved successfully, False on error
        """
        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(self.config, f, indent=2)
            return True
        except IOError as e:
            logger.error("Could not save config file %s: %s", self.config_path, e)
            return False
