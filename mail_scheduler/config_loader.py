"""Settings loader for the scheduler service."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .core import INITIAL_DELAY_SECONDS, POLL_INTERVAL_SECONDS
from .jobs import DEFAULT_SEND_TIMEOUT
from .retry import MAX_RETRIES

ENV_PREFIX = "MSE_"
DEFAULT_CONFIG_PATH = "config.ini"
DEFAULT_DB_PATH = "/data/mail_scheduler.db"


def load_settings(config_path: str | None = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with MSE_):
      MSE_CONFIG - Path to config.ini file (default: config.ini)
      MSE_LOG_LEVEL - Logging level (default: INFO)
      MSE_DB_PATH - Database path (default: /data/mail_scheduler.db)
      MSE_HOST - Server host (default: 127.0.0.1)
      MSE_PORT - Server port (default: 8000)
      MSE_API_TOKEN - API authentication token
      MSE_POLL_INTERVAL - Seconds between polls (default: 30)
      MSE_INITIAL_DELAY - Seconds before the first poll (default: 2)
      MSE_MAX_RETRIES - Delivery attempts before a send fails for good (default: 3)
      MSE_SEND_TIMEOUT - Seconds allowed for a single delivery (default: 60)
      MSE_AUTOSTART - Start polling with the service (default: True)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [scheduler] poll_interval_seconds, initial_delay_seconds, max_retries, send_timeout_seconds, autostart
      [logging] level
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_PATH))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, env_name: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return env.get(f"{ENV_PREFIX}{env_name}", fallback)

    def get_int(section: str, option: str, env_name: str, default: int) -> int:
        value = get(section, option, env_name)
        if value is None or not str(value).strip():
            return default
        return int(value)

    def get_float(section: str, option: str, env_name: str, default: float) -> float:
        value = get(section, option, env_name)
        if value is None or not str(value).strip():
            return default
        return float(value)

    def get_bool(section: str, option: str, env_name: str, default: bool) -> bool:
        value = get(section, option, env_name)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", "DB_PATH", DEFAULT_DB_PATH),
        "http_host": get("server", "host", "HOST", "127.0.0.1"),
        "http_port": get_int("server", "port", "PORT", 8000),
        "api_token": get("server", "api_token", "API_TOKEN"),
        "poll_interval": get_float("scheduler", "poll_interval_seconds", "POLL_INTERVAL", POLL_INTERVAL_SECONDS),
        "initial_delay": get_float("scheduler", "initial_delay_seconds", "INITIAL_DELAY", INITIAL_DELAY_SECONDS),
        "max_retries": get_int("scheduler", "max_retries", "MAX_RETRIES", MAX_RETRIES),
        "send_timeout": get_float("scheduler", "send_timeout_seconds", "SEND_TIMEOUT", DEFAULT_SEND_TIMEOUT),
        "autostart": get_bool("scheduler", "autostart", "AUTOSTART", True),
        "log_level": (get("logging", "level", "LOG_LEVEL", "INFO") or "INFO").upper(),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings
