"""badge_etl.config

Process settings: built-in defaults, then an optional YAML file, then
environment variables. CLI options override the result.

Secrets (DSN, encryption key) are read from the environment or the config
file only, never from CLI arguments.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from badge_etl.errors import ConfigurationError

# Environment variable → Settings attribute.
_ENV_MAP = {
    "DATABASE_URL": "db_dsn",
    "ENCRYPTION_KEY": "encryption_key",
    "BADGE_ETL_SEASON_BOUNDARY_MONTH": "season_boundary_month",
    "BADGE_ETL_SEASON_BOUNDARY_DAY": "season_boundary_day",
    "BADGE_ETL_RETRY_MAX_ATTEMPTS": "retry_max_attempts",
    "BADGE_ETL_RETRY_DELAY_SECONDS": "retry_delay_seconds",
    "BADGE_ETL_HEADLESS": "headless",
    "BADGE_ETL_LOGIN_URL": "login_url",
    "BADGE_ETL_HISTORY_URL": "history_url",
    "BADGE_ETL_LOGOUT_URL": "logout_url",
    "BADGE_ETL_WEATHER_LATITUDE": "weather_latitude",
    "BADGE_ETL_WEATHER_LONGITUDE": "weather_longitude",
    "BADGE_ETL_TIMEZONE": "timezone",
    "BADGE_ETL_LOG_LEVEL": "log_level",
}

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


@dataclass
class Settings:
    db_dsn: str | None = None
    encryption_key: str | None = None
    season_boundary_month: int = 7
    season_boundary_day: int = 1
    retry_max_attempts: int = 3
    retry_delay_seconds: float = 10.0
    headless: bool = True
    login_url: str = "https://mnthreeriversweb.myvscloud.com/webtrac/web/login.html"
    history_url: str = (
        "https://mnthreeriversweb.myvscloud.com/webtrac/web/history.html"
        "?historyoption=inquiry"
    )
    logout_url: str = "https://mnthreeriversweb.myvscloud.com/webtrac/web/logout.html"
    # Hyland Hills ski area
    weather_latitude: float = 44.8597
    weather_longitude: float = -93.3478
    # Local time for "today" checks and weather queries
    timezone: str = "America/Chicago"
    log_level: str = "INFO"

    def validate(self) -> None:
        if not 1 <= self.season_boundary_month <= 12:
            raise ConfigurationError(
                f"season_boundary_month must be 1-12, got {self.season_boundary_month}"
            )
        if not 1 <= self.season_boundary_day <= 28:
            raise ConfigurationError(
                f"season_boundary_day must be 1-28, got {self.season_boundary_day}"
            )
        if self.retry_max_attempts < 1:
            raise ConfigurationError("retry_max_attempts must be >= 1")
        if self.retry_delay_seconds < 0:
            raise ConfigurationError("retry_delay_seconds must be >= 0")


def _coerce(name: str, raw: Any) -> Any:
    """Convert a YAML/env value to the type of the Settings field."""
    target = {f.name: f.type for f in fields(Settings)}[name]
    if raw is None:
        return None
    if "bool" in str(target):
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ConfigurationError(f"{name}: expected a boolean, got {raw!r}")
    try:
        if "int" in str(target):
            return int(raw)
        if "float" in str(target):
            return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name}: {exc}") from exc
    return str(raw)


def load_settings(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from defaults ← YAML file ← environment."""
    env = os.environ if environ is None else environ
    known = {f.name for f in fields(Settings)}
    values: dict[str, Any] = {}

    if path is not None:
        if not path.exists():
            raise ConfigurationError(f"config file not found: {path}")
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"config file {path} must contain a mapping")
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"unknown config keys: {sorted(unknown)}")
        for key, raw in data.items():
            values[key] = _coerce(key, raw)

    for env_name, attr in _ENV_MAP.items():
        raw = env.get(env_name)
        if raw is not None and raw != "":
            values[attr] = _coerce(attr, raw)

    settings = Settings(**values)
    settings.validate()
    return settings
