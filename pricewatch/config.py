"""Configuration loading: built-in defaults, YAML file, then environment."""

from __future__ import annotations

import os
from copy import deepcopy
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from pricewatch.errors import ConfigError


DEFAULT_CONFIG: dict[str, Any] = {
    "pool_size": 3,
    "pool_acquire_timeout_s": 30,
    "scraper": {
        "retries": 3,
        "min_delay_ms": 1200,
        "max_delay_ms": 2500,
        "timeout_ms": 30000,
        "ready_timeout_ms": 15000,
        "headless": True,
        "user_agents_file": None,
    },
    "scheduler": {
        "batch_limit": 100,
        "max_consecutive_failures": 5,
        "poll_seconds": 60,
        "rate_limit_timeout_s": 120,
        "drain_timeout_s": 5,
    },
    "price_change": {
        "min_absolute": "1.00",
        "min_percent": "5",
        "alert_drop_threshold": "10",
        "alert_increase_threshold": "20",
    },
    "retention": {},
    "log": {"level": "INFO", "dir": "logs"},
    "pg": {
        "host": "localhost",
        "port": 5432,
        "user": None,
        "password": None,
        "database": None,
        "pool_max": 20,
        "connection_timeout_ms": 10000,
    },
    "database": {"sqlite_path": "pricewatch.sqlite"},
    "sites": {},
    "healthcheck_url": "",
    "health_server": {"enabled": False, "host": "127.0.0.1", "port": 3001},
    "output": {"csv_path": ""},
}

# env var -> (section, key, caster)
ENV_OVERRIDES: dict[str, tuple[str | None, str, type]] = {
    "BROWSER_POOL_SIZE": (None, "pool_size", int),
    "PG_HOST": ("pg", "host", str),
    "PG_PORT": ("pg", "port", int),
    "PG_USER": ("pg", "user", str),
    "PG_PASSWORD": ("pg", "password", str),
    "PG_DATABASE": ("pg", "database", str),
    "PG_POOL_MAX": ("pg", "pool_max", int),
    "SCRAPER_RETRIES": ("scraper", "retries", int),
    "SCRAPER_MIN_DELAY": ("scraper", "min_delay_ms", int),
    "SCRAPER_MAX_DELAY": ("scraper", "max_delay_ms", int),
    "SCRAPER_TIMEOUT": ("scraper", "timeout_ms", int),
    "SCRAPER_HEADLESS": ("scraper", "headless", bool),
    "USER_AGENTS_FILE": ("scraper", "user_agents_file", str),
    "LOG_LEVEL": ("log", "level", str),
}

_FALSE_VALUES = {"0", "false", "no", "off"}


class ScraperSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    retries: int = Field(3, ge=0)
    min_delay_ms: int = Field(1200, ge=0)
    max_delay_ms: int = Field(2500, ge=0)
    timeout_ms: int = Field(30000, gt=0)
    ready_timeout_ms: int = Field(15000, ge=0)
    headless: bool = True
    user_agents_file: str | None = None

    @model_validator(mode="after")
    def _check_delays(self) -> "ScraperSettings":
        if self.min_delay_ms > self.max_delay_ms:
            raise ValueError("scraper.min_delay_ms must not exceed scraper.max_delay_ms")
        return self


class SchedulerSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    batch_limit: int = Field(100, ge=1)
    max_consecutive_failures: int = Field(5, ge=1)
    poll_seconds: int = Field(60, ge=1)
    rate_limit_timeout_s: float = Field(120, gt=0)
    drain_timeout_s: float = Field(5, ge=0)


class PriceChangeSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    min_absolute: Decimal = Field(Decimal("1.00"), ge=0)
    min_percent: Decimal = Field(Decimal("5"), ge=0)
    alert_drop_threshold: Decimal = Field(Decimal("10"), ge=0)
    alert_increase_threshold: Decimal = Field(Decimal("20"), ge=0)


class LogSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    level: str = "INFO"
    dir: str = "logs"


class PgSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    host: str = "localhost"
    port: int = 5432
    user: str | None = None
    password: str | None = None
    database: str | None = None
    pool_max: int = Field(20, ge=1)
    connection_timeout_ms: int = Field(10000, ge=0)


class DatabaseSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sqlite_path: str = "pricewatch.sqlite"


class HealthServerSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 3001


class OutputSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    csv_path: str = ""


class Settings(BaseModel):
    """Validated configuration tree for the engine."""

    model_config = ConfigDict(extra="ignore")

    pool_size: int = Field(3, ge=1)
    pool_acquire_timeout_s: float = Field(30, gt=0)
    scraper: ScraperSettings = ScraperSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    price_change: PriceChangeSettings = PriceChangeSettings()
    retention: dict[str, Any] = {}
    log: LogSettings = LogSettings()
    pg: PgSettings = PgSettings()
    database: DatabaseSettings = DatabaseSettings()
    sites: dict[str, dict[str, Any]] = {}
    healthcheck_url: str = ""
    health_server: HealthServerSettings = HealthServerSettings()
    output: OutputSettings = OutputSettings()

    def database_url(self) -> str:
        """Return the SQLAlchemy URL for the configured backend."""

        if self.pg.database:
            user = self.pg.user or ""
            auth = user
            if self.pg.password:
                auth = f"{user}:{self.pg.password}"
            if auth:
                auth += "@"
            return f"postgresql+psycopg2://{auth}{self.pg.host}:{self.pg.port}/{self.pg.database}"
        return f"sqlite:///{self.database.sqlite_path}"


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _cast_env(raw: str, caster: type) -> Any:
    if caster is bool:
        return raw.strip().lower() not in _FALSE_VALUES
    return caster(raw.strip())


def _apply_env(config: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    merged = deepcopy(config)
    for name, (section, key, caster) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = _cast_env(raw, caster)
        except ValueError as exc:
            raise ConfigError(f"Environment variable {name} has an invalid value: {raw!r}") from exc
        if section is None:
            merged[key] = value
        else:
            merged.setdefault(section, {})[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return data


def build_settings(raw: dict[str, Any]) -> Settings:
    """Validate a raw configuration mapping."""

    try:
        return Settings.model_validate(raw)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def load_config(
    path: str | os.PathLike[str] | None = None,
    *,
    environ: dict[str, str] | None = None,
    load_env_file: bool = True,
) -> Settings:
    """Return settings merged from defaults, the YAML file at *path* and the environment."""

    if load_env_file and environ is None:
        load_dotenv()
    env = dict(os.environ) if environ is None else environ

    config = deepcopy(DEFAULT_CONFIG)
    if path:
        config_path = Path(path)
        if config_path.exists():
            config = _deep_merge(config, _read_yaml(config_path))
    config = _apply_env(config, env)
    return build_settings(config)


__all__ = ["DEFAULT_CONFIG", "Settings", "build_settings", "load_config"]
