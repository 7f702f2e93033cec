"""
Configuration helpers for RenewTrack.

This module is responsible for:
- loading the application configuration from a TOML file,
- applying ``RENEWTRACK_*`` environment overrides,
- exposing typed dataclasses used by the store factory and the web app.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

BACKENDS = ("auto", "sqlite", "memory")
ENV_PREFIX = "RENEWTRACK_"


@dataclass(frozen=True)
class DatabaseConfig:
    """Where renewals are stored and how connections are managed."""

    backend: str = "auto"
    path: str = "renewtrack.db"
    pool_size: int = 5
    acquire_timeout: float = 5.0
    connect_timeout: float = 5.0


@dataclass(frozen=True)
class UserConfig:
    """The single account every request runs as."""

    username: str = "admin"
    email: str = "admin@example.com"
    password: str = "change-me"


@dataclass(frozen=True)
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    user: UserConfig = field(default_factory=UserConfig)
    secret_key: str = "dev-secret"
    log_level: str = "INFO"


def _load_toml(path: Path) -> dict[str, Any]:
    """
    Load a TOML file and return its content as a dictionary.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the TOML content cannot be parsed.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Failed to parse TOML config file: {path}") from exc


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, Mapping):
        raise ValueError(f"Config section [{name}] must be a table.")
    return section


def _parse_database(data: Mapping[str, Any], base_dir: Path | None) -> DatabaseConfig:
    section = _section(data, "database")
    defaults = DatabaseConfig()
    path = str(section.get("path", defaults.path))
    if base_dir is not None and path != ":memory:" and not Path(path).is_absolute():
        path = str((base_dir / path).resolve())
    try:
        return DatabaseConfig(
            backend=str(section.get("backend", defaults.backend)),
            path=path,
            pool_size=int(section.get("pool_size", defaults.pool_size)),
            acquire_timeout=float(section.get("acquire_timeout", defaults.acquire_timeout)),
            connect_timeout=float(section.get("connect_timeout", defaults.connect_timeout)),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError("Invalid value in [database] section.") from exc


def _parse_user(data: Mapping[str, Any]) -> UserConfig:
    section = _section(data, "user")
    defaults = UserConfig()
    return UserConfig(
        username=str(section.get("username", defaults.username)),
        email=str(section.get("email", defaults.email)),
        password=str(section.get("password", defaults.password)),
    )


def _apply_env(config: AppConfig, environ: Mapping[str, str]) -> AppConfig:
    def env(name: str) -> str | None:
        return environ.get(ENV_PREFIX + name)

    database = config.database
    if env("BACKEND"):
        database = replace(database, backend=env("BACKEND"))
    if env("DATABASE"):
        database = replace(database, path=env("DATABASE"))
    if env("POOL_SIZE"):
        database = replace(database, pool_size=int(env("POOL_SIZE")))

    user = config.user
    if env("USERNAME"):
        user = replace(user, username=env("USERNAME"))
    if env("EMAIL"):
        user = replace(user, email=env("EMAIL"))
    if env("PASSWORD"):
        user = replace(user, password=env("PASSWORD"))

    return replace(
        config,
        database=database,
        user=user,
        secret_key=env("SECRET_KEY") or config.secret_key,
        log_level=env("LOG_LEVEL") or config.log_level,
    )


def validate_config(config: AppConfig) -> AppConfig:
    if config.database.backend not in BACKENDS:
        raise ValueError(
            f"Unknown database backend {config.database.backend!r}; expected one of {', '.join(BACKENDS)}"
        )
    if config.database.pool_size < 1:
        raise ValueError("database.pool_size must be at least 1")
    return config


def load_app_config(
    path: str | Path | None = None, environ: Mapping[str, str] | None = None
) -> AppConfig:
    """
    Build the application configuration.

    Values come from the TOML file at ``path`` (or ``RENEWTRACK_CONFIG`` when no
    path is given), then environment overrides are applied. Without a file the
    defaults are used.

    Raises:
        FileNotFoundError: if an explicit config file is missing.
        ValueError: if the file is malformed or a value is out of range.
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get(ENV_PREFIX + "CONFIG")

    if path:
        config_path = Path(path).resolve()
        data = _load_toml(config_path)
        config = AppConfig(
            database=_parse_database(data, config_path.parent),
            user=_parse_user(data),
            secret_key=str(data.get("secret_key", AppConfig.secret_key)),
            log_level=str(data.get("log_level", AppConfig.log_level)),
        )
    else:
        config = AppConfig()

    return validate_config(_apply_env(config, environ))
