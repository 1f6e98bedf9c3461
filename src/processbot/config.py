"""Configuration loading for processbot.

Configuration is supplied by the host environment. Tokens and the private key path are
treated as secrets and must never be written to logs or to the event log.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .errors import BotError


@dataclass(frozen=True, slots=True)
class LimitsConfig:
    """Network limits for outbound HTTP calls."""

    total_timeout_s: float = 60.0
    connect_timeout_s: float = 5.0
    read_timeout_s: float = 30.0

    max_attempts: int = 3
    max_backoff_s: float = 5.0

    process_file_max_bytes: int = 100 * 1024


@dataclass(frozen=True, slots=True)
class BambooConfig:
    """Employee directory (BambooHR) settings."""

    token: str
    company: str = "parity"
    github_field: str = "customGithub"
    matrix_field: str = "customMatrix"


@dataclass(frozen=True, slots=True)
class MatrixConfig:
    """Matrix homeserver binding."""

    homeserver: str
    access_token: str
    default_channel_id: str
    silent: bool = False


@dataclass(frozen=True, slots=True)
class BotConfig:
    """Top-level bot configuration."""

    app_id: int
    private_key_path: Path
    installation_login: str
    db_path: Path

    bamboo: BambooConfig
    matrix: MatrixConfig

    main_tick_secs: int
    bamboo_tick_secs: int
    core_devs_team: str

    audit_log_path: Path | None
    audit_max_bytes: int
    audit_max_backups: int
    limits: LimitsConfig


def _parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    normalized = value.strip().lower()
    return normalized in {"1", "true", "yes", "on"}


def _parse_positive_int(name: str, value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise BotError(code="Config", message=f"{name} must be an integer") from exc
    if parsed < 1:
        raise BotError(code="Config", message=f"{name} must be at least 1")
    return parsed


def _require(*names: str) -> dict[str, str]:
    values = {name: os.getenv(name) for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise BotError(
            code="Config",
            message=f"Missing required configuration ({', '.join(missing)})",
        )
    return {name: value for name, value in values.items() if value}


def _absolute_path(name: str, raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        raise BotError(code="Config", message=f"{name} must be an absolute path")
    return path


def load_config_from_env() -> BotConfig:
    """Load and validate configuration from environment variables.

    Raises:
        BotError: If configuration is missing/invalid.
    """
    required = _require(
        "GITHUB_APP_ID",
        "GITHUB_APP_PRIVATE_KEY_PATH",
        "INSTALLATION_LOGIN",
        "DB_PATH",
        "BAMBOO_TOKEN",
        "MATRIX_HOMESERVER",
        "MATRIX_ACCESS_TOKEN",
        "MATRIX_DEFAULT_CHANNEL_ID",
    )

    try:
        app_id = int(required["GITHUB_APP_ID"])
    except ValueError as exc:
        raise BotError(code="Config", message="GITHUB_APP_ID must be an integer") from exc

    key_path = _absolute_path("GITHUB_APP_PRIVATE_KEY_PATH", required["GITHUB_APP_PRIVATE_KEY_PATH"])

    # Fail fast if unreadable; never echo the path.
    try:
        if not key_path.is_file():
            raise BotError(code="Config", message="GitHub App private key file is missing or not a file")
        _ = key_path.read_bytes()
    except BotError:
        raise
    except OSError as exc:
        raise BotError(code="Config", message="GitHub App private key file is unreadable") from exc

    db_path = _absolute_path("DB_PATH", required["DB_PATH"])

    audit_path_raw = os.getenv("PROCESSBOT_AUDIT_LOG_PATH")
    audit_path: Path | None = None
    if audit_path_raw:
        audit_path = _absolute_path("PROCESSBOT_AUDIT_LOG_PATH", audit_path_raw)

    bamboo = BambooConfig(
        token=required["BAMBOO_TOKEN"],
        company=os.getenv("BAMBOO_COMPANY") or "parity",
        github_field=os.getenv("BAMBOO_GITHUB_FIELD") or "customGithub",
        matrix_field=os.getenv("BAMBOO_MATRIX_FIELD") or "customMatrix",
    )
    matrix = MatrixConfig(
        homeserver=required["MATRIX_HOMESERVER"].rstrip("/"),
        access_token=required["MATRIX_ACCESS_TOKEN"],
        default_channel_id=required["MATRIX_DEFAULT_CHANNEL_ID"],
        silent=_parse_bool(os.getenv("MATRIX_SILENT")),
    )

    return BotConfig(
        app_id=app_id,
        private_key_path=key_path,
        installation_login=required["INSTALLATION_LOGIN"],
        db_path=db_path,
        bamboo=bamboo,
        matrix=matrix,
        main_tick_secs=_parse_positive_int("MAIN_TICK_SECS", os.getenv("MAIN_TICK_SECS"), 900),
        bamboo_tick_secs=_parse_positive_int("BAMBOO_TICK_SECS", os.getenv("BAMBOO_TICK_SECS"), 7200),
        core_devs_team=os.getenv("CORE_DEVS_TEAM") or "core-devs",
        audit_log_path=audit_path,
        audit_max_bytes=5 * 1024 * 1024,
        audit_max_backups=2,
        limits=LimitsConfig(),
    )
