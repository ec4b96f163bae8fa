"""Configuration loading for the smart-home control panel."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - older interpreters
    import tomli as tomllib  # type: ignore


CONFIG_ENV_PREFIX = "SMARTHOME_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

COMPRESSION_STRATEGIES = ("local", "remote")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _default_db_path() -> Path:
    base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "smarthome-panel" / "home.sqlite3"


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    api_host: str = "127.0.0.1"
    api_port: int = 8000
    api_key: Optional[str] = None
    api_docs: bool = True
    db_path: Path = _default_db_path()
    seed_demo: bool = True
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-flash-latest"
    ai_request_timeout: float = 30.0
    ai_action_delay: float = 0.2
    compression_strategy: str = "local"
    compression_url: str = "https://api.scaledown.xyz/compress/raw/"
    compression_target_rate: float = 0.5
    compression_timeout: float = 10.0
    compression_cache_size: int = 100
    scene_step_delay: float = 0.2
    activity_cache_limit: int = 50
    log_format: str = "plain"
    log_level: str = "INFO"
    ai_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    migrate_only: bool = False
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        return {
            "config_version": self.config_version,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "api_key": "***REDACTED***" if self.api_key else None,
            "api_docs": self.api_docs,
            "db_path": str(self.db_path),
            "seed_demo": self.seed_demo,
            "gemini_base_url": self.gemini_base_url,
            "gemini_model": self.gemini_model,
            "ai_request_timeout": self.ai_request_timeout,
            "ai_action_delay": self.ai_action_delay,
            "compression_strategy": self.compression_strategy,
            "compression_url": self.compression_url,
            "compression_target_rate": self.compression_target_rate,
            "compression_timeout": self.compression_timeout,
            "compression_cache_size": self.compression_cache_size,
            "scene_step_delay": self.scene_step_delay,
            "activity_cache_limit": self.activity_cache_limit,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "ai_log_level": self.ai_log_level,
            "api_log_level": self.api_log_level,
            "migrate_only": self.migrate_only,
        }

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path_or_none(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("ai_request_timeout", config.ai_request_timeout, 0.1, 600.0)
    _validate_range("ai_action_delay", config.ai_action_delay, 0.0, 10.0)
    _validate_range("compression_target_rate", config.compression_target_rate, 0.05, 1.0)
    _validate_range("compression_timeout", config.compression_timeout, 0.1, 600.0)
    _validate_range("compression_cache_size", config.compression_cache_size, 1, 100)
    _validate_range("scene_step_delay", config.scene_step_delay, 0.0, 10.0)
    _validate_range("activity_cache_limit", config.activity_cache_limit, 1, 50)
    if config.compression_strategy not in COMPRESSION_STRATEGIES:
        raise ValueError(
            f"compression_strategy must be one of {list(COMPRESSION_STRATEGIES)}; "
            f"got {config.compression_strategy}."
        )
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("ai_log_level", config.ai_log_level),
        ("api_log_level", config.api_log_level),
    ):
        _validate_log_level_value(value, field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the panel."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    if value.upper() not in LOG_LEVELS:
        raise ValueError(f"{name} must be one of {sorted(LOG_LEVELS)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="smarthome-panel",
        description="Run the smart-home control panel service.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--api-host", type=str, help="Interface the HTTP API binds to.")
    parser.add_argument("--api-port", type=int, help="TCP port for the HTTP API.")
    parser.add_argument(
        "--api-key",
        type=str,
        help="API key required via X-API-Key or Authorization: Bearer <key>.",
    )
    parser.add_argument(
        "--no-api-docs",
        action="store_true",
        help="Disable interactive API docs.",
    )
    parser.add_argument("--db-path", type=Path, help="Path to the SQLite database file.")
    parser.add_argument(
        "--no-seed-demo",
        action="store_true",
        help="Do not seed the demo home into an empty database.",
    )
    parser.add_argument("--gemini-base-url", type=str, help="Base URL of the text-generation API.")
    parser.add_argument("--gemini-model", type=str, help="Model used for command interpretation.")
    parser.add_argument(
        "--ai-request-timeout",
        type=float,
        help="Seconds to wait for the text-generation API.",
    )
    parser.add_argument(
        "--ai-action-delay",
        type=float,
        help="Seconds between device updates produced by one AI command.",
    )
    parser.add_argument(
        "--compression-strategy",
        choices=list(COMPRESSION_STRATEGIES),
        help="Prompt compression strategy used when compression is enabled.",
    )
    parser.add_argument("--compression-url", type=str, help="Remote prompt compression endpoint.")
    parser.add_argument(
        "--compression-target-rate",
        type=float,
        help="Target compression rate sent to the remote compressor (0.05-1.0).",
    )
    parser.add_argument(
        "--compression-timeout",
        type=float,
        help="Seconds to wait for the remote compressor.",
    )
    parser.add_argument(
        "--scene-step-delay",
        type=float,
        help="Seconds between device updates while applying a scene.",
    )
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        help="Structured logging format.",
    )
    parser.add_argument("--log-level", choices=list(LOG_LEVELS), help="Log verbosity level.")
    parser.add_argument(
        "--ai-log-level",
        choices=list(LOG_LEVELS),
        help="Log verbosity for interpretation and compression.",
    )
    parser.add_argument(
        "--api-log-level",
        choices=list(LOG_LEVELS),
        help="Log verbosity for the API server.",
    )
    parser.add_argument(
        "--migrate-only",
        action="store_true",
        help="Run database migrations and exit without starting services.",
    )
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    mapping = {
        k: v
        for k, v in vars(args).items()
        if k not in ("config", "no_api_docs", "no_seed_demo", "migrate_only") and v is not None
    }
    if args.no_api_docs:
        mapping["api_docs"] = False
    if args.no_seed_demo:
        mapping["seed_demo"] = False
    if args.migrate_only:
        mapping["migrate_only"] = True
    return mapping


_INT_FIELDS = {"api_port", "compression_cache_size", "activity_cache_limit", "config_version"}
_FLOAT_FIELDS = {
    "ai_request_timeout",
    "ai_action_delay",
    "compression_target_rate",
    "compression_timeout",
    "scene_step_delay",
}
_BOOL_FIELDS = {"api_docs", "seed_demo", "migrate_only"}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key == "db_path":
            data[key] = _coerce_path(value)
        elif key in _INT_FIELDS:
            data[key] = int(value)
        elif key in _FLOAT_FIELDS:
            data[key] = float(value)
        elif key in _BOOL_FIELDS:
            data[key] = _coerce_bool(value)
        elif key in {"log_level", "ai_log_level", "api_log_level"}:
            data[key] = str(value).upper()
        elif key in {"log_format", "compression_strategy"}:
            data[key] = str(value).lower()
        elif key in Config.__dataclass_fields__:
            data[key] = value
    return replace(config, **data)


def _coerce_path(value: Any) -> Path:
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_path_or_none(value: Optional[str]) -> Optional[Path]:
    if not value:
        return None
    return _coerce_path(value)


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - reported before logging is configured
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
