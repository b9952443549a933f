"""Configuration settings for DoItTimer."""

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class ServerConfig:
    """Server configuration."""
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class DatabaseConfig:
    """Database configuration."""
    url: str = "sqlite:///doittimer.db"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str | None = None
    log_api_requests: bool = True


@dataclass
class NotionConfig:
    """Notion API client configuration."""
    base_url: str = "https://api.notion.com/v1"
    api_version: str = "2022-06-28"
    max_retries: int = 3
    concurrency: int = 3  # simultaneous page operations per sync run
    timeout: float = 30.0


@dataclass
class ImportConfig:
    """Bulk import configuration."""
    chunk_size: int = 250
    max_upload_mb: int = 10


@dataclass
class RealtimeConfig:
    """Realtime dedup and refresh scheduling configuration."""
    dedup_ttl_ms: int = 1500
    dedup_max_entries: int = 500
    debounce_ms: int = 250
    min_interval_ms: int = 700
    max_wait_ms: int = 1200
    reason_dedupe_ms: int = 300
    keepalive_seconds: float = 15.0


@dataclass
class LeaderConfig:
    """Tab leader election timings."""
    heartbeat_ms: int = 4000
    stale_ms: int = 12000
    poll_ms: int = 2000


@dataclass
class Config:
    """Main configuration container."""
    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    notion: NotionConfig = field(default_factory=NotionConfig)
    imports: ImportConfig = field(default_factory=ImportConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    leader: LeaderConfig = field(default_factory=LeaderConfig)
    default_timezone: str = "UTC"


def _get_nested(data: dict, *keys: str, default: Any = None) -> Any:
    """Get nested value from dict."""
    for key in keys:
        if not isinstance(data, dict):
            return default
        data = data.get(key, {})
    return data if data != {} else default


def load_config(config_path: Path | str) -> Config:
    """Load configuration from TOML file.

    Args:
        config_path: Path to the TOML configuration file.

    Returns:
        Config object with loaded settings.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        tomllib.TOMLDecodeError: If config file is invalid TOML.
    """
    config_path = Path(config_path)

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    return Config(
        server=ServerConfig(
            host=_get_nested(data, "server", "host", default="127.0.0.1"),
            port=int(_get_nested(data, "server", "port", default=8000)),
        ),
        database=DatabaseConfig(
            url=_get_nested(data, "database", "url", default="sqlite:///doittimer.db"),
        ),
        logging=LoggingConfig(
            level=_get_nested(data, "logging", "level", default="INFO"),
            format=_get_nested(data, "logging", "format", default=None),
            log_api_requests=_get_nested(data, "logging", "log_api_requests", default=True),
        ),
        notion=NotionConfig(
            base_url=_get_nested(data, "notion", "base_url", default="https://api.notion.com/v1"),
            api_version=_get_nested(data, "notion", "api_version", default="2022-06-28"),
            max_retries=int(_get_nested(data, "notion", "max_retries", default=3)),
            concurrency=int(_get_nested(data, "notion", "concurrency", default=3)),
            timeout=float(_get_nested(data, "notion", "timeout", default=30.0)),
        ),
        imports=ImportConfig(
            chunk_size=int(_get_nested(data, "import", "chunk_size", default=250)),
            max_upload_mb=int(_get_nested(data, "import", "max_upload_mb", default=10)),
        ),
        realtime=RealtimeConfig(
            dedup_ttl_ms=int(_get_nested(data, "realtime", "dedup_ttl_ms", default=1500)),
            dedup_max_entries=int(_get_nested(data, "realtime", "dedup_max_entries", default=500)),
            debounce_ms=int(_get_nested(data, "realtime", "debounce_ms", default=250)),
            min_interval_ms=int(_get_nested(data, "realtime", "min_interval_ms", default=700)),
            max_wait_ms=int(_get_nested(data, "realtime", "max_wait_ms", default=1200)),
            reason_dedupe_ms=int(_get_nested(data, "realtime", "reason_dedupe_ms", default=300)),
            keepalive_seconds=float(_get_nested(data, "realtime", "keepalive_seconds", default=15.0)),
        ),
        leader=LeaderConfig(
            heartbeat_ms=int(_get_nested(data, "leader", "heartbeat_ms", default=4000)),
            stale_ms=int(_get_nested(data, "leader", "stale_ms", default=12000)),
            poll_ms=int(_get_nested(data, "leader", "poll_ms", default=2000)),
        ),
        default_timezone=_get_nested(data, "app", "default_timezone", default="UTC"),
    )


def default_config() -> Config:
    """Create configuration with default values."""
    return Config()


# Global config instance - set by main.py at startup
_config: Config | None = None


def get_config() -> Config:
    """Get the current configuration.

    Returns:
        The current Config instance.

    Raises:
        RuntimeError: If config hasn't been initialized.
    """
    if _config is None:
        raise RuntimeError("Configuration not initialized. Call set_config() first.")
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
