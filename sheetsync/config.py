"""Configuration loader for sheetsync."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import constants
from .profiles import SourceProfile, UnknownProfileError, get_profile


class ConfigurationError(RuntimeError):
    """Raised when the configuration file describes an unusable setup."""


@dataclass(slots=True)
class EngineConfig:
    ttl_seconds: float = 60.0
    pending_ttl_seconds: float = 15.0
    degraded_ttl_seconds: float = 120.0
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 300.0
    backoff_max_multiplier: int = 32
    pending_poll_seconds: float = 20.0
    active_poll_seconds: float = 45.0
    idle_poll_seconds: float = 90.0
    active_window_seconds: float = 60.0
    idle_cutoff_seconds: float = 300.0  # 0 disables the idle cutoff
    hard_stop_failures: int = 5
    activity_debounce_seconds: float = 1.0
    fetch_timeout_seconds: float = constants.DEFAULT_FETCH_TIMEOUT_SECONDS


@dataclass(slots=True)
class StorageConfig:
    backup_dir: Path = constants.DEFAULT_BACKUP_DIR


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class SourceConfig:
    name: str
    profile: str
    url: str
    api_key: Optional[str] = None
    enabled: bool = True
    overrides: Dict[str, object] = field(default_factory=dict)

    def resolve_profile(self) -> SourceProfile:
        """Return the named profile with any column overrides applied."""
        try:
            profile = get_profile(self.profile)
        except UnknownProfileError as exc:
            section = f"{constants.SOURCE_SECTION_PREFIX}{self.name}"
            raise ConfigurationError(f"[{section}] {exc.args[0]}") from None
        if not self.overrides:
            return profile
        return profile.with_overrides(**self.overrides)


@dataclass(slots=True)
class SyncConfig:
    engine: EngineConfig
    storage: StorageConfig
    logging: LoggingConfig
    health: HealthConfig
    sources: List[SourceConfig]
    raw: ConfigParser
    path: Path

    @property
    def enabled_sources(self) -> List[SourceConfig]:
        return [source for source in self.sources if source.enabled]


def _parse_list(value: str, *, default: Iterable[str] = ()) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


_ENGINE_FLOATS = (
    "ttl_seconds",
    "pending_ttl_seconds",
    "degraded_ttl_seconds",
    "backoff_base_seconds",
    "backoff_max_seconds",
    "pending_poll_seconds",
    "active_poll_seconds",
    "idle_poll_seconds",
    "active_window_seconds",
    "idle_cutoff_seconds",
    "activity_debounce_seconds",
    "fetch_timeout_seconds",
)

_ENGINE_INTS = ("backoff_max_multiplier", "hard_stop_failures")


def _load_engine(parser: ConfigParser) -> EngineConfig:
    defaults = EngineConfig()
    values: Dict[str, object] = {}
    for name in _ENGINE_FLOATS:
        try:
            value = parser.getfloat("engine", name, fallback=getattr(defaults, name))
        except ValueError as exc:
            raise ConfigurationError(f"[engine] {name}: {exc}") from None
        values[name] = max(0.0, value)
    for name in _ENGINE_INTS:
        try:
            value = parser.getint("engine", name, fallback=getattr(defaults, name))
        except ValueError as exc:
            raise ConfigurationError(f"[engine] {name}: {exc}") from None
        values[name] = max(1, value)

    engine = EngineConfig(**values)  # type: ignore[arg-type]
    if engine.backoff_base_seconds <= 0:
        raise ConfigurationError("[engine] backoff_base_seconds must be positive")
    return engine


def _load_source(parser: ConfigParser, section: str) -> SourceConfig:
    name = section[len(constants.SOURCE_SECTION_PREFIX):].strip()
    if not name:
        raise ConfigurationError(f"[{section}] source sections need a name")

    url = parser.get(section, "url", fallback="").strip()
    if not url:
        raise ConfigurationError(f"[{section}] url is required")

    overrides: Dict[str, object] = {}
    for key in ("identity_field", "modified_field", "timestamp_field", "escalation_field"):
        value = parser.get(section, key, fallback="").strip()
        if value:
            overrides[key] = value

    status_fields = _parse_list(parser.get(section, "status_fields", fallback=""))
    if status_fields:
        overrides["status_fields"] = tuple(status_fields)

    pending = _parse_list(parser.get(section, "pending_statuses", fallback=""))
    if pending:
        overrides["pending_statuses"] = frozenset(item.lower() for item in pending)

    source = SourceConfig(
        name=name,
        profile=parser.get(section, "profile", fallback=name),
        url=url,
        api_key=parser.get(section, "api_key", fallback=None) or None,
        enabled=parser.getboolean(section, "enabled", fallback=True),
        overrides=overrides,
    )
    source.resolve_profile()
    return source


def load_config(path: Optional[Path] = None) -> SyncConfig:
    """Load configuration from disk, applying defaults where necessary.

    Raises:
        ConfigurationError: If a value is malformed or a source is incomplete
    """

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "engine": {
                "ttl_seconds": "60",
                "pending_ttl_seconds": "15",
                "degraded_ttl_seconds": "120",
                "backoff_base_seconds": "30",
                "backoff_max_seconds": "300",
                "backoff_max_multiplier": "32",
                "pending_poll_seconds": "20",
                "active_poll_seconds": "45",
                "idle_poll_seconds": "90",
                "active_window_seconds": "60",
                "idle_cutoff_seconds": "300",
                "hard_stop_failures": "5",
                "activity_debounce_seconds": "1.0",
                "fetch_timeout_seconds": str(constants.DEFAULT_FETCH_TIMEOUT_SECONDS),
            },
            "storage": {
                "backup_dir": str(constants.DEFAULT_BACKUP_DIR),
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    engine = _load_engine(parser)

    storage = StorageConfig(
        backup_dir=Path(
            parser.get("storage", "backup_dir", fallback=str(constants.DEFAULT_BACKUP_DIR))
        ).expanduser(),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    sources = [
        _load_source(parser, section)
        for section in parser.sections()
        if section.startswith(constants.SOURCE_SECTION_PREFIX)
    ]

    return SyncConfig(
        engine=engine,
        storage=storage,
        logging=logging_config,
        health=health,
        sources=sources,
        raw=parser,
        path=config_path,
    )


def save_config(config: SyncConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
