"""
Configuration Management

Settings are loaded once at process start from the packaged config.yaml,
an optional user YAML file and environment overrides, then passed into
component constructors. Nothing reads configuration after startup.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from mnemo.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "config.yaml"
ENV_PREFIX = "MNEMO"


@dataclass(frozen=True)
class WatcherSettings:
    debounce_ms: int = 500
    include_content: bool = True
    max_file_size_kb: int = 1024
    queue_size: int = 256
    batch_size: int = 5

    @property
    def debounce(self) -> float:
        return self.debounce_ms / 1000


@dataclass(frozen=True)
class CacheSettings:
    ttl_ms: int = 300_000

    @property
    def ttl(self) -> float:
        return self.ttl_ms / 1000


@dataclass(frozen=True)
class CircuitBreakerSettings:
    failure_threshold: int = 3
    recovery_timeout_ms: int = 5_000
    request_timeout_ms: int = 60_000
    monitoring_window_ms: int = 120_000


@dataclass(frozen=True)
class StalenessSettings:
    buffer_ms: int = 300_000

    @property
    def buffer(self) -> float:
        return self.buffer_ms / 1000


@dataclass(frozen=True)
class LearningSettings:
    timeout_ms: int = 300_000
    progress_interval_ms: int = 2_000

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000

    @property
    def progress_interval(self) -> float:
        return self.progress_interval_ms / 1000


@dataclass(frozen=True)
class FallbackSettings:
    # Hand-tuned; kept below anything the analyzer reports for the same construct.
    class_confidence: float = 0.4
    function_confidence: float = 0.3
    pattern_confidence: float = 0.4


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class Settings:
    watcher: WatcherSettings = field(default_factory=WatcherSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    staleness: StalenessSettings = field(default_factory=StalenessSettings)
    learning: LearningSettings = field(default_factory=LearningSettings)
    fallback: FallbackSettings = field(default_factory=FallbackSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


def _coerce(section: str, key: str, raw: Any, default: Any) -> Any:
    """Coerce a raw YAML/env value to the type of the default."""
    name = f"{section}.{key}"
    try:
        if isinstance(default, bool):
            if isinstance(raw, bool):
                return raw
            value = str(raw).strip().lower()
            if value in ("1", "true", "yes", "on"):
                return True
            if value in ("0", "false", "no", "off"):
                return False
            raise ValueError(f"not a boolean: {raw!r}")
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(name, str(e)) from e


def _read_yaml(path: Path) -> dict:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(str(path), f"cannot read config file: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def _apply_section(current: Any, section: str, values: dict) -> Any:
    known = {f.name: getattr(current, f.name) for f in fields(current)}
    updates = {}
    for key, raw in values.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key {section}.{key}")
            continue
        updates[key] = _coerce(section, key, raw, known[key])
    return replace(current, **updates)


def validate_settings(settings: Settings) -> None:
    """Reject values no component can work with."""
    positive = {
        "watcher.debounce_ms": settings.watcher.debounce_ms,
        "watcher.queue_size": settings.watcher.queue_size,
        "watcher.batch_size": settings.watcher.batch_size,
        "cache.ttl_ms": settings.cache.ttl_ms,
        "circuit_breaker.failure_threshold": settings.circuit_breaker.failure_threshold,
        "circuit_breaker.recovery_timeout_ms": settings.circuit_breaker.recovery_timeout_ms,
        "circuit_breaker.request_timeout_ms": settings.circuit_breaker.request_timeout_ms,
        "circuit_breaker.monitoring_window_ms": settings.circuit_breaker.monitoring_window_ms,
        "learning.timeout_ms": settings.learning.timeout_ms,
        "learning.progress_interval_ms": settings.learning.progress_interval_ms,
    }
    for key, value in positive.items():
        if value <= 0:
            raise ConfigurationError(key, f"must be greater than 0, got {value}")

    if settings.staleness.buffer_ms < 0:
        raise ConfigurationError("staleness.buffer_ms", "must not be negative")

    for f in fields(settings.fallback):
        value = getattr(settings.fallback, f.name)
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"fallback.{f.name}", f"confidence must be 0.0-1.0, got {value}")

    if logging.getLevelName(settings.logging.level.upper()) == f"Level {settings.logging.level.upper()}":
        raise ConfigurationError("logging.level", f"unknown level {settings.logging.level!r}")


def load_settings(
    config_path: Optional[str] = None,
    environ: Optional[dict] = None,
) -> Settings:
    """Load settings: packaged defaults, then a user YAML file, then env vars.

    Env overrides use MNEMO_<SECTION>_<KEY>, e.g. MNEMO_CACHE_TTL_MS=60000.
    The user file comes from ``config_path`` or MNEMO_CONFIG.
    """
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    settings = Settings()
    sources = [DEFAULT_CONFIG_PATH]
    user_path = config_path or environ.get(f"{ENV_PREFIX}_CONFIG")
    if user_path:
        sources.append(Path(user_path))

    for path in sources:
        if not path.exists():
            if path != DEFAULT_CONFIG_PATH:
                raise ConfigurationError(str(path), "config file not found")
            continue
        for section, values in _read_yaml(path).items():
            if not hasattr(settings, section) or not isinstance(values, dict):
                logger.warning(f"Ignoring unknown config section {section!r} in {path}")
                continue
            settings = replace(
                settings, **{section: _apply_section(getattr(settings, section), section, values)}
            )
        logger.debug(f"Loaded config from {path}")

    for f in fields(settings):
        section = getattr(settings, f.name)
        overrides = {}
        for key in (sf.name for sf in fields(section)):
            env_key = f"{ENV_PREFIX}_{f.name.upper()}_{key.upper()}"
            if env_key in environ and environ[env_key] != "":
                overrides[key] = environ[env_key]
                logger.info(f"Config override: {env_key}={environ[env_key]}")
        if overrides:
            settings = replace(settings, **{f.name: _apply_section(section, f.name, overrides)})

    validate_settings(settings)
    return settings
