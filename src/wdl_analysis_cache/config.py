"""Configuration management for the WDL analysis cache."""

import copy
import json
import logging
import sys
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel
from pydantic.alias_generators import to_snake

# Default configuration
DEFAULT_CONFIG: dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "json": True,
    },
    "cache": {
        "cache_dir": ".wdl-cache",
        "max_cache_size": 100 * 1024 * 1024,
        "compression_enabled": True,
        "checksum_validation": True,
        "auto_save": True,
        "save_interval": 180.0,
        "max_backups": 3,
    },
    "memory": {
        "symbols": {
            "max_size": 100,
            "ttl": 300.0,
            "max_memory_usage": 50 * 1024 * 1024,
            "cleanup_interval": 60.0,
        },
        "imports": {
            "max_size": 200,
            "ttl": 600.0,
            "max_memory_usage": 100 * 1024 * 1024,
            "cleanup_interval": 120.0,
        },
    },
    "resolver": {
        "max_recursion_depth": 10,
    },
}


class MemoryCacheOptions(BaseModel):
    """Limits for a bounded in-memory cache. Durations are in seconds."""

    max_size: int = 100
    ttl: float = 300.0
    max_memory_usage: int = 50 * 1024 * 1024
    cleanup_interval: float = 60.0


class PersistentStoreOptions(BaseModel):
    """Options for a disk-backed cache store. Durations are in seconds."""

    cache_dir: Path
    max_cache_size: int = 100 * 1024 * 1024
    compression_enabled: bool = True
    checksum_validation: bool = True
    auto_save: bool = True
    save_interval: float = 180.0
    max_backups: int = 3


def _normalize_keys(data: Any) -> Any:
    """Convert camelCase option names (``cacheDir``) to snake_case recursively."""
    if isinstance(data, dict):
        return {to_snake(key): _normalize_keys(value) for key, value in data.items()}
    return data


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the cache components.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        json_output: Render JSON lines instead of the developer console format
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO),
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


class CacheSettings:
    """Layered settings: built-in defaults deep-merged with an optional JSON file."""

    def __init__(self, config_path: Path | None = None, overrides: dict[str, Any] | None = None):
        """Initialize settings.

        Args:
            config_path: Optional path to a JSON settings file
            overrides: Extra settings applied on top of the file, e.g. from the CLI
        """
        self.config_path = config_path
        self.config = self._load_config()
        if overrides:
            self._deep_merge(self.config, _normalize_keys(overrides))

    def _load_config(self) -> dict[str, Any]:
        """Load configuration from file merged over the defaults."""
        config = copy.deepcopy(DEFAULT_CONFIG)
        if self.config_path is None or not self.config_path.exists():
            return config

        try:
            with open(self.config_path) as f:
                user_config = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            structlog.get_logger(__name__).warning(
                "Invalid settings file, using defaults",
                config_path=str(self.config_path),
                error=str(e),
            )
            return config

        self._deep_merge(config, _normalize_keys(user_config))
        return config

    def _deep_merge(self, target: dict[str, Any], source: dict[str, Any]) -> None:
        """Deep merge source into target dictionary."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._deep_merge(target[key], value)
            else:
                target[key] = value

    def save(self, path: Path | None = None) -> None:
        """Write the effective settings as JSON."""
        path = path or self.config_path
        if path is None:
            raise ValueError("No settings path configured")
        with open(path, "w") as f:
            json.dump(self.config, f, indent=2)

    def configure_logging(self) -> None:
        """Apply the ``logging`` section to structlog."""
        configure_logging(
            level=self.get("logging.level", "INFO"),
            json_output=self.get("logging.json", True),
        )

    def update(self, **kwargs: Any) -> None:
        """Update settings in place.

        Args:
            **kwargs: Settings updates; nested keys use dots, e.g. ``**{"cache.auto_save": False}``
        """
        for key, value in kwargs.items():
            keys = key.split(".")
            current = self.config
            for k in keys[:-1]:
                current = current.setdefault(k, {})
            current[keys[-1]] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key: Configuration key (e.g., "cache.save_interval")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        current: Any = self.config
        for k in key.split("."):
            if isinstance(current, dict) and k in current:
                current = current[k]
            else:
                return default
        return current

    def memory_options(self, domain: str) -> MemoryCacheOptions:
        """In-memory cache limits for ``symbols`` or ``imports``."""
        return MemoryCacheOptions.model_validate(self.get(f"memory.{domain}", {}))

    def store_options(self, workspace_root: Path, domain: str) -> PersistentStoreOptions:
        """Persistent store options rooted at ``<workspace>/<cache_dir>/<domain>``."""
        cache = dict(self.get("cache", {}))
        cache_dir = Path(cache.pop("cache_dir", ".wdl-cache"))
        if not cache_dir.is_absolute():
            cache_dir = Path(workspace_root) / cache_dir
        return PersistentStoreOptions(cache_dir=cache_dir / domain, **cache)

    @property
    def max_recursion_depth(self) -> int:
        return int(self.get("resolver.max_recursion_depth", 10))
