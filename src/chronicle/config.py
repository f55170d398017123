"""Configuration for chronicle.

Settings come from three layers, later ones overriding earlier ones:

    defaults  <  configuration file  <  environment

Architecture:
    ConfigSource[] (ordered by priority)
         |
         +---> DictConfigSource (defaults, tests)
         +---> FileConfigSource (YAML, JSON, TOML)
         +---> EnvConfigSource (CHRONICLE_* variables)
         |
         v
    merge  --->  ChronicleConfig.from_dict  --->  validate

Keys are nested. ``CHRONICLE_DATABASE_URL`` and the file entry
``database: {url: ...}`` both set ``database.url``.

Usage:
    >>> from chronicle.config import load_config
    >>> config = load_config("chronicle.yaml")
    >>> config.database_url
    'sqlite:///chronicle.db'
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from chronicle.checkpoints.context import list_context_stores
from chronicle.database import DatabaseConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILES = ("chronicle.yaml", "chronicle.yml", "chronicle.toml", "chronicle.json")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(Exception):
    """Base configuration error."""

    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Configuration validation failed: {', '.join(errors)}")


class ConfigSourceError(ConfigError):
    """Configuration source error."""

    pass


# =============================================================================
# Configuration Sources
# =============================================================================


class ConfigSource(ABC):
    """Abstract base class for configuration sources.

    Sources are merged in priority order; higher priorities override lower
    ones.
    """

    def __init__(self, priority: int = 0) -> None:
        self._priority = priority

    @property
    def priority(self) -> int:
        return self._priority

    @abstractmethod
    def load(self) -> dict[str, Any]:
        """Load configuration from source.

        Returns:
            Nested dictionary of configuration values.
        """
        pass


class DictConfigSource(ConfigSource):
    """In-memory configuration."""

    def __init__(self, values: dict[str, Any], priority: int = 0) -> None:
        super().__init__(priority)
        self._values = values

    def load(self) -> dict[str, Any]:
        return json.loads(json.dumps(self._values))


class EnvConfigSource(ConfigSource):
    """Environment variable configuration source.

    Example:
        CHRONICLE_DATABASE_URL=sqlite:///history.db
        CHRONICLE_CONTEXT_BACKEND=thread

        Will produce:
        {"database": {"url": "sqlite:///history.db"}, "context": {"backend": "thread"}}
    """

    def __init__(
        self,
        prefix: str = "CHRONICLE",
        separator: str = "_",
        priority: int = 100,
        environ: dict[str, str] | None = None,
    ) -> None:
        super().__init__(priority)
        self._prefix = prefix
        self._separator = separator
        self._environ = environ

    def load(self) -> dict[str, Any]:
        """Load configuration from environment."""
        environ = os.environ if self._environ is None else self._environ
        result: dict[str, Any] = {}
        prefix = f"{self._prefix}{self._separator}"

        for key, value in environ.items():
            if not key.startswith(prefix):
                continue
            parts = key[len(prefix) :].lower().split(self._separator)

            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})
                if not isinstance(current, dict):
                    raise ConfigSourceError(f"Conflicting environment variable {key}")
            current[parts[-1]] = self._parse_value(value)

        return result

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        if value.lower() in ("null", "none", ""):
            return None

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith(("[", "{")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value


class FileConfigSource(ConfigSource):
    """File-based configuration source.

    Supports YAML, JSON, and TOML formats, detected from the file extension.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        required: bool = False,
        priority: int = 50,
    ) -> None:
        super().__init__(priority)
        self._path = Path(path)
        self._required = required

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        """Load configuration from file."""
        if not self._path.exists():
            if self._required:
                raise ConfigSourceError(f"Configuration file not found: {self._path}")
            return {}

        content = self._path.read_text(encoding="utf-8")
        suffix = self._path.suffix.lower()

        try:
            if suffix in (".yaml", ".yml"):
                loaded = yaml.safe_load(content) or {}
            elif suffix == ".json":
                loaded = json.loads(content)
            elif suffix == ".toml":
                loaded = tomllib.loads(content)
            else:
                raise ConfigSourceError(f"Unsupported file format: {suffix}")
        except (yaml.YAMLError, json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
            raise ConfigSourceError(f"Failed to load config {self._path}: {e}") from e

        if not isinstance(loaded, dict):
            raise ConfigSourceError(f"Configuration file {self._path} must hold a mapping")
        return loaded


# =============================================================================
# Chronicle Configuration
# =============================================================================


@dataclass
class ChronicleConfig:
    """Resolved settings.

    Attributes:
        database_url: SQLAlchemy URL of the store (``database.url``).
        echo: Log emitted SQL (``database.echo``).
        context_backend: Active checkpoint backend (``context.backend``).
        store_unique_columns_on_revision: Move unique columns into revision
            metadata (``revisions.metadata``).
        chunk_size: Rows per batch for bulk starts (``bulk.batch``).
        log_level: Level for the ``chronicle`` logger (``log.level``).
    """

    database_url: str = "sqlite:///chronicle.db"
    echo: bool = False
    context_backend: str = "contextvar"
    store_unique_columns_on_revision: bool = True
    chunk_size: int = 500
    log_level: str = "WARNING"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChronicleConfig":
        """Build from a nested configuration dictionary."""
        defaults = cls()

        def pick(section: str, key: str, default: Any) -> Any:
            value = (data.get(section) or {}).get(key)
            return default if value is None else value

        try:
            return cls(
                database_url=str(pick("database", "url", defaults.database_url)),
                echo=bool(pick("database", "echo", defaults.echo)),
                context_backend=str(pick("context", "backend", defaults.context_backend)),
                store_unique_columns_on_revision=bool(
                    pick("revisions", "metadata", defaults.store_unique_columns_on_revision)
                ),
                chunk_size=int(pick("bulk", "batch", defaults.chunk_size)),
                log_level=str(pick("log", "level", defaults.log_level)).upper(),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigValidationError([str(e)]) from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "database": {"url": self.database_url, "echo": self.echo},
            "context": {"backend": self.context_backend},
            "revisions": {"metadata": self.store_unique_columns_on_revision},
            "bulk": {"batch": self.chunk_size},
            "log": {"level": self.log_level},
        }

    def validate(self) -> list[str]:
        """Return validation errors; empty when valid."""
        errors: list[str] = []
        if not self.database_url:
            errors.append("database.url is required")
        if self.context_backend not in list_context_stores():
            errors.append(
                f"context.backend must be one of {', '.join(list_context_stores())}, "
                f"got '{self.context_backend}'"
            )
        if self.chunk_size < 1:
            errors.append(f"bulk.batch must be positive, got {self.chunk_size}")
        if self.log_level not in _LOG_LEVELS:
            errors.append(f"log.level must be one of {', '.join(_LOG_LEVELS)}")
        return errors

    def to_database_config(self) -> DatabaseConfig:
        return DatabaseConfig(url=self.database_url, echo=self.echo)

    def apply_logging(self) -> None:
        """Set the level of the package logger."""
        logging.getLogger("chronicle").setLevel(self.log_level)


def _merge_config(base: dict[str, Any], override: dict[str, Any]) -> None:
    """Deep merge configuration dictionaries."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _merge_config(base[key], value)
        else:
            base[key] = value


def find_config_file(directory: str | Path = ".") -> Path | None:
    """First default configuration file present in ``directory``."""
    for name in DEFAULT_CONFIG_FILES:
        candidate = Path(directory) / name
        if candidate.exists():
            return candidate
    return None


def load_config(
    path: str | Path | None = None,
    *,
    sources: list[ConfigSource] | None = None,
    validate: bool = True,
) -> ChronicleConfig:
    """Load configuration.

    Args:
        path: Configuration file. Without one, the first default file in the
            working directory is used, if any.
        sources: Sources to merge instead of file and environment.
        validate: Raise on invalid settings.

    Returns:
        Resolved configuration.

    Raises:
        ConfigSourceError: If a source cannot be read.
        ConfigValidationError: If the merged settings are invalid.
    """
    if sources is None:
        sources = [EnvConfigSource()]
        file = Path(path) if path is not None else find_config_file()
        if file is not None:
            sources.append(FileConfigSource(file, required=path is not None))

    merged: dict[str, Any] = {}
    for source in sorted(sources, key=lambda s: s.priority):
        _merge_config(merged, source.load())

    config = ChronicleConfig.from_dict(merged)
    if validate:
        errors = config.validate()
        if errors:
            raise ConfigValidationError(errors)

    logger.debug("Loaded configuration for %s", config.database_url)
    return config
