"""Configuration for the metrics exporter.

Configuration is merged from several sources, lowest priority first:

Architecture:
    ConfigSource[] (ordered by priority)
         |
         +---> FileConfigSource (YAML, JSON, TOML)        priority 50
         +---> EnvConfigSource (PROMTABLES_* variables)   priority 100
         +---> DictConfigSource (command line overrides)  priority 200
         |
         v
    ConfigManager
         |
         +---> Merge
         |
         v
    ExporterConfig (typed, validated)

Usage:
    >>> from promtables.infrastructure.config import load_config
    >>>
    >>> config = load_config("/etc/promtables.yaml", exporter="127.0.0.1:9273")
    >>> config.exporter_address
    ('127.0.0.1', 9273)
"""

from __future__ import annotations

import json
import os
import threading
import tomllib
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

DEFAULT_EXPORTER_PORT = 9273
ENV_PREFIX = "PROMTABLES"

LOG_FORMATS = ("console", "json", "logfmt")
LOG_LEVELS = ("trace", "debug", "info", "warning", "warn", "error", "critical", "fatal")


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

    Sources are merged in priority order; higher priorities override
    lower ones.
    """

    def __init__(self, priority: int = 0) -> None:
        self._priority = priority

    @property
    def priority(self) -> int:
        """Get source priority."""
        return self._priority

    @abstractmethod
    def load(self) -> dict[str, Any]:
        """Load configuration from source.

        Returns:
            Dictionary of configuration values.
        """
        pass


class EnvConfigSource(ConfigSource):
    """Environment variable configuration source.

    Example:
        PROMTABLES_TABLES_DIR=/var/lib/promtables
        PROMTABLES_EXPORTER=0.0.0.0:9273

        Will produce:
        {"tables_dir": "/var/lib/promtables", "exporter": "0.0.0.0:9273"}

    Values are returned as strings; :class:`ExporterConfig` converts them.
    Variables that do not name a setting are ignored.
    """

    def __init__(
        self,
        prefix: str = ENV_PREFIX,
        priority: int = 100,
        environ: dict[str, str] | None = None,
    ) -> None:
        """Initialize environment source.

        Args:
            prefix: Environment variable prefix.
            priority: Source priority.
            environ: Mapping to read instead of ``os.environ``.
        """
        super().__init__(priority)
        self._prefix = f"{prefix}_"
        self._environ = environ

    def load(self) -> dict[str, Any]:
        environ = os.environ if self._environ is None else self._environ
        known = ExporterConfig.setting_names()
        values = {}
        for key, value in environ.items():
            if not key.startswith(self._prefix):
                continue
            name = key[len(self._prefix) :].lower()
            if name in known:
                values[name] = value
        return values


class FileConfigSource(ConfigSource):
    """File-based configuration source.

    Supports YAML, JSON, and TOML formats, detected from the file extension.
    A top-level ``promtables`` table is used when present, so the settings
    can live in a shared file.
    """

    SECTION = "promtables"

    def __init__(
        self,
        path: str | Path,
        *,
        required: bool = True,
        priority: int = 50,
    ) -> None:
        """Initialize file source.

        Args:
            path: Path to configuration file.
            required: Raise error if file not found.
            priority: Source priority.
        """
        super().__init__(priority)
        self._path = Path(path)
        self._required = required

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        if not self._path.exists():
            if self._required:
                raise ConfigSourceError(f"Configuration file not found: {self._path}")
            return {}

        suffix = self._path.suffix.lower()
        try:
            content = self._path.read_text(encoding="utf-8")

            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif suffix == ".json":
                data = json.loads(content)
            elif suffix == ".toml":
                data = tomllib.loads(content)
            else:
                raise ConfigSourceError(f"Unsupported file format: {suffix}")

        except (OSError, yaml.YAMLError, json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
            raise ConfigSourceError(f"Failed to load config {self._path}: {e}")

        if not isinstance(data, dict):
            raise ConfigSourceError(f"Configuration in {self._path} must be a mapping")

        section = data.get(self.SECTION)
        if isinstance(section, dict):
            return section
        return data


class DictConfigSource(ConfigSource):
    """In-memory source, e.g. command line overrides. ``None`` values are ignored."""

    def __init__(self, values: dict[str, Any], priority: int = 200) -> None:
        super().__init__(priority)
        self._values = values

    def load(self) -> dict[str, Any]:
        return {k: v for k, v in self._values.items() if v is not None}


# =============================================================================
# Configuration Manager
# =============================================================================


class ConfigManager:
    """Merges configuration sources into an :class:`ExporterConfig`.

    Example:
        >>> manager = ConfigManager()
        >>> manager.add_source(FileConfigSource("/etc/promtables.yaml"))
        >>> manager.add_source(EnvConfigSource())
        >>> config = manager.load()
    """

    def __init__(self) -> None:
        self._sources: list[ConfigSource] = []
        self._lock = threading.RLock()

    @property
    def sources(self) -> list[ConfigSource]:
        return list(self._sources)

    def add_source(self, source: ConfigSource) -> "ConfigManager":
        """Add a configuration source.

        Returns:
            Self for chaining.
        """
        with self._lock:
            self._sources.append(source)
            self._sources.sort(key=lambda s: s.priority)
        return self

    def load_dict(self) -> dict[str, Any]:
        """Merge every source, in priority order."""
        with self._lock:
            merged: dict[str, Any] = {}
            for source in self._sources:
                merged.update(source.load())
            return merged

    def load(self, validate: bool = True) -> "ExporterConfig":
        """Build the exporter configuration.

        Args:
            validate: Validate the merged configuration.
        """
        config = ExporterConfig.from_dict(self.load_dict())
        if validate:
            config.validate()
        return config


# =============================================================================
# Address parsing
# =============================================================================


def parse_exporter_address(
    value: str,
    default_port: int = DEFAULT_EXPORTER_PORT,
) -> tuple[str, int]:
    """Split an exporter address into host and port.

    Accepted forms: ``ipv4-addr``, ``ipv4-addr:port``, ``host:port``,
    ``[ipv6-addr]``, ``[ipv6-addr]:port``, and a bare IPv6 address.

    Raises:
        ConfigValidationError: On an empty host or a port outside 1-65535.
    """
    text = (value or "").strip()
    if not text:
        raise ConfigValidationError(["exporter address is empty"])

    host, port = text, default_port

    colon = text.rfind(":")
    bracket = text.rfind("]")
    if colon != -1 and colon > bracket and (text.startswith("[") or text.count(":") == 1):
        host, port_text = text[:colon], text[colon + 1 :]
        try:
            port = int(port_text)
        except ValueError:
            raise ConfigValidationError([f"invalid exporter port: {port_text!r}"])

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    if not host:
        raise ConfigValidationError([f"missing host in exporter address: {value!r}"])
    if not 1 <= port <= 65535:
        raise ConfigValidationError(["port must be between 1-65535"])

    return host, port


def format_address(host: str, port: int) -> str:
    """Render ``host:port``, bracketing IPv6 hosts."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


# =============================================================================
# Exporter Configuration
# =============================================================================


_TRUE = ("true", "yes", "1", "on")
_FALSE = ("false", "no", "0", "off")


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


@dataclass
class ExporterConfig:
    """Exporter process configuration.

    Attributes:
        engine: Master switch; False disables metrics entirely.
        tables_dir: Absolute directory holding the sample database.
        exporter: Listen address, ``addr[:port]`` or ``[ipv6]:port``.
        username: Basic-Auth user (requires ``password``).
        password: Basic-Auth password (requires ``username``).
        log: Log file path, or ``none``.
        namespace: Exposition name prefix.
        scrape_path: HTTP path serving the exposition.
        exporter_timeout: Seconds to wait for a graceful exporter stop.
        poll_interval: Seconds between checks while stopping.
        truncate_on_start: Reset every sample at startup.
        vacuum_on_start: Vacuum the database at startup.
        busy_timeout: Seconds SQLite waits on a locked database.
        log_level: Minimum log level.
        log_format: ``console``, ``json`` or ``logfmt``.
    """

    engine: bool = True
    tables_dir: str | None = None
    exporter: str | None = None
    username: str | None = None
    password: str | None = None
    log: str | None = None
    namespace: str = "proftpd"
    scrape_path: str = "/metrics"
    exporter_timeout: float = 1.0
    poll_interval: float = 0.5
    truncate_on_start: bool = True
    vacuum_on_start: bool = True
    busy_timeout: float = 5.0
    log_level: str = "info"
    log_format: str = "console"

    @classmethod
    def setting_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExporterConfig":
        """Build a config from merged source values, converting types.

        Raises:
            ConfigValidationError: On unknown keys or unconvertible values.
        """
        known = {f.name: f for f in fields(cls)}
        errors: list[str] = []
        values: dict[str, Any] = {}

        for key, raw in data.items():
            name = key.replace("-", "_").lower()
            if name not in known:
                errors.append(f"unknown setting: {key}")
                continue
            default = known[name].default
            try:
                if raw is None:
                    values[name] = None if default is None else default
                elif isinstance(default, bool):
                    values[name] = _to_bool(raw)
                elif isinstance(default, float):
                    values[name] = float(raw)
                else:
                    values[name] = str(raw)
            except (TypeError, ValueError) as e:
                errors.append(f"{name}: {e}")

        if errors:
            raise ConfigValidationError(errors)
        return cls(**values)

    def validate(self) -> "ExporterConfig":
        """Check every setting.

        Returns:
            Self for chaining.

        Raises:
            ConfigValidationError: Listing every problem found.
        """
        errors: list[str] = []

        if self.tables_dir is not None:
            path = Path(self.tables_dir)
            if not path.is_absolute():
                errors.append(f"tables_dir must be a full path: '{self.tables_dir}'")
            elif path.exists() and not path.is_dir():
                errors.append(f"tables_dir is not a directory: '{self.tables_dir}'")

        if self.exporter is not None:
            try:
                parse_exporter_address(self.exporter)
            except ConfigValidationError as e:
                errors.extend(e.errors)

        if bool(self.username) != bool(self.password):
            errors.append("username and password must be configured together")

        if not self.namespace:
            errors.append("namespace must not be empty")
        if not self.scrape_path.startswith("/"):
            errors.append(f"scrape_path must start with '/': '{self.scrape_path}'")

        for name in ("exporter_timeout", "poll_interval", "busy_timeout"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        if self.log_level.lower() not in LOG_LEVELS:
            errors.append(f"unknown log_level: '{self.log_level}'")
        if self.log_format.lower() not in LOG_FORMATS:
            errors.append(f"log_format must be one of {', '.join(LOG_FORMATS)}")

        if errors:
            raise ConfigValidationError(errors)
        return self

    @property
    def enabled(self) -> bool:
        """Whether metrics should run at all."""
        return bool(self.engine and self.exporter and self.tables_dir)

    @property
    def exporter_address(self) -> tuple[str, int] | None:
        if not self.exporter:
            return None
        return parse_exporter_address(self.exporter)

    @property
    def credentials(self) -> tuple[str, str] | None:
        if self.username and self.password:
            return self.username, self.password
        return None

    @property
    def log_file(self) -> Path | None:
        if not self.log or self.log.lower() == "none":
            return None
        return Path(self.log)

    def ensure_tables_dir(self) -> Path:
        """Create the tables directory when missing and return it."""
        if not self.tables_dir:
            raise ConfigValidationError(["tables_dir is not configured"])
        path = Path(self.tables_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def to_dict(self, *, redact: bool = True) -> dict[str, Any]:
        data = asdict(self)
        if redact and data.get("password"):
            data["password"] = "***"
        return data


# =============================================================================
# Loading
# =============================================================================


def load_config(
    config_path: str | Path | None = None,
    *,
    env_prefix: str = ENV_PREFIX,
    environ: dict[str, str] | None = None,
    validate: bool = True,
    **overrides: Any,
) -> ExporterConfig:
    """Load the exporter configuration.

    Args:
        config_path: Optional YAML, JSON or TOML file.
        env_prefix: Environment variable prefix.
        environ: Mapping to read instead of ``os.environ``.
        validate: Validate the result.
        **overrides: Highest-priority values (``None`` is ignored).

    Returns:
        ExporterConfig instance.
    """
    manager = ConfigManager()
    if config_path is not None:
        manager.add_source(FileConfigSource(config_path))
    manager.add_source(EnvConfigSource(prefix=env_prefix, environ=environ))
    if overrides:
        manager.add_source(DictConfigSource(overrides))
    return manager.load(validate=validate)
