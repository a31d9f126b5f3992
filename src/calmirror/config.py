"""calmirror configuration loading and validation.

Reads ``calmirror.toml`` (or the process environment when no file is given),
resolves ``${VAR}`` references, and returns a validated AppConfig dataclass.
"""

from __future__ import annotations

import ipaddress
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from calmirror.db import DEFAULT_DATABASE_URL

CONFIG_FILENAME = "calmirror.toml"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_MIN_SECRET_LENGTH = 32


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ServerConfig:
    """HTTP surface configuration from the [server] section.

    ``base_url`` is the public origin the provider delivers push
    notifications to.  ``cron_secret`` guards the batch job endpoints.
    """

    base_url: str | None = None
    host: str = "0.0.0.0"
    port: int = 8000
    cron_secret: str | None = field(default=None, repr=False)
    environment: str | None = None


@dataclass
class GoogleConfig:
    """OAuth client credentials from the [google] section."""

    client_id: str = ""
    client_secret: str = field(default="", repr=False)


@dataclass
class DatabaseConfig:
    """Connection settings from the [database] section."""

    url: str = field(default=DEFAULT_DATABASE_URL, repr=False)


@dataclass
class SyncConfig:
    """Propagation tuning from the [sync] section."""

    initial_window_months: int = 3
    fanout_concurrency: int = 5


@dataclass
class AppConfig:
    """Parsed configuration for one calmirror process."""

    server: ServerConfig = field(default_factory=ServerConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @property
    def is_production(self) -> bool:
        """True when configured as production or the base URL is publicly reachable."""
        if self.server.environment is not None:
            return self.server.environment.lower() == "production"
        return is_production_url(self.server.base_url)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def is_production_url(base_url: str | None) -> bool:
    """Return True when *base_url* points at a publicly reachable host.

    ``localhost``, ``*.local``, loopback and private network addresses are
    treated as development hosts.  A missing or unparsable URL is not
    production.
    """
    if not base_url:
        return False
    hostname = urlparse(base_url).hostname
    if not hostname:
        return False
    hostname = hostname.lower()
    if hostname == "localhost" or hostname.endswith(".local"):
        return False
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return True
    return not (address.is_loopback or address.is_private)


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def parse_config(data: dict[str, Any]) -> AppConfig:
    """Build an AppConfig from an already-parsed TOML mapping."""
    data = resolve_env_vars(data)

    for name in ("server", "google", "database", "logging", "sync"):
        if name in data and not isinstance(data[name], dict):
            raise ConfigError(f"[{name}] must be a TOML table")

    server_section = data.get("server", {})
    server = ServerConfig(
        base_url=server_section.get("base_url") or None,
        host=str(server_section.get("host", "0.0.0.0")),
        port=_positive_int(server_section, "port", 8000, "server"),
        cron_secret=server_section.get("cron_secret") or None,
        environment=server_section.get("environment"),
    )

    google_section = data.get("google")
    if not isinstance(google_section, dict):
        raise ConfigError("Missing [google] section in config")
    for key in ("client_id", "client_secret"):
        if not google_section.get(key):
            raise ConfigError(f"Missing required field: google.{key}")
    google = GoogleConfig(
        client_id=str(google_section["client_id"]),
        client_secret=str(google_section["client_secret"]),
    )

    database_section = data.get("database", {})
    database = DatabaseConfig(url=str(database_section.get("url", DEFAULT_DATABASE_URL)))

    sync_section = data.get("sync", {})
    sync = SyncConfig(
        initial_window_months=_positive_int(sync_section, "initial_window_months", 3, "sync"),
        fanout_concurrency=_positive_int(sync_section, "fanout_concurrency", 5, "sync"),
    )

    return AppConfig(
        server=server,
        google=google,
        database=database,
        logging=_parse_logging(data.get("logging", {})),
        sync=sync,
    )


def load_config(path: Path) -> AppConfig:
    """Load and validate a ``calmirror.toml``.

    Parameters
    ----------
    path:
        Path to the TOML file, or a directory containing ``calmirror.toml``.

    Returns
    -------
    AppConfig
        Fully parsed configuration.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = path / CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)


def config_from_env(environ: dict[str, str] | None = None) -> AppConfig:
    """Build an AppConfig from environment variables.

    Missing Google credentials are left empty here; ``validate_config``
    reports them.
    """
    env = os.environ if environ is None else environ
    return AppConfig(
        server=ServerConfig(
            base_url=env.get("CALMIRROR_BASE_URL") or None,
            host=env.get("CALMIRROR_HOST", "0.0.0.0"),
            port=int(env.get("CALMIRROR_PORT", "8000")),
            cron_secret=env.get("CRON_SECRET") or env.get("WEBHOOK_SECRET") or None,
            environment=env.get("CALMIRROR_ENV") or None,
        ),
        google=GoogleConfig(
            client_id=env.get("GOOGLE_CLIENT_ID", ""),
            client_secret=env.get("GOOGLE_CLIENT_SECRET", ""),
        ),
        database=DatabaseConfig(url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL)),
        logging=_parse_logging(
            {
                "level": env.get("CALMIRROR_LOG_LEVEL", "INFO"),
                "format": env.get("CALMIRROR_LOG_FORMAT", "text"),
                "log_root": env.get("CALMIRROR_LOG_ROOT"),
            }
        ),
    )


def validate_config(config: AppConfig) -> list[str]:
    """Return a list of configuration problems (empty when valid).

    Production adds stricter checks on the public base URL and requires a
    strong cron secret.
    """
    errors: list[str] = []

    if not config.google.client_id:
        errors.append("Google client id (google.client_id) is required")
    if not config.google.client_secret:
        errors.append("Google client secret (google.client_secret) is required")
    if not config.database.url:
        errors.append("Database URL (database.url) is required")

    base_url = config.server.base_url
    if not base_url:
        errors.append("Base URL (server.base_url) is required")
    else:
        parsed = urlparse(base_url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            errors.append("server.base_url must be a valid URL")

    if config.is_production:
        if base_url and not base_url.startswith("https://"):
            errors.append("server.base_url must use HTTPS in production")
        if base_url and not is_production_url(base_url):
            errors.append("server.base_url cannot be a local address in production")
        secret = config.server.cron_secret
        if not secret:
            errors.append("server.cron_secret is required in production")
        elif len(secret) < _MIN_SECRET_LENGTH:
            errors.append(
                f"server.cron_secret must be at least {_MIN_SECRET_LENGTH} characters in production"
            )

    return errors


def mask_value(value: str | None, visible: int = 8) -> str:
    """Mask a secret for display, keeping *visible* characters at each end."""
    if not value:
        return "not set"
    if len(value) <= visible * 2:
        return "***"
    return f"{value[:visible]}...{value[-visible:]}"
