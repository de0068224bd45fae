"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Minimum period of the check timer in seconds.
MIN_TICK_INTERVAL = 10

# Upper bound for the optional check worker pool.
MAX_WORKERS = 16


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for the scheduler timers and probes."""

    tick_interval: int = 600  # seconds between check ticks
    reset_interval: int = 300  # seconds between dedup window resets
    request_timeout: int = 30  # timeout for probes and certificate inspection
    workers: int = 1  # 1 = sequential checks in list order
    ssl_warning_days: int = 30  # days before expiration to warn about certificates

    def __post_init__(self) -> None:
        if self.tick_interval < MIN_TICK_INTERVAL:
            raise ConfigError(
                f"Tick interval must be at least {MIN_TICK_INTERVAL} seconds (got {self.tick_interval})"
            )
        if self.reset_interval < 1:
            raise ConfigError(f"Reset interval must be at least 1 second (got {self.reset_interval})")
        if self.request_timeout < 1:
            raise ConfigError(f"Request timeout must be at least 1 second (got {self.request_timeout})")
        if not (1 <= self.workers <= MAX_WORKERS):
            raise ConfigError(f"Workers must be between 1 and {MAX_WORKERS} (got {self.workers})")
        if self.ssl_warning_days < 0:
            raise ConfigError(f"SSL warning days must be non-negative (got {self.ssl_warning_days})")


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory."""
    home = Path.home()
    return str(home / ".local" / "share" / "sitewatch" / "sitewatch.db")


DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for the SQLite store."""

    path: str = DEFAULT_DB_PATH
    retention_days: int = 30

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Database path cannot be empty")
        if self.retention_days < 1:
            raise ConfigError("Database retention_days must be at least 1")


@dataclass(frozen=True)
class ChatConfig:
    """Configuration for the team chat webhook."""

    webhook_url: str
    timeout: int = 10

    def __post_init__(self) -> None:
        if not self.webhook_url:
            raise ConfigError("Chat webhook URL is required (SLACK_WEBHOOK_URL)")
        if not self.webhook_url.startswith(("http://", "https://")):
            raise ConfigError(f"Chat webhook URL must start with http:// or https://, got '{self.webhook_url}'")
        if self.timeout < 1:
            raise ConfigError(f"Chat timeout must be at least 1 second, got {self.timeout}")


@dataclass(frozen=True)
class SmtpConfig:
    """Configuration for the client email relay."""

    host: str
    from_addr: str
    port: int = 587
    username: str | None = None
    password: str | None = None
    use_tls: bool = True
    timeout: int = 30

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigError("SMTP host is required (SMTP_SERVER)")
        if not self.from_addr:
            raise ConfigError("Sender address is required (SENDER_EMAIL)")
        if "@" not in self.from_addr:
            raise ConfigError(f"Sender address is not an email address: '{self.from_addr}'")
        if not (1 <= self.port <= 65535):
            raise ConfigError(f"SMTP port must be between 1 and 65535, got {self.port}")
        if self.timeout < 1:
            raise ConfigError(f"SMTP timeout must be at least 1 second, got {self.timeout}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    chat: ChatConfig
    smtp: SmtpConfig
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


def _section(data: dict, name: str) -> dict:
    """Return a config section as a dictionary (empty when absent)."""
    section = data.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be a dictionary")
    return section


def _to_int(value: object, key: str) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")


def _parse_monitor_config(data: dict) -> MonitorConfig:
    """Parse monitor configuration section."""
    return MonitorConfig(
        tick_interval=_to_int(data.get("tick_interval", 600), "monitor.tick_interval"),
        reset_interval=_to_int(data.get("reset_interval", 300), "monitor.reset_interval"),
        request_timeout=_to_int(data.get("request_timeout", 30), "monitor.request_timeout"),
        workers=_to_int(data.get("workers", 1), "monitor.workers"),
        ssl_warning_days=_to_int(data.get("ssl_warning_days", 30), "monitor.ssl_warning_days"),
    )


def _parse_database_config(data: dict) -> DatabaseConfig:
    """Parse database configuration section."""
    return DatabaseConfig(
        path=str(data.get("path", DEFAULT_DB_PATH)),
        retention_days=_to_int(data.get("retention_days", 30), "database.retention_days"),
    )


def _parse_chat_config(data: dict) -> ChatConfig:
    """Parse chat webhook configuration section."""
    return ChatConfig(
        webhook_url=str(data.get("webhook_url") or ""),
        timeout=_to_int(data.get("timeout", 10), "chat.timeout"),
    )


def _parse_smtp_config(data: dict) -> SmtpConfig:
    """Parse SMTP configuration section."""
    username = data.get("username")
    password = data.get("password")

    return SmtpConfig(
        host=str(data.get("host") or ""),
        from_addr=str(data.get("from_addr") or ""),
        port=_to_int(data.get("port", 587), "smtp.port"),
        username=str(username) if username else None,
        password=str(password) if password else None,
        use_tls=bool(data.get("use_tls", True)),
        timeout=_to_int(data.get("timeout", 30), "smtp.timeout"),
    )


# Environment variable -> (section, key). Names without a prefix match the
# variables used by existing deployments of the monitor.
_ENV_OVERRIDES = {
    "SLACK_WEBHOOK_URL": ("chat", "webhook_url"),
    "SMTP_SERVER": ("smtp", "host"),
    "SMTP_PORT": ("smtp", "port"),
    "SMTP_USERNAME": ("smtp", "username"),
    "SMTP_PASSWORD": ("smtp", "password"),
    "SENDER_EMAIL": ("smtp", "from_addr"),
    "DB_PATH": ("database", "path"),
    "SITEWATCH_RETENTION_DAYS": ("database", "retention_days"),
    "SITEWATCH_TICK_INTERVAL": ("monitor", "tick_interval"),
    "SITEWATCH_RESET_INTERVAL": ("monitor", "reset_interval"),
    "SITEWATCH_REQUEST_TIMEOUT": ("monitor", "request_timeout"),
    "SITEWATCH_WORKERS": ("monitor", "workers"),
}


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Environment values always win over values from the YAML file.
    """
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None:
            continue
        if config_data.get(section) is None:
            config_data[section] = {}
        if isinstance(config_data[section], dict):
            config_data[section][key] = value

    smtp_tls = os.environ.get("SMTP_USE_TLS")
    if smtp_tls is not None:
        if config_data.get("smtp") is None:
            config_data["smtp"] = {}
        if isinstance(config_data["smtp"], dict):
            config_data["smtp"]["use_tls"] = smtp_tls.lower() in ("true", "1", "yes")

    return config_data


def _read_yaml(config_path: str) -> dict:
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        return {}

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    return data


def load_config(config_path: str | None = None, env_file: str | None = ".env") -> Config:
    """Load and validate configuration.

    Settings come from an optional YAML file, overridden by environment
    variables. A ``.env`` file is loaded into the environment first, without
    replacing variables that are already set.

    Args:
        config_path: Path to a YAML configuration file, or None for environment only.
        env_file: Path to a dotenv file, or None to skip loading one.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    if env_file is not None and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    data = _read_yaml(config_path) if config_path is not None else {}
    data = _apply_env_overrides(data)

    return Config(
        chat=_parse_chat_config(_section(data, "chat")),
        smtp=_parse_smtp_config(_section(data, "smtp")),
        monitor=_parse_monitor_config(_section(data, "monitor")),
        database=_parse_database_config(_section(data, "database")),
    )
