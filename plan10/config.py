"""
Configuration

Settings are read once from the environment (optionally seeded from a
local .env file) into immutable objects that are passed explicitly to
every component.

Environment variables:
    PLAN10_HOST / PLAN10_USER / PLAN10_PORT / PLAN10_SSH_KEY
        Default server used when no registered server is named
    PLAN10_SSH_KEY_PASSPHRASE, PLAN10_KNOWN_HOSTS
    PLAN10_LOG_LEVEL            DEBUG, INFO, WARNING, ERROR
    PLAN10_REGISTRY             Path of the server registry file
    PLAN10_CONNECT_TIMEOUT, PLAN10_COMMAND_TIMEOUT, PLAN10_CONNECT_ATTEMPTS
    PLAN10_CONCURRENCY, PLAN10_DEPLOY_TIMEOUT, PLAN10_MONITOR_INTERVAL
    PLAN10_MAX_HALT_LEVEL, PLAN10_BATTERY_WARNING
"""

import logging
import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigError
from .models import ServerRecord, Thresholds

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def default_registry_path(env: Optional[Mapping[str, str]] = None) -> Path:
    """Platform-conventional location of the server registry."""
    env = os.environ if env is None else env
    override = env.get("PLAN10_REGISTRY")
    if override:
        return Path(override).expanduser()

    if sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(env.get("XDG_CONFIG_HOME") or Path.home() / ".config")
    return base / "plan10" / "servers.yaml"


def configure_logging(level: str = "INFO") -> None:
    """Route package logging to stderr; stdout belongs to the MCP transport."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stderr)
    logging.getLogger("asyncssh").setLevel(logging.WARNING)


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class SSHConfig:
    """Transport defaults shared by every session."""

    key_path: Optional[Path] = None
    key_passphrase: Optional[str] = None
    known_hosts_path: Optional[Path] = None
    connection_timeout: float = 30.0
    command_timeout: float = 60.0
    connect_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0


@dataclass(frozen=True)
class Settings:
    registry_path: Path = field(default_factory=default_registry_path)
    log_level: str = "INFO"
    default_host: Optional[str] = None
    default_user: Optional[str] = None
    default_port: int = 22
    ssh: SSHConfig = field(default_factory=SSHConfig)
    concurrency: int = 4
    deployment_timeout: float = 300.0
    monitoring_interval: float = 30.0
    thresholds: Thresholds = field(default_factory=Thresholds)

    def __post_init__(self) -> None:
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"Unknown log level {self.log_level!r}")
        if not 1 <= self.default_port <= 65535:
            raise ConfigError(f"Invalid port: {self.default_port}")
        if self.concurrency < 1:
            raise ConfigError("Concurrency must be at least 1")
        if self.ssh.connect_attempts < 1:
            raise ConfigError("Connect attempts must be at least 1")
        if self.monitoring_interval <= 0:
            raise ConfigError("Monitoring interval must be positive")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Load settings from environment variables.

        Args:
            env: Mapping to read instead of os.environ (a .env file is only
                consulted when reading the real environment)

        Raises:
            ConfigError: If a value is malformed
        """
        if env is None:
            load_dotenv()
            env = os.environ

        key = env.get("PLAN10_SSH_KEY")
        known_hosts = env.get("PLAN10_KNOWN_HOSTS")
        ssh = SSHConfig(
            key_path=Path(key).expanduser() if key else None,
            key_passphrase=env.get("PLAN10_SSH_KEY_PASSPHRASE") or None,
            known_hosts_path=Path(known_hosts).expanduser() if known_hosts else None,
            connection_timeout=_float(env, "PLAN10_CONNECT_TIMEOUT", 30.0),
            command_timeout=_float(env, "PLAN10_COMMAND_TIMEOUT", 60.0),
            connect_attempts=_int(env, "PLAN10_CONNECT_ATTEMPTS", 3),
        )

        try:
            thresholds = Thresholds(
                max_halt_level_percent=_int(env, "PLAN10_MAX_HALT_LEVEL", 10),
                battery_warning_level=_int(env, "PLAN10_BATTERY_WARNING", 20),
            )
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid threshold settings: {e}") from e

        return cls(
            registry_path=default_registry_path(env),
            log_level=env.get("PLAN10_LOG_LEVEL", "INFO").upper(),
            default_host=env.get("PLAN10_HOST") or None,
            default_user=env.get("PLAN10_USER") or None,
            default_port=_int(env, "PLAN10_PORT", 22),
            ssh=ssh,
            concurrency=_int(env, "PLAN10_CONCURRENCY", 4),
            deployment_timeout=_float(env, "PLAN10_DEPLOY_TIMEOUT", 300.0),
            monitoring_interval=_float(env, "PLAN10_MONITOR_INTERVAL", 30.0),
            thresholds=thresholds,
        )

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with per-invocation overrides applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def default_record(self) -> Optional[ServerRecord]:
        """Ad-hoc server described by PLAN10_HOST / PLAN10_USER, if both are set."""
        if not (self.default_host and self.default_user):
            return None
        return ServerRecord(
            name="env",
            host=self.default_host,
            user=self.default_user,
            port=self.default_port,
            auth_key_path=str(self.ssh.key_path) if self.ssh.key_path else None,
            tags=frozenset({"env"}),
        )

    def thresholds_for(self, record: Optional[ServerRecord]) -> Thresholds:
        """Global thresholds with the record's overrides layered on top."""
        if record is None or not record.threshold_overrides:
            return self.thresholds
        try:
            return Thresholds(**{**self.thresholds.model_dump(), **record.threshold_overrides})
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid thresholds for server '{record.name}': {e}") from e
