"""Centralized configuration for shellquest.

Every setting comes from a SHELLQUEST_* environment variable or its default.
A .env file in the working directory is read first.

Example:
    export SHELLQUEST_USERNAME=agent
    export SHELLQUEST_SSH_PORT=2222
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _get_env(key: str, default: str) -> str:
    """Read a string setting, falling back to default when unset."""
    return os.environ.get(key, default)


def _get_env_int(key: str, default: int) -> int:
    """Read an integer setting; unparsable values keep the default."""
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


def _get_env_float(key: str, default: float) -> float:
    """Read a float setting; unparsable values keep the default."""
    try:
        return float(os.environ.get(key, str(default)))
    except ValueError:
        return default


def _get_env_bool(key: str, default: bool) -> bool:
    """Read a yes/no setting; unrecognised values keep the default."""
    val = os.environ.get(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


def _get_env_list(key: str, default: str) -> List[str]:
    """Get a comma-separated environment variable as a list."""
    return [item.strip() for item in _get_env(key, default).split(",") if item.strip()]


# Base paths
PROJECT_ROOT = Path(__file__).resolve().parents[1]
DATA_DIR = PROJECT_ROOT / "data"
ADVENTURES_DIR = DATA_DIR / "adventures"
PROGRESS_DIR = DATA_DIR / "progress"
SESSIONS_DIR = DATA_DIR / "sessions"

DEFAULT_REMOTE_HOSTS = "remote-server,agency.local,omega-corp.com,localhost"


@dataclass
class ShellConfig:
    """Learner shell configuration."""

    username: str = field(default_factory=lambda: _get_env("SHELLQUEST_USERNAME", "student"))
    hostname: str = field(default_factory=lambda: _get_env("SHELLQUEST_HOSTNAME", "shellquest"))
    sudo_password: str = field(default_factory=lambda: _get_env("SHELLQUEST_SUDO_PASSWORD", "P@ssw0rd!"))
    remote_hosts: List[str] = field(
        default_factory=lambda: _get_env_list("SHELLQUEST_REMOTE_HOSTS", DEFAULT_REMOTE_HOSTS)
    )
    confirm_destructive: bool = field(
        default_factory=lambda: _get_env_bool("SHELLQUEST_CONFIRM_DESTRUCTIVE", True)
    )
    history_limit: int = field(default_factory=lambda: _get_env_int("SHELLQUEST_HISTORY_LIMIT", 1000))


@dataclass
class SSHConfig:
    """SSH front-end configuration."""

    host: str = field(default_factory=lambda: _get_env("SHELLQUEST_SSH_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _get_env_int("SHELLQUEST_SSH_PORT", 2222))
    host_key_path: Path = field(
        default_factory=lambda: Path(_get_env("SHELLQUEST_HOST_KEY", str(DATA_DIR / "host.key")))
    )
    banner: str = field(
        default_factory=lambda: _get_env("SHELLQUEST_SSH_BANNER", "SSH-2.0-OpenSSH_8.9p1 shellquest")
    )
    password: str = field(default_factory=lambda: _get_env("SHELLQUEST_SSH_PASSWORD", ""))
    idle_timeout: float = field(default_factory=lambda: _get_env_float("SHELLQUEST_SSH_IDLE_TIMEOUT", 900.0))


@dataclass
class LoggingConfig:
    """Log level, format and optional log file."""

    level: str = field(default_factory=lambda: _get_env("SHELLQUEST_LOG_LEVEL", "INFO"))
    format: str = field(
        default_factory=lambda: _get_env(
            "SHELLQUEST_LOG_FORMAT",
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
    )
    file: Optional[Path] = field(
        default_factory=lambda: (
            Path(_get_env("SHELLQUEST_LOG_FILE", "")) if _get_env("SHELLQUEST_LOG_FILE", "") else None
        )
    )


@dataclass
class MetricsConfig:
    """Prometheus exporter configuration."""

    enabled: bool = field(default_factory=lambda: _get_env_bool("SHELLQUEST_METRICS_ENABLED", False))
    host: str = field(default_factory=lambda: _get_env("SHELLQUEST_METRICS_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _get_env_int("SHELLQUEST_METRICS_PORT", 9100))


@dataclass
class Config:
    """All shellquest settings plus the data paths."""

    shell: ShellConfig = field(default_factory=ShellConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    # Paths
    project_root: Path = PROJECT_ROOT
    data_dir: Path = DATA_DIR
    adventures_dir: Path = field(
        default_factory=lambda: Path(_get_env("SHELLQUEST_ADVENTURES_DIR", str(ADVENTURES_DIR)))
    )
    progress_dir: Path = field(
        default_factory=lambda: Path(_get_env("SHELLQUEST_PROGRESS_DIR", str(PROGRESS_DIR)))
    )
    sessions_dir: Path = field(
        default_factory=lambda: Path(_get_env("SHELLQUEST_SESSIONS_DIR", str(SESSIONS_DIR)))
    )
    default_adventure: str = field(
        default_factory=lambda: _get_env("SHELLQUEST_ADVENTURE", str(ADVENTURES_DIR / "training.json"))
    )


# Process-wide instance, built on first use
_config: Optional[Config] = None


def get_config() -> Config:
    """Return the shared Config, reading the environment the first time."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """Rebuild the shared Config from the current environment.

    Tests call this after changing SHELLQUEST_* variables.
    """
    global _config
    _config = Config()
    return _config


# Shortcuts
def get_shell_config() -> ShellConfig:
    """Learner shell settings."""
    return get_config().shell


def get_ssh_config() -> SSHConfig:
    """SSH front-end settings."""
    return get_config().ssh


def get_logging_config() -> LoggingConfig:
    """Logging settings."""
    return get_config().logging


def get_metrics_config() -> MetricsConfig:
    """Metrics exporter settings."""
    return get_config().metrics
