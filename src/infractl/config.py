"""Configuration management with validation.

Runtime settings for a reconciliation run are loaded from environment
variables and validated at construction time, so a bad setting fails before
any state is read or any provider call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CONFIG_DIR = "."
DEFAULT_STATE_FILENAME = "infractl.state.json"

DEFAULT_MAX_PARALLELISM = 4
MAX_PARALLELISM = 64

DEFAULT_MAX_ATTEMPTS = 3
MAX_ATTEMPTS = 10
RETRY_BACKOFF_BASE_SECONDS = 2.0
RETRY_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 600
MAX_OPERATION_TIMEOUT_SECONDS = 7200

DEFAULT_LOCK_TIMEOUT_SECONDS = 30

# Limits on configuration input
MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB per YAML file
MAX_CONFIG_FILES = 256
MAX_COUNT_PER_RESOURCE = 1000

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
PROVIDER_PATH_PATTERN = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$")


@dataclass(frozen=True)
class Config:
    """Run configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    # Paths
    config_dir: Path = field(default_factory=lambda: Path(DEFAULT_CONFIG_DIR))
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILENAME))
    var_file: Path | None = None

    # Provider, as an import path "module:attribute"
    provider: str | None = None

    # Executor
    max_parallelism: int = DEFAULT_MAX_PARALLELISM
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # State locking
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS

    # Behavior
    auto_approve: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: LogFormat = LogFormat.TEXT

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.config_dir.exists():
            errors.append(f"Config directory does not exist: {self.config_dir}")
        elif not self.config_dir.is_dir():
            errors.append(f"Config path is not a directory: {self.config_dir}")

        if self.var_file is not None and not self.var_file.is_file():
            errors.append(f"Variables file does not exist: {self.var_file}")

        if self.state_path.exists() and self.state_path.is_dir():
            errors.append(f"State path is a directory: {self.state_path}")

        if not 1 <= self.max_parallelism <= MAX_PARALLELISM:
            errors.append(f"INFRACTL_PARALLELISM must be between 1 and {MAX_PARALLELISM}")

        if not 1 <= self.max_attempts <= MAX_ATTEMPTS:
            errors.append(f"INFRACTL_MAX_ATTEMPTS must be between 1 and {MAX_ATTEMPTS}")

        if self.provider is not None and not PROVIDER_PATH_PATTERN.match(self.provider):
            errors.append(
                f"INFRACTL_PROVIDER must look like 'package.module:attribute': {self.provider}"
            )

        if self.backoff_base_seconds < 0:
            errors.append("INFRACTL_BACKOFF_BASE must not be negative")

        if not 0 < self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS:
            errors.append(
                f"INFRACTL_OPERATION_TIMEOUT must be between 0 and "
                f"{MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if self.lock_timeout_seconds < 0:
            errors.append("INFRACTL_LOCK_TIMEOUT must not be negative")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"INFRACTL_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def lock_path(self) -> Path:
        """Path of the advisory lock file guarding the state file."""
        return self.state_path.with_name(self.state_path.name + ".lock")

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            INFRACTL_CONFIG_DIR: Directory holding *.yaml resource files (default: .)
            INFRACTL_STATE: Path to the state file (default: infractl.state.json)
            INFRACTL_VAR_FILE: Environment-specific variables file (optional)
            INFRACTL_PROVIDER: Provider import path "module:attribute" (optional)
            INFRACTL_PARALLELISM: Max concurrent provider operations (default: 4)
            INFRACTL_MAX_ATTEMPTS: Attempts per operation incl. retries (default: 3)
            INFRACTL_BACKOFF_BASE: Base seconds for exponential backoff (default: 2)
            INFRACTL_OPERATION_TIMEOUT: Per-call timeout in seconds (default: 600)
            INFRACTL_LOCK_TIMEOUT: State lock wait in seconds (default: 30)
            INFRACTL_AUTO_APPROVE: Skip interactive confirmation (default: false)
            INFRACTL_LOG_LEVEL: Logging level (default: INFO)
            INFRACTL_LOG_FORMAT: "json" or "text" (default: text)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.TEXT
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(f"INFRACTL_LOG_FORMAT must be one of {valid}: {value}") from e

        var_file = os.environ.get("INFRACTL_VAR_FILE")

        return cls(
            config_dir=Path(os.environ.get("INFRACTL_CONFIG_DIR", DEFAULT_CONFIG_DIR)),
            state_path=Path(os.environ.get("INFRACTL_STATE", DEFAULT_STATE_FILENAME)),
            var_file=Path(var_file) if var_file else None,
            provider=os.environ.get("INFRACTL_PROVIDER") or None,
            max_parallelism=get_int("INFRACTL_PARALLELISM", DEFAULT_MAX_PARALLELISM),
            max_attempts=get_int("INFRACTL_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            backoff_base_seconds=get_float("INFRACTL_BACKOFF_BASE", RETRY_BACKOFF_BASE_SECONDS),
            operation_timeout_seconds=get_float(
                "INFRACTL_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            lock_timeout_seconds=get_float("INFRACTL_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT_SECONDS),
            auto_approve=get_bool("INFRACTL_AUTO_APPROVE", False),
            log_level=os.environ.get("INFRACTL_LOG_LEVEL", "INFO").upper(),
            log_format=get_log_format(os.environ.get("INFRACTL_LOG_FORMAT")),
        )
