"""Configuration for the feedback relay with validation."""

import os
from pathlib import Path
from typing import Mapping, Optional

import structlog
import toml
from pydantic import BaseModel, ConfigDict, Field, field_validator

log = structlog.get_logger()

MAX_PORT = 65535

ENV_PORT = "MCP_FEEDBACK_PORT"
ENV_SCAN_RANGE = "MCP_FEEDBACK_SCAN_RANGE"
ENV_TIMEOUT = "MCP_FEEDBACK_TIMEOUT"
ENV_AUTO_RETRY = "MCP_AUTO_RETRY"
ENV_LOG_LEVEL = "MCP_FEEDBACK_LOG_LEVEL"

_TRUTHY = {"1", "true", "yes", "on"}


class RelayConfig(BaseModel):
    """Settings shared by the broker and the poller."""

    model_config = ConfigDict(validate_assignment=True)

    # Discovery
    base_port: int = Field(gt=0, le=MAX_PORT, default=5678)
    scan_range: int = Field(gt=0, le=1000, default=20)

    # Broker timing
    default_timeout_seconds: float = Field(gt=0, default=300)
    timeout_override_seconds: Optional[float] = Field(gt=0, default=None)
    auto_retry: bool = False
    idle_timeout_seconds: float = Field(gt=0, default=120)
    idle_check_interval_seconds: float = Field(gt=0, default=60)
    shutdown_grace_seconds: float = Field(ge=0, default=0.5)

    # Poller timing
    poll_interval_seconds: float = Field(gt=0, default=1.0)
    health_interval_seconds: float = Field(gt=0, default=5.0)
    freshness_seconds: float = Field(ge=0, default=10)
    get_timeout_seconds: float = Field(gt=0, default=3)
    post_timeout_seconds: float = Field(gt=0, default=5)
    seen_capacity: int = Field(gt=1, default=100)
    seen_retain: int = Field(gt=0, default=50)

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    log_file: Optional[Path] = None
    json_logs: bool = False

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("seen_retain")
    @classmethod
    def retain_less_than_capacity(cls, v, info):
        if "seen_capacity" in info.data and v >= info.data["seen_capacity"]:
            raise ValueError("seen_retain must be less than seen_capacity")
        return v

    @property
    def port_range(self) -> range:
        """Ports probed by a poller scan."""
        return range(self.base_port, min(self.base_port + self.scan_range, MAX_PORT + 1))

    def effective_timeout(self, requested: Optional[float]) -> float:
        """Resolve a tool-call timeout.

        The operator's environment override wins over the caller's value,
        which wins over the configured default.
        """
        if self.timeout_override_seconds:
            return self.timeout_override_seconds
        if requested is not None and requested > 0:
            return float(requested)
        return self.default_timeout_seconds

    @classmethod
    def load(
        cls,
        path: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "RelayConfig":
        """Load configuration from TOML and the environment.

        Search order if path not provided:
        1. ./feedback-relay.toml (project-specific)
        2. ~/.feedback-relay/config.toml (user default)

        Environment variables override file values.

        Args:
            path: Optional explicit config file path
            env: Environment mapping (defaults to os.environ)

        Returns:
            RelayConfig instance
        """
        env = os.environ if env is None else env

        if path is None:
            candidates = [
                Path("feedback-relay.toml"),
                Path("~/.feedback-relay/config.toml").expanduser(),
            ]
            for candidate in candidates:
                if candidate.exists():
                    path = str(candidate)
                    log.info("config_found", path=path)
                    break

        data: dict = {}
        if path and Path(path).exists():
            try:
                data = toml.load(path)
                log.info("config_loaded", path=path)
            except (toml.TomlDecodeError, OSError) as e:
                log.error("config_load_failed", path=path, error=str(e))
                data = {}

        data.update(_env_overrides(env))
        try:
            return cls(**data)
        except ValueError as e:
            log.error("config_invalid", error=str(e))
            return cls(**_env_overrides(env))

    def save(self, path: str):
        """Save configuration to TOML file.

        Args:
            path: File path to save to
        """
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            data = self.model_dump(mode="json", exclude_none=True)
            toml.dump(data, f)
        log.info("config_saved", path=path)


def _env_overrides(env: Mapping[str, str]) -> dict:
    """Read recognised environment variables, skipping unusable values."""
    overrides: dict = {}

    for key, name, convert in (
        ("base_port", ENV_PORT, int),
        ("scan_range", ENV_SCAN_RANGE, int),
        ("timeout_override_seconds", ENV_TIMEOUT, float),
    ):
        raw = env.get(name)
        if not raw:
            continue
        try:
            value = convert(raw)
        except ValueError:
            log.warning("config_env_ignored", variable=name, value=raw)
            continue
        if value > 0:
            overrides[key] = value

    if ENV_AUTO_RETRY in env:
        overrides["auto_retry"] = env[ENV_AUTO_RETRY].strip().lower() in _TRUTHY

    level = env.get(ENV_LOG_LEVEL)
    if level:
        overrides["log_level"] = level.upper()

    # Each override must pass its field bounds on its own
    for key, value in list(overrides.items()):
        try:
            RelayConfig(**{key: value})
        except ValueError:
            log.warning("config_env_ignored", setting=key, value=value)
            del overrides[key]

    return overrides


def validate_config(config: RelayConfig) -> list[str]:
    """Validate configuration and return warnings.

    Args:
        config: Config to validate

    Returns:
        List of warning messages
    """
    warnings = []

    if config.base_port + config.scan_range - 1 > MAX_PORT:
        warnings.append(
            f"Scan range {config.base_port}-{config.base_port + config.scan_range - 1} "
            f"exceeds the port space; scanning stops at {MAX_PORT}"
        )

    if config.base_port < 1024:
        warnings.append(f"Base port {config.base_port} is privileged on most systems")

    if config.idle_check_interval_seconds > config.idle_timeout_seconds:
        warnings.append(
            "idle_check_interval_seconds is longer than idle_timeout_seconds; "
            "idle brokers will linger past their timeout"
        )

    if config.timeout_override_seconds:
        warnings.append(
            f"{ENV_TIMEOUT} overrides every tool-call timeout "
            f"({config.timeout_override_seconds:g}s)"
        )

    if config.poll_interval_seconds < config.get_timeout_seconds / 10:
        warnings.append("poll_interval_seconds is very short compared to get_timeout_seconds")

    return warnings
