"""Configuration loading for Dockyard.

Reads ``<config_dir>/config.yaml``. Every section has defaults, so a missing
file yields a usable config. Secrets (platform API key, vault secret, API
key) are never read from YAML; only the *names* of the env vars that hold
them are configurable.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class PlatformConfig(BaseModel):
    """Sandbox platform API connection."""

    base_url: str = "http://localhost:3500/v1"
    api_key_env: str = "DOCKYARD_PLATFORM_API_KEY"
    request_timeout: float = 30.0

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class SandboxResourcesConfig(BaseModel):
    runtime: str = "opencode:latest"
    memory: str = "4Gi"
    cpu: str = "4000m"
    idle_timeout: str = "2h"
    dependencies: list[str] = Field(default_factory=lambda: ["git", "gh"])
    # Env var names whose values the platform interpolates from org secrets.
    provider_secrets: list[str] = Field(
        default_factory=lambda: ["ANTHROPIC_API_KEY", "OPENAI_API_KEY"]
    )


class AgentServerConfig(BaseModel):
    """How the agent server is started and reached inside a sandbox."""

    port: int = 4096
    home_dir: str = "/home/agentuity"
    config_dir: str = "~/.config/opencode"
    serve_command: str = "opencode serve"
    log_path: str = "/tmp/opencode.log"
    auth_username: str = "opencode"
    password_env: str = "OPENCODE_SERVER_PASSWORD"
    default_model: str = "anthropic/claude-sonnet-4-5"
    readiness_attempts: int = Field(default=90, ge=1)
    readiness_interval: float = Field(default=1.0, ge=0)
    probe_timeout: float = 2.0
    clone_timeout: str = "2m"
    request_timeout: float = 30.0

    @field_validator("home_dir")
    @classmethod
    def _validate_home_dir(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"agent_server.home_dir must be absolute, got {v!r}")
        return v.rstrip("/") or "/"


class RetryConfig(BaseModel):
    """Bounded retry for establishing the upstream agent session."""

    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=1.0, ge=0)


class HealthConfig(BaseModel):
    ttl_seconds: float = 15.0
    failure_threshold: int = Field(default=3, ge=1)


class StreamConfig(BaseModel):
    keepalive_seconds: float = Field(default=15.0, gt=0)


class DockyardConfig(BaseModel):
    """Top-level Dockyard configuration (matches config.yaml)."""

    platform: PlatformConfig = Field(default_factory=PlatformConfig)
    sandbox: SandboxResourcesConfig = Field(default_factory=SandboxResourcesConfig)
    agent_server: AgentServerConfig = Field(default_factory=AgentServerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    data_dir: str | None = None


def load_config(config_dir: Path) -> DockyardConfig:
    """Load Dockyard configuration from a config directory.

    Args:
        config_dir: Directory containing ``config.yaml``.

    Returns:
        Validated DockyardConfig (defaults when the file is absent).

    Raises:
        ValueError: If config validation fails.
    """
    config_path = config_dir / "config.yaml"
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    else:
        logger.info("No config file at %s, using defaults", config_path)

    config = DockyardConfig(**raw)

    # Environment variable overrides for deployment
    platform_url = os.environ.get("DOCKYARD_PLATFORM_URL")
    if platform_url:
        config.platform.base_url = platform_url

    data_dir = os.environ.get("DOCKYARD_DATA_DIR")
    if data_dir:
        config.data_dir = data_dir

    attempts = os.environ.get("DOCKYARD_READINESS_ATTEMPTS")
    if attempts:
        try:
            config.agent_server.readiness_attempts = max(1, int(attempts))
        except ValueError:
            logger.warning("Ignoring non-integer DOCKYARD_READINESS_ATTEMPTS=%r", attempts)

    logger.info("Loaded Dockyard config: platform=%s", config.platform.base_url)
    return config
