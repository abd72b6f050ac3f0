"""Dockyard Server: FastAPI application that ties all components together.

Startup sequence:
1. Load config (``<config_dir>/config.yaml``, env overrides)
2. Build the secret vault (DOCKYARD_AUTH_SECRET)
3. Initialize SQLite session registry
4. Mark sessions interrupted by the previous process as error
5. Start the sandbox platform client
6. Wire controller, health monitor, orchestrator and event proxy into the API

Shutdown:
1. Cancel background provisioning tasks
2. Close cached agent clients and the platform client
3. Close database
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from dockyard.agent_client import AgentClientPool
from dockyard.api import configure as configure_api
from dockyard.api import register_exception_handlers
from dockyard.api import router as api_router
from dockyard.api import stream_router
from dockyard.config import DockyardConfig, load_config
from dockyard.health import HealthMonitor
from dockyard.lifecycle import SandboxController
from dockyard.models import SessionStatus
from dockyard.orchestrator import SessionOrchestrator
from dockyard.platform import SandboxPlatformClient
from dockyard.registry import SessionRegistry
from dockyard.security import get_security_config
from dockyard.stream import EventStreamProxy
from dockyard.vault import SecretVault

logger = logging.getLogger(__name__)


class DockyardServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, config_dir: Path | None = None, config: DockyardConfig | None = None):
        env_dir = os.environ.get("DOCKYARD_CONFIG_DIR", "").strip()
        self.config_dir = config_dir or (Path(env_dir) if env_dir else Path.cwd() / ".dockyard")
        self.config = config

        # Components (initialized in start())
        self.vault: SecretVault | None = None
        self.registry: SessionRegistry | None = None
        self.platform: SandboxPlatformClient | None = None
        self.pool: AgentClientPool | None = None
        self.controller: SandboxController | None = None
        self.health: HealthMonitor | None = None
        self.orchestrator: SessionOrchestrator | None = None
        self.proxy: EventStreamProxy | None = None

    async def start(self) -> None:
        logger.info("Dockyard server starting (config=%s)", self.config_dir)

        # 1. Config
        if self.config is None:
            self.config = load_config(self.config_dir)
        config = self.config

        # 2. Vault (fails fast without DOCKYARD_AUTH_SECRET)
        self.vault = SecretVault.from_env()

        # 3. Database
        data_dir = Path(config.data_dir) if config.data_dir else self.config_dir / "data"
        data_dir.mkdir(parents=True, exist_ok=True)
        db_path = str(data_dir / "sessions.db")
        self.registry = SessionRegistry(db_path)
        await self.registry.initialize()

        # 4. Recovery
        await self.registry.recover_interrupted_sessions()

        # 5. Platform client
        self.platform = SandboxPlatformClient(
            config.platform.base_url,
            api_key=config.platform.api_key,
            timeout=config.platform.request_timeout,
        )
        await self.platform.start()

        # 6. Core components
        self.pool = AgentClientPool(
            username=config.agent_server.auth_username,
            timeout=config.agent_server.request_timeout,
        )
        self.controller = SandboxController(self.platform, config, self.pool)
        self.health = HealthMonitor(
            ttl_seconds=config.health.ttl_seconds,
            failure_threshold=config.health.failure_threshold,
        )
        self.orchestrator = SessionOrchestrator(
            self.registry, self.controller, self.vault, self.pool, self.health, config
        )
        self.proxy = EventStreamProxy(
            self.orchestrator.client_for, keepalive_seconds=config.stream.keepalive_seconds
        )
        configure_api(self.orchestrator, self.proxy)

        logger.info("Dockyard server started successfully")

    async def stop(self) -> None:
        """Graceful shutdown: stop all components."""
        logger.info("Dockyard server shutting down")

        if self.orchestrator:
            await self.orchestrator.stop()
        elif self.pool:
            await self.pool.close_all()
        if self.platform:
            await self.platform.close()
        if self.registry:
            await self.registry.close()

        logger.info("Dockyard server stopped")


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = DockyardServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(config_dir: Path | None = None, config: DockyardConfig | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = DockyardServer(config_dir, config)

    app = FastAPI(
        title="Dockyard",
        version="0.1.0",
        description="Sandbox session orchestrator for remote AI coding agents",
        lifespan=lifespan,
    )
    register_exception_handlers(app)

    # Mount routes
    app.include_router(api_router)
    app.include_router(stream_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with session counts."""
        counts: dict[str, int] = {}
        if _server.registry:
            for record in await _server.registry.list_sessions():
                counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return {
            "status": "ok",
            "sessions": {s.value: counts.get(s.value, 0) for s in SessionStatus},
            "background_tasks": _server.orchestrator.pending_tasks if _server.orchestrator else 0,
            "security": get_security_config(),
        }

    return app
