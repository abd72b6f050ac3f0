"""Sandbox Lifecycle Controller.

Turns "I want an agent for this repo" into a running sandbox whose agent
server answers on an external URL, and tears sandboxes down again.

Create flow:
1. allocate a sandbox with a fresh per-sandbox agent password
2. prepare script (config, git auth, clone), waited on
3. boot script (work dir, branch, skills, server start), detached
4. poll the external URL until the agent server answers

Fork and snapshot restore skip the clone and skills (they are already on the
snapshot's filesystem) and only restart the agent server.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from secrets import token_urlsafe
from typing import Any

import httpx

from dockyard.agent_client import AgentClientPool, build_basic_auth_header
from dockyard.agent_config import generate_agent_config, serialize_agent_config
from dockyard.config import DockyardConfig
from dockyard.errors import ProvisioningError
from dockyard.models import CustomSkill, RegistrySkill, SandboxHandle, SourceConfig, WorkspaceSettings
from dockyard.platform import ExecutionResult, SandboxPlatformClient
from dockyard.setup_script import (
    build_boot_script,
    build_prepare_script,
    build_restart_script,
    work_dir_for,
)

logger = logging.getLogger(__name__)

CLONE_WARNING_MAX = 500

CLONE_SUCCEEDED = "succeeded"
CLONE_FAILED = "failed"
CLONE_AMBIGUOUS = "ambiguous"

GITHUB_TOKEN_KEYS = ("GITHUB_TOKEN", "GH_TOKEN")


def classify_clone_result(result: ExecutionResult) -> str:
    """Decide whether the prepare script's final ``git clone`` worked.

    A numeric exit code wins. Without one, ``completed`` or the presence of
    output streams counts as success, ``failed``/``timeout`` as failure, and
    anything else is ambiguous (not reported as a warning).
    """
    if result.exit_code is not None:
        return CLONE_SUCCEEDED if result.exit_code == 0 else CLONE_FAILED
    status = (result.status or "").lower()
    if status == "completed":
        return CLONE_SUCCEEDED
    if status in ("failed", "timeout"):
        return CLONE_FAILED
    if result.has_streams:
        return CLONE_SUCCEEDED
    return CLONE_AMBIGUOUS


class SandboxController:
    """Create, fork, restore, probe and destroy agent sandboxes."""

    def __init__(
        self,
        platform: SandboxPlatformClient,
        config: DockyardConfig,
        pool: AgentClientPool,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.platform = platform
        self.config = config
        self.pool = pool
        self._sleep = sleep

    @property
    def agent(self):
        return self.config.agent_server

    # ── Create ───────────────────────────────────────────────────────────

    async def create(
        self,
        repo_url: str | None = None,
        branch: str | None = None,
        custom_skills: Iterable[CustomSkill] = (),
        registry_skills: Iterable[RegistrySkill] = (),
        sources: Iterable[SourceConfig] = (),
        settings: WorkspaceSettings | None = None,
        secrets: dict[str, str] | None = None,
        rules: Iterable[str] = (),
    ) -> SandboxHandle:
        credential = token_urlsafe(24)
        sandbox_id = await self._allocate(credential, secrets)

        try:
            work_dir = work_dir_for(repo_url, self.agent.home_dir)
            config_json = serialize_agent_config(
                generate_agent_config(
                    settings,
                    list(rules),
                    list(sources),
                    default_model=self.agent.default_model,
                )
            )

            prepare = build_prepare_script(self.agent, config_json, repo_url=repo_url, work_dir=work_dir)
            logger.info("Sandbox %s: running prepare script (%d steps)", sandbox_id, len(prepare))
            result = await self.platform.execute(
                sandbox_id, prepare.command(), timeout=self.agent.clone_timeout
            )
            clone_warning = await self._clone_warning(sandbox_id, result) if repo_url else None

            boot = build_boot_script(
                self.agent,
                work_dir,
                repo_url=repo_url,
                branch=branch,
                custom_skills=custom_skills,
                registry_skills=registry_skills,
            )
            logger.info("Sandbox %s: starting boot script (%d steps)", sandbox_id, len(boot))
            await self.platform.execute(sandbox_id, boot.command(), wait=False)

            sandbox_url = await self._wait_until_ready(sandbox_id, credential)
        except BaseException:
            # Includes cancellation: never leave a half-built sandbox running.
            await self.destroy(sandbox_id)
            raise

        return SandboxHandle(
            sandbox_id=sandbox_id,
            sandbox_url=sandbox_url,
            credential=credential,
            work_dir=work_dir,
            clone_warning=clone_warning,
        )

    # ── Fork / restore ───────────────────────────────────────────────────

    async def fork(
        self,
        source_sandbox_id: str,
        work_dir: str,
        secrets: dict[str, str] | None = None,
    ) -> SandboxHandle:
        """Clone a running sandbox through an ephemeral snapshot.

        The returned handle carries ``snapshot_id``; the caller deletes it
        once it no longer needs it. On failure it is deleted here.
        """
        name = f"fork-{int(time.time() * 1000)}"
        snapshot_id = await self.platform.create_snapshot(source_sandbox_id, name=name)
        try:
            handle = await self._boot_from_snapshot(snapshot_id, work_dir, secrets)
        except BaseException:
            await self.delete_snapshot(snapshot_id)
            raise
        handle.snapshot_id = snapshot_id
        return handle

    async def create_from_snapshot(
        self,
        snapshot_id: str,
        work_dir: str,
        secrets: dict[str, str] | None = None,
        agent_config: dict[str, Any] | None = None,
    ) -> SandboxHandle:
        """Start a sandbox from a durable snapshot. The snapshot is kept."""
        if agent_config is None:
            agent_config = generate_agent_config(default_model=self.agent.default_model)
        return await self._boot_from_snapshot(
            snapshot_id, work_dir, secrets, config_json=serialize_agent_config(agent_config)
        )

    async def _boot_from_snapshot(
        self,
        snapshot_id: str,
        work_dir: str,
        secrets: dict[str, str] | None,
        *,
        config_json: str | None = None,
    ) -> SandboxHandle:
        credential = token_urlsafe(24)
        sandbox_id = await self._allocate(credential, secrets, snapshot_id=snapshot_id)
        try:
            restart = build_restart_script(self.agent, work_dir, config_json=config_json)
            await self.platform.execute(sandbox_id, restart.command(), wait=False)
            sandbox_url = await self._wait_until_ready(sandbox_id, credential)
        except BaseException:
            await self.destroy(sandbox_id)
            raise
        return SandboxHandle(
            sandbox_id=sandbox_id,
            sandbox_url=sandbox_url,
            credential=credential,
            work_dir=work_dir,
        )

    # ── Teardown / snapshots ─────────────────────────────────────────────

    async def destroy(self, sandbox_id: str) -> None:
        """Best-effort destroy; failures are logged, never raised."""
        try:
            await self.platform.destroy_sandbox(sandbox_id)
        except Exception as e:
            logger.warning("Failed to destroy sandbox %s: %s", sandbox_id, e)
        finally:
            await self.pool.evict(sandbox_id)

    async def create_snapshot(self, sandbox_id: str, name: str, description: str | None = None) -> str:
        return await self.platform.create_snapshot(sandbox_id, name=name, description=description)

    async def delete_snapshot(self, snapshot_id: str) -> bool:
        try:
            await self.platform.delete_snapshot(snapshot_id)
        except Exception as e:
            logger.warning("Failed to delete snapshot %s: %s", snapshot_id, e)
            return False
        return True

    # ── Health ───────────────────────────────────────────────────────────

    async def check_health(self, sandbox_url: str, credential: str | None = None) -> bool:
        """One short probe of the agent server's health endpoint."""
        headers = self._auth_headers(credential)
        try:
            async with httpx.AsyncClient(timeout=self.agent.probe_timeout) as client:
                resp = await client.get(f"{sandbox_url.rstrip('/')}/global/health", headers=headers)
        except Exception as e:
            logger.debug("Health probe of %s failed: %s", sandbox_url, e)
            return False
        return resp.is_success

    # ── Internals ────────────────────────────────────────────────────────

    def _auth_headers(self, credential: str | None) -> dict[str, str]:
        if not credential:
            return {}
        return {"Authorization": build_basic_auth_header(credential, self.agent.auth_username)}

    def _build_env(self, credential: str, secrets: dict[str, str] | None) -> dict[str, str]:
        env = {name: f"${{secret:{name}}}" for name in self.config.sandbox.provider_secrets}
        secrets = dict(secrets or {})
        github_token = None
        for key in GITHUB_TOKEN_KEYS:
            github_token = secrets.pop(key, None) or github_token
        if github_token:
            env["GH_TOKEN"] = github_token
            env["GITHUB_TOKEN"] = github_token
        env.update(secrets)
        env[self.agent.password_env] = credential
        return env

    async def _allocate(
        self,
        credential: str,
        secrets: dict[str, str] | None,
        *,
        snapshot_id: str | None = None,
    ) -> str:
        resources = self.config.sandbox
        info = await self.platform.create_sandbox(
            runtime=resources.runtime,
            memory=resources.memory,
            cpu=resources.cpu,
            idle_timeout=resources.idle_timeout,
            port=self.agent.port,
            dependencies=list(resources.dependencies),
            env=self._build_env(credential, secrets),
            snapshot_id=snapshot_id,
        )
        return info.sandbox_id

    async def _clone_warning(self, sandbox_id: str, result: ExecutionResult) -> str | None:
        outcome = classify_clone_result(result)
        if outcome != CLONE_FAILED:
            if outcome == CLONE_AMBIGUOUS:
                logger.info("Sandbox %s: clone outcome unknown (status=%r)", sandbox_id, result.status)
            return None

        detail = result.stderr or result.stdout
        if not detail:
            for url in (result.stderr_url, result.stdout_url):
                if url:
                    detail = await self.platform.read_stream(url)
                    if detail:
                        break
        if result.exit_code is not None:
            warning = f"Repository clone failed (exit code {result.exit_code})"
        else:
            warning = f"Repository clone failed (status {result.status})"
        if detail:
            warning = f"{warning}: {detail.strip()}"
        logger.warning("Sandbox %s: %s", sandbox_id, warning[:200])
        return warning[:CLONE_WARNING_MAX]

    async def _wait_until_ready(self, sandbox_id: str, credential: str) -> str:
        """Poll the external URL until health and session listing both answer.

        Exhaustion is logged, not raised: the sandbox may still come up and
        the caller's agent-session retry covers the gap.
        """
        info = await self.platform.get_sandbox(sandbox_id)
        if not info.url:
            raise ProvisioningError(f"Sandbox {sandbox_id} has no external URL")
        base_url = info.url.rstrip("/")
        attempts = self.agent.readiness_attempts

        async with httpx.AsyncClient(
            base_url=base_url,
            headers=self._auth_headers(credential),
            timeout=self.agent.probe_timeout,
        ) as client:
            for attempt in range(1, attempts + 1):
                if await self._probe_ready(client):
                    logger.info("Sandbox %s: agent server ready after %d attempt(s)", sandbox_id, attempt)
                    return base_url
                if attempt < attempts:
                    await self._sleep(self.agent.readiness_interval)

        logger.error(
            "Sandbox %s: agent server not ready after %d attempts, continuing", sandbox_id, attempts
        )
        return base_url

    @staticmethod
    async def _probe_ready(client: httpx.AsyncClient) -> bool:
        try:
            health = await client.get("/global/health")
            if not health.is_success:
                return False
            sessions = await client.get("/session")
            return sessions.is_success
        except httpx.HTTPError:
            return False
