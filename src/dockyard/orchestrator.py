"""Session Orchestrator: the session state machine.

    creating ──► active ──► terminated   (health monitor only)
        │
        └──────► error

``create_session`` and friends insert the row and return at once; the
sandbox is provisioned by a background task that walks the row through the
states above. ``error`` and ``terminated`` are terminal: recovery is a new
session (create or fork), never resurrection.

A session whose sandbox came up but whose agent session could not be
established stays ``creating`` with the failure recorded in metadata, and
``retry_session`` can finish it later.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from dockyard.agent_client import AgentClient, AgentClientPool
from dockyard.agent_config import generate_agent_config
from dockyard.config import DockyardConfig
from dockyard.errors import (
    AgentServerError,
    AgentSessionError,
    SessionNotFoundError,
    SessionStateError,
    SnapshotNotFoundError,
    classify_failure,
)
from dockyard.health import HealthMonitor
from dockyard.lifecycle import SandboxController
from dockyard.models import (
    CreateSessionRequest,
    SandboxHandle,
    SessionRecord,
    SessionStatus,
    SnapshotRecord,
    WorkspaceSettings,
    auto_title,
)
from dockyard.registry import SessionRegistry
from dockyard.vault import SecretVault

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class SessionOrchestrator:
    """Owns session rows, their sandboxes and their background work."""

    def __init__(
        self,
        registry: SessionRegistry,
        controller: SandboxController,
        vault: SecretVault,
        pool: AgentClientPool,
        health: HealthMonitor,
        config: DockyardConfig,
        *,
        sleep: Sleep = asyncio.sleep,
    ):
        self.registry = registry
        self.controller = controller
        self.vault = vault
        self.pool = pool
        self.health = health
        self.config = config
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    # ── Background tasks ─────────────────────────────────────────────────

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def wait_for_background(self) -> None:
        """Wait until every background task has finished (used by tests/shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self.pool.close_all()
        logger.info("Session orchestrator stopped (%d task(s) cancelled)", len(tasks))

    # ── Create ───────────────────────────────────────────────────────────

    async def create_session(self, request: CreateSessionRequest) -> SessionRecord:
        """Insert the session row and start provisioning in the background.

        Idempotent on ``request.id``: a repeated id returns the stored row
        and starts nothing.
        """
        metadata: dict[str, Any] = {}
        if request.repo_url:
            metadata["repoUrl"] = request.repo_url
        if request.branch:
            metadata["branch"] = request.branch

        record = SessionRecord(
            id=request.id,
            workspace_id=request.workspace_id,
            title=auto_title(request.prompt),
            agent=request.agent,
            model=request.model,
            metadata=metadata,
        )
        record, created = await self.registry.create_session(record)
        if created:
            self._spawn(self._provision(record.id, request), name=f"provision-{record.id}")
        return record

    async def _provision(self, session_id: str, request: CreateSessionRequest) -> None:
        try:
            secrets = self._build_secrets(request.github_token, request.env)
            handle = await self.controller.create(
                repo_url=request.repo_url,
                branch=request.branch,
                custom_skills=request.custom_skills,
                registry_skills=request.registry_skills,
                sources=request.sources,
                settings=WorkspaceSettings(default_model=request.model, default_agent=request.agent),
                secrets=secrets,
                rules=request.rules,
            )
            if not await self._attach_sandbox(session_id, handle):
                return

            client = self.pool.get(handle.sandbox_id, handle.sandbox_url, handle.credential)
            record = await self._establish_agent_session(
                session_id, lambda: client.create_session(auto_title(request.prompt))
            )
            if record is not None and request.prompt:
                await self._send_initial_prompt(record, client, request.prompt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._mark_error(session_id, e)

    async def _send_initial_prompt(self, record: SessionRecord, client: AgentClient, prompt: str) -> None:
        try:
            await client.prompt_async(
                record.agent_session_id, prompt, model=record.model, agent=record.agent
            )
        except (AgentServerError, httpx.HTTPError) as e:
            logger.warning("Session %s: initial prompt failed: %s", record.id, e)

    # ── Fork ─────────────────────────────────────────────────────────────

    async def fork_session(
        self,
        source_id: str,
        fork_id: str | None = None,
        title: str | None = None,
        github_token: str | None = None,
    ) -> SessionRecord:
        source = await self._require_session(source_id)
        if source.status != SessionStatus.ACTIVE or not source.is_ready:
            raise SessionStateError(
                f"Session {source_id} is {source.status.value}; only active sessions can be forked"
            )

        metadata = {
            k: source.metadata[k] for k in ("repoUrl", "branch", "workDir") if source.metadata.get(k)
        }
        record = SessionRecord(
            id=fork_id or str(uuid.uuid4()),
            workspace_id=source.workspace_id,
            title=title or f"Fork of {source.title or source.id}",
            agent=source.agent,
            model=source.model,
            forked_from_session_id=source.id,
            metadata=metadata,
        )
        record, created = await self.registry.create_session(record)
        if created:
            self._spawn(self._fork(record.id, source, github_token), name=f"fork-{record.id}")
        return record

    async def _fork(self, session_id: str, source: SessionRecord, github_token: str | None) -> None:
        try:
            work_dir = source.metadata.get("workDir") or f"{self.config.agent_server.home_dir}/project"
            handle = await self.controller.fork(
                source.sandbox_id, work_dir, self._build_secrets(github_token)
            )
            try:
                if not await self._attach_sandbox(session_id, handle):
                    return
                client = self.pool.get(handle.sandbox_id, handle.sandbox_url, handle.credential)
                await self._establish_agent_session(
                    session_id, lambda: client.fork_session(source.agent_session_id)
                )
            finally:
                await self.controller.delete_snapshot(handle.snapshot_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._mark_error(session_id, e)

    # ── Snapshots ────────────────────────────────────────────────────────

    async def create_snapshot(
        self, session_id: str, name: str, description: str | None = None
    ) -> SnapshotRecord:
        record = await self._require_session(session_id)
        if record.status != SessionStatus.ACTIVE or not record.sandbox_id:
            raise SessionStateError(f"Session {session_id} has no running sandbox to snapshot")

        snapshot_id = await self.controller.create_snapshot(record.sandbox_id, name, description)
        snapshot = SnapshotRecord(
            workspace_id=record.workspace_id,
            name=name,
            description=description,
            snapshot_id=snapshot_id,
            source_session_id=record.id,
            metadata={
                k: record.metadata[k] for k in ("repoUrl", "branch", "workDir") if record.metadata.get(k)
            },
        )
        return await self.registry.create_snapshot(snapshot)

    async def list_snapshots(self, workspace_id: str | None = None) -> list[SnapshotRecord]:
        return await self.registry.list_snapshots(workspace_id)

    async def delete_snapshot(self, snapshot_db_id: str) -> None:
        snapshot = await self.registry.get_snapshot(snapshot_db_id)
        if snapshot is None:
            raise SnapshotNotFoundError(snapshot_db_id)
        await self.controller.delete_snapshot(snapshot.snapshot_id)
        await self.registry.delete_snapshot(snapshot_db_id)

    async def create_session_from_snapshot(
        self,
        snapshot_db_id: str,
        session_id: str | None = None,
        title: str | None = None,
        github_token: str | None = None,
    ) -> SessionRecord:
        snapshot = await self.registry.get_snapshot(snapshot_db_id)
        if snapshot is None:
            raise SnapshotNotFoundError(snapshot_db_id)

        record = SessionRecord(
            id=session_id or str(uuid.uuid4()),
            workspace_id=snapshot.workspace_id,
            title=title or snapshot.name,
            metadata=dict(snapshot.metadata),
        )
        record, created = await self.registry.create_session(record)
        if created:
            self._spawn(
                self._restore(record.id, snapshot, github_token), name=f"restore-{record.id}"
            )
        return record

    async def _restore(self, session_id: str, snapshot: SnapshotRecord, github_token: str | None) -> None:
        try:
            work_dir = snapshot.work_dir or f"{self.config.agent_server.home_dir}/project"
            handle = await self.controller.create_from_snapshot(
                snapshot.snapshot_id,
                work_dir,
                self._build_secrets(github_token),
                generate_agent_config(default_model=self.config.agent_server.default_model),
            )
            if not await self._attach_sandbox(session_id, handle):
                return
            client = self.pool.get(handle.sandbox_id, handle.sandbox_url, handle.credential)
            await self._establish_agent_session(session_id, lambda: client.create_session(snapshot.name))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._mark_error(session_id, e)

    # ── Retry / destroy ──────────────────────────────────────────────────

    async def retry_session(self, session_id: str) -> SessionRecord:
        """Re-run agent session establishment for a sandbox that is already up."""
        record = await self._require_session(session_id)
        if (
            record.status != SessionStatus.CREATING
            or not record.sandbox_id
            or not record.sandbox_url
            or record.agent_session_id
        ):
            raise SessionStateError(
                f"Session {session_id} cannot be retried (status={record.status.value}, "
                f"sandbox={'yes' if record.sandbox_id else 'no'}, "
                f"agent_session={'yes' if record.agent_session_id else 'no'})"
            )

        client = self._client_for(record)
        updated = await self._establish_agent_session(session_id, lambda: client.create_session(record.title))
        if updated is None:
            raise AgentSessionError(f"Could not establish an agent session for {session_id}")
        return updated

    async def destroy_session(self, session_id: str) -> None:
        record = await self._require_session(session_id)
        if record.sandbox_id:
            await self.controller.destroy(record.sandbox_id)
        self.health.forget(session_id)
        await self.registry.delete_session(session_id)
        logger.info("Destroyed session %s", session_id)

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_session_status(self, session_id: str) -> SessionRecord:
        record = await self._require_session(session_id)
        return await self._apply_health_gate(record)

    async def list_sessions(self, workspace_id: str | None = None) -> list[SessionRecord]:
        records = await self.registry.list_sessions(workspace_id)
        # Probes run concurrently; order of the listing is preserved.
        return list(await asyncio.gather(*(self._apply_health_gate(r) for r in records)))

    async def get_session_password(self, session_id: str) -> str | None:
        record = await self._require_session(session_id)
        return self.vault.decrypt_or_none(record.metadata.get("agentPassword"))

    async def _apply_health_gate(self, record: SessionRecord) -> SessionRecord:
        """Probe an active session's agent server at most once per TTL.

        After ``failure_threshold`` consecutive failed probes the session is
        demoted to ``terminated``. The demotion is conditional on the row
        still being ``active``, so concurrent readers demote it once.
        """
        if record.status != SessionStatus.ACTIVE or not record.sandbox_url:
            return record
        now = self.health.clock()
        if not self.health.is_due(record.id, now):
            return record
        self.health.set_last_checked_at(record.id, now)

        credential = self.vault.decrypt_or_none(record.metadata.get("agentPassword"))
        healthy = await self.controller.check_health(record.sandbox_url, credential)
        failures = self.health.record_result(record.id, healthy)
        if healthy:
            return record

        logger.info("Session %s: health probe failed (%d consecutive)", record.id, failures)
        if not self.health.should_mark_terminated(record.id):
            return record

        demoted = await self.registry.update_session(
            record.id, expected_status=SessionStatus.ACTIVE, status=SessionStatus.TERMINATED
        )
        if demoted:
            logger.warning("Session %s: sandbox unreachable, marked terminated", record.id)
            self.health.forget(record.id)
            if record.sandbox_id:
                await self.pool.evict(record.sandbox_id)
        return await self._require_session(record.id)

    # ── Agent pass-throughs ──────────────────────────────────────────────

    async def send_message(self, session_id: str, text: str, model: str | None = None) -> SessionRecord:
        record = await self._require_active(session_id)
        client = self._client_for(record)
        await client.prompt_async(
            record.agent_session_id, text, model=model or record.model, agent=record.agent
        )
        if not record.title:
            title = auto_title(text)
            if title and await self.registry.update_session(session_id, title=title):
                record.title = title
        return record

    async def abort(self, session_id: str) -> None:
        record = await self._require_active(session_id)
        await self._client_for(record).abort(record.agent_session_id)

    async def get_messages(self, session_id: str) -> list[Any]:
        record = await self._require_active(session_id)
        return await self._client_for(record).get_messages(record.agent_session_id)

    async def get_diff(self, session_id: str) -> Any:
        record = await self._require_active(session_id)
        return await self._client_for(record).get_diff(record.agent_session_id)

    async def reply_permission(self, session_id: str, permission_id: str, reply: str) -> None:
        record = await self._require_active(session_id)
        await self._client_for(record).reply_permission(record.agent_session_id, permission_id, reply)

    async def reply_question(self, session_id: str, question_id: str, answers: list[list[str]]) -> None:
        record = await self._require_active(session_id)
        await self._client_for(record).reply_question(record.agent_session_id, question_id, answers)

    def client_for(self, record: SessionRecord) -> AgentClient:
        """Cached agent client for a session's sandbox."""
        return self._client_for(record)

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _require_session(self, session_id: str) -> SessionRecord:
        record = await self.registry.get_session(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    async def _require_active(self, session_id: str) -> SessionRecord:
        record = await self._require_session(session_id)
        if record.status != SessionStatus.ACTIVE or not record.is_ready:
            raise SessionStateError(f"Session {session_id} is {record.status.value}, not active")
        return record

    def _client_for(self, record: SessionRecord) -> AgentClient:
        password = self.vault.decrypt_or_none(record.metadata.get("agentPassword"))
        return self.pool.get(record.sandbox_id, record.sandbox_url, password)

    def _build_secrets(
        self, encrypted_github_token: str | None, env: dict[str, str] | None = None
    ) -> dict[str, str]:
        secrets = dict(env or {})
        token = self.vault.decrypt_or_none(encrypted_github_token)
        if token:
            secrets["GITHUB_TOKEN"] = token
        return secrets

    async def _attach_sandbox(self, session_id: str, handle: SandboxHandle) -> bool:
        """Persist the sandbox on the session row.

        If the row is gone or already terminal (destroyed while provisioning)
        the sandbox has no owner and is destroyed.
        """
        attached = await self.registry.merge_metadata(
            session_id,
            {
                "agentPassword": self.vault.encrypt(handle.credential),
                "workDir": handle.work_dir,
                "cloneWarning": handle.clone_warning,
            },
            sandbox_id=handle.sandbox_id,
            sandbox_url=handle.sandbox_url,
        )
        if attached:
            current = await self.registry.get_session(session_id)
            attached = current is not None and current.status == SessionStatus.CREATING
        if not attached:
            logger.warning(
                "Session %s no longer provisioning, destroying orphan sandbox %s",
                session_id,
                handle.sandbox_id,
            )
            await self.controller.destroy(handle.sandbox_id)
            return False
        logger.info("Session %s: sandbox %s attached", session_id, handle.sandbox_id)
        return True

    async def _establish_agent_session(
        self,
        session_id: str,
        open_session: Callable[[], Awaitable[str]],
    ) -> SessionRecord | None:
        """Open the upstream agent session with bounded exponential backoff.

        Success marks the session active. Exhaustion records the last error
        and leaves the session ``creating``; returns None.
        """
        retry = self.config.retry
        last_error: Exception | None = None
        for attempt in range(retry.max_attempts):
            try:
                agent_session_id = await open_session()
            except (AgentServerError, httpx.HTTPError) as e:
                last_error = e
                logger.warning(
                    "Session %s: agent session attempt %d/%d failed: %s",
                    session_id,
                    attempt + 1,
                    retry.max_attempts,
                    e,
                )
                if attempt < retry.max_attempts - 1:
                    await self._sleep(retry.base_delay * 2**attempt)
                continue

            activated = await self.registry.merge_metadata(
                session_id,
                {"error": None, "errorHint": None},
                status=SessionStatus.ACTIVE,
                agent_session_id=agent_session_id,
            )
            if not activated:
                logger.warning(
                    "Session %s: agent session %s opened but the session is gone or terminal",
                    session_id,
                    agent_session_id,
                )
                return None
            self.health.forget(session_id)
            logger.info("Session %s active (agent session %s)", session_id, agent_session_id)
            return await self.registry.get_session(session_id)

        message = f"Agent session could not be established after {retry.max_attempts} attempts: {last_error}"
        logger.error("Session %s: %s", session_id, message)
        await self.registry.merge_metadata(
            session_id, {"error": message, "errorHint": classify_failure(message)}
        )
        return None

    async def _mark_error(self, session_id: str, error: Exception) -> None:
        """Record a provisioning failure and destroy any sandbox already attached."""
        logger.exception("Session %s: provisioning failed", session_id)
        record = await self.registry.get_session(session_id)
        await self.registry.merge_metadata(
            session_id,
            {"error": f"{type(error).__name__}: {error}"[:1000], "errorHint": classify_failure(error)},
            status=SessionStatus.ERROR,
        )
        if record is not None and record.sandbox_id:
            await self.controller.destroy(record.sandbox_id)
