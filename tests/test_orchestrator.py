"""Tests for the session orchestrator (session state machine).

Real registry and vault; the sandbox controller and agent clients are fakes.
Background work is awaited with ``wait_for_background``.
"""

from __future__ import annotations

import asyncio

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from dockyard.config import DockyardConfig
from dockyard.errors import (
    HINT_CREDENTIALS,
    AgentServerError,
    AgentSessionError,
    SandboxPlatformError,
    SessionNotFoundError,
    SessionStateError,
    SnapshotNotFoundError,
)
from dockyard.health import HealthMonitor
from dockyard.models import CreateSessionRequest, SandboxHandle, SessionRecord, SessionStatus
from dockyard.orchestrator import SessionOrchestrator
from dockyard.registry import SessionRegistry
from dockyard.vault import SecretVault


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _handle(sandbox_id: str = "sb_1", **kwargs) -> SandboxHandle:
    defaults = dict(
        sandbox_id=sandbox_id,
        sandbox_url=f"https://{sandbox_id}.test",
        credential=f"pw-{sandbox_id}",
        work_dir="/home/agentuity/widgets",
    )
    defaults.update(kwargs)
    return SandboxHandle(**defaults)


@pytest_asyncio.fixture
async def registry(tmp_path):
    reg = SessionRegistry(str(tmp_path / "sessions.db"))
    await reg.initialize()
    yield reg
    await reg.close()


@pytest.fixture
def vault():
    return SecretVault("test-secret")


@pytest.fixture
def agent():
    client = MagicMock()
    client.create_session = AsyncMock(return_value="ses_1")
    client.fork_session = AsyncMock(return_value="ses_forked")
    client.prompt_async = AsyncMock()
    client.abort = AsyncMock()
    client.get_messages = AsyncMock(return_value=[{"id": "m1"}])
    client.get_diff = AsyncMock(return_value=[])
    client.reply_permission = AsyncMock()
    client.reply_question = AsyncMock()
    return client


@pytest.fixture
def controller():
    ctrl = MagicMock()
    ctrl.create = AsyncMock(return_value=_handle())
    ctrl.fork = AsyncMock(return_value=_handle("sb_fork", snapshot_id="snp_eph"))
    ctrl.create_from_snapshot = AsyncMock(return_value=_handle("sb_restored"))
    ctrl.destroy = AsyncMock()
    ctrl.check_health = AsyncMock(return_value=True)
    ctrl.create_snapshot = AsyncMock(return_value="snp_user")
    ctrl.delete_snapshot = AsyncMock(return_value=True)
    return ctrl


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def orchestrator(registry, vault, controller, agent, clock):
    pool = MagicMock()
    pool.get = MagicMock(return_value=agent)
    pool.evict = AsyncMock()
    pool.close_all = AsyncMock()
    orch = SessionOrchestrator(
        registry,
        controller,
        vault,
        pool,
        HealthMonitor(ttl_seconds=15, failure_threshold=3, clock=clock),
        DockyardConfig(),
        sleep=AsyncMock(),
    )
    yield orch
    await orch.stop()


async def _create_active(orchestrator, session_id: str = "s1", **kwargs) -> SessionRecord:
    await orchestrator.create_session(CreateSessionRequest(id=session_id, **kwargs))
    await orchestrator.wait_for_background()
    return await orchestrator.registry.get_session(session_id)


# ── Create ───────────────────────────────────────────────────────────────────


class TestCreateSession:
    async def test_returns_creating_then_becomes_active(self, orchestrator, vault):
        record = await orchestrator.create_session(
            CreateSessionRequest(id="s1", repo_url="https://github.com/acme/widgets", branch="main")
        )
        assert record.status == SessionStatus.CREATING
        assert record.sandbox_id is None

        await orchestrator.wait_for_background()
        record = await orchestrator.registry.get_session("s1")
        assert record.status == SessionStatus.ACTIVE
        assert record.sandbox_id == "sb_1"
        assert record.sandbox_url == "https://sb_1.test"
        assert record.agent_session_id == "ses_1"
        assert record.metadata["repoUrl"] == "https://github.com/acme/widgets"
        assert record.metadata["workDir"] == "/home/agentuity/widgets"
        # Credential stored encrypted only
        assert record.metadata["agentPassword"] != "pw-sb_1"
        assert vault.decrypt(record.metadata["agentPassword"]) == "pw-sb_1"

    async def test_idempotent_on_client_id(self, orchestrator, controller):
        first = await orchestrator.create_session(CreateSessionRequest(id="s1", prompt="first"))
        second = await orchestrator.create_session(CreateSessionRequest(id="s1", prompt="second"))
        await orchestrator.wait_for_background()

        assert second.title == first.title == "first"
        controller.create.assert_awaited_once()

    async def test_initial_prompt_sent_when_active(self, orchestrator, agent):
        await _create_active(orchestrator, prompt="Fix the bug", model="anthropic/claude-sonnet-4-5")
        agent.prompt_async.assert_awaited_once_with(
            "ses_1", "Fix the bug", model="anthropic/claude-sonnet-4-5", agent=None
        )

    async def test_initial_prompt_failure_not_fatal(self, orchestrator, agent):
        agent.prompt_async.side_effect = AgentServerError("boom")
        record = await _create_active(orchestrator, prompt="hi")
        assert record.status == SessionStatus.ACTIVE

    async def test_github_token_decrypted_into_secrets(self, orchestrator, controller, vault):
        await _create_active(orchestrator, github_token=vault.encrypt("ghp_abc"), env={"X": "1"})
        secrets = controller.create.call_args.kwargs["secrets"]
        assert secrets == {"X": "1", "GITHUB_TOKEN": "ghp_abc"}

    async def test_undecryptable_github_token_dropped(self, orchestrator, controller):
        record = await _create_active(orchestrator, github_token="garbage")
        assert "GITHUB_TOKEN" not in controller.create.call_args.kwargs["secrets"]
        assert record.status == SessionStatus.ACTIVE

    async def test_provisioning_failure_marks_error(self, orchestrator, controller):
        controller.create.side_effect = SandboxPlatformError("POST /sandboxes returned 401: bad key")
        record = await _create_active(orchestrator)
        assert record.status == SessionStatus.ERROR
        assert "401" in record.metadata["error"]
        assert record.metadata["errorHint"] == HINT_CREDENTIALS

    async def test_clone_warning_persisted(self, orchestrator, controller):
        controller.create.return_value = _handle(clone_warning="Repository clone failed (exit code 128)")
        record = await _create_active(orchestrator)
        assert record.status == SessionStatus.ACTIVE
        assert record.metadata["cloneWarning"].startswith("Repository clone failed")

    async def test_failure_after_attach_destroys_sandbox(self, orchestrator, controller):
        orchestrator.pool.get.side_effect = RuntimeError("client construction failed")
        record = await _create_active(orchestrator)
        assert record.status == SessionStatus.ERROR
        assert "client construction failed" in record.metadata["error"]
        controller.destroy.assert_awaited_once_with("sb_1")

    async def test_terminated_during_establish_stays_terminated(self, orchestrator, agent, registry):
        async def open_then_terminate(title):
            await registry.update_session("s1", status=SessionStatus.TERMINATED)
            return "ses_late"

        agent.create_session.side_effect = open_then_terminate
        record = await _create_active(orchestrator, prompt="Fix the bug")

        assert record.status == SessionStatus.TERMINATED
        assert record.agent_session_id is None
        agent.prompt_async.assert_not_called()


class TestAgentSessionRetry:
    async def test_backoff_schedule_on_exhaustion(self, orchestrator, agent):
        agent.create_session.side_effect = AgentServerError("returned 503: not ready")
        record = await _create_active(orchestrator)

        assert agent.create_session.await_count == 5
        delays = [c.args[0] for c in orchestrator._sleep.await_args_list]
        assert delays == [1.0, 2.0, 4.0, 8.0]
        assert sum(delays) == 15.0
        # Sandbox is up; session stays creating and can be retried
        assert record.status == SessionStatus.CREATING
        assert record.sandbox_id == "sb_1"
        assert record.agent_session_id is None
        assert "after 5 attempts" in record.metadata["error"]

    async def test_success_after_failures(self, orchestrator, agent):
        agent.create_session.side_effect = [AgentServerError("x"), AgentServerError("y"), "ses_3"]
        record = await _create_active(orchestrator)
        assert record.status == SessionStatus.ACTIVE
        assert record.agent_session_id == "ses_3"
        assert [c.args[0] for c in orchestrator._sleep.await_args_list] == [1.0, 2.0]

    async def test_retry_session_recovers(self, orchestrator, agent):
        agent.create_session.side_effect = AgentServerError("down")
        await _create_active(orchestrator)

        agent.create_session.side_effect = None
        agent.create_session.return_value = "ses_late"
        record = await orchestrator.retry_session("s1")

        assert record.status == SessionStatus.ACTIVE
        assert record.agent_session_id == "ses_late"
        assert "error" not in record.metadata

    async def test_retry_session_exhaustion_raises(self, orchestrator, agent):
        agent.create_session.side_effect = AgentServerError("down")
        await _create_active(orchestrator)
        with pytest.raises(AgentSessionError):
            await orchestrator.retry_session("s1")
        assert (await orchestrator.registry.get_session("s1")).status == SessionStatus.CREATING

    async def test_retry_invalid_states(self, orchestrator, registry):
        await _create_active(orchestrator)
        with pytest.raises(SessionStateError):
            await orchestrator.retry_session("s1")  # already active

        await registry.create_session(SessionRecord(id="bare"))
        with pytest.raises(SessionStateError):
            await orchestrator.retry_session("bare")  # no sandbox

        with pytest.raises(SessionNotFoundError):
            await orchestrator.retry_session("missing")


# ── Fork ─────────────────────────────────────────────────────────────────────


class TestForkSession:
    async def test_fork_active_session(self, orchestrator, controller, agent):
        await _create_active(orchestrator, repo_url="https://github.com/acme/widgets", prompt="Build it")

        fork = await orchestrator.fork_session("s1", fork_id="f1")
        assert fork.status == SessionStatus.CREATING
        assert fork.forked_from_session_id == "s1"
        assert fork.title == "Fork of Build it"

        await orchestrator.wait_for_background()
        fork = await orchestrator.registry.get_session("f1")
        assert fork.status == SessionStatus.ACTIVE
        assert fork.sandbox_id == "sb_fork"
        assert fork.agent_session_id == "ses_forked"
        assert fork.metadata["repoUrl"] == "https://github.com/acme/widgets"

        controller.fork.assert_awaited_once()
        assert controller.fork.call_args.args[:2] == ("sb_1", "/home/agentuity/widgets")
        agent.fork_session.assert_awaited_once_with("ses_1")
        controller.delete_snapshot.assert_awaited_once_with("snp_eph")

    async def test_snapshot_deleted_once_when_agent_fork_fails(self, orchestrator, controller, agent):
        await _create_active(orchestrator)
        agent.fork_session.side_effect = AgentServerError("nope")

        await orchestrator.fork_session("s1", fork_id="f1")
        await orchestrator.wait_for_background()

        controller.delete_snapshot.assert_awaited_once_with("snp_eph")
        fork = await orchestrator.registry.get_session("f1")
        assert fork.status == SessionStatus.CREATING
        assert fork.metadata["error"]

    async def test_fork_of_inactive_rejected(self, orchestrator, registry):
        await registry.create_session(SessionRecord(id="pending"))
        with pytest.raises(SessionStateError):
            await orchestrator.fork_session("pending")

    async def test_fork_sandbox_failure_marks_error(self, orchestrator, controller):
        await _create_active(orchestrator)
        controller.fork.side_effect = SandboxPlatformError("snapshot quota exceeded")

        await orchestrator.fork_session("s1", fork_id="f1")
        await orchestrator.wait_for_background()

        assert (await orchestrator.registry.get_session("f1")).status == SessionStatus.ERROR
        controller.delete_snapshot.assert_not_called()


# ── Destroy / reads ──────────────────────────────────────────────────────────


class TestDestroyAndReads:
    async def test_destroy_deletes_row(self, orchestrator, controller):
        await _create_active(orchestrator)
        await orchestrator.destroy_session("s1")
        controller.destroy.assert_awaited_once_with("sb_1")
        assert await orchestrator.registry.get_session("s1") is None

    async def test_destroy_missing(self, orchestrator):
        with pytest.raises(SessionNotFoundError):
            await orchestrator.destroy_session("missing")

    async def test_orphan_sandbox_destroyed(self, orchestrator, controller, registry):
        async def create_then_lose_row(**kwargs):
            await registry.delete_session("s1")
            return _handle()

        controller.create.side_effect = create_then_lose_row
        await orchestrator.create_session(CreateSessionRequest(id="s1"))
        await orchestrator.wait_for_background()

        controller.destroy.assert_awaited_once_with("sb_1")

    async def test_password(self, orchestrator, registry):
        await _create_active(orchestrator)
        assert await orchestrator.get_session_password("s1") == "pw-sb_1"

        await registry.merge_metadata("s1", {"agentPassword": "corrupted"})
        assert await orchestrator.get_session_password("s1") is None

    async def test_list_sessions(self, orchestrator):
        await _create_active(orchestrator, "a")
        await _create_active(orchestrator, "b")
        assert {s.id for s in await orchestrator.list_sessions()} == {"a", "b"}

    async def test_list_probes_sessions_concurrently(self, orchestrator, controller):
        for session_id in ("a", "b", "c", "d"):
            await _create_active(orchestrator, session_id)

        in_flight = 0
        peak = 0

        async def slow_probe(url, credential):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.05)
            in_flight -= 1
            return False

        controller.check_health.side_effect = slow_probe
        records = await orchestrator.list_sessions()

        assert peak == 4
        assert len(records) == 4
        assert all(r.status == SessionStatus.ACTIVE for r in records)


class TestHealthGate:
    async def test_probe_once_per_ttl(self, orchestrator, controller, clock):
        await _create_active(orchestrator)
        await orchestrator.get_session_status("s1")
        await orchestrator.get_session_status("s1")
        assert controller.check_health.await_count == 1
        controller.check_health.assert_awaited_with("https://sb_1.test", "pw-sb_1")

        clock.now += 15
        await orchestrator.get_session_status("s1")
        assert controller.check_health.await_count == 2

    async def test_three_failures_terminate(self, orchestrator, controller, clock):
        await _create_active(orchestrator)
        controller.check_health.return_value = False

        for _ in range(2):
            record = await orchestrator.get_session_status("s1")
            assert record.status == SessionStatus.ACTIVE
            clock.now += 15

        record = await orchestrator.get_session_status("s1")
        assert record.status == SessionStatus.TERMINATED

        # Terminated sessions are never probed again
        clock.now += 15
        await orchestrator.get_session_status("s1")
        assert controller.check_health.await_count == 3

    async def test_success_resets_failures(self, orchestrator, controller, clock):
        await _create_active(orchestrator)
        controller.check_health.side_effect = [False, False, True, False, False]
        for _ in range(5):
            record = await orchestrator.get_session_status("s1")
            clock.now += 15
        assert record.status == SessionStatus.ACTIVE

    async def test_creating_sessions_not_probed(self, orchestrator, controller, registry):
        await registry.create_session(SessionRecord(id="pending"))
        await orchestrator.get_session_status("pending")
        controller.check_health.assert_not_called()


# ── Agent pass-throughs ──────────────────────────────────────────────────────


class TestAgentPassThroughs:
    async def test_send_message_auto_titles(self, orchestrator, agent):
        await _create_active(orchestrator)
        record = await orchestrator.send_message("s1", "Please refactor the parser " + "x" * 80)
        assert len(record.title) == 60
        assert (await orchestrator.registry.get_session("s1")).title == record.title
        agent.prompt_async.assert_awaited_once()

    async def test_send_message_keeps_title(self, orchestrator):
        await _create_active(orchestrator, prompt="Original")
        record = await orchestrator.send_message("s1", "follow up")
        assert record.title == "Original"

    async def test_requires_active(self, orchestrator, registry):
        await registry.create_session(SessionRecord(id="pending"))
        with pytest.raises(SessionStateError):
            await orchestrator.send_message("pending", "hi")

    async def test_messages_abort_diff(self, orchestrator, agent):
        await _create_active(orchestrator)
        assert await orchestrator.get_messages("s1") == [{"id": "m1"}]
        await orchestrator.abort("s1")
        agent.abort.assert_awaited_once_with("ses_1")
        assert await orchestrator.get_diff("s1") == []

    async def test_permission_and_question_replies(self, orchestrator, agent):
        await _create_active(orchestrator)
        await orchestrator.reply_permission("s1", "perm_1", "always")
        agent.reply_permission.assert_awaited_once_with("ses_1", "perm_1", "always")
        await orchestrator.reply_question("s1", "q_1", [["yes"]])
        agent.reply_question.assert_awaited_once_with("ses_1", "q_1", [["yes"]])

    async def test_replies_require_active(self, orchestrator, registry, agent):
        await registry.create_session(SessionRecord(id="pending"))
        with pytest.raises(SessionStateError):
            await orchestrator.reply_permission("pending", "perm_1", "once")
        with pytest.raises(SessionStateError):
            await orchestrator.reply_question("pending", "q_1", [])
        agent.reply_permission.assert_not_called()


# ── Snapshots ────────────────────────────────────────────────────────────────


class TestSnapshots:
    async def test_create_list_restore_delete(self, orchestrator, controller, agent):
        await _create_active(orchestrator, repo_url="https://github.com/acme/widgets")

        snapshot = await orchestrator.create_snapshot("s1", "baseline", "before refactor")
        assert snapshot.snapshot_id == "snp_user"
        assert snapshot.work_dir == "/home/agentuity/widgets"
        assert [s.id for s in await orchestrator.list_snapshots()] == [snapshot.id]

        restored = await orchestrator.create_session_from_snapshot(snapshot.id, session_id="r1")
        assert restored.title == "baseline"
        await orchestrator.wait_for_background()
        restored = await orchestrator.registry.get_session("r1")
        assert restored.status == SessionStatus.ACTIVE
        assert restored.sandbox_id == "sb_restored"
        assert controller.create_from_snapshot.call_args.args[:2] == ("snp_user", "/home/agentuity/widgets")
        # Durable snapshots survive a restore
        controller.delete_snapshot.assert_not_called()

        await orchestrator.delete_snapshot(snapshot.id)
        controller.delete_snapshot.assert_awaited_once_with("snp_user")
        assert await orchestrator.list_snapshots() == []

    async def test_snapshot_requires_active(self, orchestrator, registry):
        await registry.create_session(SessionRecord(id="pending"))
        with pytest.raises(SessionStateError):
            await orchestrator.create_snapshot("pending", "n")

    async def test_unknown_snapshot(self, orchestrator):
        with pytest.raises(SnapshotNotFoundError):
            await orchestrator.create_session_from_snapshot("missing")
        with pytest.raises(SnapshotNotFoundError):
            await orchestrator.delete_snapshot("missing")


class TestStop:
    async def test_stop_cancels_background(self, orchestrator, controller):
        started = asyncio.Event()

        async def hang(**kwargs):
            started.set()
            await asyncio.Event().wait()

        controller.create.side_effect = hang
        await orchestrator.create_session(CreateSessionRequest(id="s1"))
        await started.wait()
        assert orchestrator.pending_tasks == 1

        await orchestrator.stop()
        assert orchestrator.pending_tasks == 0
        record = await orchestrator.registry.get_session("s1")
        assert record.status == SessionStatus.CREATING
