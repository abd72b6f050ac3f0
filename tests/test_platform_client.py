"""Contract tests for SandboxPlatformClient: verify HTTP request shapes.

Uses `respx` to intercept httpx requests at the transport level.
"""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from dockyard.errors import SandboxPlatformError
from dockyard.platform import SandboxPlatformClient

BASE = "https://platform.test/v1"


@pytest.fixture
async def platform():
    client = SandboxPlatformClient(BASE, api_key="pk_test")
    await client.start()
    yield client
    await client.close()


class TestSandboxes:
    @respx.mock
    async def test_create_request_shape(self, platform):
        route = respx.post(f"{BASE}/sandboxes").mock(
            return_value=httpx.Response(201, json={"sandboxId": "sb_1", "status": "creating"})
        )
        info = await platform.create_sandbox(
            runtime="opencode:latest",
            memory="4Gi",
            cpu="4000m",
            idle_timeout="2h",
            port=4096,
            dependencies=["git", "gh"],
            env={"A": "1"},
        )

        assert info.sandbox_id == "sb_1"
        request = route.calls[0].request
        assert request.headers["Authorization"] == "Bearer pk_test"
        body = json.loads(request.content)
        assert body["runtime"] == "opencode:latest"
        assert body["resources"] == {"memory": "4Gi", "cpu": "4000m"}
        assert body["network"] == {"enabled": True, "port": 4096}
        assert body["dependencies"] == ["git", "gh"]
        assert body["env"] == {"A": "1"}
        assert "snapshot" not in body

    @respx.mock
    async def test_create_from_snapshot(self, platform):
        route = respx.post(f"{BASE}/sandboxes").mock(
            return_value=httpx.Response(201, json={"data": {"id": "sb_2"}})
        )
        info = await platform.create_sandbox(snapshot_id="snp_1")
        assert info.sandbox_id == "sb_2"
        body = json.loads(route.calls[0].request.content)
        assert body["snapshot"] == "snp_1"
        assert "runtime" not in body

    @respx.mock
    async def test_create_without_id_fails(self, platform):
        respx.post(f"{BASE}/sandboxes").mock(return_value=httpx.Response(201, json={}))
        with pytest.raises(SandboxPlatformError):
            await platform.create_sandbox()

    @respx.mock
    async def test_get_nested_url(self, platform):
        respx.get(f"{BASE}/sandboxes/sb_1").mock(
            return_value=httpx.Response(
                200, json={"id": "sb_1", "status": "running", "network": {"url": "https://sb1.test"}}
            )
        )
        info = await platform.get_sandbox("sb_1")
        assert info.url == "https://sb1.test"
        assert info.status == "running"

    @respx.mock
    async def test_error_status(self, platform):
        respx.delete(f"{BASE}/sandboxes/sb_1").mock(return_value=httpx.Response(403, text="denied"))
        with pytest.raises(SandboxPlatformError) as exc_info:
            await platform.destroy_sandbox("sb_1")
        assert exc_info.value.status_code == 403

    @respx.mock
    async def test_transport_error(self, platform):
        respx.get(f"{BASE}/sandboxes/sb_1").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(SandboxPlatformError, match="ConnectError"):
            await platform.get_sandbox("sb_1")


class TestExecute:
    @respx.mock
    async def test_request_and_result(self, platform):
        route = respx.post(f"{BASE}/sandboxes/sb_1/execute").mock(
            return_value=httpx.Response(
                200,
                json={
                    "executionId": "ex_1",
                    "status": "completed",
                    "exitCode": 128,
                    "stderrStreamUrl": "https://streams.test/ex_1/stderr",
                },
            )
        )
        result = await platform.execute("sb_1", ["bash", "-c", "true"], timeout="2m")

        body = json.loads(route.calls[0].request.content)
        assert body == {"command": ["bash", "-c", "true"], "wait": True, "timeout": "2m"}
        assert result.exit_code == 128
        assert result.stderr_url == "https://streams.test/ex_1/stderr"
        assert result.has_streams

    @respx.mock
    async def test_detached(self, platform):
        route = respx.post(f"{BASE}/sandboxes/sb_1/execute").mock(
            return_value=httpx.Response(202, json={"executionId": "ex_2", "status": "running"})
        )
        result = await platform.execute("sb_1", ["bash", "-c", "x"], wait=False)
        assert json.loads(route.calls[0].request.content)["wait"] is False
        assert result.exit_code is None
        assert not result.has_streams

    @respx.mock
    async def test_read_stream(self, platform):
        respx.get("https://streams.test/ex_1/stderr").mock(
            return_value=httpx.Response(200, text="fatal: repository not found")
        )
        assert await platform.read_stream("https://streams.test/ex_1/stderr") == "fatal: repository not found"

    @respx.mock
    async def test_read_stream_unreadable(self, platform):
        respx.get("https://streams.test/gone").mock(return_value=httpx.Response(404))
        assert await platform.read_stream("https://streams.test/gone") is None


class TestSnapshots:
    @respx.mock
    async def test_create(self, platform):
        route = respx.post(f"{BASE}/sandboxes/sb_1/snapshots").mock(
            return_value=httpx.Response(201, json={"snapshotId": "snp_9"})
        )
        snapshot_id = await platform.create_snapshot("sb_1", name="fork-1", description="d")
        assert snapshot_id == "snp_9"
        assert json.loads(route.calls[0].request.content) == {"name": "fork-1", "description": "d"}

    @respx.mock
    async def test_delete(self, platform):
        route = respx.delete(f"{BASE}/snapshots/snp_9").mock(return_value=httpx.Response(204))
        await platform.delete_snapshot("snp_9")
        assert route.called


class TestLifecycle:
    async def test_client_requires_start(self):
        with pytest.raises(RuntimeError):
            SandboxPlatformClient(BASE).client
