"""Sandbox platform API client.

Thin async wrapper over the platform's REST API: allocate and destroy
sandboxes, run commands inside them, and manage filesystem snapshots.
Errors are raised as ``SandboxPlatformError``; callers decide what is best
effort.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from dockyard.errors import SandboxPlatformError

logger = logging.getLogger(__name__)


@dataclass
class SandboxInfo:
    sandbox_id: str
    status: str | None = None
    url: str | None = None


@dataclass
class ExecutionResult:
    """Outcome of one ``execute`` call.

    ``exit_code`` and ``status`` may both be missing when the platform reports
    only stream locations.
    """

    execution_id: str | None = None
    status: str | None = None
    exit_code: int | None = None
    stdout_url: str | None = None
    stderr_url: str | None = None
    stdout: str | None = None
    stderr: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def has_streams(self) -> bool:
        return bool(self.stdout_url or self.stderr_url or self.stdout or self.stderr)


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


class SandboxPlatformClient:
    """Async sandbox platform client with bearer-token auth."""

    def __init__(self, base_url: str, *, api_key: str | None = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        headers = {"Accept": "application/json", "User-Agent": "Dockyard/0.1.0"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        else:
            logger.warning("No sandbox platform API key configured; requests are unauthenticated")
        self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=self.timeout)
        logger.info("Sandbox platform client started: %s", self.base_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Sandbox platform client not started")
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise SandboxPlatformError(f"{method} {path} failed: {type(e).__name__}: {e}") from e
        if resp.status_code >= 400:
            raise SandboxPlatformError(
                f"{method} {path} returned {resp.status_code}: {resp.text[:300]}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as e:
            raise SandboxPlatformError(f"{method} {path} returned non-JSON body") from e
        # Some endpoints wrap the payload in {"data": {...}}
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            return data["data"]
        return data if isinstance(data, dict) else {}

    # ── Sandboxes ────────────────────────────────────────────────────────

    async def create_sandbox(
        self,
        *,
        runtime: str | None = None,
        memory: str | None = None,
        cpu: str | None = None,
        idle_timeout: str | None = None,
        port: int | None = None,
        dependencies: list[str] | None = None,
        env: dict[str, str] | None = None,
        snapshot_id: str | None = None,
    ) -> SandboxInfo:
        body: dict[str, Any] = {
            "resources": {"memory": memory, "cpu": cpu},
            "timeout": {"idle": idle_timeout},
            "env": env or {},
        }
        if snapshot_id:
            body["snapshot"] = snapshot_id
        else:
            body["runtime"] = runtime
            body["dependencies"] = dependencies or []
        if port is not None:
            body["network"] = {"enabled": True, "port": port}

        data = await self._request("POST", "/sandboxes", json=body)
        sandbox_id = _first(data, "sandboxId", "id")
        if not sandbox_id:
            raise SandboxPlatformError("Sandbox create response has no sandbox id")
        logger.info("Created sandbox %s%s", sandbox_id, f" from snapshot {snapshot_id}" if snapshot_id else "")
        return SandboxInfo(sandbox_id=sandbox_id, status=data.get("status"), url=self._extract_url(data))

    async def get_sandbox(self, sandbox_id: str) -> SandboxInfo:
        data = await self._request("GET", f"/sandboxes/{sandbox_id}")
        return SandboxInfo(
            sandbox_id=_first(data, "sandboxId", "id") or sandbox_id,
            status=data.get("status"),
            url=self._extract_url(data),
        )

    async def destroy_sandbox(self, sandbox_id: str) -> None:
        await self._request("DELETE", f"/sandboxes/{sandbox_id}")
        logger.info("Destroyed sandbox %s", sandbox_id)

    @staticmethod
    def _extract_url(data: dict[str, Any]) -> str | None:
        url = _first(data, "url", "publicUrl")
        if url:
            return url
        network = data.get("network")
        if isinstance(network, dict):
            return _first(network, "url", "publicUrl")
        return None

    # ── Execution ────────────────────────────────────────────────────────

    async def execute(
        self,
        sandbox_id: str,
        command: list[str],
        *,
        timeout: str | None = None,
        wait: bool = True,
    ) -> ExecutionResult:
        """Run ``command`` in the sandbox.

        With ``wait=False`` the platform starts the command detached and
        answers immediately; the result then carries only the execution id.
        """
        body: dict[str, Any] = {"command": command, "wait": wait}
        if timeout:
            body["timeout"] = timeout
        data = await self._request("POST", f"/sandboxes/{sandbox_id}/execute", json=body)

        exit_code = _first(data, "exitCode", "exit_code")
        try:
            exit_code = int(exit_code) if exit_code is not None else None
        except (TypeError, ValueError):
            exit_code = None
        return ExecutionResult(
            execution_id=_first(data, "executionId", "id"),
            status=data.get("status"),
            exit_code=exit_code,
            stdout_url=_first(data, "stdoutStreamUrl", "stdoutUrl"),
            stderr_url=_first(data, "stderrStreamUrl", "stderrUrl"),
            stdout=data.get("stdout"),
            stderr=data.get("stderr"),
            raw=data,
        )

    async def read_stream(self, url: str, *, limit: int = 4000) -> str | None:
        """Fetch an execution output stream. Best effort; None when unreadable."""
        try:
            resp = await self.client.get(url)
        except httpx.HTTPError as e:
            logger.debug("Could not read output stream %s: %s", url, e)
            return None
        if resp.status_code >= 400:
            return None
        return resp.text[:limit]

    # ── Snapshots ────────────────────────────────────────────────────────

    async def create_snapshot(self, sandbox_id: str, *, name: str, description: str | None = None) -> str:
        body: dict[str, Any] = {"name": name}
        if description:
            body["description"] = description
        data = await self._request("POST", f"/sandboxes/{sandbox_id}/snapshots", json=body)
        snapshot_id = _first(data, "snapshotId", "id")
        if not snapshot_id:
            raise SandboxPlatformError("Snapshot create response has no snapshot id")
        logger.info("Created snapshot %s (%s) of sandbox %s", snapshot_id, name, sandbox_id)
        return snapshot_id

    async def delete_snapshot(self, snapshot_id: str) -> None:
        await self._request("DELETE", f"/snapshots/{snapshot_id}")
        logger.info("Deleted snapshot %s", snapshot_id)
