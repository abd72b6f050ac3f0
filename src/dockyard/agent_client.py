"""HTTP client for the agent server running inside a sandbox.

Every sandbox runs its own agent server protected by HTTP basic auth with a
per-sandbox password. ``AgentClientPool`` keeps one client per sandbox id for
the life of the sandbox.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from dockyard.errors import AgentServerError

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "opencode"


def build_basic_auth_header(password: str, username: str = DEFAULT_USERNAME) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def extract_agent_session_id(data: Any) -> str | None:
    """Pull a session id out of an agent server response.

    Seen shapes: ``{"id"}``, ``{"data": {"id"}}``, ``{"sessionId"}``,
    ``{"session": {"id"}}``.
    """
    if not isinstance(data, dict):
        return None
    nested = data.get("data")
    if isinstance(nested, dict) and isinstance(nested.get("id"), str):
        return nested["id"]
    for key in ("id", "sessionId"):
        if isinstance(data.get(key), str) and data[key]:
            return data[key]
    session = data.get("session")
    if isinstance(session, dict) and isinstance(session.get("id"), str):
        return session["id"]
    return None


def split_model(model: str | None) -> dict[str, str] | None:
    """``"anthropic/claude-sonnet-4-5"`` → ``{"providerID": ..., "modelID": ...}``."""
    if not model or "/" not in model:
        return None
    provider, _, model_id = model.partition("/")
    return {"providerID": provider, "modelID": model_id}


class AgentClient:
    """Async client for one sandbox's agent server."""

    def __init__(
        self,
        base_url: str,
        password: str | None,
        *,
        username: str = DEFAULT_USERNAME,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self._password = password
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.auth_headers,
            timeout=timeout,
        )

    @property
    def auth_headers(self) -> dict[str, str]:
        if not self._password:
            return {}
        return {"Authorization": build_basic_auth_header(self._password, self.username)}

    @property
    def closed(self) -> bool:
        return self._client.is_closed

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise AgentServerError(f"{method} {path} failed: {type(e).__name__}: {e}") from e
        if resp.status_code >= 400:
            raise AgentServerError(
                f"{method} {path} returned {resp.status_code}: {resp.text[:300]}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    # ── Sessions ─────────────────────────────────────────────────────────

    async def health(self) -> bool:
        try:
            await self._request("GET", "/global/health")
        except AgentServerError:
            return False
        return True

    async def list_sessions(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/session")
        return data if isinstance(data, list) else []

    async def create_session(self, title: str | None = None) -> str:
        body = {"title": title} if title else {}
        data = await self._request("POST", "/session", json=body)
        session_id = extract_agent_session_id(data)
        if not session_id:
            raise AgentServerError(f"Agent server returned no session id: {str(data)[:200]}")
        return session_id

    async def fork_session(self, session_id: str) -> str:
        data = await self._request("POST", f"/session/{session_id}/fork", json={})
        forked_id = extract_agent_session_id(data)
        if not forked_id:
            raise AgentServerError(f"Agent server fork returned no session id: {str(data)[:200]}")
        return forked_id

    async def prompt_async(
        self,
        session_id: str,
        text: str,
        *,
        model: str | None = None,
        agent: str | None = None,
    ) -> None:
        """Queue a prompt; the reply arrives on the event stream."""
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        model_ref = split_model(model)
        if model_ref:
            body["model"] = model_ref
        if agent:
            body["agent"] = agent
        await self._request("POST", f"/session/{session_id}/prompt_async", json=body)

    async def abort(self, session_id: str) -> None:
        await self._request("POST", f"/session/{session_id}/abort")

    async def get_messages(self, session_id: str) -> list[Any]:
        data = await self._request("GET", f"/session/{session_id}/message")
        return data if isinstance(data, list) else []

    async def get_diff(self, session_id: str) -> Any:
        return await self._request("GET", f"/session/{session_id}/diff")

    async def reply_permission(self, session_id: str, permission_id: str, reply: str) -> None:
        """Answer a permission request (``once``, ``always`` or ``reject``)."""
        await self._request(
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            json={"response": reply},
        )

    async def reply_question(self, session_id: str, question_id: str, answers: list[list[str]]) -> None:
        await self._request(
            "POST",
            f"/session/{session_id}/questions/{question_id}",
            json={"answers": answers},
        )

    # ── Events ───────────────────────────────────────────────────────────

    @asynccontextmanager
    async def stream_events(self) -> AsyncIterator[httpx.Response]:
        """Open the agent's global SSE stream (no read timeout)."""
        async with self._client.stream(
            "GET",
            "/event",
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(10.0, read=None),
        ) as resp:
            yield resp


class AgentClientPool:
    """One ``AgentClient`` per sandbox id.

    ``get`` never awaits, so two concurrent callers for the same sandbox
    always see the same client.
    """

    def __init__(self, *, username: str = DEFAULT_USERNAME, timeout: float = 30.0):
        self.username = username
        self.timeout = timeout
        self._clients: dict[str, AgentClient] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, sandbox_id: str) -> bool:
        return sandbox_id in self._clients

    def get(self, sandbox_id: str, base_url: str, password: str | None) -> AgentClient:
        client = self._clients.get(sandbox_id)
        if client is None or client.closed:
            client = AgentClient(base_url, password, username=self.username, timeout=self.timeout)
            self._clients[sandbox_id] = client
        return client

    async def evict(self, sandbox_id: str) -> None:
        client = self._clients.pop(sandbox_id, None)
        if client is not None:
            await client.close()
            logger.debug("Evicted agent client for sandbox %s", sandbox_id)

    async def close_all(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.close()
