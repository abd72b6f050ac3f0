"""Event Stream Proxy: relays a sandbox agent's SSE stream to a client.

The agent server exposes one global event stream per sandbox. It is not
filtered by session and may carry events for child sessions (sub-agent
tasks), so every forwarded event is tagged with the session it belongs to
and whether that is the proxied session itself.

Outbound frames:
    data: {...upstream event..., "sessionId": "...", "isParent": true}
    event: heartbeat     keep-alive when the upstream is quiet
    event: error         exactly once, then the stream ends
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from dockyard.agent_client import AgentClient
from dockyard.models import SessionRecord

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = "event: heartbeat\ndata: {}\n\n"

QUEUE_MAXSIZE = 256


def format_event(data: dict[str, Any], event: str | None = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data)}\n\n"


def error_frame(message: str) -> str:
    return format_event({"type": "error", "message": message}, event="error")


class SSELineParser:
    """Incremental parser for ``data:`` lines of an SSE byte stream.

    Chunks may split lines anywhere; the trailing partial line is buffered
    until the next chunk. Payloads that are not JSON objects are skipped.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[dict[str, Any]]:
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        events = []
        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith("data:"):
                continue
            payload = line[len("data:"):].lstrip(" ")
            if not payload:
                continue
            try:
                event = json.loads(payload)
            except ValueError:
                logger.debug("Skipping malformed event payload: %.100s", payload)
                continue
            if isinstance(event, dict):
                events.append(event)
        return events


def extract_session_id(event: dict[str, Any]) -> str | None:
    """Find the session an agent event belongs to.

    Checked in order: ``properties.sessionID``, ``properties.info.sessionID``,
    ``properties.info.id``, ``properties.part.sessionID``.
    """
    props = event.get("properties")
    if not isinstance(props, dict):
        return None
    if isinstance(props.get("sessionID"), str):
        return props["sessionID"]
    info = props.get("info")
    if isinstance(info, dict):
        for key in ("sessionID", "id"):
            if isinstance(info.get(key), str):
                return info[key]
    part = props.get("part")
    if isinstance(part, dict) and isinstance(part.get("sessionID"), str):
        return part["sessionID"]
    return None


def tag_event(event: dict[str, Any], parent_session_id: str) -> dict[str, Any]:
    session_id = extract_session_id(event) or parent_session_id
    return {**event, "sessionId": session_id, "isParent": session_id == parent_session_id}


@dataclass
class _StreamEnd:
    message: str


class EventStreamProxy:
    """Builds SSE generators for sessions.

    ``client_for`` resolves the cached agent client for a session's sandbox.
    """

    def __init__(
        self,
        client_for: Callable[[SessionRecord], AgentClient],
        *,
        keepalive_seconds: float = 15.0,
    ):
        self._client_for = client_for
        self.keepalive_seconds = keepalive_seconds

    async def events(
        self,
        record: SessionRecord,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        if not record.is_ready:
            yield error_frame(f"Session {record.id} is not ready (status={record.status.value})")
            return

        client = self._client_for(record)
        queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        reader = asyncio.create_task(
            self._read_upstream(client, record.agent_session_id, queue),
            name=f"event-proxy-{record.id}",
        )
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=self.keepalive_seconds)
                except asyncio.TimeoutError:
                    if is_disconnected is not None and await is_disconnected():
                        logger.debug("Event stream client for %s disconnected", record.id)
                        return
                    yield HEARTBEAT_FRAME
                    continue

                if isinstance(item, _StreamEnd):
                    yield error_frame(item.message)
                    return
                yield format_event(item)
        finally:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    @staticmethod
    async def _read_upstream(client: AgentClient, agent_session_id: str, queue: asyncio.Queue) -> None:
        """Pump upstream events into ``queue``; always finishes with one ``_StreamEnd``."""
        try:
            async with client.stream_events() as resp:
                if resp.status_code >= 400:
                    await queue.put(_StreamEnd(f"Agent event stream returned {resp.status_code}"))
                    return
                parser = SSELineParser()
                async for chunk in resp.aiter_text():
                    for event in parser.feed(chunk):
                        await queue.put(tag_event(event, agent_session_id))
            await queue.put(_StreamEnd("Agent event stream ended"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Agent event stream failed: %s", e)
            await queue.put(_StreamEnd(f"Agent event stream failed: {type(e).__name__}: {e}"))
