"""Dockyard HTTP API: sessions, snapshots and the agent event stream.

Endpoints (all under ``/api``):
    Sessions:
    - POST   /sessions                      create (idempotent on body ``id``)
    - GET    /sessions                      list (health-gated)
    - GET    /sessions/{id}                 status (health-gated)
    - DELETE /sessions/{id}                 destroy sandbox and delete row
    - POST   /sessions/{id}/retry           re-establish the agent session
    - POST   /sessions/{id}/fork            fork an active session
    - GET    /sessions/{id}/password        decrypted agent server password

    Agent:
    - GET    /sessions/{id}/events          SSE proxy of the agent event stream
    - GET    /sessions/{id}/messages        message history
    - POST   /sessions/{id}/messages        send a prompt
    - POST   /sessions/{id}/abort           abort the running turn
    - GET    /sessions/{id}/diff            working tree diff
    - POST   /sessions/{id}/permissions/{rid} answer a permission request
    - POST   /sessions/{id}/questions/{rid}  answer a question

    Snapshots:
    - POST   /sessions/{id}/snapshot        snapshot a session's sandbox
    - GET    /snapshots                     list
    - DELETE /snapshots/{id}                delete
    - POST   /snapshots/{id}/sessions       new session from a snapshot

Security:
    Every route respects DOCKYARD_API_KEY when configured; the event stream
    also accepts ``?token=``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from dockyard.errors import (
    AgentServerError,
    AgentSessionError,
    DockyardError,
    SandboxPlatformError,
    SessionNotFoundError,
    SessionStateError,
    SnapshotNotFoundError,
)
from dockyard.models import (
    CreateSessionRequest,
    ForkSessionRequest,
    PermissionReplyRequest,
    QuestionReplyRequest,
    SendMessageRequest,
    SessionFromSnapshotRequest,
    SessionRecord,
    SnapshotCreateRequest,
    SnapshotRecord,
)
from dockyard.security import require_api_key, require_api_key_or_token

if TYPE_CHECKING:
    from dockyard.orchestrator import SessionOrchestrator
    from dockyard.stream import EventStreamProxy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sessions"], dependencies=[Depends(require_api_key)])
stream_router = APIRouter(prefix="/api", tags=["events"])

# Module-level references (configured at startup)
_orchestrator: "SessionOrchestrator | None" = None
_proxy: "EventStreamProxy | None" = None


def configure(orchestrator: "SessionOrchestrator", proxy: "EventStreamProxy") -> None:
    """Configure the API routers with required dependencies."""
    global _orchestrator, _proxy
    _orchestrator = orchestrator
    _proxy = proxy
    logger.info("API routers configured")


def _get_orchestrator() -> "SessionOrchestrator":
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Session orchestrator not available")
    return _orchestrator


# ── Error mapping ────────────────────────────────────────────────────────────

_STATUS_FOR_ERROR: list[tuple[type[DockyardError], int]] = [
    (SessionNotFoundError, 404),
    (SnapshotNotFoundError, 404),
    (SessionStateError, 409),
    (AgentSessionError, 503),
    (AgentServerError, 502),
    (SandboxPlatformError, 502),
]


def status_for_error(error: DockyardError) -> int:
    for error_type, status_code in _STATUS_FOR_ERROR:
        if isinstance(error, error_type):
            return status_code
    return 500


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DockyardError)
    async def _dockyard_error(request: Request, exc: DockyardError) -> JSONResponse:
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# ── Sessions ─────────────────────────────────────────────────────────────────


@router.post("/sessions", status_code=201, response_model=SessionRecord)
async def create_session(body: CreateSessionRequest):
    """Create a session. Returns immediately with status ``creating``."""
    return await _get_orchestrator().create_session(body)


@router.get("/sessions")
async def list_sessions(workspace_id: str | None = Query(default=None)) -> dict[str, Any]:
    sessions = await _get_orchestrator().list_sessions(workspace_id)
    return {"sessions": [s.model_dump(mode="json") for s in sessions]}


@router.get("/sessions/{session_id}", response_model=SessionRecord)
async def get_session(session_id: str):
    return await _get_orchestrator().get_session_status(session_id)


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str) -> Response:
    await _get_orchestrator().destroy_session(session_id)
    return Response(status_code=204)


@router.post("/sessions/{session_id}/retry", response_model=SessionRecord)
async def retry_session(session_id: str):
    return await _get_orchestrator().retry_session(session_id)


@router.post("/sessions/{session_id}/fork", status_code=201, response_model=SessionRecord)
async def fork_session(session_id: str, body: ForkSessionRequest | None = None):
    body = body or ForkSessionRequest()
    return await _get_orchestrator().fork_session(
        session_id, fork_id=body.id, title=body.title, github_token=body.github_token
    )


@router.get("/sessions/{session_id}/password")
async def get_session_password(session_id: str) -> dict[str, Any]:
    """Decrypted agent server password, or null when it cannot be decrypted."""
    return {"password": await _get_orchestrator().get_session_password(session_id)}


# ── Agent pass-throughs ──────────────────────────────────────────────────────


@router.get("/sessions/{session_id}/messages")
async def get_messages(session_id: str) -> dict[str, Any]:
    return {"messages": await _get_orchestrator().get_messages(session_id)}


@router.post("/sessions/{session_id}/messages", status_code=202, response_model=SessionRecord)
async def send_message(session_id: str, body: SendMessageRequest):
    if not body.text.strip():
        raise HTTPException(status_code=400, detail="Message text must not be empty")
    return await _get_orchestrator().send_message(session_id, body.text, model=body.model)


@router.post("/sessions/{session_id}/abort")
async def abort_session(session_id: str) -> dict[str, Any]:
    await _get_orchestrator().abort(session_id)
    return {"aborted": True}


@router.get("/sessions/{session_id}/diff")
async def get_diff(session_id: str) -> dict[str, Any]:
    return {"diff": await _get_orchestrator().get_diff(session_id)}


@router.post("/sessions/{session_id}/permissions/{request_id}")
async def reply_permission(session_id: str, request_id: str, body: PermissionReplyRequest) -> dict[str, Any]:
    await _get_orchestrator().reply_permission(session_id, request_id, body.reply)
    return {"success": True}


@router.post("/sessions/{session_id}/questions/{request_id}")
async def reply_question(session_id: str, request_id: str, body: QuestionReplyRequest) -> dict[str, Any]:
    await _get_orchestrator().reply_question(session_id, request_id, body.answers)
    return {"success": True}


# ── Snapshots ────────────────────────────────────────────────────────────────


@router.post("/sessions/{session_id}/snapshot", status_code=201, response_model=SnapshotRecord)
async def create_snapshot(session_id: str, body: SnapshotCreateRequest):
    if not body.name.strip():
        raise HTTPException(status_code=400, detail="Snapshot name must not be empty")
    return await _get_orchestrator().create_snapshot(session_id, body.name.strip(), body.description)


@router.get("/snapshots")
async def list_snapshots(workspace_id: str | None = Query(default=None)) -> dict[str, Any]:
    snapshots = await _get_orchestrator().list_snapshots(workspace_id)
    return {"snapshots": [s.model_dump(mode="json") for s in snapshots]}


@router.delete("/snapshots/{snapshot_id}", status_code=204)
async def delete_snapshot(snapshot_id: str) -> Response:
    await _get_orchestrator().delete_snapshot(snapshot_id)
    return Response(status_code=204)


@router.post("/snapshots/{snapshot_id}/sessions", status_code=201, response_model=SessionRecord)
async def create_session_from_snapshot(snapshot_id: str, body: SessionFromSnapshotRequest | None = None):
    body = body or SessionFromSnapshotRequest()
    return await _get_orchestrator().create_session_from_snapshot(
        snapshot_id, session_id=body.id, title=body.title, github_token=body.github_token
    )


# ── SSE Streaming ────────────────────────────────────────────────────────────


@stream_router.get("/sessions/{session_id}/events")
async def stream_session_events(
    session_id: str,
    request: Request,
    _authorized: bool = Depends(require_api_key_or_token),
):
    """Proxy the session's agent event stream via SSE.

    Connect with EventSource:
    ```javascript
    const es = new EventSource('/api/sessions/<id>/events?token=YOUR_KEY');
    es.onmessage = (e) => console.log(JSON.parse(e.data));
    ```

    Frames:
    - (default): agent event tagged with ``sessionId`` and ``isParent``
    - heartbeat: keep-alive ping
    - error: terminal failure, the stream closes afterwards
    """
    if _proxy is None:
        raise HTTPException(status_code=503, detail="Event stream proxy not available")
    record = await _get_orchestrator().get_session_status(session_id)

    return StreamingResponse(
        _proxy.events(record, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
