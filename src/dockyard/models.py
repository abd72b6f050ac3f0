"""Core data models for Dockyard."""

from __future__ import annotations

import enum
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Session Status ───────────────────────────────────────────────────────────


class SessionStatus(str, enum.Enum):
    """Session lifecycle states.

    creating → active | error; active → terminated (health monitor only).
    ``error`` and ``terminated`` are terminal: recovery means a new session
    (create or fork), never resurrection.
    """

    CREATING = "creating"
    ACTIVE = "active"
    ERROR = "error"
    TERMINATED = "terminated"


# ── Session Record ───────────────────────────────────────────────────────────


class SessionRecord(BaseModel):
    """One user-facing conversation bound to at most one live sandbox."""

    id: str = Field(description="Client-generated identifier (idempotency key)")
    workspace_id: str = "default"
    title: str | None = None
    agent: str | None = None
    model: str | None = None
    status: SessionStatus = SessionStatus.CREATING
    sandbox_id: str | None = None
    sandbox_url: str | None = Field(default=None, description="Externally reachable agent URL")
    agent_session_id: str | None = Field(
        default=None, description="Session id on the agent server inside the sandbox"
    )
    forked_from_session_id: str | None = None
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="repoUrl, branch, workDir, encrypted agentPassword, error, errorHint",
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_ready(self) -> bool:
        """Whether the session can talk to its agent server."""
        return bool(self.sandbox_id and self.sandbox_url and self.agent_session_id)

    @property
    def repo_url(self) -> str | None:
        value = self.metadata.get("repoUrl")
        return value if isinstance(value, str) and value else None

    @property
    def branch(self) -> str | None:
        value = self.metadata.get("branch")
        return value if isinstance(value, str) and value else None


class SnapshotRecord(BaseModel):
    """A durable, user-named capture of a sandbox filesystem."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workspace_id: str = "default"
    name: str
    description: str | None = None
    snapshot_id: str = Field(description="Platform-assigned snapshot id")
    source_session_id: str | None = None
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="repoUrl, branch, workDir (needed to restart the agent)"
    )
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def work_dir(self) -> str | None:
        value = self.metadata.get("workDir")
        return value if isinstance(value, str) and value else None


# ── Sandbox Handle ───────────────────────────────────────────────────────────


@dataclass
class SandboxHandle:
    """Live connection details for a running sandbox.

    Owned by exactly one session. ``credential`` is plaintext and must be
    encrypted before it is persisted.
    """

    sandbox_id: str
    sandbox_url: str
    credential: str
    work_dir: str
    clone_warning: str | None = None
    snapshot_id: str | None = None


# ── Setup inputs ─────────────────────────────────────────────────────────────


class CustomSkill(BaseModel):
    name: str
    content: str


class RegistrySkill(BaseModel):
    repo: str
    skill_name: str


class SourceConfig(BaseModel):
    """An MCP source attached to a workspace."""

    name: str
    type: str
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class WorkspaceSettings(BaseModel):
    default_model: str | None = None
    default_agent: str | None = None


# ── API request bodies ───────────────────────────────────────────────────────


class CreateSessionRequest(BaseModel):
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Client-chosen id; repeating it never creates a second sandbox",
    )
    workspace_id: str = "default"
    repo_url: str | None = None
    branch: str | None = None
    prompt: str | None = None
    agent: str | None = None
    model: str | None = None
    custom_skills: list[CustomSkill] = Field(default_factory=list)
    registry_skills: list[RegistrySkill] = Field(default_factory=list)
    sources: list[SourceConfig] = Field(default_factory=list)
    rules: list[str] = Field(default_factory=list, description="Extra agent rules")
    github_token: str | None = Field(
        default=None, description="Vault-encrypted GitHub token from user settings"
    )
    env: dict[str, str] = Field(default_factory=dict)


class ForkSessionRequest(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str | None = None
    github_token: str | None = None


class SnapshotCreateRequest(BaseModel):
    name: str
    description: str | None = None


class SessionFromSnapshotRequest(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str | None = None
    github_token: str | None = None


class SendMessageRequest(BaseModel):
    text: str
    model: str | None = None


class PermissionReplyRequest(BaseModel):
    reply: Literal["once", "always", "reject"]


class QuestionReplyRequest(BaseModel):
    answers: list[list[str]]


# ── Helpers ──────────────────────────────────────────────────────────────────

TITLE_MAX_LENGTH = 60


def auto_title(text: str | None) -> str | None:
    """Derive a session title from a prompt, truncated to 60 characters."""
    if not text:
        return None
    text = text.strip()
    if len(text) > TITLE_MAX_LENGTH:
        return text[: TITLE_MAX_LENGTH - 3] + "..."
    return text or None


def parse_metadata(raw: Any) -> dict[str, Any]:
    """Parse a metadata value that may be a dict or a double-encoded JSON string.

    Anything that is not ultimately a JSON object becomes ``{}``.
    """
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        if isinstance(parsed, str):
            return parse_metadata(parsed)
        return parsed if isinstance(parsed, dict) else {}
    if isinstance(raw, dict):
        return dict(raw)
    return {}
