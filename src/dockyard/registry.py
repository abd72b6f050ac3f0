"""Session Registry: SQLite-backed session and snapshot storage.

Rows are the only durable state Dockyard keeps. Sandbox handles, agent
clients and health counters are process-local and rebuilt from these rows.

Status changes are conditional updates: once a session reaches ``error`` or
``terminated`` no later write can move it anywhere else, which keeps a slow
background task from resurrecting a session the health monitor already
demoted.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from dockyard.models import SessionRecord, SessionStatus, SnapshotRecord, parse_metadata

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    title TEXT,
    agent TEXT,
    model TEXT,
    status TEXT NOT NULL DEFAULT 'creating',
    sandbox_id TEXT,
    sandbox_url TEXT,
    agent_session_id TEXT,
    forked_from_session_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS snapshots (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    snapshot_id TEXT NOT NULL,
    source_session_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_workspace ON sessions(workspace_id);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);
CREATE INDEX IF NOT EXISTS idx_snapshots_workspace ON snapshots(workspace_id);
"""

TERMINAL_STATUSES = (SessionStatus.ERROR.value, SessionStatus.TERMINATED.value)

# Columns update_session may write.
_UPDATABLE = frozenset(
    {
        "title",
        "agent",
        "model",
        "status",
        "sandbox_id",
        "sandbox_url",
        "agent_session_id",
        "metadata",
    }
)

INTERRUPTED_MESSAGE = "Session creation was interrupted by a restart"


class SessionRegistry:
    """SQLite-backed session/snapshot registry with async access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Session registry initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized, call initialize() first")
        return self._db

    # ── Sessions ─────────────────────────────────────────────────────────

    async def create_session(self, record: SessionRecord) -> tuple[SessionRecord, bool]:
        """Insert a session unless its id already exists.

        Returns the stored row and whether this call inserted it. A repeated
        id returns the first row unchanged.
        """
        now = datetime.now(timezone.utc).isoformat()
        cursor = await self.db.execute(
            """INSERT OR IGNORE INTO sessions
               (id, workspace_id, title, agent, model, status, sandbox_id,
                sandbox_url, agent_session_id, forked_from_session_id,
                metadata, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id,
                record.workspace_id,
                record.title,
                record.agent,
                record.model,
                record.status.value,
                record.sandbox_id,
                record.sandbox_url,
                record.agent_session_id,
                record.forked_from_session_id,
                json.dumps(record.metadata),
                now,
                now,
            ),
        )
        await self.db.commit()
        created = cursor.rowcount == 1

        stored = await self.get_session(record.id)
        if stored is None:
            raise RuntimeError(f"Session {record.id} missing after insert")
        if created:
            logger.info("Created session: %s (workspace=%s)", record.id, record.workspace_id)
        else:
            logger.info("Session %s already exists, returning existing row", record.id)
        return stored, created

    async def get_session(self, session_id: str) -> SessionRecord | None:
        cursor = await self.db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
        row = await cursor.fetchone()
        return self._row_to_session(row) if row else None

    async def list_sessions(self, workspace_id: str | None = None) -> list[SessionRecord]:
        """Sessions newest first, optionally limited to one workspace."""
        if workspace_id is None:
            cursor = await self.db.execute("SELECT * FROM sessions ORDER BY created_at DESC")
        else:
            cursor = await self.db.execute(
                "SELECT * FROM sessions WHERE workspace_id = ? ORDER BY created_at DESC",
                (workspace_id,),
            )
        rows = await cursor.fetchall()
        return [self._row_to_session(row) for row in rows]

    async def update_session(
        self,
        session_id: str,
        *,
        expected_status: SessionStatus | None = None,
        **fields: Any,
    ) -> bool:
        """Write ``fields`` to a session row. Returns False if nothing matched.

        A status change never leaves a terminal status. ``expected_status``
        additionally requires the row to currently be in that status.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")

        assignments: list[str] = []
        params: list[Any] = []
        for name, value in fields.items():
            if name == "metadata":
                value = json.dumps(value or {})
            elif isinstance(value, SessionStatus):
                value = value.value
            assignments.append(f"{name} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.append(datetime.now(timezone.utc).isoformat())

        sql = f"UPDATE sessions SET {', '.join(assignments)} WHERE id = ?"
        params.append(session_id)
        if "status" in fields:
            sql += " AND status NOT IN (?, ?)"
            params.extend(TERMINAL_STATUSES)
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status.value)

        cursor = await self.db.execute(sql, params)
        await self.db.commit()
        return cursor.rowcount > 0

    async def merge_metadata(
        self, session_id: str, updates: dict[str, Any], **fields: Any
    ) -> bool:
        """Merge ``updates`` into the stored metadata (``None`` values delete keys)."""
        current = await self.get_session(session_id)
        if current is None:
            return False
        metadata = dict(current.metadata)
        for key, value in updates.items():
            if value is None:
                metadata.pop(key, None)
            else:
                metadata[key] = value
        return await self.update_session(session_id, metadata=metadata, **fields)

    async def delete_session(self, session_id: str) -> bool:
        cursor = await self.db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await self.db.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted session: %s", session_id)
        return deleted

    async def recover_interrupted_sessions(self) -> int:
        """Mark sessions that were still provisioning when the process died.

        Only rows with no sandbox are touched: their background task is gone
        and nothing can finish them. Rows with a sandbox but no agent session
        stay ``creating`` so they can be retried.
        """
        cursor = await self.db.execute(
            "SELECT * FROM sessions WHERE status = ? AND sandbox_id IS NULL",
            (SessionStatus.CREATING.value,),
        )
        rows = await cursor.fetchall()
        count = 0
        for row in rows:
            record = self._row_to_session(row)
            metadata = {**record.metadata, "error": INTERRUPTED_MESSAGE}
            if await self.update_session(
                record.id,
                expected_status=SessionStatus.CREATING,
                status=SessionStatus.ERROR,
                metadata=metadata,
            ):
                count += 1
        if count:
            logger.warning("Marked %d interrupted session(s) as error", count)
        return count

    # ── Snapshots ────────────────────────────────────────────────────────

    async def create_snapshot(self, record: SnapshotRecord) -> SnapshotRecord:
        await self.db.execute(
            """INSERT INTO snapshots
               (id, workspace_id, name, description, snapshot_id,
                source_session_id, metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id,
                record.workspace_id,
                record.name,
                record.description,
                record.snapshot_id,
                record.source_session_id,
                json.dumps(record.metadata),
                record.created_at.isoformat(),
            ),
        )
        await self.db.commit()
        logger.info("Recorded snapshot %s (%s) for session %s", record.id, record.name, record.source_session_id)
        return record

    async def get_snapshot(self, snapshot_db_id: str) -> SnapshotRecord | None:
        cursor = await self.db.execute("SELECT * FROM snapshots WHERE id = ?", (snapshot_db_id,))
        row = await cursor.fetchone()
        return self._row_to_snapshot(row) if row else None

    async def list_snapshots(self, workspace_id: str | None = None) -> list[SnapshotRecord]:
        if workspace_id is None:
            cursor = await self.db.execute("SELECT * FROM snapshots ORDER BY created_at DESC")
        else:
            cursor = await self.db.execute(
                "SELECT * FROM snapshots WHERE workspace_id = ? ORDER BY created_at DESC",
                (workspace_id,),
            )
        rows = await cursor.fetchall()
        return [self._row_to_snapshot(row) for row in rows]

    async def delete_snapshot(self, snapshot_db_id: str) -> bool:
        cursor = await self.db.execute("DELETE FROM snapshots WHERE id = ?", (snapshot_db_id,))
        await self.db.commit()
        return cursor.rowcount > 0

    # ── Row mapping ──────────────────────────────────────────────────────

    @staticmethod
    def _row_to_session(row: aiosqlite.Row) -> SessionRecord:
        return SessionRecord(
            id=row["id"],
            workspace_id=row["workspace_id"],
            title=row["title"],
            agent=row["agent"],
            model=row["model"],
            status=SessionStatus(row["status"]),
            sandbox_id=row["sandbox_id"],
            sandbox_url=row["sandbox_url"],
            agent_session_id=row["agent_session_id"],
            forked_from_session_id=row["forked_from_session_id"],
            metadata=parse_metadata(row["metadata"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_snapshot(row: aiosqlite.Row) -> SnapshotRecord:
        return SnapshotRecord(
            id=row["id"],
            workspace_id=row["workspace_id"],
            name=row["name"],
            description=row["description"],
            snapshot_id=row["snapshot_id"],
            source_session_id=row["source_session_id"],
            metadata=parse_metadata(row["metadata"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
