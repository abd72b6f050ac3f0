"""Health Monitor: per-session probe bookkeeping.

Holds only in-memory state: when each session was last probed and how many
probes in a row have failed. The orchestrator decides when to probe and
performs the demotion; this module only answers "is a probe due?" and
"has it failed often enough?".
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class HealthCacheEntry:
    last_checked_at: float | None = None
    consecutive_failures: int = 0


class HealthMonitor:
    def __init__(
        self,
        *,
        ttl_seconds: float = 15.0,
        failure_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.failure_threshold = failure_threshold
        self.clock = clock
        self._entries: dict[str, HealthCacheEntry] = {}

    def _entry(self, session_id: str) -> HealthCacheEntry:
        entry = self._entries.get(session_id)
        if entry is None:
            entry = self._entries[session_id] = HealthCacheEntry()
        return entry

    def get_last_checked_at(self, session_id: str) -> float | None:
        entry = self._entries.get(session_id)
        return entry.last_checked_at if entry else None

    def set_last_checked_at(self, session_id: str, at: float | None = None) -> None:
        self._entry(session_id).last_checked_at = self.clock() if at is None else at

    def is_due(self, session_id: str, now: float | None = None) -> bool:
        last = self.get_last_checked_at(session_id)
        if last is None:
            return True
        now = self.clock() if now is None else now
        return now - last >= self.ttl_seconds

    def record_result(self, session_id: str, healthy: bool) -> int:
        """Record a probe result and return the consecutive failure count."""
        entry = self._entry(session_id)
        entry.consecutive_failures = 0 if healthy else entry.consecutive_failures + 1
        return entry.consecutive_failures

    def consecutive_failures(self, session_id: str) -> int:
        entry = self._entries.get(session_id)
        return entry.consecutive_failures if entry else 0

    def should_mark_terminated(self, session_id: str) -> bool:
        return self.consecutive_failures(session_id) >= self.failure_threshold

    def forget(self, session_id: str) -> None:
        self._entries.pop(session_id, None)
