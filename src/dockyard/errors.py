"""Error taxonomy for Dockyard and the operator-facing failure hints.

Provisioning and agent-session failures end up persisted on the session row
as plain text. ``classify_failure`` attaches a short advisory hint to that
text so an operator can tell "probably missing credentials" from "probably
the sandbox never came up" without reading logs. The hint is a guess, never
used for control flow.
"""

from __future__ import annotations

import re


class DockyardError(Exception):
    """Base class for all Dockyard errors."""


class SessionNotFoundError(DockyardError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SnapshotNotFoundError(DockyardError):
    def __init__(self, snapshot_id: str):
        super().__init__(f"Snapshot not found: {snapshot_id}")
        self.snapshot_id = snapshot_id


class SessionStateError(DockyardError):
    """The requested operation is not valid for the session's current state."""


class SandboxPlatformError(DockyardError):
    """The sandbox platform API returned an error or an unusable response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProvisioningError(DockyardError):
    """Sandbox setup failed after the sandbox was allocated."""


class AgentServerError(DockyardError):
    """The agent server inside a sandbox returned an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AgentSessionError(DockyardError):
    """No upstream agent session could be established within the allowed retries."""


# ── Failure hints ────────────────────────────────────────────────────────────

HINT_CREDENTIALS = (
    "Likely missing or invalid credentials: check the provider API key secrets "
    "configured on the sandbox platform and the platform API key."
)
HINT_CONNECTIVITY = (
    "Likely a network or startup failure: the sandbox or agent server did not "
    "become reachable in time. Retrying usually helps."
)
HINT_QUOTA = "Likely a platform quota or rate limit: wait and try again."

# Evaluated in order, first match wins.
FAILURE_HINT_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(401|403)\b|unauthori[sz]ed|forbidden", re.IGNORECASE), HINT_CREDENTIALS),
    (re.compile(r"api[_ -]?key|credential|secret|auth(entication)? (failed|error)", re.IGNORECASE), HINT_CREDENTIALS),
    (re.compile(r"\b429\b|rate limit|quota", re.IGNORECASE), HINT_QUOTA),
    (re.compile(r"time(d)? ?out|timeout", re.IGNORECASE), HINT_CONNECTIVITY),
    (
        re.compile(
            r"connect(ion)? (refused|reset|error)|connecterror|name or service not known"
            r"|getaddrinfo|dns|network|unreachable",
            re.IGNORECASE,
        ),
        HINT_CONNECTIVITY,
    ),
    (re.compile(r"\b(502|503|504)\b|not ready|bad gateway", re.IGNORECASE), HINT_CONNECTIVITY),
]


def classify_failure(error: BaseException | str) -> str | None:
    """Return an advisory hint for a failure, or None if nothing matches."""
    text = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
    for pattern, hint in FAILURE_HINT_RULES:
        if pattern.search(text):
            return hint
    return None
