"""Agent server configuration generation.

Builds the JSON config file written into every sandbox before the agent
server starts, plus the fixed platform skills and instruction file that every
sandbox receives.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from dockyard.models import SourceConfig, WorkspaceSettings

CONFIG_SCHEMA_URL = "https://opencode.ai/config.json"
CONFIG_FILENAME = "opencode.json"
INSTRUCTIONS_FILENAME = "ui-spec-instructions.md"


def generate_agent_config(
    settings: WorkspaceSettings | None = None,
    rules: list[str] | None = None,
    sources: list[SourceConfig] | None = None,
    *,
    default_model: str = "anthropic/claude-sonnet-4-5",
) -> dict[str, Any]:
    """Generate the agent server config for a sandbox.

    Rules are passed through verbatim. Enabled MCP sources are translated:
    ``stdio`` becomes a ``local`` server with a command vector, ``sse``
    becomes ``remote``, and any other type is passed through with its own
    config keys.
    """
    settings = settings or WorkspaceSettings()
    model = settings.default_model or default_model

    config: dict[str, Any] = {
        "$schema": CONFIG_SCHEMA_URL,
        "agent": {
            "build": {"mode": "primary", "model": model},
            "plan": {
                "mode": "primary",
                "model": default_model,
                "permission": {"edit": "deny", "bash": "ask"},
            },
        },
        "instructions": [f"{{config}}/{INSTRUCTIONS_FILENAME}"],
    }

    if rules:
        config["rules"] = list(rules)

    enabled = [s for s in (sources or []) if s.enabled]
    if enabled:
        mcp: dict[str, Any] = {}
        for source in enabled:
            if source.type == "stdio":
                command = source.config.get("command")
                args = source.config.get("args") or []
                mcp[source.name] = {
                    "type": "local",
                    "command": [command, *args] if command else list(args),
                    "enabled": True,
                }
            elif source.type == "sse":
                mcp[source.name] = {
                    "type": "remote",
                    "url": source.config.get("url"),
                    "enabled": True,
                }
            else:
                mcp[source.name] = {**source.config, "type": source.type, "enabled": True}
        config["mcp"] = mcp

    return config


def serialize_agent_config(config: dict[str, Any]) -> str:
    return json.dumps(config, indent=2)


# ── Platform files ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PlatformSkill:
    slug: str
    content: str


PLATFORM_SKILLS: tuple[PlatformSkill, ...] = (
    PlatformSkill(
        slug="ui-spec-core",
        content="""\
---
name: ui-spec-core
description: Render structured results as UI specs instead of long tables.
---

When a result is naturally a table, chart, checklist or form, emit a fenced
code block with the language tag `ui_spec` containing a JSON object with a
`root` element id and an `elements` map. Keep prose outside the block.
""",
    ),
    PlatformSkill(
        slug="ui-spec-components",
        content="""\
---
name: ui-spec-components
description: Component catalogue available to ui_spec blocks.
---

Available element types: `Card`, `Stack`, `Table`, `Metric`, `Badge`,
`Checklist`, `CodeBlock`. Every element has `type`, `props` and an optional
`children` list of element ids.
""",
    ),
)

PLATFORM_INSTRUCTIONS = """\
# Output conventions

- Prefer short prose. Use `ui_spec` code fences for structured output.
- Never print secrets or environment variable values.
- The project lives in the current working directory. If a file named
  `.clone-failed` exists there, the repository could not be cloned; say so
  before starting work.
"""
