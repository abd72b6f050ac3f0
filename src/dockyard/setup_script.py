"""Batched setup scripts for sandbox provisioning.

The platform's execute primitive can silently drop commands when several are
issued in quick succession, so each provisioning phase is rendered as ONE
bash script and sent as a single execution. All knowledge of that batching
lives here; if the platform stops dropping commands, phases can be split
again without touching the lifecycle controller.

Phases:
- prepare: config file, git auth, clone (clone last so its exit status is
  the script's exit status)
- boot: work dir, branch checkout, skills, instructions, agent server start
- restart: (snapshot/fork) optional config rewrite, git auth, server start
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterable

from dockyard.agent_config import (
    CONFIG_FILENAME,
    INSTRUCTIONS_FILENAME,
    PLATFORM_INSTRUCTIONS,
    PLATFORM_SKILLS,
)
from dockyard.config import AgentServerConfig
from dockyard.models import CustomSkill, RegistrySkill

CLONE_FAILED_MARKER = ".clone-failed"

_BRANCH_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9._\-/]")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def repo_name_from_url(repo_url: str | None) -> str:
    """``https://github.com/acme/widgets.git`` → ``widgets``; no repo → ``project``."""
    if not repo_url:
        return "project"
    name = repo_url.rstrip("/").split("/")[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name or "project"


def work_dir_for(repo_url: str | None, home_dir: str) -> str:
    return f"{home_dir}/{repo_name_from_url(repo_url)}"


def sanitize_branch(branch: str | None) -> str:
    if not branch:
        return ""
    return _BRANCH_UNSAFE_RE.sub("-", branch.strip())


def skill_slug(name: str) -> str:
    return _SLUG_RE.sub("-", name.lower()).strip("-")


class SetupScript:
    """An ordered list of shell steps rendered into a single bash script."""

    def __init__(self) -> None:
        self._steps: list[str] = []
        self._heredocs = 0

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def steps(self) -> list[str]:
        return list(self._steps)

    def add(self, step: str) -> SetupScript:
        self._steps.append(step)
        return self

    def add_file(self, path: str, content: str, *, mkdir: str | None = None) -> SetupScript:
        """Write ``content`` to ``path`` with a quoted heredoc (no expansion).

        ``path`` is emitted unquoted so a leading ``~`` still expands; callers
        only pass paths built from config and slugs.
        """
        self._heredocs += 1
        delimiter = f"DOCKYARD_EOF_{self._heredocs}"
        prefix = f'mkdir -p "{mkdir}" && ' if mkdir else ""
        self._steps.append(f"{prefix}cat > {path} << '{delimiter}'\n{content.rstrip()}\n{delimiter}")
        return self

    def render(self) -> str:
        return "\n".join(self._steps)

    def command(self) -> list[str]:
        """The argv for the platform's execute call."""
        return ["bash", "-c", self.render()]


# ── Phase builders ───────────────────────────────────────────────────────────


def _git_auth_step() -> str:
    return "gh auth setup-git 2>/dev/null || true"


def _start_server_step(agent: AgentServerConfig, work_dir: str) -> str:
    return (
        f"cd {shlex.quote(work_dir)} && nohup {agent.serve_command} --port {agent.port} "
        f"--hostname 0.0.0.0 > {agent.log_path} 2>&1 &"
    )


def _write_config_steps(script: SetupScript, agent: AgentServerConfig, config_json: str) -> None:
    script.add(f"mkdir -p {agent.config_dir}/skills")
    script.add_file(f"{agent.config_dir}/{CONFIG_FILENAME}", config_json)


def build_prepare_script(
    agent: AgentServerConfig,
    config_json: str,
    *,
    repo_url: str | None = None,
    work_dir: str | None = None,
) -> SetupScript:
    script = SetupScript()
    _write_config_steps(script, agent, config_json)
    script.add(_git_auth_step())
    if repo_url:
        target = work_dir or work_dir_for(repo_url, agent.home_dir)
        script.add(
            f"cd {shlex.quote(agent.home_dir)} && git clone {shlex.quote(repo_url)} "
            f"{shlex.quote(target)} 2>&1"
        )
    return script


def build_boot_script(
    agent: AgentServerConfig,
    work_dir: str,
    *,
    repo_url: str | None = None,
    branch: str | None = None,
    custom_skills: Iterable[CustomSkill] = (),
    registry_skills: Iterable[RegistrySkill] = (),
) -> SetupScript:
    script = SetupScript()
    quoted_dir = shlex.quote(work_dir)

    # Work dir always exists so the server can start even when the clone failed.
    if repo_url:
        script.add(
            f"if [ ! -d {quoted_dir}/.git ]; then mkdir -p {quoted_dir} && "
            f"touch {quoted_dir}/{CLONE_FAILED_MARKER}; fi"
        )
    script.add(f"mkdir -p {quoted_dir}")

    safe_branch = sanitize_branch(branch)
    if repo_url and safe_branch:
        quoted_branch = shlex.quote(safe_branch)
        script.add(
            f"if [ -d {quoted_dir}/.git ]; then cd {quoted_dir} && "
            f"(git checkout -b {quoted_branch} || git checkout {quoted_branch}) 2>/dev/null || true; fi"
        )

    skills_dir = f"{agent.config_dir}/skills"
    for skill in custom_skills:
        slug = skill_slug(skill.name) or "skill"
        content = skill.content
        if not content.startswith("---"):
            content = f'---\nname: "{skill.name}"\n---\n\n{content}'
        target = f"{skills_dir}/custom-{slug}"
        script.add_file(f"{target}/SKILL.md", content, mkdir=target)

    for skill in registry_skills:
        script.add(
            f"cd /tmp && bunx skills add {shlex.quote(skill.repo)} --skill "
            f"{shlex.quote(skill.skill_name)} --agent opencode -y 2>/dev/null && "
            f"cp -r /tmp/.agents/skills/* {skills_dir}/ 2>/dev/null || true"
        )

    for platform_skill in PLATFORM_SKILLS:
        target = f"{skills_dir}/{platform_skill.slug}"
        script.add_file(f"{target}/SKILL.md", platform_skill.content, mkdir=target)

    script.add_file(f"{agent.config_dir}/{INSTRUCTIONS_FILENAME}", PLATFORM_INSTRUCTIONS)
    script.add(_start_server_step(agent, work_dir))
    return script


def build_restart_script(
    agent: AgentServerConfig,
    work_dir: str,
    *,
    config_json: str | None = None,
) -> SetupScript:
    script = SetupScript()
    if config_json is not None:
        _write_config_steps(script, agent, config_json)
    script.add(_git_auth_step())
    script.add(_start_server_step(agent, work_dir))
    return script
