from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

from .retry import is_transient_error, retry_call
from .sync_core import (
    DEFAULT_SKILL_SOURCE,
    SkillFailure,
    SkillRecord,
    invalid_source_reason,
    is_valid_source,
    normalize_skills,
)

logger = logging.getLogger(__name__)

SKILLS_LOCK_FILENAMES = ("skills-lock.json", ".skill-lock.json")
NPX_COMMAND = "npx.cmd" if sys.platform == "win32" else "npx"
COMMAND_TIMEOUT_S = 120.0

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")

# `skills list -g` output lines that are never skill names.
_LIST_SKIP_PREFIXES = (
    "Agents:",
    "No project skills found",
    "Try listing global skills",
    "No global skills found",
    "Try listing project skills without -g",
)
_NO_SKILLS_MARKERS = (
    "No global skills found",
    "Try listing project skills without -g",
)


class SkillsCommandError(RuntimeError):
    pass


@dataclass(frozen=True)
class CommandOutput:
    stdout: str
    stderr: str

    @property
    def text(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


@dataclass(frozen=True)
class OperationResult:
    succeeded: tuple[SkillRecord, ...]
    failed: tuple[SkillFailure, ...]


class CommandRunner(Protocol):
    def __call__(self, args: Sequence[str]) -> CommandOutput:
        ...


def run_skills_command(args: Sequence[str]) -> CommandOutput:
    """Run ``npx skills <args>`` and return its output; non-zero exit raises SkillsCommandError."""
    cmd = [NPX_COMMAND, "skills", *args]
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT_S,
            shell=sys.platform == "win32",
            check=False,
        )
    except FileNotFoundError as e:
        raise SkillsCommandError(f"{NPX_COMMAND} not found. Install Node.js to manage skills.") from e

    out = CommandOutput(stdout=proc.stdout or "", stderr=proc.stderr or "")
    if proc.returncode != 0:
        detail = out.text or f"exit status {proc.returncode}"
        raise SkillsCommandError(f"`skills {' '.join(args)}` failed: {detail}")
    return out


# ---------------------------------------------------------------------------
# Parsing


def _lock_source(obj: Mapping[str, Any]) -> str:
    source = obj.get("source")
    if isinstance(source, str):
        return source
    repo = obj.get("repo")
    if isinstance(repo, str):
        return repo
    return DEFAULT_SKILL_SOURCE


def _extract_lock_items(items: Iterable[Any]) -> list[SkillRecord]:
    out: list[SkillRecord] = []
    for item in items:
        if isinstance(item, str):
            out.append(SkillRecord(source=DEFAULT_SKILL_SOURCE, name=item))
            continue
        if isinstance(item, dict):
            name = item.get("name")
            if not isinstance(name, str):
                name = item.get("skill")
            if not isinstance(name, str):
                name = ""
            out.append(SkillRecord(source=_lock_source(item), name=name))
            continue
        out.append(SkillRecord(source=DEFAULT_SKILL_SOURCE, name=str(item)))
    return out


def parse_skills_lock(raw: str) -> list[SkillRecord]:
    """
    Parse a skills lock file.

    Supported shapes:
      {"skills": [...]}                      list of names or objects
      {"skills": {"<name>": {"source": ...}}}
      [...]
      {"installedSkills": [...]}

    Objects may use ``name``/``skill`` for the name and ``source``/``repo`` for
    the source. Raises ValueError for invalid JSON.
    """
    parsed = json.loads(raw)

    if isinstance(parsed, list):
        return _extract_lock_items(parsed)
    if not isinstance(parsed, dict):
        return []

    skills = parsed.get("skills")
    if isinstance(skills, list):
        return _extract_lock_items(skills)
    if isinstance(skills, dict):
        out: list[SkillRecord] = []
        for name, meta in skills.items():
            source = _lock_source(meta) if isinstance(meta, dict) else DEFAULT_SKILL_SOURCE
            out.append(SkillRecord(source=source, name=str(name)))
        return out

    installed = parsed.get("installedSkills")
    if isinstance(installed, list):
        return _extract_lock_items(installed)
    return []


def parse_skills_list_output(output: str) -> list[SkillRecord]:
    cleaned = _ANSI_RE.sub("", output)
    skills: list[SkillRecord] = []
    for line in (ln.strip() for ln in cleaned.splitlines()):
        if not line or line == "Global Skills":
            continue
        if line.startswith(_LIST_SKIP_PREFIXES):
            continue
        name = line.split()[0]
        # Path-like tokens are install locations, not names.
        if "\\" in name or "/" in name or "~" in name:
            continue
        skills.append(SkillRecord(source=DEFAULT_SKILL_SOURCE, name=name))
    return normalize_skills(skills)


def candidate_lock_paths(
    *,
    cwd: Path | None = None,
    home: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> list[Path]:
    cwd = (cwd or Path.cwd()).resolve()
    home = (home or Path.home()).resolve()
    env = os.environ if env is None else env

    paths: list[Path] = []
    for filename in SKILLS_LOCK_FILENAMES:
        paths.extend(
            [
                cwd / filename,
                home / filename,
                home / ".config" / "skills" / filename,
                home / ".config" / "skillhub" / filename,
                home / ".skills" / filename,
                home / ".agents" / filename,
            ]
        )
        for var in ("APPDATA", "LOCALAPPDATA"):
            base = env.get(var)
            if base:
                paths.append(Path(base).resolve() / "skills" / filename)

    return list(dict.fromkeys(paths))


def hydrate_sources_from_lock(
    list_skills: Iterable[SkillRecord],
    lock_skills: Iterable[SkillRecord],
) -> list[SkillRecord]:
    """Fill in sources for listed skills by name, preferring lock entries with a valid source."""
    by_name: dict[str, list[SkillRecord]] = {}
    for skill in lock_skills:
        by_name.setdefault(skill.name, []).append(skill)

    hydrated: list[SkillRecord] = []
    for skill in list_skills:
        matches = by_name.get(skill.name)
        if not matches:
            hydrated.append(skill)
            continue
        preferred = next((m for m in matches if is_valid_source(m.source)), matches[0])
        hydrated.append(SkillRecord(source=preferred.source, name=skill.name))
    return normalize_skills(hydrated)


# ---------------------------------------------------------------------------
# Service


class LocalSkillsService:
    """Reads and mutates the globally installed skills through the external ``skills`` tool."""

    def __init__(
        self,
        *,
        runner: CommandRunner = run_skills_command,
        lock_paths: Sequence[Path] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._runner = runner
        self._lock_paths = list(lock_paths) if lock_paths is not None else None
        self._sleep = sleep

    @property
    def lock_paths(self) -> list[Path]:
        if self._lock_paths is None:
            self._lock_paths = candidate_lock_paths()
        return self._lock_paths

    def _run(self, args: Sequence[str]) -> CommandOutput:
        kwargs: dict[str, Any] = {"label": f"skills {' '.join(args)}", "should_retry": is_transient_error}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return retry_call(lambda: self._runner(args), **kwargs)

    def read_lock_skills(self) -> list[SkillRecord]:
        for path in self.lock_paths:
            try:
                raw = path.read_text(encoding="utf-8")
                parsed = parse_skills_lock(raw)
            except (OSError, ValueError):
                continue
            if parsed:
                logger.debug("Using skills lock file %s", path)
                return normalize_skills(parsed)
        return []

    def list_local_skills(self) -> list[SkillRecord]:
        output = self._run(["list", "-g"]).text
        if any(marker in output for marker in _NO_SKILLS_MARKERS):
            return []

        from_list = parse_skills_list_output(output)
        from_lock = self.read_lock_skills()

        if from_list:
            if from_lock:
                return hydrate_sources_from_lock(from_list, from_lock)
            return from_list
        if from_lock:
            return from_lock

        lines = [
            "Unable to construct local skills list.",
            "- skills list -g output:",
            output,
            "",
            "- Searched lock paths:",
            *[f"  - {p}" for p in self.lock_paths],
        ]
        raise SkillsCommandError("\n".join(lines))

    def install_skills(self, skills: Iterable[SkillRecord]) -> OperationResult:
        succeeded: list[SkillRecord] = []
        failed: list[SkillFailure] = []
        for skill in skills:
            if not is_valid_source(skill.source):
                reason = invalid_source_reason(skill.source)
                failed.append(SkillFailure(skill=skill, reason=reason))
                logger.warning("Skill install failed: %s (from %s): %s", skill.name, skill.source, reason)
                continue
            try:
                out = self._run(["add", skill.source, "--skill", skill.name, "--global", "--yes"])
            except Exception as e:  # noqa: BLE001 - reported per skill, the run continues
                failed.append(SkillFailure(skill=skill, reason=str(e)))
                logger.warning("Skill install failed: %s (from %s): %s", skill.name, skill.source, e)
                continue
            if out.text:
                logger.info("%s", out.text)
            succeeded.append(skill)
        return OperationResult(succeeded=tuple(succeeded), failed=tuple(failed))

    def remove_skills(self, skills: Iterable[SkillRecord]) -> OperationResult:
        succeeded: list[SkillRecord] = []
        failed: list[SkillFailure] = []
        seen: set[str] = set()
        for skill in skills:
            if skill.key in seen:
                continue
            seen.add(skill.key)
            try:
                out = self._run(["remove", "--skill", skill.name, "--global", "--yes"])
            except Exception as e:  # noqa: BLE001 - reported per skill, the run continues
                failed.append(SkillFailure(skill=skill, reason=str(e)))
                logger.warning("Skill remove failed: %s (from %s): %s", skill.name, skill.source, e)
                continue
            if out.text:
                logger.info("%s", out.text)
            succeeded.append(skill)
        return OperationResult(succeeded=tuple(succeeded), failed=tuple(failed))
