"""
Reconciliation engine for local skills and the remote backup payload.

Everything here is pure: callers pass in both sides of the sync (plus the
current time) and get back a plan describing what should be installed,
removed or uploaded. Nothing in this module performs I/O.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Mapping, Sequence, Union

DEFAULT_SKILL_SOURCE = "vercel-labs/agent-skills"

# Lines the `skills` tool prints when nothing is installed. They occasionally
# end up parsed as skill names.
DIAGNOSTIC_NAME_SUBSTRINGS = (
    "No global skills found",
    "Try listing project skills without -g",
    "No project skills found",
    "Try listing global skills",
)

STRATEGIES = ("union", "latest")

_SOURCE_RE = re.compile(r"[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+")
_DATE_ONLY_RE = re.compile(r"\d{4}-\d{2}-\d{2}")

Strategy = Literal["union", "latest"]
SyncMode = Literal["merge", "auto", "pull", "push"]


class InvalidStrategyError(ValueError):
    pass


@dataclass(frozen=True, order=True)
class SkillRecord:
    # Field order doubles as the canonical sort order.
    source: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.source}:{self.name}"

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "source": self.source}


# A payload entry is either a legacy bare name or a record-shaped object.
SkillEntry = Union[str, Mapping[str, Any], SkillRecord]


@dataclass(frozen=True)
class SkillhubPayload:
    skills: tuple[SkillEntry, ...]
    updated_at: str

    @classmethod
    def empty(cls) -> "SkillhubPayload":
        return cls(skills=(), updated_at="")

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "SkillhubPayload":
        skills = obj.get("skills")
        updated_at = obj.get("updatedAt")
        return cls(
            skills=tuple(skills) if isinstance(skills, list) else (),
            updated_at=updated_at if isinstance(updated_at, str) else "",
        )

    def to_dict(self) -> dict[str, Any]:
        skills: list[Any] = []
        for entry in self.skills:
            if isinstance(entry, SkillRecord):
                skills.append(entry.to_dict())
            elif isinstance(entry, Mapping):
                skills.append(dict(entry))
            else:
                skills.append(entry)
        return {"skills": skills, "updatedAt": self.updated_at}


@dataclass(frozen=True)
class SyncPlan:
    mode: SyncMode
    local_skills: tuple[SkillRecord, ...]
    remote_skills: tuple[SkillRecord, ...]
    install_candidates: tuple[SkillRecord, ...] = ()
    remove_candidates: tuple[SkillRecord, ...] = ()
    upload_payload: SkillhubPayload | None = None
    is_remote_newer: bool = False


@dataclass(frozen=True)
class SkillFailure:
    skill: SkillRecord
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"skill": self.skill.to_dict(), "reason": self.reason}


# ---------------------------------------------------------------------------
# Timestamps


def parse_timestamp(value: str | None) -> float | None:
    """
    Parse an ISO-8601 timestamp into epoch seconds.

    Returns None for empty input or anything that does not parse. Date-only
    values are UTC; date-times without an offset are local time.
    """
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None and _DATE_ONLY_RE.fullmatch(raw):
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Normalization


def has_skill_name(skill: SkillRecord) -> bool:
    return len(skill.name) > 0


def is_not_diagnostic_artifact(skill: SkillRecord) -> bool:
    return not any(bad in skill.name for bad in DIAGNOSTIC_NAME_SUBSTRINGS)


def _coerce_entry(entry: SkillEntry, default_source: str) -> SkillRecord:
    if isinstance(entry, SkillRecord):
        return SkillRecord(source=entry.source or default_source, name=entry.name)
    if isinstance(entry, str):
        return SkillRecord(source=default_source, name=entry)
    if isinstance(entry, Mapping):
        name = entry.get("name")
        source = entry.get("source")
        return SkillRecord(
            source=str(source) if source else default_source,
            name="" if name is None else str(name),
        )
    return SkillRecord(source=default_source, name="")


def normalize_skills(
    skills: Iterable[SkillEntry],
    *,
    default_source: str = DEFAULT_SKILL_SOURCE,
) -> list[SkillRecord]:
    records = [_coerce_entry(entry, default_source) for entry in skills]
    kept = [r for r in records if has_skill_name(r) and is_not_diagnostic_artifact(r)]
    return dedupe_sort(kept)


# ---------------------------------------------------------------------------
# Set algebra


def dedupe_sort(records: Iterable[SkillRecord]) -> list[SkillRecord]:
    seen: set[str] = set()
    out: list[SkillRecord] = []
    for record in records:
        if record.key in seen:
            continue
        seen.add(record.key)
        out.append(record)
    out.sort(key=lambda r: (r.source, r.name))
    return out


def union(a: Iterable[SkillRecord], b: Iterable[SkillRecord]) -> list[SkillRecord]:
    return dedupe_sort([*a, *b])


def difference(a: Sequence[SkillRecord], b: Iterable[SkillRecord]) -> list[SkillRecord]:
    present = {(r.source, r.name) for r in b}
    return [r for r in a if (r.source, r.name) not in present]


def sets_equal(a: Iterable[SkillRecord], b: Iterable[SkillRecord]) -> bool:
    left = dedupe_sort(a)
    right = dedupe_sort(b)
    if len(left) != len(right):
        return False
    return all(x == y for x, y in zip(left, right))


# ---------------------------------------------------------------------------
# Source validation


def is_valid_source(source: str) -> bool:
    return isinstance(source, str) and _SOURCE_RE.fullmatch(source) is not None


def invalid_source_reason(source: str) -> str:
    return f'Invalid source "{source}". Expected owner/repo format.'


def split_install_candidates(
    records: Iterable[SkillRecord],
) -> tuple[list[SkillRecord], list[SkillFailure]]:
    valid: list[SkillRecord] = []
    failed: list[SkillFailure] = []
    for record in records:
        if is_valid_source(record.source):
            valid.append(record)
        else:
            failed.append(SkillFailure(skill=record, reason=invalid_source_reason(record.source)))
    return valid, failed


# ---------------------------------------------------------------------------
# Plan builders


def _normalize_sides(
    local_payload: SkillhubPayload,
    remote_payload: SkillhubPayload,
    default_source: str,
) -> tuple[list[SkillRecord], list[SkillRecord]]:
    return (
        normalize_skills(local_payload.skills, default_source=default_source),
        normalize_skills(remote_payload.skills, default_source=default_source),
    )


def _upload_unless_equal(
    desired: list[SkillRecord],
    current: list[SkillRecord],
    now_iso: str,
) -> SkillhubPayload | None:
    if sets_equal(current, desired):
        return None
    return SkillhubPayload(skills=tuple(desired), updated_at=now_iso)


def build_merge_plan(
    *,
    local_payload: SkillhubPayload,
    remote_payload: SkillhubPayload,
    now_iso: str,
    default_source: str = DEFAULT_SKILL_SOURCE,
) -> SyncPlan:
    local, remote = _normalize_sides(local_payload, remote_payload, default_source)
    merged = union(local, remote)
    return SyncPlan(
        mode="merge",
        local_skills=tuple(local),
        remote_skills=tuple(remote),
        install_candidates=tuple(difference(merged, local)),
        upload_payload=_upload_unless_equal(merged, remote, now_iso),
    )


def build_auto_plan(
    *,
    local_payload: SkillhubPayload,
    remote_payload: SkillhubPayload,
    now_iso: str,
    last_sync_at: str | None = None,
    default_source: str = DEFAULT_SKILL_SOURCE,
) -> SyncPlan:
    local, remote = _normalize_sides(local_payload, remote_payload, default_source)
    last_sync_time = parse_timestamp(last_sync_at)
    if last_sync_time is None:
        last_sync_time = 0.0
    remote_time = parse_timestamp(remote_payload.updated_at)
    is_remote_newer = remote_time is not None and remote_time > last_sync_time

    if is_remote_newer:
        return SyncPlan(
            mode="auto",
            local_skills=tuple(local),
            remote_skills=tuple(remote),
            install_candidates=tuple(difference(remote, local)),
            upload_payload=None,
            is_remote_newer=True,
        )

    return SyncPlan(
        mode="auto",
        local_skills=tuple(local),
        remote_skills=tuple(remote),
        upload_payload=_upload_unless_equal(local, remote, now_iso),
        is_remote_newer=False,
    )


def build_pull_plan(
    *,
    local_payload: SkillhubPayload,
    remote_payload: SkillhubPayload,
    default_source: str = DEFAULT_SKILL_SOURCE,
) -> SyncPlan:
    local, remote = _normalize_sides(local_payload, remote_payload, default_source)
    return SyncPlan(
        mode="pull",
        local_skills=tuple(local),
        remote_skills=tuple(remote),
        install_candidates=tuple(difference(remote, local)),
        remove_candidates=tuple(difference(local, remote)),
    )


def build_push_plan(
    *,
    local_payload: SkillhubPayload,
    remote_payload: SkillhubPayload,
    now_iso: str,
    default_source: str = DEFAULT_SKILL_SOURCE,
) -> SyncPlan:
    local, remote = _normalize_sides(local_payload, remote_payload, default_source)
    return SyncPlan(
        mode="push",
        local_skills=tuple(local),
        remote_skills=tuple(remote),
        upload_payload=_upload_unless_equal(local, remote, now_iso),
    )


def parse_strategy(value: str | None) -> Strategy:
    if not value:
        return "union"
    if value == "union":
        return "union"
    if value == "latest":
        return "latest"
    raise InvalidStrategyError(f'Invalid strategy "{value}". Use one of: {", ".join(STRATEGIES)}.')


def build_sync_plan(
    *,
    strategy: Strategy,
    local_payload: SkillhubPayload,
    remote_payload: SkillhubPayload,
    now_iso: str,
    last_sync_at: str | None = None,
    default_source: str = DEFAULT_SKILL_SOURCE,
) -> SyncPlan:
    """Legacy two-strategy entry point: ``union`` merges, ``latest`` runs the freshness check."""
    if strategy == "latest":
        return build_auto_plan(
            local_payload=local_payload,
            remote_payload=remote_payload,
            now_iso=now_iso,
            last_sync_at=last_sync_at,
            default_source=default_source,
        )
    if strategy == "union":
        return build_merge_plan(
            local_payload=local_payload,
            remote_payload=remote_payload,
            now_iso=now_iso,
            default_source=default_source,
        )
    raise InvalidStrategyError(f'Invalid strategy "{strategy}". Use one of: {", ".join(STRATEGIES)}.')
