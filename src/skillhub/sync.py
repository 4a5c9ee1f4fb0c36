"""
Sync orchestration: reads both sides, builds a plan and applies it.

The planning itself lives in :mod:`skillhub.sync_core`; this module wires it
to the config store, the Gist client and the local ``skills`` tool.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence

from .client import SkillhubError
from .config import ConfigStore
from .local_skills import OperationResult
from .retry import RetryError
from .sync_core import (
    SkillFailure,
    SkillhubPayload,
    SkillRecord,
    SyncMode,
    SyncPlan,
    build_auto_plan,
    build_merge_plan,
    build_pull_plan,
    build_push_plan,
    split_install_candidates,
)

logger = logging.getLogger(__name__)

SYNC_MODES: tuple[SyncMode, ...] = ("pull", "push", "merge", "auto")


class RemoteStore(Protocol):
    def get_payload(self, gist_id: str) -> SkillhubPayload | None:
        ...

    def find_skillhub_gist(self) -> dict[str, Any] | None:
        ...

    def create_gist(self, payload: SkillhubPayload) -> str:
        ...

    def update_gist(self, gist_id: str, payload: SkillhubPayload) -> None:
        ...


class SkillInventory(Protocol):
    def list_local_skills(self) -> list[SkillRecord]:
        ...

    def install_skills(self, skills: Sequence[SkillRecord]) -> OperationResult:
        ...

    def remove_skills(self, skills: Sequence[SkillRecord]) -> OperationResult:
        ...


@dataclass
class SyncSummary:
    mode: SyncMode
    dry_run: bool
    ok: bool = True
    cancelled: bool = False
    gist_found: bool = False
    gist_created: bool = False
    remote_newer: bool | None = None
    uploaded: int = 0
    install_planned: int = 0
    installed: int = 0
    remove_planned: int = 0
    removed: int = 0
    failed: list[SkillFailure] = field(default_factory=list)
    last_sync_at_updated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "mode": self.mode,
            "dryRun": self.dry_run,
            "cancelled": self.cancelled,
            "gistFound": self.gist_found,
            "gistCreated": self.gist_created,
            "remoteNewer": self.remote_newer,
            "uploaded": self.uploaded,
            "installPlanned": self.install_planned,
            "installed": self.installed,
            "removePlanned": self.remove_planned,
            "removed": self.removed,
            "failed": [f.to_dict() for f in self.failed],
            "lastSyncAtUpdated": self.last_sync_at_updated,
        }


@dataclass(frozen=True)
class RemoteState:
    gist_id: str | None
    payload: SkillhubPayload


def _safe_get_payload(remote: RemoteStore, gist_id: str) -> SkillhubPayload | None:
    try:
        return remote.get_payload(gist_id)
    except (SkillhubError, RetryError) as e:
        logger.warning("Could not read gist %s: %s", gist_id, e)
        return None


def resolve_remote(store: ConfigStore, remote: RemoteStore, *, persist: bool = True) -> RemoteState:
    """
    Locate the backup gist: the remembered id first, then a search for ``skillhub.json``.

    A found gist id is remembered in the store unless ``persist`` is false.
    """
    gist_id = store.get_gist_id()
    payload: SkillhubPayload | None = None

    if gist_id:
        payload = _safe_get_payload(remote, gist_id)
        if payload is None:
            logger.info("Stored gist %s is unreadable; searching for another backup", gist_id)
            gist_id = None

    if not gist_id:
        found = remote.find_skillhub_gist()
        found_id = found.get("id") if found else None
        if isinstance(found_id, str) and found_id:
            gist_id = found_id
            if persist:
                store.set_gist_id(found_id)
            payload = _safe_get_payload(remote, found_id)

    return RemoteState(gist_id=gist_id, payload=payload or SkillhubPayload.empty())


def build_plan(
    mode: SyncMode,
    *,
    local_payload: SkillhubPayload,
    remote_payload: SkillhubPayload,
    now_iso: str,
    last_sync_at: str | None,
) -> SyncPlan:
    if mode == "merge":
        return build_merge_plan(local_payload=local_payload, remote_payload=remote_payload, now_iso=now_iso)
    if mode == "auto":
        return build_auto_plan(
            local_payload=local_payload,
            remote_payload=remote_payload,
            now_iso=now_iso,
            last_sync_at=last_sync_at,
        )
    if mode == "pull":
        return build_pull_plan(local_payload=local_payload, remote_payload=remote_payload)
    if mode == "push":
        return build_push_plan(local_payload=local_payload, remote_payload=remote_payload, now_iso=now_iso)
    raise SkillhubError(f"Unknown sync mode: {mode!r}. Use one of: {', '.join(SYNC_MODES)}.")


def _removal_prompt(skills: Sequence[SkillRecord]) -> str:
    names = ", ".join(f"{s.name} ({s.source})" for s in skills)
    return f"Remove {len(skills)} local skill(s) not present in the remote backup? {names}"


def run_sync(
    mode: SyncMode,
    *,
    store: ConfigStore,
    remote: RemoteStore,
    inventory: SkillInventory,
    now_iso: str,
    dry_run: bool = False,
    assume_yes: bool = False,
    confirm: Callable[[str], bool] | None = None,
    token: str | None = None,
) -> SyncSummary:
    if not (token or store.get_token()):
        raise SkillhubError("You must login first. Run `skillhub auth login` and try again.")

    summary = SyncSummary(mode=mode, dry_run=dry_run)
    local_skills = inventory.list_local_skills()
    local_payload = SkillhubPayload(skills=tuple(local_skills), updated_at=now_iso)
    state = resolve_remote(store, remote, persist=not dry_run)

    if not state.gist_id:
        if mode == "pull":
            raise SkillhubError("No remote backup found. Run `skillhub sync push` first.")
        summary.uploaded = 1
        if dry_run:
            return summary
        gist_id = remote.create_gist(local_payload)
        store.set_gist_id(gist_id)
        store.set_last_sync_at(now_iso)
        logger.info("Created backup gist %s", gist_id)
        summary.gist_created = True
        summary.last_sync_at_updated = True
        return summary

    summary.gist_found = True
    plan = build_plan(
        mode,
        local_payload=local_payload,
        remote_payload=state.payload,
        now_iso=now_iso,
        last_sync_at=store.get_last_sync_at(),
    )
    if mode == "auto":
        summary.remote_newer = plan.is_remote_newer

    valid_installs, invalid_installs = split_install_candidates(plan.install_candidates)
    summary.install_planned = len(plan.install_candidates)
    summary.remove_planned = len(plan.remove_candidates)
    summary.uploaded = 1 if plan.upload_payload is not None else 0
    summary.failed = list(invalid_installs)

    if dry_run:
        summary.ok = not summary.failed
        return summary

    if plan.remove_candidates and not assume_yes:
        if confirm is None or not confirm(_removal_prompt(plan.remove_candidates)):
            summary.cancelled = True
            summary.uploaded = 0
            summary.failed = []
            return summary

    installed = inventory.install_skills(valid_installs)
    summary.installed = len(installed.succeeded)
    summary.failed.extend(installed.failed)

    if plan.remove_candidates:
        removed = inventory.remove_skills(plan.remove_candidates)
        summary.removed = len(removed.succeeded)
        summary.failed.extend(removed.failed)

    if plan.upload_payload is not None:
        remote.update_gist(state.gist_id, plan.upload_payload)

    summary.ok = not summary.failed
    if summary.ok:
        store.set_last_sync_at(now_iso)
        summary.last_sync_at_updated = True
    return summary
