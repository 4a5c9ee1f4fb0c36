from ._version import __version__
from .client import AuthRequiredError, GistClient, SkillhubError, SkillhubHTTPError
from .config import Config, ConfigStore
from .sync_core import (
    SkillhubPayload,
    SkillRecord,
    SyncPlan,
    build_auto_plan,
    build_merge_plan,
    build_pull_plan,
    build_push_plan,
    build_sync_plan,
    dedupe_sort,
    difference,
    is_valid_source,
    normalize_skills,
    parse_strategy,
    parse_timestamp,
    sets_equal,
    union,
)

__all__ = [
    "__version__",
    "AuthRequiredError",
    "Config",
    "ConfigStore",
    "GistClient",
    "SkillRecord",
    "SkillhubError",
    "SkillhubHTTPError",
    "SkillhubPayload",
    "SyncPlan",
    "build_auto_plan",
    "build_merge_plan",
    "build_pull_plan",
    "build_push_plan",
    "build_sync_plan",
    "dedupe_sort",
    "difference",
    "is_valid_source",
    "normalize_skills",
    "parse_strategy",
    "parse_timestamp",
    "sets_equal",
    "union",
]
