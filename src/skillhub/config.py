from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_S = 30.0

# Field name -> key name reported to users (matches the JSON payload casing).
SESSION_KEYS = {
    "github_token": "githubToken",
    "gist_id": "gistId",
    "last_sync_at": "lastSyncAt",
}


@dataclass(frozen=True)
class Config:
    github_token: str | None = None
    gist_id: str | None = None
    last_sync_at: str | None = None  # ISO-8601, set after a sync with no failures
    api_url: str = DEFAULT_API_URL
    timeout_s: float = DEFAULT_TIMEOUT_S


class ConfigNotLoadedError(RuntimeError):
    pass


class ConfigError(RuntimeError):
    pass


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLHUB_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillhub") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON ({e}). Fix or delete it and try again.") from e
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (the file holds a GitHub token).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]


class ConfigStore:
    """
    Persistent key-value store for the session (token, gist id, last sync time).

    The store is constructed once by the CLI and handed to the commands that
    need it. ``load()`` must be called before any getter or setter.
    """

    def __init__(self, path_override: str | Path | None = None) -> None:
        self.path = config_path(path_override)
        self._cfg: Config | None = None

    def load(self) -> "ConfigStore":
        self._cfg = load_config(self.path)
        return self

    @property
    def config(self) -> Config:
        if self._cfg is None:
            raise ConfigNotLoadedError("ConfigStore.load() must be called before use.")
        return self._cfg

    def update(self, **changes: Any) -> Config:
        new_cfg = replace(self.config, **changes)
        save_config(new_cfg, self.path)
        self._cfg = new_cfg
        return new_cfg

    def get_token(self) -> str | None:
        return self.config.github_token

    def set_token(self, token: str) -> None:
        self.update(github_token=token)

    def get_gist_id(self) -> str | None:
        return self.config.gist_id

    def set_gist_id(self, gist_id: str) -> None:
        self.update(gist_id=gist_id)

    def get_last_sync_at(self) -> str | None:
        return self.config.last_sync_at

    def set_last_sync_at(self, last_sync_at: str) -> None:
        self.update(last_sync_at=last_sync_at)

    def clear_session(self) -> list[str]:
        self.update(**{field: None for field in SESSION_KEYS})
        return list(SESSION_KEYS.values())
