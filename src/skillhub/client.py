from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterator
from urllib.parse import quote

import httpx

from .config import DEFAULT_API_URL, DEFAULT_TIMEOUT_S
from .retry import retry_call
from .sync_core import SkillhubPayload

logger = logging.getLogger(__name__)

SKILLHUB_FILENAME = "skillhub.json"
GIST_DESCRIPTION = "SkillHub sync"
GITHUB_API_VERSION = "2022-11-28"


class SkillhubError(RuntimeError):
    pass


class AuthRequiredError(SkillhubError):
    pass


@dataclass(frozen=True)
class SkillhubHTTPError(SkillhubError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


def _serialize_payload(payload: SkillhubPayload) -> str:
    return json.dumps(payload.to_dict(), indent=2)


def _gist_has_skillhub_file(gist: Any) -> bool:
    if not isinstance(gist, dict):
        return False
    files = gist.get("files")
    if not isinstance(files, dict):
        return False
    return any(isinstance(f, dict) and f.get("filename") == SKILLHUB_FILENAME for f in files.values())


def parse_payload_content(content: str | None) -> SkillhubPayload | None:
    """Decode ``skillhub.json`` text. Anything without a ``skills`` list is treated as missing."""
    if not content:
        return None
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("skills"), list):
        return None
    return SkillhubPayload.from_dict(parsed)


class GistClient:
    """
    Minimal GitHub Gist API client for the ``skillhub.json`` backup file.
    """

    def __init__(
        self,
        *,
        token: str | None,
        api_url: str = DEFAULT_API_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_attempts: int = 3,
    ) -> None:
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GistClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def request(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
    ) -> httpx.Response:
        if path.startswith(("http://", "https://")):
            url = path
        else:
            if not path.startswith("/"):
                path = "/" + path
            url = f"{self.api_url}{path}"

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = self._http.request(method.upper(), url, params=params, json=json_body, headers=headers)
        except httpx.HTTPError as e:
            raise SkillhubError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise SkillhubHTTPError(resp.status_code, resp.text)
        return resp

    def _retrying(self, label: str, *, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return retry_call(
            lambda: self.request(method=method, path=path, **kwargs),
            max_attempts=self.max_attempts,
            label=label,
        )

    def _require_token(self) -> None:
        if not self.token:
            raise AuthRequiredError("You must login first. Run `skillhub auth login` and try again.")

    def verify_token(self) -> None:
        self._require_token()
        self.request(method="GET", path="/user")
        # Fine-grained tokens may authenticate but lack gist access.
        self.request(method="GET", path="/gists", params={"per_page": 1})

    def check_gist_access(self) -> None:
        self._require_token()
        self._retrying("list gists", method="GET", path="/gists", params={"per_page": 1})

    def iter_gists(self, *, per_page: int = 100) -> Iterator[dict[str, Any]]:
        self._require_token()
        url: str | None = "/gists"
        params: dict[str, Any] | None = {"per_page": per_page}
        while url:
            resp = self._retrying("list gists", method="GET", path=url, params=params)
            data = resp.json()
            if isinstance(data, list):
                for item in data:
                    if isinstance(item, dict):
                        yield item
            next_link = resp.links.get("next", {}).get("url")
            url = next_link if next_link else None
            params = None  # the next link already carries the query

    def find_skillhub_gist(self) -> dict[str, Any] | None:
        for gist in self.iter_gists():
            if _gist_has_skillhub_file(gist):
                logger.debug("Found skillhub gist %s", gist.get("id"))
                return gist
        return None

    def get_payload(self, gist_id: str) -> SkillhubPayload | None:
        self._require_token()
        resp = self._retrying(
            f"get gist {gist_id}",
            method="GET",
            path=f"/gists/{quote(gist_id, safe='')}",
        )
        try:
            data = resp.json()
        except ValueError:
            logger.debug("Gist %s returned a non-JSON body", gist_id)
            return None
        files = data.get("files") if isinstance(data, dict) else None
        if not isinstance(files, dict):
            return None
        for item in files.values():
            if isinstance(item, dict) and item.get("filename") == SKILLHUB_FILENAME:
                content = item.get("content")
                return parse_payload_content(content if isinstance(content, str) else None)
        return None

    def create_gist(self, payload: SkillhubPayload) -> str:
        self._require_token()
        # Not retried: a POST that timed out may still have created the gist.
        resp = self.request(
            method="POST",
            path="/gists",
            json_body={
                "description": GIST_DESCRIPTION,
                "public": False,
                "files": {SKILLHUB_FILENAME: {"content": _serialize_payload(payload)}},
            },
        )
        data = resp.json()
        gist_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(gist_id, str) or not gist_id:
            raise SkillhubError("Gist was created, but the ID could not be determined.")
        return gist_id

    def update_gist(self, gist_id: str, payload: SkillhubPayload) -> None:
        self._require_token()
        self._retrying(
            f"update gist {gist_id}",
            method="PATCH",
            path=f"/gists/{quote(gist_id, safe='')}",
            json_body={"files": {SKILLHUB_FILENAME: {"content": _serialize_payload(payload)}}},
        )
