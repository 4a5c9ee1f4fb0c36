from __future__ import annotations

import argparse
import getpass
import json
import os
import sys
import textwrap
from typing import Any, Callable

from ._version import __version__
from .client import AuthRequiredError, GistClient, SkillhubError, SkillhubHTTPError
from .config import ConfigError, ConfigNotLoadedError, ConfigStore, redact_token
from .local_skills import LocalSkillsService, SkillsCommandError
from .logger import setup_logging
from .retry import RetryError
from .sync import SYNC_MODES, SyncSummary, run_sync
from .sync_core import InvalidStrategyError, parse_strategy, utc_now_iso

TOKEN_PROMPT_MESSAGE = "Create a GitHub Personal Access Token (classic) with the `gist` scope, then paste it here: "


def _emit(payload: dict[str, Any], as_json: bool, format_text: Callable[[dict[str, Any]], str]) -> None:
    if as_json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return
    print(format_text(payload))


def _confirm(message: str, *, default: bool = False) -> bool:
    suffix = " [Y/n] " if default else " [y/N] "
    try:
        answer = input(message + suffix)
    except EOFError:
        return default
    answer = answer.strip().lower()
    if not answer:
        return default
    return answer in ("y", "yes")


def _runtime_settings(store: ConfigStore, args: argparse.Namespace) -> tuple[str | None, str, float]:
    # Env overrides config; CLI overrides both.
    cfg = store.config
    token = getattr(args, "token", None) or os.getenv("SKILLHUB_TOKEN") or cfg.github_token
    api_url = getattr(args, "api_url", None) or os.getenv("SKILLHUB_API_URL") or cfg.api_url
    timeout_s = getattr(args, "timeout_s", None)
    if timeout_s is None:
        timeout_s = os.getenv("SKILLHUB_TIMEOUT_S") or cfg.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = cfg.timeout_s
    return token, api_url, timeout_s_f


def _client_for(store: ConfigStore, args: argparse.Namespace, *, token: str | None = None) -> GistClient:
    cfg_token, api_url, timeout_s = _runtime_settings(store, args)
    return GistClient(token=token or cfg_token, api_url=api_url, timeout_s=timeout_s)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillhub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Back up and sync agent skills with a private GitHub Gist.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLHUB_CONFIG_PATH, SKILLHUB_TOKEN, SKILLHUB_API_URL, SKILLHUB_TIMEOUT_S, LOG_LEVEL
            """
        ),
    )
    p.add_argument("--token", help="GitHub token (overrides config/env)")
    p.add_argument("--api-url", help="GitHub API base URL")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    p.add_argument("--debug", action="store_true", help="Enable debug logging on stderr")
    p.add_argument("--version", action="version", version=f"skillhub {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    def _add_json(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--json", action="store_true", default=argparse.SUPPRESS, help="Print output as JSON")

    def _add_dry_run(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            default=argparse.SUPPRESS,
            help="Show planned changes without applying them",
        )

    def _add_yes(parser: argparse.ArgumentParser, help_text: str) -> None:
        parser.add_argument("--yes", action="store_true", default=argparse.SUPPRESS, help=help_text)

    # config
    cfg = sub.add_parser("config", help="Inspect local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")

    # auth
    auth = sub.add_parser("auth", help="Authentication commands")
    auth_sub = auth.add_subparsers(dest="subcmd", required=True)
    auth_login = auth_sub.add_parser("login", help="Register your GitHub PAT with gist access")
    auth_login.add_argument("--token", dest="login_token", help="Token to store (prompted when omitted)")
    auth_status = auth_sub.add_parser("status", help="Show local auth/sync status")
    _add_json(auth_status)
    auth_logout = auth_sub.add_parser("logout", help="Clear stored session data (token, gist id, last sync)")
    _add_yes(auth_logout, "Skip confirmation prompt")
    _add_json(auth_logout)

    # top-level shortcuts
    status = sub.add_parser("status", help="Alias of `auth status`")
    _add_json(status)
    logout = sub.add_parser("logout", help="Alias of `auth logout`")
    _add_yes(logout, "Skip confirmation prompt")
    _add_json(logout)

    # sync
    sync = sub.add_parser("sync", help="Sync local skills and the remote Gist backup")
    sync.add_argument(
        "--strategy",
        help="Legacy combined mode: union (= merge) or latest (= auto)",
    )
    _add_dry_run(sync)
    _add_json(sync)
    sync_sub = sync.add_subparsers(dest="mode")

    sync_pull = sync_sub.add_parser("pull", help="Mirror remote skills into local skills (remote -> local)")
    _add_dry_run(sync_pull)
    _add_yes(sync_pull, "Skip deletion confirmation prompt")
    _add_json(sync_pull)

    sync_push = sync_sub.add_parser("push", help="Mirror local skills into the remote backup (local -> remote)")
    _add_dry_run(sync_push)
    _add_json(sync_push)

    sync_merge = sync_sub.add_parser("merge", help="Merge local and remote skills (union)")
    _add_dry_run(sync_merge)
    _add_json(sync_merge)

    sync_auto = sync_sub.add_parser("auto", help="Sync using remote updatedAt and lastSyncAt comparison")
    _add_dry_run(sync_auto)
    _add_json(sync_auto)

    return p


def cmd_config(store: ConfigStore, args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(store.path))
        return 0

    if args.subcmd == "show":
        d = store.config.__dict__.copy()
        d["github_token"] = redact_token(store.config.github_token)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    raise AssertionError("unreachable")


def _format_status(summary: dict[str, Any]) -> str:
    count = summary["localSkillCount"]
    accessible = summary["remoteAccessible"]
    lines = [
        f"loggedIn={str(summary['loggedIn']).lower()}",
        f"gistId={summary['gistId'] or 'none'}",
        f"lastSyncAt={summary['lastSyncAt'] or 'none'}",
        f"localSkillCount={'unavailable' if count is None else count}",
        f"remoteAccessible={'unknown' if accessible is None else str(accessible).lower()}",
    ]
    if summary["errors"]:
        lines.append(f"errors={len(summary['errors'])}")
        lines.extend(f"- {e}" for e in summary["errors"])
    return "\n".join(lines)


def cmd_status(store: ConfigStore, args: argparse.Namespace) -> int:
    token, _, _ = _runtime_settings(store, args)
    summary: dict[str, Any] = {
        "loggedIn": bool(token),
        "gistId": store.get_gist_id(),
        "lastSyncAt": store.get_last_sync_at(),
        "localSkillCount": None,
        "remoteAccessible": None if token else False,
        "errors": [],
    }

    try:
        summary["localSkillCount"] = len(LocalSkillsService().list_local_skills())
    except (SkillsCommandError, RetryError) as e:
        summary["errors"].append(f"Failed to read local skills: {e}")

    if token:
        client = _client_for(store, args)
        try:
            client.check_gist_access()
            summary["remoteAccessible"] = True
        except (SkillhubError, RetryError) as e:
            summary["remoteAccessible"] = False
            summary["errors"].append(f"Failed to access GitHub Gist API: {e}")
        finally:
            client.close()

    _emit(summary, getattr(args, "json", False), _format_status)
    return 0


def _format_logout(summary: dict[str, Any]) -> str:
    if not summary["cleared"]:
        return "Logout cancelled."
    return f"Logout completed. Removed keys: {', '.join(summary['removedKeys'])}"


def cmd_logout(store: ConfigStore, args: argparse.Namespace) -> int:
    as_json = getattr(args, "json", False)
    if not getattr(args, "yes", False):
        if not _confirm("Delete stored GitHub session data (token, gistId, lastSyncAt)?"):
            _emit({"cleared": False, "removedKeys": []}, as_json, _format_logout)
            return 0

    removed = store.clear_session()
    _emit({"cleared": True, "removedKeys": removed}, as_json, _format_logout)
    return 0


def cmd_login(store: ConfigStore, args: argparse.Namespace) -> int:
    token = args.login_token
    if token is None:
        token = getpass.getpass(TOKEN_PROMPT_MESSAGE)
    token = token.strip()
    if not token:
        raise SkillhubError("Please enter a token.")

    client = _client_for(store, args, token=token)
    try:
        client.verify_token()
    except SkillhubError:
        print(
            "Login failed: token is invalid or cannot access the Gist API.\n"
            "Please create a GitHub Personal Access Token (classic) with the `gist` scope and try again.",
            file=sys.stderr,
        )
        raise
    finally:
        client.close()

    store.set_token(token)
    print("Login successful: token has been saved.")
    return 0


def cmd_auth(store: ConfigStore, args: argparse.Namespace) -> int:
    if args.subcmd == "login":
        return cmd_login(store, args)
    if args.subcmd == "status":
        return cmd_status(store, args)
    if args.subcmd == "logout":
        return cmd_logout(store, args)
    raise AssertionError("unreachable")


def _format_sync(summary: dict[str, Any]) -> str:
    if summary["cancelled"]:
        return "Sync cancelled: no changes were applied."

    failed = summary["failed"]
    failure_part = f" ({len(failed)} failed - check logs or JSON output)" if failed else ""
    if summary["dryRun"]:
        action = (
            f"Dry-run: would upload {summary['uploaded']} change(s), "
            f"would install {summary['installPlanned']} skill(s), "
            f"would remove {summary['removePlanned']} skill(s)"
        )
    else:
        action = (
            f"Sync: uploaded {summary['uploaded']} change(s), "
            f"installed {summary['installed']} skill(s), "
            f"removed {summary['removed']} skill(s)"
        )
    remote_newer = summary["remoteNewer"]
    lines = [
        action + failure_part,
        f"mode={summary['mode']}",
        f"gistFound={str(summary['gistFound']).lower()}",
        f"gistCreated={str(summary['gistCreated']).lower()}",
        f"remoteNewer={'n/a' if remote_newer is None else str(remote_newer).lower()}",
        f"lastSyncAtUpdated={str(summary['lastSyncAtUpdated']).lower()}",
    ]
    for f in failed:
        skill = f["skill"]
        lines.append(f"- {skill['name']} ({skill['source']}): {f['reason']}")
    return "\n".join(lines)


def _resolve_sync_mode(args: argparse.Namespace) -> str:
    if args.mode:
        if args.strategy is not None:
            raise SkillhubError("Use either a sync mode or --strategy, not both.")
        return args.mode
    if args.strategy is None:
        raise SkillhubError(f"Missing sync mode. Use one of: {', '.join(SYNC_MODES)}.")
    return "auto" if parse_strategy(args.strategy) == "latest" else "merge"


def cmd_sync(store: ConfigStore, args: argparse.Namespace) -> int:
    mode = _resolve_sync_mode(args)
    as_json = getattr(args, "json", False)
    token, _, _ = _runtime_settings(store, args)
    if not token:
        raise AuthRequiredError("You must login first. Run `skillhub auth login` and try again.")

    client = _client_for(store, args)
    try:
        summary: SyncSummary = run_sync(
            mode,  # type: ignore[arg-type]
            store=store,
            remote=client,
            inventory=LocalSkillsService(),
            now_iso=utc_now_iso(),
            dry_run=getattr(args, "dry_run", False),
            assume_yes=getattr(args, "yes", False),
            confirm=_confirm,
            token=token,
        )
    finally:
        client.close()

    _emit(summary.to_dict(), as_json, _format_sync)
    if summary.failed:
        if as_json:
            return 1
        raise SkillhubError(f"Sync completed with {len(summary.failed)} failed operation(s). Check logs above.")
    return 0


def _http_error_detail(body: str) -> str | None:
    text = body.strip()
    if not text:
        return None
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(obj, dict):
        value = obj.get("message")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return text


def _format_http_error(err: SkillhubHTTPError) -> str:
    detail = _http_error_detail(err.body)
    if err.status_code == 401:
        base = "HTTP 401 Unauthorized. Missing or invalid GitHub token."
    elif err.status_code == 403:
        base = "HTTP 403 Forbidden. The token is not allowed to access gists (needs the `gist` scope)."
    elif err.status_code == 404:
        base = "HTTP 404 Not Found. The gist does not exist or is not visible to this token."
    else:
        base = f"HTTP {err.status_code}"
    if detail:
        return f"{base} {detail}"
    return base


def _format_error(err: BaseException) -> str:
    if isinstance(err, SkillhubHTTPError):
        return _format_http_error(err)
    if isinstance(err, RetryError) and isinstance(err.__cause__, SkillhubHTTPError):
        return _format_http_error(err.__cause__)
    return str(err)


def main(argv: list[str] | None = None, *, store: ConfigStore | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug)
    try:
        store = (store or ConfigStore()).load()
        if args.cmd == "config":
            return cmd_config(store, args)
        if args.cmd == "auth":
            return cmd_auth(store, args)
        if args.cmd == "status":
            return cmd_status(store, args)
        if args.cmd == "logout":
            return cmd_logout(store, args)
        if args.cmd == "sync":
            return cmd_sync(store, args)
        raise AssertionError("unreachable")
    except (
        SkillhubError,
        RetryError,
        SkillsCommandError,
        InvalidStrategyError,
        ConfigNotLoadedError,
        ConfigError,
    ) as e:
        message = _format_error(e)
        if getattr(args, "json", False):
            print(json.dumps({"ok": False, "error": message}, indent=2, sort_keys=True))
        else:
            print(f"error: {message}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
