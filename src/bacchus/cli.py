"""Bacchus command line interface.

Every command prints exactly one JSON object on stdout. The exit status is 0
when the command succeeded, 1 when it returned a structured failure and 2 when
an infrastructure error aborted it.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Callable

from pydantic import ValidationError

from . import __version__
from .config import BacchusSettings, ConfigLoadError, get_settings
from .git.runner import GitRunnerError
from .git.worktree import WorktreeError
from .lifecycle.engine import RELEASE_STATUSES
from .lifecycle.results import ErrorKind
from .session import SessionError
from .storage.claims import ClaimStoreError
from .tracker.beads import TrackerError
from .workspace import Workspace, open_workspace

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_ERROR = 2

Handler = Callable[[argparse.Namespace, Workspace], dict[str, Any]]


def load_workspace(settings: BacchusSettings) -> Workspace:
    return open_workspace(settings)


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2))


def _error_kind(exc: Exception) -> str:
    if isinstance(exc, TrackerError):
        return ErrorKind.TRACKER_FAILURE.value
    if isinstance(exc, (GitRunnerError, WorktreeError)):
        return ErrorKind.VCS_FAILURE.value
    if isinstance(exc, ClaimStoreError):
        return "store_unavailable"
    if isinstance(exc, (ConfigLoadError, ValidationError)):
        return "config_error"
    if isinstance(exc, (SessionError, ValueError)):
        return "invalid_argument"
    return "internal_error"


def cmd_next(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    return workspace.engine.next(args.agent_id).to_payload()


def cmd_claim(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    return workspace.engine.claim(args.bead_id, args.agent_id, force=args.force).to_payload()


def cmd_release(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    return workspace.engine.release(args.bead_id, args.status).to_payload()


def cmd_abort(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    return workspace.engine.abort(args.bead_id).to_payload()


def cmd_resolve(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    return workspace.engine.resolve(args.bead_id).to_payload()


def cmd_stale(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    minutes = args.minutes if args.minutes is not None else workspace.settings.stale_minutes
    return workspace.engine.stale(minutes, cleanup=args.cleanup).to_payload()


def cmd_reap(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    return workspace.reaper.reap(args.minutes).to_payload()


def cmd_list(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    return workspace.engine.list_claims().to_payload()


def cmd_worktrees(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    return workspace.engine.worktrees().to_payload()


def cmd_history(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    limit = args.limit if args.limit and args.limit > 0 else None
    return workspace.engine.history(args.bead_id, limit=limit).to_payload()


def cmd_session(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    sessions = workspace.sessions
    if args.session_cmd == "start":
        return sessions.start(args.mode, bead_id=args.bead_id, max_concurrent=args.max_concurrent)
    if args.session_cmd == "stop":
        return sessions.stop()
    if args.session_cmd == "status":
        return sessions.status()
    return sessions.check().to_payload()


def cmd_serve(args: argparse.Namespace, workspace: Workspace) -> dict[str, Any]:
    from .server import create_server

    server = create_server(workspace.settings, workspace)
    logger.info("Launching Bacchus MCP server", extra={"workspace": str(workspace.root)})
    server.run()
    return {"success": True, "message": "MCP server stopped"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bacchus",
        description="Worktree-per-bead coordination for concurrent agents",
    )
    parser.add_argument("--version", action="version", version=f"bacchus {__version__}")
    sub = parser.add_subparsers(dest="cmd")

    p_next = sub.add_parser("next", help="Claim the highest-priority ready bead")
    p_next.add_argument("agent_id")
    p_next.set_defaults(func=cmd_next)

    p_claim = sub.add_parser("claim", help="Claim a specific bead")
    p_claim.add_argument("bead_id")
    p_claim.add_argument("agent_id")
    p_claim.add_argument("--force", action="store_true", help="Claim even if the bead is not ready")
    p_claim.set_defaults(func=cmd_claim)

    p_release = sub.add_parser("release", help="Release a claimed bead")
    p_release.add_argument("bead_id")
    p_release.add_argument("--status", required=True, choices=RELEASE_STATUSES)
    p_release.set_defaults(func=cmd_release)

    p_abort = sub.add_parser("abort", help="Abort a conflicted merge, keep working")
    p_abort.add_argument("bead_id")
    p_abort.set_defaults(func=cmd_abort)

    p_resolve = sub.add_parser("resolve", help="Complete a merge after resolving conflicts")
    p_resolve.add_argument("bead_id")
    p_resolve.set_defaults(func=cmd_resolve)

    p_stale = sub.add_parser("stale", help="Find claims older than a threshold")
    p_stale.add_argument("--minutes", type=int, default=None, help="Age threshold (default from settings)")
    p_stale.add_argument("--cleanup", action="store_true", help="Discard stale claims and reopen their beads")
    p_stale.set_defaults(func=cmd_stale)

    p_reap = sub.add_parser("reap", help="Clean up stale claims")
    p_reap.add_argument("--minutes", type=int, default=None, help="Age threshold (default from settings)")
    p_reap.set_defaults(func=cmd_reap)

    p_list = sub.add_parser("list", help="List active claims")
    p_list.set_defaults(func=cmd_list)

    p_worktrees = sub.add_parser("worktrees", help="List managed git worktrees")
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_history = sub.add_parser("history", help="Show journaled lifecycle events")
    p_history.add_argument("bead_id", nargs="?")
    p_history.add_argument("--limit", type=int, default=None, help="Show only the latest N events")
    p_history.set_defaults(func=cmd_history)

    p_session = sub.add_parser("session", help="Manage the stop-hook session")
    session_sub = p_session.add_subparsers(dest="session_cmd", required=True)
    p_start = session_sub.add_parser("start", help="Start an agent or orchestrator session")
    p_start.add_argument("mode", choices=("agent", "orchestrator"))
    p_start.add_argument("--bead-id", default=None)
    p_start.add_argument("--max-concurrent", type=int, default=None)
    session_sub.add_parser("stop", help="Clear the session")
    session_sub.add_parser("status", help="Show the session")
    session_sub.add_parser("check", help="Stop-hook decision for the session")
    p_session.set_defaults(func=cmd_session)

    p_serve = sub.add_parser("serve", help="Run the MCP server over stdio")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_FAILURE

    from .server import configure_logging

    try:
        settings = get_settings()
        configure_logging(settings.log_level)
        workspace = load_workspace(settings)
        try:
            payload = args.func(args, workspace)
        finally:
            workspace.close()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Command failed", exc_info=True)
        _emit({"success": False, "error": _error_kind(exc), "message": str(exc)})
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    _emit(payload)
    return EXIT_OK if payload.get("success", True) else EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
