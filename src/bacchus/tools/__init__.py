"""Tool registration for the Bacchus MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from fastmcp import Context, FastMCP

from ..lifecycle import LifecycleEngine, Reaper

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    next_bead: Any
    claim_bead: Any
    release_bead: Any
    abort_merge: Any
    resolve_merge: Any
    stale_claims: Any
    list_claims: Any
    claim_history: Any


def register_tools(
    server: FastMCP,
    *,
    engine: LifecycleEngine,
    reaper: Reaper,
) -> ToolHandles:
    """Register the claim lifecycle tools on the server."""

    def _next_bead(agent_id: str, context: Context | None = None) -> dict[str, Any]:
        """Claim the highest-priority ready bead for ``agent_id``."""

        result = engine.next(agent_id)
        _emit_log(
            context,
            "info" if result.success else "warning",
            "Next bead requested",
            extra={"agent_id": agent_id, "bead_id": result.bead_id, "success": result.success},
        )
        return result.to_payload()

    def _claim_bead(
        bead_id: str,
        agent_id: str,
        force: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = engine.claim(bead_id, agent_id, force=force)
        _emit_log(
            context,
            "info" if result.success else "warning",
            "Claim requested",
            extra={"agent_id": agent_id, "bead_id": bead_id, "success": result.success},
        )
        return result.to_payload()

    def _release_bead(
        bead_id: str,
        status: Literal["done", "blocked", "failed"],
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = engine.release(bead_id, status)
        _emit_log(
            context,
            "info" if result.success else "warning",
            "Release requested",
            extra={"bead_id": bead_id, "status": status, "merged": result.merged, "success": result.success},
        )
        return result.to_payload()

    def _abort_merge(bead_id: str, context: Context | None = None) -> dict[str, Any]:
        result = engine.abort(bead_id)
        _emit_log(context, "info", "Abort requested", extra={"bead_id": bead_id, "success": result.success})
        return result.to_payload()

    def _resolve_merge(bead_id: str, context: Context | None = None) -> dict[str, Any]:
        result = engine.resolve(bead_id)
        _emit_log(context, "info", "Resolve requested", extra={"bead_id": bead_id, "success": result.success})
        return result.to_payload()

    def _stale_claims(
        minutes: int | None = None,
        cleanup: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = reaper.reap(minutes) if cleanup else reaper.scan(minutes)
        _emit_log(
            context,
            "info",
            "Stale claims inspected",
            extra={
                "minutes": reaper.threshold_minutes if minutes is None else minutes,
                "cleanup": cleanup,
                "stale": len(result.stale_claims),
            },
        )
        return result.to_payload()

    def _list_claims(context: Context | None = None) -> dict[str, Any]:
        result = engine.list_claims()
        _emit_log(context, "debug", "Listing claims", extra={"count": result.total})
        return result.to_payload()

    def _claim_history(
        bead_id: str | None = None,
        limit: int | None = 50,
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = engine.history(bead_id, limit=limit)
        _emit_log(context, "debug", "Listing lifecycle history", extra={"bead_id": bead_id, "count": len(result.events)})
        return result.to_payload()

    tool_next = server.tool(
        name="next_bead",
        description=(
            "Claim the highest-priority ready bead for an agent. Creates an isolated git "
            "worktree on its own branch and marks the bead in_progress."
        ),
    )(_next_bead)

    tool_claim = server.tool(
        name="claim_bead",
        description="Claim a specific bead by id. Set force to bypass the readiness check.",
    )(_claim_bead)

    tool_release = server.tool(
        name="release_bead",
        description=(
            "Release a claimed bead. done merges its branch into the target branch, "
            "blocked keeps the worktree for later, failed discards all work."
        ),
        annotations={"destructiveHint": True},
    )(_release_bead)

    tool_abort = server.tool(
        name="abort_merge",
        description="Abort the in-progress merge for a bead, keeping its claim and worktree.",
    )(_abort_merge)

    tool_resolve = server.tool(
        name="resolve_merge",
        description="Commit a manually resolved merge for a bead, then close it.",
    )(_resolve_merge)

    tool_stale = server.tool(
        name="stale_claims",
        description="List claims older than a threshold in minutes; cleanup returns them to the ready pool.",
    )(_stale_claims)

    tool_list = server.tool(
        name="list_claims",
        description="List active claims with their owners, worktrees and ages.",
    )(_list_claims)

    tool_history = server.tool(
        name="claim_history",
        description="Show journaled lifecycle events, optionally for a single bead.",
    )(_claim_history)

    return ToolHandles(
        next_bead=tool_next,
        claim_bead=tool_claim,
        release_bead=tool_release,
        abort_merge=tool_abort,
        resolve_merge=tool_resolve,
        stale_claims=tool_stale,
        list_claims=tool_list,
        claim_history=tool_history,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["register_tools", "ToolHandles"]
