"""FastMCP server bootstrap for Bacchus."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastmcp import FastMCP

from . import __version__
from .config import BacchusSettings, get_settings
from .tools import register_tools
from .workspace import Workspace, open_workspace


def configure_logging(level: str) -> None:
    """Configure root logging; records go to stderr so stdout stays machine-readable."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def create_server(
    settings: Optional[BacchusSettings] = None,
    workspace: Workspace | None = None,
    *,
    server_factory: Callable[..., Any] = FastMCP,
) -> Any:
    """Instantiate the MCP server with the lifecycle tools and a status resource."""

    settings = settings or (workspace.settings if workspace else get_settings())
    workspace = workspace or open_workspace(settings)
    engine = workspace.engine

    server = server_factory(
        name="Bacchus",
        instructions=(
            "Bacchus coordinates concurrent agents on one repository. Claim a bead to get "
            "an isolated git worktree, release it as done, blocked or failed when finished, "
            "and use abort_merge or resolve_merge when a release hits a merge conflict."
        ),
    )

    handles = register_tools(server, engine=engine, reaper=workspace.reaper)

    @server.resource(
        "resource://bacchus/status",
        name="bacchus_status",
        description="Current claims and merge state of the Bacchus workspace.",
        mime_type="application/json",
    )
    def status_resource() -> str:
        """Return a JSON string summarizing the workspace."""

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "stale_minutes": workspace.reaper.threshold_minutes,
            "error": None,
        }
        try:
            payload.update(engine.status())
            payload["claims"] = engine.list_claims().to_payload()["claims"]
        except Exception as exc:  # noqa: BLE001
            payload["error"] = str(exc)
        return json.dumps(payload)

    setattr(server, "workspace", workspace)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the Bacchus MCP server."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Bacchus MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "workspace": str(settings.root),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
