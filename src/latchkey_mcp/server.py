"""FastMCP server bootstrap for Latchkey."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import LatchkeySettings, get_settings
from .orchestration import BrowserOrchestrator
from .platforms import PlatformCatalog, PlatformLoadError
from .remote import BrowserUseClient
from .storage import ChromaStore, ChromaUnavailableError
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Latchkey server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def build_status(
    settings: LatchkeySettings,
    orchestrator: BrowserOrchestrator,
    *,
    client_metadata: dict[str, Any],
    chroma_metadata: dict[str, Any],
    chroma_store: ChromaStore | None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Summarise runtime state for the status resource."""

    try:
        platforms = orchestrator.catalog.load_all()
        platform_ids = sorted(platforms.keys())
        platform_error: str | None = None
    except PlatformLoadError as exc:
        platform_ids = []
        platform_error = str(exc)

    registry = orchestrator.registry
    try:
        records = list(registry.records())
        registry_error: str | None = None
    except (OSError, ValueError) as exc:
        records = []
        registry_error = str(exc)

    never_used = sum(1 for record in records if record.last_used_at is None)

    session_summary: list[dict[str, Any]] = []
    storage_error = None
    if chroma_store is not None:
        try:
            recent_sessions = chroma_store.list_session_tracking()
            session_summary = [
                {
                    "session_id": record.session_id,
                    "task_id": record.task_id,
                    "status": record.status,
                }
                for record in recent_sessions[-5:]
            ]
        except Exception as exc:  # status must render even with a broken journal
            storage_error = str(exc)

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server_version": __version__,
        "log_level": settings.log_level,
        "remote": {
            "base_url": settings.base_url,
            **client_metadata,
        },
        "registry": {
            "path": str(registry.path),
            "users": len({record.user_id for record in records}),
            "profiles": len(records),
            "never_used": never_used,
            "stale_after_days": settings.stale_after_days,
            "error": registry_error,
        },
        "platforms": {
            "count": len(platform_ids),
            "ids": platform_ids,
            "error": platform_error,
        },
        "storage": {
            "chroma": chroma_metadata,
            "sessions_preview": session_summary,
            "error": storage_error,
        },
        "request_id": request_id,
    }


def create_server(
    settings: Optional[LatchkeySettings] = None,
    client: BrowserUseClient | None = None,
    store: ChromaStore | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the orchestration tools and status resource."""

    settings = settings or get_settings()

    client = client or BrowserUseClient.from_settings(settings)
    client_metadata = {
        "configured": client.configured,
        "error": None if client.configured else "BROWSER_USE_API_KEY is not set",
    }

    chroma_store: ChromaStore | None = store
    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "latchkey_runs",
        "error": None,
    }

    try:
        if chroma_store is None:
            chroma_store = ChromaStore(settings.chroma_persist_path)
        chroma_store.ping()
        chroma_metadata["available"] = True
    except ChromaUnavailableError as exc:
        chroma_metadata["error"] = str(exc)
        chroma_store = None

    orchestrator = BrowserOrchestrator.from_settings(
        settings,
        client=client,
        store=chroma_store,
        catalog=PlatformCatalog(settings.platform_paths),
    )

    server = FastMCP(
        name="Latchkey MCP",
        version=__version__,
        instructions=(
            "Latchkey runs browser automation tasks against persistent, per-user "
            "browser profiles. Use execute_task for work on a platform; when it "
            "reports needs_auth, collect credentials and call interactive_login."
        ),
    )

    handles = register_tools(
        server,
        orchestrator=orchestrator,
        settings=settings,
        chroma_store=chroma_store,
    )

    @server.resource(
        "resource://latchkey/status",
        name="latchkey_status",
        title="Latchkey MCP Status",
        description="Provides the current runtime status for the Latchkey MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        payload = build_status(
            settings,
            orchestrator,
            client_metadata=client_metadata,
            chroma_metadata=chroma_metadata,
            chroma_store=chroma_store,
            request_id=getattr(context, "request_id", None),
        )
        return json.dumps(payload)

    setattr(server, "orchestrator", orchestrator)
    setattr(server, "client_metadata", client_metadata)
    setattr(server, "chroma_store", chroma_store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Latchkey MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Latchkey MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "remote_configured": getattr(server, "client_metadata", {}).get("configured"),
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
