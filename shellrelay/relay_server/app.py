import asyncio
import contextlib
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI
from fastapi.responses import FileResponse
from fastapi.routing import APIRouter
from fastapi.staticfiles import StaticFiles
from loguru import logger

from shellrelay.relay_server.auth import StaticTokenVerifier, TokenVerifier
from shellrelay.relay_server.connections import ConnectedClientSet
from shellrelay.relay_server.deps import get_current_user
from shellrelay.relay_server.execution.chat import ChatDispatcher
from shellrelay.relay_server.execution.commands import CommandBuilder
from shellrelay.relay_server.execution.supervisor import ProcessSupervisor
from shellrelay.relay_server.log import setup_logging
from shellrelay.relay_server.managers.projects import ClaudeProjectsLister, ProjectLister
from shellrelay.relay_server.registry import SessionRegistry
from shellrelay.relay_server.routers.channels import router as channels_router
from shellrelay.relay_server.routers.projects import router as projects_router
from shellrelay.relay_server.routers.shell import router as shell_router
from shellrelay.relay_server.settings import RelaySettings, get_settings
from shellrelay.relay_server.watcher import ProjectsBroadcaster, WatcherSetupError

# ---------------------------------------------------------------------------
# Static UI serving
# Resolved relative to CWD.  Override with RELAY_UI_DIR env var if needed.
# ---------------------------------------------------------------------------
_UI_DIR = Path(os.getenv("RELAY_UI_DIR", "ui/dist"))


def create_app(
    settings: RelaySettings | None = None,
    *,
    verifier: TokenVerifier | None = None,
    lister: ProjectLister | None = None,
    supervisor: ProcessSupervisor | None = None,
) -> FastAPI:
    """Build the relay application.

    Components are created in the lifespan and stored on ``app.state``; the
    keyword arguments replace the defaults (tests pass fakes here).
    """

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        # -- Startup -----------------------------------------------------------
        cfg = settings or get_settings()
        setup_logging(cfg.log_level, json_output=cfg.log_json)

        token_configured = bool(cfg.auth_token)
        auth_token = cfg.resolve_auth_token()
        if verifier is None and not token_configured:
            logger.warning("No RELAY_AUTH_TOKEN set -- generated token: {}", auth_token)

        logger.info("Shellrelay starting (host={}, port={})", cfg.host, cfg.port)

        # -- Processes and sessions --------------------------------------------
        proc_supervisor = supervisor or ProcessSupervisor(
            CommandBuilder(claude_bin=cfg.claude_bin, cursor_bin=cfg.cursor_bin, shell=cfg.shell),
            kill_grace_period=cfg.kill_grace_period,
        )
        registry = SessionRegistry(
            proc_supervisor,
            max_sessions=cfg.max_sessions,
            idle_timeout=cfg.idle_timeout,
            output_buffer_bytes=cfg.output_buffer_bytes,
        )
        dispatcher = ChatDispatcher(proc_supervisor, registry)
        clients = ConnectedClientSet()
        project_lister = lister or ClaudeProjectsLister(cfg.projects_root)

        _app.state.settings = cfg
        _app.state.verifier = verifier or StaticTokenVerifier(auth_token, cfg.auth_user)
        _app.state.supervisor = proc_supervisor
        _app.state.registry = registry
        _app.state.dispatcher = dispatcher
        _app.state.clients = clients
        _app.state.lister = project_lister
        logger.info(
            "SessionRegistry: max_sessions={}, idle_timeout={}s, buffer={}B",
            cfg.max_sessions,
            cfg.idle_timeout,
            cfg.output_buffer_bytes,
        )

        # -- Project watcher ---------------------------------------------------
        broadcaster = ProjectsBroadcaster(
            cfg.projects_root,
            project_lister,
            clients,
            debounce_ms=cfg.watch_debounce_ms,
        )
        _app.state.broadcaster = broadcaster
        if cfg.watch_projects:
            try:
                await broadcaster.start()
            except WatcherSetupError as exc:
                logger.warning("Project watcher disabled -- {}", exc)
        else:
            logger.info("Project watcher disabled by RELAY_WATCH_PROJECTS")

        sweeper = asyncio.create_task(registry.run_sweeper(cfg.sweep_interval))

        yield

        # -- Shutdown ----------------------------------------------------------
        logger.info("Shellrelay shutting down (sessions={}, chat_runs={})", len(registry), len(dispatcher.runs))

        # 1. Stop accepting new sessions.
        registry.begin_shutdown()
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await broadcaster.stop()
        await clients.close_all()

        # 2. Signal every process, then wait for them to be reaped.
        evicted = registry.clear()
        await dispatcher.shutdown()
        remaining = await proc_supervisor.kill_all(timeout=cfg.kill_grace_period + 2.0)
        logger.info("Shutdown complete: evicted {} sessions, reaped {} stragglers", evicted, remaining)

    app = FastAPI(title="Shellrelay", lifespan=lifespan)

    # -----------------------------------------------------------------------
    # API router -- all HTTP endpoints live under /api
    # -----------------------------------------------------------------------
    api = APIRouter(prefix="/api")

    @api.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    api.include_router(shell_router, dependencies=[Depends(get_current_user)])
    api.include_router(projects_router, dependencies=[Depends(get_current_user)])
    app.include_router(api)

    # -- Channels (/shell, /ws) ----------------------------------------------
    app.include_router(channels_router)

    if _UI_DIR.is_dir():
        app.mount("/assets", StaticFiles(directory=_UI_DIR / "assets"), name="ui-assets")

        @app.get("/{full_path:path}")
        async def serve_spa(full_path: str) -> FileResponse:
            """Serve the SPA index.html for all unmatched routes (client-side routing)."""
            file_path = _UI_DIR / full_path
            if file_path.is_file():
                return FileResponse(file_path)
            return FileResponse(_UI_DIR / "index.html")

    return app


app = create_app()
