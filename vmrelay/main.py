"""FastAPI application entry-point."""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from vmrelay import __version__
from vmrelay.config import Settings
from vmrelay.errors import (
    InvalidInputError,
    ReconciliationError,
    RemoteCommandError,
    RemoteConnectionError,
    RemoteTimeoutError,
    VMRelayError,
)
from vmrelay.routers import e2e, health, ssh, trace, vmware
from vmrelay.services.executor import RemoteExecutor, RemoteShell
from vmrelay.services.key_store import CredentialManager
from vmrelay.services.ssh_manager import SSHSessionManager
from vmrelay.services.tracer import CommandTracer
from vmrelay.services.vm_control import VMControlService
from vmrelay.utils.logging import get_logger, setup_logging

log = get_logger(__name__)

_ERROR_STATUS: dict[type[VMRelayError], int] = {
    InvalidInputError: 422,
    ReconciliationError: 409,
    RemoteTimeoutError: 504,
    RemoteConnectionError: 502,
    RemoteCommandError: 502,
}


def _exit_soon(code: int) -> None:
    """Exit after the current response has had a chance to flush."""
    asyncio.get_running_loop().call_later(0.2, os._exit, code)


async def _vmrelay_error_handler(request: Request, exc: VMRelayError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 500,
    )
    log.warning(
        "api.error", path=request.url.path, error=type(exc).__name__,
        detail=str(exc), status=status_code,
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    shell: Optional[RemoteShell] = None,
    process_exit: Callable[[int], None] = _exit_soon,
) -> FastAPI:
    """Build the application and the services it owns.

    ``shell`` replaces the paramiko transport (tests, harness dry runs).
    """
    cfg = settings or Settings()
    ssh_manager: Optional[SSHSessionManager] = None

    def _on_key_change() -> None:
        if ssh_manager is not None:
            ssh_manager.reset()

    credentials = CredentialManager.from_settings(cfg, on_change=_on_key_change)
    if shell is None:
        ssh_manager = SSHSessionManager(cfg, key_loader=credentials.load)
        shell = ssh_manager
    tracer = CommandTracer(capacity=cfg.vmrelay_trace_capacity)
    executor = RemoteExecutor(shell, tracer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown hooks."""
        setup_logging(cfg.vmrelay_log_level, cfg.vmrelay_log_json)
        log.info("app.started", version=__version__, e2e=cfg.vmrelay_e2e_enabled)
        yield
        # Shutdown: close SSH sessions
        if ssh_manager is not None:
            ssh_manager.close()

    app = FastAPI(
        title="vmrelay",
        description="Remote VMware Workstation control over SSH",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.tracer = tracer
    app.state.credentials = credentials
    app.state.vm_service = VMControlService(executor, cfg)
    app.state.process_exit = process_exit

    app.add_exception_handler(VMRelayError, _vmrelay_error_handler)

    app.include_router(health.router)
    app.include_router(ssh.router)
    app.include_router(vmware.router)
    app.include_router(trace.router)
    app.include_router(e2e.router)
    return app


app = create_app()
