"""Remote executor: one command, one attempt, one trace entry."""

from __future__ import annotations

import asyncio
import time
from concurrent.futures import Future
from datetime import datetime, timezone
from typing import Optional, Protocol

from vmrelay.errors import (
    RemoteCommandError,
    RemoteConnectionError,
    RemoteTimeoutError,
    VMRelayError,
)
from vmrelay.models.commands import CommandResult, RemoteTarget
from vmrelay.models.trace import TraceEntry
from vmrelay.services.command_builder import RemoteCommand
from vmrelay.services.tracer import CommandTracer
from vmrelay.utils.logging import get_logger

log = get_logger(__name__)


class RemoteShell(Protocol):
    """Transport contract: start a command, hand back a future result."""

    def submit(self, target: RemoteTarget, command: str) -> Future[CommandResult]: ...


def _scrub(text: str, secrets: list[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "********")
    return text


def _failure_message(result: CommandResult) -> str:
    trimmed = result.output.strip()
    if trimmed:
        return trimmed
    return f"Remote command exited with status {result.exit_status}"


class RemoteExecutor:
    """Runs one command through the transport and records it.

    Never retries.  Whatever happens, exactly one trace entry for the attempt
    is recorded before :meth:`execute` returns or raises.  If the caller's
    timeout expires the transport call is abandoned, not killed; when it
    eventually finishes its result is recorded as a separate ``late`` entry.
    """

    def __init__(self, shell: RemoteShell, tracer: CommandTracer) -> None:
        self._shell = shell
        self._tracer = tracer

    async def execute(
        self,
        target: RemoteTarget,
        command: RemoteCommand,
        request_id: str,
        timeout: float,
        *,
        attempt: int = 1,
    ) -> str:
        action = command.action
        text = command.render()
        shown = command.redacted()
        secrets = command.secrets()
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()

        def _trace(ok: bool, output: str, error: Optional[str], late: bool = False) -> None:
            self._tracer.record(
                TraceEntry(
                    request_id=request_id,
                    action=action,
                    attempt=attempt,
                    started_at=started_at,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    command=shown,
                    ok=ok,
                    output=_scrub(output, secrets),
                    error=_scrub(error, secrets) if error is not None else None,
                    late=late,
                ),
            )

        log.debug("exec.start", action=action, request_id=request_id, attempt=attempt, target=str(target))
        try:
            future = self._shell.submit(target, text)
        except Exception as exc:
            _trace(False, "", f"{type(exc).__name__}: {exc}")
            raise RemoteConnectionError(
                f"transport rejected the command: {exc}", action=action, target=target,
            ) from exc

        try:
            result = await asyncio.wait_for(
                asyncio.shield(asyncio.wrap_future(future)), timeout,
            )
        except asyncio.TimeoutError:
            message = f"timed out after {timeout:g}s"
            _trace(False, "", message)
            future.add_done_callback(lambda f: self._record_late(f, _trace))
            log.warning("exec.timeout", action=action, request_id=request_id, attempt=attempt)
            raise RemoteTimeoutError(message, action=action, target=target) from None
        except VMRelayError as exc:
            _trace(False, "", _scrub(exc.message, secrets))
            # Report under the operation, not the transport step that failed.
            exc.action = action
            exc.target = target
            log.warning("exec.connection_failed", action=action, request_id=request_id, error=str(exc))
            raise
        except Exception as exc:
            _trace(False, "", f"{type(exc).__name__}: {exc}")
            log.warning("exec.transport_failed", action=action, request_id=request_id, error=str(exc))
            raise RemoteConnectionError(
                f"{type(exc).__name__}: {exc}", action=action, target=target,
            ) from exc

        if result.failed:
            message = _scrub(_failure_message(result), secrets)
            _trace(False, result.output, message)
            log.info(
                "exec.failed", action=action, request_id=request_id,
                attempt=attempt, exit_status=result.exit_status,
            )
            raise RemoteCommandError(
                message, action=action, target=target,
                exit_status=result.exit_status, output=_scrub(result.output, secrets),
            )

        _trace(True, result.output, None)
        log.debug("exec.ok", action=action, request_id=request_id, attempt=attempt)
        return _scrub(result.output, secrets)

    @staticmethod
    def _record_late(future: Future[CommandResult], trace) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            trace(False, "", str(exc), late=True)
            return
        result = future.result()
        if result.failed:
            trace(False, result.output, _failure_message(result), late=True)
        else:
            trace(True, result.output, None, late=True)
