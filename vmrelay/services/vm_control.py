"""VM control service: list / start / stop / scan over the remote executor.

Start and stop are retried (transient channel failures only) and then
reconciled against ``vmrun list``: a zero exit code from vmrun is not trusted
on its own.  Calls for the same ``.vmx`` path are serialized; a second caller
waits until the first one (including its reconciliation) has finished.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional, Sequence
from uuid import uuid4

from pydantic import ValidationError

from vmrelay.config import Settings
from vmrelay.errors import (
    InvalidInputError,
    ReconciliationError,
    RemoteCommandError,
    VMRelayError,
)
from vmrelay.models.commands import MachineState, RemoteTarget, StopMode
from vmrelay.models.vm import VmStatus
from vmrelay.services.command_builder import (
    ListRunningCommand,
    RawCommand,
    RemoteCommand,
    ScanDefaultRootsCommand,
    ScanRootsCommand,
    StartVmCommand,
    StopVmCommand,
)
from vmrelay.services.executor import RemoteExecutor
from vmrelay.utils.logging import get_logger
from vmrelay.utils.vmrun_parser import (
    guess_vm_name,
    is_already_running,
    is_not_running,
    parse_json_string_array,
    parse_vmrun_list_output,
    same_path,
)

log = get_logger(__name__)


def new_request_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:16]}"


class _PathLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class VMControlService:
    """High-level VM operations against one remote VMware Workstation host."""

    def __init__(self, executor: RemoteExecutor, cfg: Settings) -> None:
        self._executor = executor
        self._exec_timeout = cfg.vmrelay_exec_timeout_seconds
        self._attempts = max(cfg.vmrelay_retry_attempts, 1)
        self._backoff = cfg.vmrelay_retry_backoff_ms / 1000
        self._reconcile_timeout = cfg.vmrelay_reconcile_timeout_seconds
        self._reconcile_polls = max(cfg.vmrelay_reconcile_polls, 1)
        self._reconcile_interval = cfg.vmrelay_reconcile_interval_ms / 1000
        self._locks: dict[str, _PathLock] = {}

    # ── helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _build(
        command_cls: type[RemoteCommand], action: str, target: RemoteTarget, **fields,
    ) -> RemoteCommand:
        try:
            return command_cls(**fields)
        except ValidationError as exc:
            err = exc.errors()[0]
            where = ".".join(str(p) for p in err.get("loc", ()))
            message = err.get("msg", "invalid input")
            if where:
                message = f"{where}: {message}"
            raise InvalidInputError(message, action=action, target=target) from None

    @asynccontextmanager
    async def _path_lock(self, vmx_path: str) -> AsyncIterator[None]:
        key = vmx_path.casefold()
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _PathLock()
        entry.users += 1
        try:
            if entry.lock.locked():
                log.info("vm.waiting_for_path", path=vmx_path)
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    def is_busy(self, vmx_path: str) -> bool:
        entry = self._locks.get(vmx_path.casefold())
        return entry is not None and entry.lock.locked()

    async def _list(self, target: RemoteTarget, request_id: str, timeout: float, attempt: int = 1) -> list[str]:
        output = await self._executor.execute(
            target, ListRunningCommand(), request_id, timeout, attempt=attempt,
        )
        return parse_vmrun_list_output(output)

    async def _run_with_retry(
        self,
        target: RemoteTarget,
        command: RemoteCommand,
        request_id: str,
        is_noop: Callable[[str], bool],
    ) -> str:
        attempt = 1
        while True:
            try:
                return await self._executor.execute(
                    target, command, request_id, self._exec_timeout, attempt=attempt,
                )
            except RemoteCommandError as exc:
                if is_noop(exc.output or exc.message):
                    log.info("vm.noop", action=command.action, request_id=request_id)
                    return exc.output
                if attempt >= self._attempts:
                    raise
                error = exc.message
            except VMRelayError as exc:
                if not exc.retryable or attempt >= self._attempts:
                    raise
                error = exc.message
            log.warning(
                "vm.retry", action=command.action, request_id=request_id,
                attempt=attempt, error=error,
            )
            await asyncio.sleep(self._backoff)
            attempt += 1

    async def _reconcile(
        self,
        target: RemoteTarget,
        vmx_path: str,
        request_id: str,
        *,
        expect_running: bool,
        action: str,
    ) -> None:
        for poll in range(1, self._reconcile_polls + 1):
            running = await self._list(target, request_id, self._reconcile_timeout, attempt=poll)
            present = any(same_path(p, vmx_path) for p in running)
            if present == expect_running:
                return
            if poll < self._reconcile_polls:
                await asyncio.sleep(self._reconcile_interval)
        expected = "running" if expect_running else "stopped"
        raise ReconciliationError(
            f"vmrun reported success but {vmx_path} is not {expected}",
            action=action, target=target,
        )

    # ── public: raw exec ──────────────────────────────────────────────

    async def exec_raw(self, target: RemoteTarget, command: str, request_id: Optional[str] = None) -> str:
        cmd = self._build(RawCommand, "ssh_exec", target, text=command)
        rid = request_id or new_request_id(cmd.action)
        return await self._executor.execute(target, cmd, rid, self._exec_timeout)

    # ── public: read operations (never retried) ───────────────────────

    async def list_running(self, target: RemoteTarget, request_id: Optional[str] = None) -> list[str]:
        rid = request_id or new_request_id("vmware_list_running")
        return await self._list(target, rid, self._exec_timeout)

    async def status_for_known(
        self,
        target: RemoteTarget,
        known_paths: Sequence[str],
        request_id: Optional[str] = None,
    ) -> list[VmStatus]:
        running = await self.list_running(target, request_id or new_request_id("vmware_status_for_known"))
        return [
            VmStatus(
                vmx_path=path,
                name=guess_vm_name(path),
                is_running=any(same_path(p, path) for p in running),
            )
            for path in known_paths
        ]

    async def _scan(self, target: RemoteTarget, command: RemoteCommand, request_id: Optional[str]) -> list[str]:
        rid = request_id or new_request_id(command.action)
        output = await self._executor.execute(target, command, rid, self._exec_timeout)
        try:
            return parse_json_string_array(output)
        except ValueError as exc:
            raise RemoteCommandError(str(exc), action=command.action, target=target, output=output) from None

    async def scan_default_roots(self, target: RemoteTarget, request_id: Optional[str] = None) -> list[str]:
        return await self._scan(target, ScanDefaultRootsCommand(), request_id)

    async def scan_roots(
        self, target: RemoteTarget, roots: Sequence[str], request_id: Optional[str] = None,
    ) -> list[str]:
        cmd = self._build(ScanRootsCommand, "vmware_scan_vmx", target, roots=tuple(roots))
        return await self._scan(target, cmd, request_id)

    # ── public: mutating operations ───────────────────────────────────

    async def start(
        self,
        target: RemoteTarget,
        vmx_path: str,
        password: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> str:
        cmd = self._build(StartVmCommand, "vmware_start_vm", target, vmx_path=vmx_path, password=password)
        rid = request_id or new_request_id(cmd.action)
        async with self._path_lock(vmx_path):
            log.info("vm.state", path=vmx_path, state=MachineState.starting.value, request_id=rid)
            try:
                output = await self._run_with_retry(target, cmd, rid, is_already_running)
                await self._reconcile(target, vmx_path, rid, expect_running=True, action=cmd.action)
            except VMRelayError as exc:
                log.warning(
                    "vm.state", path=vmx_path, state=MachineState.stopped.value,
                    request_id=rid, error=str(exc),
                )
                raise
            log.info("vm.state", path=vmx_path, state=MachineState.running.value, request_id=rid)
            return output

    async def stop(
        self,
        target: RemoteTarget,
        vmx_path: str,
        mode: StopMode = StopMode.soft,
        password: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> str:
        cmd = self._build(
            StopVmCommand, "vmware_stop_vm", target,
            vmx_path=vmx_path, mode=mode, password=password,
        )
        rid = request_id or new_request_id(cmd.action)
        async with self._path_lock(vmx_path):
            log.info(
                "vm.state", path=vmx_path, state=MachineState.stopping.value,
                mode=cmd.mode.value, request_id=rid,
            )
            try:
                output = await self._run_with_retry(target, cmd, rid, is_not_running)
                await self._reconcile(target, vmx_path, rid, expect_running=False, action=cmd.action)
            except VMRelayError as exc:
                log.warning(
                    "vm.state", path=vmx_path, state=MachineState.running.value,
                    request_id=rid, error=str(exc),
                )
                raise
            log.info("vm.state", path=vmx_path, state=MachineState.stopped.value, request_id=rid)
            return output
