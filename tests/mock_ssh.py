"""Mock SSH transport simulating a Windows host running VMware Workstation.

Understands the commands produced by ``vmrelay.services.command_builder``
(list / start / stop via ``-Command``, scans via ``-EncodedCommand``) and
keeps an in-memory set of running ``.vmx`` paths.
"""

from __future__ import annotations

import base64
import json
import re
import threading
import time
from collections import Counter, defaultdict, deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from vmrelay.models.commands import CommandResult, RemoteTarget

_QUOTED = r"'((?:[^']|'')*)'"
_START_RE = re.compile(rf"-T ws (?:-vp {_QUOTED} )?start {_QUOTED} nogui")
_STOP_RE = re.compile(rf"-T ws (?:-vp {_QUOTED} )?stop {_QUOTED} (soft|hard)")
_ROOTS_RE = re.compile(rf"\$inputRoots = {_QUOTED} \| ConvertFrom-Json")
_ENCODED_RE = re.compile(r"-EncodedCommand (\S+)")

ALREADY_RUNNING = "Error: The virtual machine is already running"
NOT_POWERED_ON = "Error: The virtual machine is not powered on"


def _unquote(text: str) -> str:
    return text.replace("''", "'")


def decode_encoded_command(command: str) -> str:
    m = _ENCODED_RE.search(command)
    assert m, "not an -EncodedCommand invocation"
    return base64.b64decode(m.group(1)).decode("utf-16-le")


class FakeVmwareHost:
    """Drop-in replacement for SSHSessionManager."""

    def __init__(
        self,
        running: tuple[str, ...] = (),
        vmx_files: tuple[str, ...] = (),
        *,
        strict: bool = False,
    ) -> None:
        self.running: list[str] = list(running)
        self.vmx_files: list[str] = list(vmx_files)
        # strict: behave like real vmrun, failing no-op start/stop calls
        self.strict = strict
        self.ignore_start = False
        self.ignore_stop = False
        self.delay = 0.0
        self.list_output: Optional[str] = None
        self.scan_output: Optional[str] = None
        self.raw_responses: dict[str, CommandResult] = {
            'powershell -NoProfile -NonInteractive -Command "hostname"': CommandResult(
                output="VMHOST\r\n", exit_status=0,
            ),
        }
        self.commands: list[str] = []
        self.calls: Counter[str] = Counter()
        self.targets: list[RemoteTarget] = []
        self.max_in_flight: dict[str, int] = defaultdict(int)
        self._in_flight: dict[str, int] = defaultdict(int)
        self._failures: dict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="fake-ssh")

    # ── scripting helpers ─────────────────────────────────────────────

    def fail_next(
        self,
        kind: str,
        count: int = 1,
        *,
        output: str = "Error: Unable to connect to host",
        exit_status: int = 255,
        exc: Optional[BaseException] = None,
    ) -> None:
        """Make the next *count* calls of *kind* fail."""
        for _ in range(count):
            self._failures[kind].append((exc, CommandResult(output=output, exit_status=exit_status)))

    def is_running(self, vmx_path: str) -> bool:
        return any(p.lower() == vmx_path.lower() for p in self.running)

    # ── transport contract ────────────────────────────────────────────

    def submit(self, target: RemoteTarget, command: str) -> Future[CommandResult]:
        with self._lock:
            self.commands.append(command)
            self.targets.append(target)
        if self.delay:
            return self._pool.submit(self._handle, command)
        future: Future[CommandResult] = Future()
        try:
            future.set_result(self._handle(command))
        except BaseException as exc:  # noqa: BLE001
            future.set_exception(exc)
        return future

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    # ── simulation ────────────────────────────────────────────────────

    def _classify(self, command: str) -> tuple[str, dict]:
        if "-EncodedCommand" in command:
            script = decode_encoded_command(command)
            m = _ROOTS_RE.search(script)
            if m:
                return "scan_roots", {"roots": json.loads(_unquote(m.group(1)))}
            return "scan_default", {}
        if "-T ws list" in command:
            return "list", {}
        m = _START_RE.search(command)
        if m:
            return "start", {"path": _unquote(m.group(2))}
        m = _STOP_RE.search(command)
        if m:
            return "stop", {"path": _unquote(m.group(2)), "mode": m.group(3)}
        return "raw", {}

    def _handle(self, command: str) -> CommandResult:
        kind, args = self._classify(command)
        with self._lock:
            self.calls[kind] += 1
            queued = self._failures[kind].popleft() if self._failures[kind] else None
        path = args.get("path")
        if path is not None:
            key = path.lower()
            with self._lock:
                self._in_flight[key] += 1
                self.max_in_flight[key] = max(self.max_in_flight[key], self._in_flight[key])
        try:
            if self.delay:
                time.sleep(self.delay)
            if queued is not None:
                exc, result = queued
                if exc is not None:
                    raise exc
                return result
            return getattr(self, f"_do_{kind}")(command, **args)
        finally:
            if path is not None:
                with self._lock:
                    self._in_flight[path.lower()] -= 1

    def _do_list(self, command: str) -> CommandResult:
        if self.list_output is not None:
            return CommandResult(output=self.list_output, exit_status=0)
        lines = [f"Total running VMs: {len(self.running)}", *self.running]
        return CommandResult(output="\r\n".join(lines) + "\r\n", exit_status=0)

    def _do_start(self, command: str, path: str) -> CommandResult:
        if self.is_running(path):
            if self.strict:
                return CommandResult(output=ALREADY_RUNNING, exit_status=255)
            return CommandResult(output="", exit_status=0)
        if not self.ignore_start:
            self.running.append(path)
        return CommandResult(output="", exit_status=0)

    def _do_stop(self, command: str, path: str, mode: str) -> CommandResult:
        if not self.is_running(path):
            if self.strict:
                return CommandResult(output=NOT_POWERED_ON, exit_status=255)
            return CommandResult(output="", exit_status=0)
        if not self.ignore_stop:
            self.running = [p for p in self.running if p.lower() != path.lower()]
        return CommandResult(output="", exit_status=0)

    def _do_scan_default(self, command: str) -> CommandResult:
        if self.scan_output is not None:
            return CommandResult(output=self.scan_output, exit_status=0)
        return CommandResult(output=json.dumps(self.vmx_files), exit_status=0)

    def _do_scan_roots(self, command: str, roots: list[str]) -> CommandResult:
        if self.scan_output is not None:
            return CommandResult(output=self.scan_output, exit_status=0)
        found = [
            p for p in self.vmx_files
            if any(p.lower().startswith(r.lower().rstrip("\\") + "\\") for r in roots)
        ]
        return CommandResult(output=json.dumps(found), exit_status=0)

    def _do_raw(self, command: str) -> CommandResult:
        return self.raw_responses.get(command, CommandResult(output="", exit_status=0))
