"""SSH session manager with per-target connection reuse and idle timeout.

Uses paramiko; all blocking socket work runs on a bounded thread pool so the
FastAPI event loop is never blocked.  Commands are submitted as
:class:`concurrent.futures.Future` objects so that a caller which stops
waiting (timeout) can still observe the eventual result.
"""

from __future__ import annotations

import socket
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

import paramiko

from vmrelay.config import Settings
from vmrelay.errors import RemoteConnectionError
from vmrelay.models.commands import CommandResult, RemoteTarget
from vmrelay.utils.logging import get_logger
from vmrelay.utils.vmrun_parser import decode_remote_output

log = get_logger(__name__)

KEY_MISSING = "SSH private key not configured. Please upload it first."

KeyLoader = Callable[[], Optional[paramiko.PKey]]


class _Session:
    __slots__ = ("client", "last_used")

    def __init__(self, client: paramiko.SSHClient) -> None:
        self.client = client
        self.last_used = time.monotonic()

    @property
    def alive(self) -> bool:
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()


class SSHSessionManager:
    """Pool of authenticated SSH connections, one per :class:`RemoteTarget`."""

    def __init__(self, cfg: Settings, key_loader: KeyLoader) -> None:
        self._cfg = cfg
        self._key_loader = key_loader
        self._sessions: dict[RemoteTarget, _Session] = {}
        self._connect_locks: dict[RemoteTarget, threading.Lock] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=cfg.vmrelay_ssh_max_workers, thread_name_prefix="ssh",
        )

    # ── connection lifecycle ──────────────────────────────────────────

    def _open_sync(self, target: RemoteTarget) -> paramiko.SSHClient:
        try:
            pkey = self._key_loader()
        except paramiko.SSHException as exc:
            raise RemoteConnectionError(
                f"stored SSH private key is unusable: {type(exc).__name__}",
                action="ssh_connect", target=target,
            ) from None
        if pkey is None:
            raise RemoteConnectionError(KEY_MISSING, action="ssh_connect", target=target)

        log.info("ssh.connecting", target=str(target))
        client = paramiko.SSHClient()
        # Hosts are addressed by the operator directly; any host key is accepted.
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        timeout = self._cfg.vmrelay_ssh_connect_timeout_seconds
        try:
            client.connect(
                hostname=target.host,
                port=target.port,
                username=target.user,
                pkey=pkey,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise RemoteConnectionError(
                f"SSH authentication failed: {exc}", action="ssh_connect", target=target,
            ) from exc
        except (paramiko.SSHException, socket.error) as exc:
            client.close()
            raise RemoteConnectionError(
                f"{type(exc).__name__}: {exc}", action="ssh_connect", target=target,
            ) from exc
        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(15)
        log.info("ssh.connected", target=str(target))
        return client

    def _session_for(self, target: RemoteTarget) -> _Session:
        with self._lock:
            connect_lock = self._connect_locks.setdefault(target, threading.Lock())
        with connect_lock:
            with self._lock:
                session = self._sessions.get(target)
            if session is not None and session.alive:
                session.last_used = time.monotonic()
                return session
            if session is not None:
                self._drop(target, session)
            session = _Session(self._open_sync(target))
            with self._lock:
                self._sessions[target] = session
            return session

    def _drop(self, target: RemoteTarget, session: _Session) -> None:
        with self._lock:
            if self._sessions.get(target) is session:
                del self._sessions[target]
        try:
            session.client.close()
        except Exception:
            log.debug("ssh.close_failed", target=str(target))
        log.info("ssh.closed", target=str(target))

    # ── idle timeout ──────────────────────────────────────────────────

    def prune_idle(self) -> None:
        """Close sessions unused for longer than the idle timeout."""
        cutoff = time.monotonic() - self._cfg.vmrelay_ssh_idle_timeout_seconds
        with self._lock:
            stale = [(t, s) for t, s in self._sessions.items() if s.last_used < cutoff]
        for target, session in stale:
            log.info("ssh.idle_timeout", target=str(target))
            self._drop(target, session)

    # ── public: exec ──────────────────────────────────────────────────

    def exec_sync(self, target: RemoteTarget, command: str) -> CommandResult:
        """Run *command* on *target* and collect combined stdout/stderr."""
        session = self._session_for(target)
        try:
            channel = session.client.get_transport().open_session()
        except (paramiko.SSHException, AttributeError, socket.error) as exc:
            self._drop(target, session)
            raise RemoteConnectionError(
                f"could not open channel: {exc}", action="ssh_exec", target=target,
            ) from exc

        chunks: list[bytes] = []
        try:
            channel.set_combine_stderr(True)
            channel.exec_command(command)
            while True:
                data = channel.recv(65535)
                if not data:
                    break
                chunks.append(data)
            status = channel.recv_exit_status()
        except (paramiko.SSHException, socket.error) as exc:
            self._drop(target, session)
            raise RemoteConnectionError(
                f"channel failed: {exc}", action="ssh_exec", target=target,
            ) from exc
        finally:
            channel.close()
        session.last_used = time.monotonic()

        return CommandResult(
            output=decode_remote_output(b"".join(chunks)),
            exit_status=status if status >= 0 else None,
        )

    def submit(self, target: RemoteTarget, command: str) -> Future[CommandResult]:
        self.prune_idle()
        return self._executor.submit(self.exec_sync, target, command)

    # ── public: lifecycle helpers ─────────────────────────────────────

    def reset(self) -> None:
        """Drop every cached session (e.g. after the key changed)."""
        with self._lock:
            sessions = list(self._sessions.items())
        for target, session in sessions:
            self._drop(target, session)

    def close(self) -> None:
        self.reset()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def is_connected(self, target: RemoteTarget) -> bool:
        with self._lock:
            session = self._sessions.get(target)
        return session is not None and session.alive
