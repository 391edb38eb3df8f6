"""SSH private key lifecycle: status / set / clear.

The key text is written to a single file under the data directory and read
back by the SSH transport on its next connect.  Nothing here talks to a remote
host.
"""

from __future__ import annotations

import io
import os
from pathlib import Path
from typing import Callable, Optional

import paramiko

from vmrelay.config import Settings
from vmrelay.errors import InvalidInputError
from vmrelay.utils.logging import get_logger

log = get_logger(__name__)

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


def load_private_key(key_text: str) -> paramiko.PKey:
    """Parse an unencrypted OpenSSH/PEM private key."""
    last_exc: Exception | None = None
    for key_cls in _KEY_CLASSES:
        try:
            return key_cls.from_private_key(io.StringIO(key_text))
        except (paramiko.SSHException, ValueError) as exc:
            last_exc = exc
    raise paramiko.SSHException(f"unsupported or invalid private key: {last_exc}")


class KeyFileStore:
    """File-backed storage for the key text (mode 0600)."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def read(self) -> Optional[str]:
        try:
            return self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write(self, key_text: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(key_text)

    def delete(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass


class CredentialManager:
    """Tracks presence of the SSH private key used by the transport."""

    def __init__(
        self,
        store: KeyFileStore,
        *,
        max_bytes: int = 256 * 1024,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._store = store
        self._max_bytes = max_bytes
        self._on_change = on_change

    @classmethod
    def from_settings(
        cls, cfg: Settings, on_change: Callable[[], None] | None = None,
    ) -> "CredentialManager":
        return cls(
            KeyFileStore(cfg.ssh_key_path),
            max_bytes=cfg.vmrelay_key_max_bytes,
            on_change=on_change,
        )

    def status(self) -> bool:
        return self._store.exists()

    def set(self, key_text: str) -> None:
        if not key_text or not key_text.strip():
            raise InvalidInputError("Key must not be empty", action="ssh_set_private_key")
        if len(key_text.encode("utf-8")) > self._max_bytes:
            raise InvalidInputError("Key too large", action="ssh_set_private_key")
        try:
            load_private_key(key_text)
        except paramiko.SSHException:
            # The parser message can quote key material; keep it out.
            raise InvalidInputError(
                "Invalid private key format", action="ssh_set_private_key",
            ) from None
        self._store.write(key_text)
        log.info("ssh.key_set")
        self._changed()

    def clear(self) -> None:
        self._store.delete()
        log.info("ssh.key_cleared")
        self._changed()

    def load(self) -> Optional[paramiko.PKey]:
        """Parsed key for the transport, or ``None`` if absent."""
        text = self._store.read()
        if text is None:
            return None
        return load_private_key(text)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
