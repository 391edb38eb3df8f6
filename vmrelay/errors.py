"""Error taxonomy for remote VM operations.

Every failure that reaches a caller is one of these types.  The message always
names the operation and the target so that a failed call can be reproduced;
secrets (VM passwords, key material) are never part of it.
"""

from __future__ import annotations

from typing import Optional

from vmrelay.models.commands import RemoteTarget


class VMRelayError(Exception):
    """Base class for all orchestration-layer failures."""

    #: Whether the VM control service may retry the execute step.
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        action: str = "",
        target: Optional[RemoteTarget] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.action = action
        self.target = target

    def __str__(self) -> str:
        prefix = self.action or "operation"
        if self.target is not None:
            return f"{prefix} on {self.target}: {self.message}"
        return f"{prefix}: {self.message}"


class RemoteConnectionError(VMRelayError, ConnectionError):
    """The transport could not reach or authenticate against the target."""

    retryable = True


class RemoteCommandError(VMRelayError):
    """The remote process exited nonzero or produced unusable output."""

    retryable = True

    def __init__(self, message: str, *, exit_status: Optional[int] = None, output: str = "", **kw) -> None:
        super().__init__(message, **kw)
        self.exit_status = exit_status
        self.output = output


class RemoteTimeoutError(VMRelayError, TimeoutError):
    """The remote call did not finish within its bound."""

    retryable = True


class ReconciliationError(VMRelayError):
    """The command claimed success but the observed VM state disagrees."""


class InvalidInputError(VMRelayError, ValueError):
    """Malformed input rejected before any remote call."""
