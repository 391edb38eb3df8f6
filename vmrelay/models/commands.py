"""Command-related data structures."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RemoteTarget(BaseModel):
    """SSH endpoint that receives commands; supplied by the caller each call."""

    host: str = Field(min_length=1)
    port: int = Field(default=22, ge=1, le=65535)
    user: str = Field(min_length=1)

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"


class StopMode(str, Enum):
    soft = "soft"
    hard = "hard"


class MachineState(str, Enum):
    """Conceptual per-path state; only ever logged, never persisted."""

    unknown = "unknown"
    stopped = "stopped"
    starting = "starting"
    running = "running"
    stopping = "stopping"


class CommandResult(BaseModel):
    """Raw result of one remote execution, as returned by the transport."""

    output: str = ""
    exit_status: Optional[int] = None

    @property
    def failed(self) -> bool:
        # A missing exit status is treated as success.
        return (self.exit_status or 0) != 0
