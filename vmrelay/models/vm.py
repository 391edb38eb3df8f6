"""VM-level result models."""

from __future__ import annotations

from pydantic import BaseModel


class VmStatus(BaseModel):
    """A caller-known ``.vmx`` path annotated with its observed state."""

    vmx_path: str
    name: str
    is_running: bool
