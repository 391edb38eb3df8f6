"""API request and response models."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, SecretStr

from vmrelay.models.commands import RemoteTarget, StopMode
from vmrelay.models.trace import TraceEntry
from vmrelay.models.vm import VmStatus


class HealthResponse(BaseModel):
    status: str
    version: str


class ErrorResponse(BaseModel):
    detail: str
    error: str


# ── SSH key ───────────────────────────────────────────────────────────────


class KeyStatusResponse(BaseModel):
    present: bool


class SetKeyRequest(BaseModel):
    key_text: SecretStr


# ── Remote requests ───────────────────────────────────────────────────────


class TargetRequest(BaseModel):
    ssh: RemoteTarget
    request_id: Optional[str] = Field(default=None, max_length=200)


class ExecRequest(TargetRequest):
    command: str


class ExecResponse(BaseModel):
    request_id: str
    output: str


class VmxRequest(TargetRequest):
    vmx_path: str
    password: Optional[SecretStr] = None


class StopRequest(VmxRequest):
    mode: StopMode = StopMode.soft


class VmActionResponse(BaseModel):
    request_id: str
    vmx_path: str
    output: str


class KnownStatusRequest(TargetRequest):
    known_vmx_paths: list[str] = Field(default_factory=list)


class KnownStatusResponse(BaseModel):
    request_id: str
    machines: list[VmStatus]


class ScanRequest(TargetRequest):
    roots: list[str]


class PathListResponse(BaseModel):
    request_id: str
    paths: list[str]


# ── Trace / e2e ───────────────────────────────────────────────────────────


class TraceListResponse(BaseModel):
    entries: list[TraceEntry]


class ExitRequest(BaseModel):
    code: int = Field(ge=0, le=255)
