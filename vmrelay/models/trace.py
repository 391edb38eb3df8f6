"""Trace ledger entries."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class TraceEntry(BaseModel):
    """One remote execution attempt, success or failure."""

    sequence_id: int = 0
    request_id: str
    action: str
    attempt: int = 1
    started_at: datetime
    duration_ms: int
    command: str
    ok: bool
    output: str = ""
    error: Optional[str] = None
    # Result of a timed-out call that completed after the caller gave up.
    late: bool = False
