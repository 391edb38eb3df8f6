"""Trace ledger endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from vmrelay.auth import require_api_key
from vmrelay.deps import get_tracer
from vmrelay.models.responses import TraceListResponse
from vmrelay.services.tracer import CommandTracer

router = APIRouter(
    prefix="/trace",
    tags=["trace"],
    dependencies=[Depends(require_api_key)],
)


@router.get("", response_model=TraceListResponse)
async def trace_list(tracer: CommandTracer = Depends(get_tracer)) -> TraceListResponse:
    """All recorded attempts, most recent first."""
    return TraceListResponse(entries=tracer.list())


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def trace_clear(tracer: CommandTracer = Depends(get_tracer)) -> None:
    tracer.clear()
