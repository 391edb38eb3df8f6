"""Process exit hook used by the verification harness."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from vmrelay.auth import require_api_key
from vmrelay.config import Settings
from vmrelay.deps import get_settings
from vmrelay.models.responses import ExitRequest
from vmrelay.utils.logging import get_logger

log = get_logger(__name__)

router = APIRouter(
    prefix="/e2e",
    tags=["e2e"],
    dependencies=[Depends(require_api_key)],
)


@router.post("/exit", status_code=status.HTTP_202_ACCEPTED)
async def e2e_exit(
    req: ExitRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
) -> dict[str, int]:
    """Terminate the hosting process with ``code`` once the response is sent."""
    if not settings.vmrelay_e2e_enabled:
        raise HTTPException(status_code=404, detail="Not Found")
    log.warning("e2e.exit", code=req.code)
    request.app.state.process_exit(req.code)
    return {"code": req.code}
