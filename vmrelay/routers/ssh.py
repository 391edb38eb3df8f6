"""SSH key lifecycle and raw remote exec endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from vmrelay.auth import require_api_key
from vmrelay.deps import get_credentials, get_vm_service
from vmrelay.models.responses import (
    ExecRequest,
    ExecResponse,
    KeyStatusResponse,
    SetKeyRequest,
)
from vmrelay.services.key_store import CredentialManager
from vmrelay.services.vm_control import VMControlService, new_request_id

router = APIRouter(
    prefix="/ssh",
    tags=["ssh"],
    dependencies=[Depends(require_api_key)],
)


@router.get("/key", response_model=KeyStatusResponse)
def ssh_key_status(
    creds: CredentialManager = Depends(get_credentials),
) -> KeyStatusResponse:
    return KeyStatusResponse(present=creds.status())


@router.put("/key", status_code=status.HTTP_204_NO_CONTENT)
def ssh_set_private_key(
    req: SetKeyRequest,
    creds: CredentialManager = Depends(get_credentials),
) -> None:
    """Validate and store the key; runs in the threadpool (parse + file write)."""
    creds.set(req.key_text.get_secret_value())


@router.delete("/key", status_code=status.HTTP_204_NO_CONTENT)
def ssh_clear_private_key(
    creds: CredentialManager = Depends(get_credentials),
) -> None:
    creds.clear()


@router.post("/exec", response_model=ExecResponse)
async def ssh_exec(
    req: ExecRequest,
    svc: VMControlService = Depends(get_vm_service),
) -> ExecResponse:
    """Run an arbitrary command on the remote host (traced, never retried)."""
    rid = req.request_id or new_request_id("ssh_exec")
    output = await svc.exec_raw(req.ssh, req.command, rid)
    return ExecResponse(request_id=rid, output=output)
