"""VMware Workstation endpoints: list, status, start, stop, scan."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from vmrelay.auth import require_api_key
from vmrelay.deps import get_vm_service
from vmrelay.models.responses import (
    KnownStatusRequest,
    KnownStatusResponse,
    PathListResponse,
    ScanRequest,
    StopRequest,
    TargetRequest,
    VmActionResponse,
    VmxRequest,
)
from vmrelay.services.vm_control import VMControlService, new_request_id

router = APIRouter(
    prefix="/vmware",
    tags=["vmware"],
    dependencies=[Depends(require_api_key)],
)


def _secret(req: VmxRequest) -> str | None:
    return req.password.get_secret_value() if req.password else None


# ---------------------------------------------------------------------------
# READ endpoints
# ---------------------------------------------------------------------------


@router.post("/running", response_model=PathListResponse)
async def vmware_list_running(
    req: TargetRequest,
    svc: VMControlService = Depends(get_vm_service),
) -> PathListResponse:
    """``.vmx`` paths of all running VMs, deduplicated case-insensitively."""
    rid = req.request_id or new_request_id("vmware_list_running")
    paths = await svc.list_running(req.ssh, rid)
    return PathListResponse(request_id=rid, paths=paths)


@router.post("/status", response_model=KnownStatusResponse)
async def vmware_status_for_known(
    req: KnownStatusRequest,
    svc: VMControlService = Depends(get_vm_service),
) -> KnownStatusResponse:
    rid = req.request_id or new_request_id("vmware_status_for_known")
    machines = await svc.status_for_known(req.ssh, req.known_vmx_paths, rid)
    return KnownStatusResponse(request_id=rid, machines=machines)


@router.post("/scan/default", response_model=PathListResponse)
async def vmware_scan_default_vmx(
    req: TargetRequest,
    svc: VMControlService = Depends(get_vm_service),
) -> PathListResponse:
    """Search the per-user and shared default VM folders for ``.vmx`` files."""
    rid = req.request_id or new_request_id("vmware_scan_default_vmx")
    paths = await svc.scan_default_roots(req.ssh, rid)
    return PathListResponse(request_id=rid, paths=paths)


@router.post("/scan", response_model=PathListResponse)
async def vmware_scan_vmx(
    req: ScanRequest,
    svc: VMControlService = Depends(get_vm_service),
) -> PathListResponse:
    rid = req.request_id or new_request_id("vmware_scan_vmx")
    paths = await svc.scan_roots(req.ssh, req.roots, rid)
    return PathListResponse(request_id=rid, paths=paths)


# ---------------------------------------------------------------------------
# WRITE endpoints
# ---------------------------------------------------------------------------


@router.post("/start", response_model=VmActionResponse)
async def vmware_start_vm(
    req: VmxRequest,
    svc: VMControlService = Depends(get_vm_service),
) -> VmActionResponse:
    """Start a VM and confirm it shows up in ``vmrun list``."""
    rid = req.request_id or new_request_id("vmware_start_vm")
    output = await svc.start(req.ssh, req.vmx_path, _secret(req), rid)
    return VmActionResponse(request_id=rid, vmx_path=req.vmx_path, output=output)


@router.post("/stop", response_model=VmActionResponse)
async def vmware_stop_vm(
    req: StopRequest,
    svc: VMControlService = Depends(get_vm_service),
) -> VmActionResponse:
    """Stop a VM (soft or hard) and confirm it left ``vmrun list``."""
    rid = req.request_id or new_request_id("vmware_stop_vm")
    output = await svc.stop(req.ssh, req.vmx_path, req.mode, _secret(req), rid)
    return VmActionResponse(request_id=rid, vmx_path=req.vmx_path, output=output)
