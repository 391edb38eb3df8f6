"""Tests for the VM control service: retry, reconciliation, serialization."""

from __future__ import annotations

import asyncio

import pytest

from tests.conftest import TEST_VMX
from tests.mock_ssh import FakeVmwareHost
from vmrelay.errors import (
    InvalidInputError,
    ReconciliationError,
    RemoteCommandError,
    RemoteConnectionError,
    RemoteTimeoutError,
)
from vmrelay.models.commands import StopMode
from vmrelay.services.executor import RemoteExecutor
from vmrelay.services.tracer import CommandTracer
from vmrelay.services.vm_control import VMControlService, new_request_id


# ---------------------------------------------------------------------------
# list / scan
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_running_single_entry_with_request_id(service, tracer, fake_host, target):
    fake_host.running = [TEST_VMX]
    tracer.clear()
    paths = await service.list_running(target, "caller-rid")
    assert paths == [TEST_VMX]
    entries = tracer.list()
    assert len(entries) == 1
    assert entries[0].request_id == "caller-rid"


@pytest.mark.asyncio
async def test_list_running_not_retried(service, tracer, fake_host, target):
    fake_host.fail_next("list", output="Error: boom", exit_status=1)
    with pytest.raises(RemoteCommandError):
        await service.list_running(target, "rid")
    assert fake_host.calls["list"] == 1
    assert len(tracer.list()) == 1


@pytest.mark.asyncio
async def test_list_running_generates_request_id(service, tracer, target):
    await service.list_running(target)
    assert tracer.list()[0].request_id.startswith("vmware_list_running-")


@pytest.mark.asyncio
async def test_scan_roots_dedupes_case_insensitively(service, fake_host, target):
    fake_host.scan_output = '["C:\\\\VMs\\\\A.vmx","c:\\\\vms\\\\a.vmx"]'
    paths = await service.scan_roots(target, [r"C:\VMs"], "rid")
    assert paths == [r"C:\VMs\A.vmx"]


@pytest.mark.asyncio
async def test_scan_default_dedupes_case_insensitively(service, fake_host, target):
    fake_host.scan_output = '["C:\\\\VMs\\\\A.vmx","c:\\\\vms\\\\a.vmx"]'
    paths = await service.scan_default_roots(target, "rid")
    assert paths == [r"C:\VMs\A.vmx"]


@pytest.mark.asyncio
async def test_scan_roots_filters_by_root(service, fake_host, target):
    fake_host.vmx_files = [r"D:\VMs\One\One.vmx", r"E:\Other\Two.vmx"]
    assert await service.scan_roots(target, [r"d:\vms"]) == [r"D:\VMs\One\One.vmx"]


@pytest.mark.asyncio
async def test_scan_unparseable_output(service, fake_host, target):
    fake_host.scan_output = "Get-ChildItem : Access is denied"
    with pytest.raises(RemoteCommandError, match="Failed to parse"):
        await service.scan_default_roots(target)
    assert fake_host.calls["scan_default"] == 1


@pytest.mark.asyncio
async def test_scan_roots_rejects_empty_roots(service, fake_host, target):
    with pytest.raises(InvalidInputError):
        await service.scan_roots(target, [])
    assert fake_host.commands == []


@pytest.mark.asyncio
async def test_status_for_known(service, fake_host, target):
    fake_host.running = [TEST_VMX.lower()]
    result = await service.status_for_known(target, [TEST_VMX, r"C:\VMs\Off\Off.vmx"])
    assert [(m.name, m.is_running) for m in result] == [("Test", True), ("Off", False)]


# ---------------------------------------------------------------------------
# start / stop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_end_to_end_start_then_soft_stop(service, fake_host, target):
    await service.start(target, TEST_VMX, request_id="start-1")
    assert TEST_VMX in await service.list_running(target, "list-1")

    await service.stop(target, TEST_VMX, StopMode.soft, request_id="stop-1")
    assert TEST_VMX not in await service.list_running(target, "list-2")


@pytest.mark.asyncio
async def test_start_reconciles_with_list(service, tracer, fake_host, target):
    await service.start(target, TEST_VMX, request_id="rid")
    actions = [e.action for e in reversed(tracer.list())]
    assert actions == ["vmware_start_vm", "vmware_list_running"]
    assert all(e.request_id == "rid" for e in tracer.list())


@pytest.mark.asyncio
async def test_start_already_running_is_noop(service, fake_host, target):
    fake_host.running = [TEST_VMX]
    await service.start(target, TEST_VMX)
    assert fake_host.calls["start"] == 1
    assert fake_host.calls["stop"] == 0
    assert fake_host.running == [TEST_VMX]


@pytest.mark.asyncio
async def test_start_already_running_strict_vmrun(settings, target):
    host = FakeVmwareHost(running=(TEST_VMX,), strict=True)
    svc = VMControlService(RemoteExecutor(host, CommandTracer()), settings)
    await svc.start(target, TEST_VMX)
    assert host.calls["start"] == 1
    assert host.calls["stop"] == 0


@pytest.mark.asyncio
async def test_stop_not_running_strict_vmrun(settings, target):
    host = FakeVmwareHost(strict=True)
    svc = VMControlService(RemoteExecutor(host, CommandTracer()), settings)
    await svc.stop(target, TEST_VMX, StopMode.hard)
    assert host.calls["stop"] == 1


@pytest.mark.asyncio
async def test_start_retried_once_on_transient_failure(service, tracer, fake_host, target):
    fake_host.fail_next("start", output="Error: Unable to connect to host")
    await service.start(target, TEST_VMX, request_id="rid")
    assert fake_host.calls["start"] == 2
    starts = [e for e in tracer.list() if e.action == "vmware_start_vm"]
    assert sorted(e.attempt for e in starts) == [1, 2]
    assert [e.ok for e in sorted(starts, key=lambda e: e.attempt)] == [False, True]


@pytest.mark.asyncio
async def test_start_gives_up_after_two_attempts(service, tracer, fake_host, target):
    fake_host.fail_next("start", count=2, exc=RemoteConnectionError("connection refused", target=target))
    with pytest.raises(RemoteConnectionError):
        await service.start(target, TEST_VMX, request_id="rid")
    assert fake_host.calls["start"] == 2
    assert fake_host.calls["list"] == 0
    assert len(tracer.list()) == 2


@pytest.mark.asyncio
async def test_start_reconciliation_failure(service, tracer, fake_host, target):
    fake_host.ignore_start = True
    with pytest.raises(ReconciliationError, match="not running"):
        await service.start(target, TEST_VMX, request_id="rid")
    # Reconciliation failures are never retried with another start.
    assert fake_host.calls["start"] == 1
    assert fake_host.calls["list"] == 2


@pytest.mark.asyncio
async def test_soft_stop_reconciliation_failure(service, fake_host, target):
    fake_host.running = [TEST_VMX]
    fake_host.ignore_stop = True
    with pytest.raises(ReconciliationError, match="not stopped"):
        await service.stop(target, TEST_VMX, StopMode.soft)
    assert fake_host.calls["stop"] == 1


@pytest.mark.asyncio
async def test_soft_stop_does_not_escalate(service, fake_host, target):
    fake_host.running = [TEST_VMX]
    fake_host.fail_next("stop", count=2, output="Error: The operation was canceled", exit_status=255)
    with pytest.raises(RemoteCommandError):
        await service.stop(target, TEST_VMX, StopMode.soft)
    assert all(" soft " in c for c in fake_host.commands if "stop '" in c)


@pytest.mark.asyncio
async def test_soft_stop_tools_not_running_is_a_failure(service, fake_host, target):
    fake_host.running = [TEST_VMX]
    tools_error = f"Error: The VMware Tools are not running in the virtual machine: {TEST_VMX}"
    fake_host.fail_next("stop", count=2, output=tools_error, exit_status=255)
    with pytest.raises(RemoteCommandError, match="VMware Tools are not running"):
        await service.stop(target, TEST_VMX, StopMode.soft, request_id="rid")
    assert fake_host.calls["stop"] == 2
    assert fake_host.calls["list"] == 0
    assert fake_host.is_running(TEST_VMX)


@pytest.mark.asyncio
async def test_start_retried_after_timeout(service, tracer, fake_host, target):
    fake_host.fail_next("start", exc=RemoteTimeoutError("timed out after 5s", target=target))
    await service.start(target, TEST_VMX, request_id="rid")
    assert fake_host.calls["start"] == 2
    starts = sorted(
        (e for e in tracer.list() if e.action == "vmware_start_vm"), key=lambda e: e.attempt,
    )
    assert [(e.attempt, e.ok) for e in starts] == [(1, False), (2, True)]


@pytest.mark.asyncio
async def test_stop_timeout_surfaces_after_two_attempts(settings, tracer, fake_host, target):
    settings.vmrelay_exec_timeout_seconds = 0.05
    svc = VMControlService(RemoteExecutor(fake_host, tracer), settings)
    fake_host.running = [TEST_VMX]
    fake_host.delay = 0.3
    with pytest.raises(RemoteTimeoutError, match="vmware_stop_vm"):
        await svc.stop(target, TEST_VMX, StopMode.hard, request_id="rid")
    assert fake_host.calls["stop"] == 2
    assert fake_host.calls["list"] == 0
    attempts = sorted(e.attempt for e in tracer.list() if not e.late)
    assert attempts == [1, 2]
    assert all(not e.ok for e in tracer.list() if not e.late)

    # Both abandoned calls still land in the ledger once they finish.
    for _ in range(100):
        if sum(e.late for e in tracer.list()) == 2:
            break
        await asyncio.sleep(0.02)
    assert sum(e.late for e in tracer.list()) == 2


@pytest.mark.asyncio
async def test_start_invalid_path(service, fake_host, target):
    with pytest.raises(InvalidInputError, match="vmx_path"):
        await service.start(target, "")
    assert fake_host.commands == []


@pytest.mark.asyncio
async def test_every_attempt_traced(service, tracer, fake_host, target):
    fake_host.fail_next("stop", output="Error: Unable to connect to host")
    fake_host.running = [TEST_VMX]
    await service.stop(target, TEST_VMX, request_id="rid")
    # 2 stop attempts + 1 reconciliation poll
    assert len(tracer.list()) == len(fake_host.commands) == 3
    assert all(e.duration_ms >= 0 for e in tracer.list())


# ---------------------------------------------------------------------------
# per-path serialization
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_stops_same_path_are_serialized(service, fake_host, target):
    fake_host.running = [TEST_VMX]
    fake_host.delay = 0.05
    await asyncio.gather(
        service.stop(target, TEST_VMX, request_id="a"),
        service.stop(target, TEST_VMX.upper(), request_id="b"),
    )
    assert fake_host.calls["stop"] == 2
    assert fake_host.max_in_flight[TEST_VMX.lower()] == 1
    assert not service.is_busy(TEST_VMX)


@pytest.mark.asyncio
async def test_different_paths_run_concurrently(service, fake_host, target):
    other = r"C:\VMs\Other\Other.vmx"
    fake_host.delay = 0.2

    async def started() -> None:
        while not (service.is_busy(TEST_VMX) and service.is_busy(other)):
            await asyncio.sleep(0.01)

    await asyncio.wait_for(
        asyncio.gather(
            service.start(target, TEST_VMX),
            service.start(target, other),
            started(),
        ),
        timeout=5,
    )
    assert fake_host.is_running(TEST_VMX)
    assert fake_host.is_running(other)


@pytest.mark.asyncio
async def test_lock_released_after_failure(service, fake_host, target):
    fake_host.ignore_start = True
    with pytest.raises(ReconciliationError):
        await service.start(target, TEST_VMX)
    assert not service.is_busy(TEST_VMX)
    fake_host.ignore_start = False
    await service.start(target, TEST_VMX)


def test_new_request_id_prefix():
    assert new_request_id("x").startswith("x-")
    assert new_request_id("x") != new_request_id("x")
