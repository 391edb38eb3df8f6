"""Shared pytest fixtures."""

from __future__ import annotations

import io
import os

# Force settings to use test-safe defaults before any import
os.environ.setdefault("VMRELAY_API_KEY", "")
os.environ.setdefault("VMRELAY_DATA_DIR", "/tmp/vmrelay-test")

import paramiko
import pytest
from httpx import ASGITransport, AsyncClient

from tests.mock_ssh import FakeVmwareHost
from vmrelay.config import Settings
from vmrelay.models.commands import RemoteTarget
from vmrelay.services.executor import RemoteExecutor
from vmrelay.services.tracer import CommandTracer
from vmrelay.services.vm_control import VMControlService

TEST_VMX = r"C:\VMs\Test\Test.vmx"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        vmrelay_data_dir=str(tmp_path / "data"),
        vmrelay_api_key="",
        vmrelay_exec_timeout_seconds=5,
        vmrelay_reconcile_timeout_seconds=5,
        vmrelay_retry_backoff_ms=10,
        vmrelay_reconcile_polls=2,
        vmrelay_reconcile_interval_ms=0,
        vmrelay_e2e_enabled=True,
    )


@pytest.fixture
def target():
    return RemoteTarget(host="192.168.5.100", port=22, user="rin")


@pytest.fixture
def fake_host():
    """Provide a fresh FakeVmwareHost."""
    host = FakeVmwareHost()
    yield host
    host.close()


@pytest.fixture
def tracer():
    return CommandTracer(capacity=200)


@pytest.fixture
def executor(fake_host, tracer):
    return RemoteExecutor(fake_host, tracer)


@pytest.fixture
def service(executor, settings):
    return VMControlService(executor, settings)


@pytest.fixture(scope="session")
def private_key_text():
    buf = io.StringIO()
    paramiko.RSAKey.generate(2048).write_private_key(buf)
    return buf.getvalue()


@pytest.fixture
def exit_codes():
    return []


@pytest.fixture
def app(settings, fake_host, exit_codes):
    from vmrelay.main import create_app

    return create_app(settings, shell=fake_host, process_exit=exit_codes.append)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def client(app):
    """Async test client wired to the fake VMware host."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
