"""End-to-end verification harness.

Drives every operation of the API against a real remote host, configured
exclusively through ``VMRELAY_E2E_*`` environment variables, then prints one
line::

    [e2e] PASS {"ok": true, "at": "...", "events": [...]}

and asks the service to exit with 0 (pass) or 1 (fail).  Without
``VMRELAY_E2E_BASE_URL`` the app is hosted in-process.

Usage::

    VMRELAY_E2E_SSH_HOST=192.168.5.100 VMRELAY_E2E_SSH_USER=rin python -m vmrelay.e2e
"""

from __future__ import annotations

import asyncio
import json
import sys
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
from fastapi import FastAPI
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vmrelay.services.vm_control import new_request_id
from vmrelay.utils.logging import get_logger, setup_logging

log = get_logger(__name__)

MARKER = "[e2e]"
EXIT_MISSING_ENV = 2


class E2ESettings(BaseSettings):
    """Harness configuration (environment only, no .env file)."""

    ssh_host: str = ""
    ssh_port: int = 22
    ssh_user: str = ""
    ssh_key_text: str = ""
    vm_vmx_path: str = ""
    vm_password: str = ""
    scan_roots: str = ""
    run_hard_stop: bool = False
    timeout_ms: int = 120_000
    base_url: str = ""
    api_key: str = ""

    model_config = SettingsConfigDict(env_prefix="VMRELAY_E2E_")

    def missing(self) -> list[str]:
        names = []
        if not self.ssh_host.strip():
            names.append("VMRELAY_E2E_SSH_HOST")
        if not self.ssh_user.strip():
            names.append("VMRELAY_E2E_SSH_USER")
        return names

    def ssh(self) -> dict[str, Any]:
        port = self.ssh_port if 0 < self.ssh_port < 65536 else 22
        return {"host": self.ssh_host.strip(), "port": port, "user": self.ssh_user.strip()}

    def roots(self) -> list[str]:
        if not self.scan_roots.strip():
            return []
        try:
            value = json.loads(self.scan_roots)
        except ValueError:
            return []
        if not isinstance(value, list):
            return []
        return [str(v) for v in value if v]


class E2EEvent(BaseModel):
    name: str
    ok: bool
    duration_ms: int
    error: Optional[str] = None
    meta: Optional[dict[str, Any]] = None


class E2EReport(BaseModel):
    ok: bool
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    events: list[E2EEvent] = Field(default_factory=list)

    def line(self) -> str:
        status = "PASS" if self.ok else "FAIL"
        return f"{MARKER} {status} {self.model_dump_json()}"


class StepFailed(Exception):
    pass


class Suite:
    """Ordered calls against the API, each recorded as an :class:`E2EEvent`."""

    def __init__(self, client: httpx.AsyncClient, cfg: E2ESettings) -> None:
        self.client = client
        self.cfg = cfg
        self.events: list[E2EEvent] = []
        self.request_ids: list[str] = []
        self._timeout = cfg.timeout_ms / 1000

    async def call(self, method: str, url: str, body: Optional[dict] = None) -> Any:
        resp = await self.client.request(method, url, json=body)
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("detail", resp.text)
            except ValueError:
                detail = resp.text
            raise StepFailed(f"{method} {url} -> {resp.status_code}: {detail}")
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def rid(self, prefix: str) -> str:
        rid = new_request_id(prefix)
        self.request_ids.append(rid)
        return rid

    def skip(self, name: str, reason: str) -> None:
        self.events.append(E2EEvent(name=name, ok=True, duration_ms=0, meta={"reason": reason}))

    async def step(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        meta: Optional[dict[str, Any]] = None,
    ) -> Any:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(fn(), self._timeout)
        except asyncio.TimeoutError:
            error = f"{name} timed out after {self.cfg.timeout_ms}ms"
            self._record(name, started, error, meta)
            raise StepFailed(error) from None
        except Exception as exc:
            self._record(name, started, str(exc), meta)
            raise
        self._record(name, started, None, meta)
        return result

    def _record(self, name: str, started: float, error: Optional[str], meta) -> None:
        self.events.append(
            E2EEvent(
                name=name,
                ok=error is None,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=error,
                meta=meta,
            ),
        )

    # ── operations ────────────────────────────────────────────────────

    async def is_running(self, vmx_path: str, prefix: str) -> bool:
        body = {"ssh": self.cfg.ssh(), "request_id": self.rid(prefix)}
        data = await self.call("POST", "/vmware/running", body)
        return any(p.casefold() == vmx_path.casefold() for p in data["paths"])

    async def start(self, vmx_path: str, prefix: str) -> None:
        await self.call("POST", "/vmware/start", {
            "ssh": self.cfg.ssh(),
            "vmx_path": vmx_path,
            "password": self.cfg.vm_password or None,
            "request_id": self.rid(prefix),
        })

    async def stop(self, vmx_path: str, mode: str, prefix: str) -> None:
        await self.call("POST", "/vmware/stop", {
            "ssh": self.cfg.ssh(),
            "vmx_path": vmx_path,
            "mode": mode,
            "password": self.cfg.vm_password or None,
            "request_id": self.rid(prefix),
        })

    async def start_then_confirm(self, vmx_path: str, prefix: str) -> None:
        await self.start(vmx_path, prefix)
        if not await self.is_running(vmx_path, f"{prefix}_check"):
            raise StepFailed("vmware_start_vm returned success but VM is not running.")

    async def stop_then_confirm(self, vmx_path: str, mode: str, prefix: str) -> None:
        await self.stop(vmx_path, mode, prefix)
        if await self.is_running(vmx_path, f"{prefix}_check"):
            raise StepFailed(f"vmware_stop_vm({mode}) returned success but VM is still running.")

    async def check_trace(self) -> int:
        data = await self.call("GET", "/trace")
        seen = {entry["request_id"] for entry in data["entries"]}
        missing = [rid for rid in self.request_ids if rid not in seen]
        if missing:
            raise StepFailed(f"trace is missing request ids: {', '.join(missing[:5])}")
        return len(data["entries"])


async def run_suite(client: httpx.AsyncClient, cfg: E2ESettings) -> E2EReport:
    """Run every step; the first failing step ends the run."""
    suite = Suite(client, cfg)
    ssh = cfg.ssh()
    vmx_path = cfg.vm_vmx_path.strip()
    roots = cfg.roots()
    installed_key = False
    ok = True

    try:
        await suite.step("trace_clear", lambda: suite.call("DELETE", "/trace"))

        status = await suite.step("ssh_key_status", lambda: suite.call("GET", "/ssh/key"))
        if not status["present"]:
            if not cfg.ssh_key_text:
                raise StepFailed("SSH key missing; set VMRELAY_E2E_SSH_KEY_TEXT or configure the key first.")
            await suite.step(
                "ssh_set_private_key",
                lambda: suite.call("PUT", "/ssh/key", {"key_text": cfg.ssh_key_text}),
            )
            installed_key = True
            after = await suite.step("ssh_key_status_after_set", lambda: suite.call("GET", "/ssh/key"))
            if not after["present"]:
                raise StepFailed("ssh_set_private_key reported success, but ssh_key_status is still false.")

        await suite.step("ssh_exec_hostname", lambda: suite.call("POST", "/ssh/exec", {
            "ssh": ssh,
            "command": 'powershell -NoProfile -NonInteractive -Command "hostname"',
            "request_id": suite.rid("ssh_exec"),
        }))

        await suite.step("vmware_list_running", lambda: suite.call("POST", "/vmware/running", {
            "ssh": ssh, "request_id": suite.rid("vmware_list_running"),
        }))

        await suite.step(
            "vmware_status_for_known",
            lambda: suite.call("POST", "/vmware/status", {
                "ssh": ssh,
                "known_vmx_paths": [vmx_path] if vmx_path else [],
                "request_id": suite.rid("vmware_status_for_known"),
            }),
            {"has_vmx_path": bool(vmx_path)},
        )

        if vmx_path:
            async def preflight() -> None:
                if await suite.is_running(vmx_path, "preflight_list"):
                    await suite.stop(vmx_path, "soft", "vmware_stop_soft_preflight")

            await suite.step("vmware_stop_soft_preflight", preflight)
            await suite.step(
                "vmware_start_vm",
                lambda: suite.start_then_confirm(vmx_path, "vmware_start_vm"),
            )
            await suite.step(
                "vmware_stop_soft",
                lambda: suite.stop_then_confirm(vmx_path, "soft", "vmware_stop_soft"),
            )
            if cfg.run_hard_stop:
                await suite.step(
                    "vmware_start_vm_for_hard_stop",
                    lambda: suite.start(vmx_path, "vmware_start_vm_for_hard_stop"),
                )
                await suite.step(
                    "vmware_stop_hard",
                    lambda: suite.stop_then_confirm(vmx_path, "hard", "vmware_stop_hard"),
                )
        else:
            suite.skip("vmware_start_stop_skipped", "VMRELAY_E2E_VM_VMX_PATH not set")

        await suite.step("vmware_scan_default_vmx", lambda: suite.call("POST", "/vmware/scan/default", {
            "ssh": ssh, "request_id": suite.rid("vmware_scan_default_vmx"),
        }))

        if roots:
            await suite.step(
                "vmware_scan_vmx",
                lambda: suite.call("POST", "/vmware/scan", {
                    "ssh": ssh, "roots": roots, "request_id": suite.rid("vmware_scan_vmx"),
                }),
                {"roots_count": len(roots)},
            )
        else:
            suite.skip("vmware_scan_vmx_skipped", "VMRELAY_E2E_SCAN_ROOTS not set or empty")

        count = await suite.step("trace_list", suite.check_trace)
        log.info("e2e.trace", entries=count)
    except Exception as exc:
        ok = False
        log.warning("e2e.failed", error=str(exc))
        try:
            await suite.call("GET", "/trace")
        except Exception:
            log.debug("e2e.trace_unavailable")
    finally:
        if installed_key:
            try:
                await suite.call("DELETE", "/ssh/key")
            except Exception as exc:
                log.warning("e2e.key_cleanup_failed", error=str(exc))

    return E2EReport(ok=ok, events=suite.events)


def _in_process_app() -> FastAPI:
    from vmrelay.config import Settings
    from vmrelay.main import create_app

    return create_app(Settings(vmrelay_e2e_enabled=True))


async def run(cfg: E2ESettings, *, app: Optional[FastAPI] = None) -> int:
    """Run the suite and request process exit.  Returns the exit code."""
    missing = cfg.missing()
    if missing:
        report = E2EReport(ok=False, events=[E2EEvent(
            name="env_check",
            ok=False,
            duration_ms=0,
            error=f"Missing required env vars: {', '.join(missing)}",
        )])
        print(report.line(), flush=True)
        return EXIT_MISSING_ENV

    headers = {"X-API-Key": cfg.api_key} if cfg.api_key else {}
    timeout = httpx.Timeout(cfg.timeout_ms / 1000 + 5)
    if cfg.base_url:
        client = httpx.AsyncClient(base_url=cfg.base_url, headers=headers, timeout=timeout)
    else:
        transport = httpx.ASGITransport(app=app or _in_process_app())
        client = httpx.AsyncClient(
            transport=transport, base_url="http://vmrelay", headers=headers, timeout=timeout,
        )

    async with client:
        report = await run_suite(client, cfg)
        print(report.line(), flush=True)
        code = 0 if report.ok else 1
        try:
            await client.post("/e2e/exit", json={"code": code})
        except httpx.HTTPError as exc:
            log.warning("e2e.exit_call_failed", error=str(exc))
    return code


def main() -> None:
    setup_logging()
    sys.exit(asyncio.run(run(E2ESettings())))


if __name__ == "__main__":
    main()
