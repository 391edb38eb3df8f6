"""Typed remote commands for the vmrun control utility.

Each operation is a frozen model tagged with ``kind``.  Commands are only turned
into PowerShell text by :meth:`RemoteCommand.render`, at the executor boundary,
so identical inputs always produce an identical command string.  The redacted
rendering is what the trace ledger and the logs see.
"""

from __future__ import annotations

import base64
import json
import re
from abc import abstractmethod
from typing import Annotated, Literal, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    Field,
    SecretStr,
    field_validator,
)

from vmrelay.models.commands import StopMode

REDACTED = "********"

MAX_RAW_COMMAND = 8192
MAX_VMX_PATH = 1024
MAX_SCAN_ROOTS = 64
SCAN_RESULT_LIMIT = 500

VMRUN_PATHS: tuple[str, ...] = (
    r"C:\Program Files (x86)\VMware\VMware Workstation\vmrun.exe",
    r"C:\Program Files\VMware\VMware Workstation\vmrun.exe",
)

POWERSHELL = "powershell -NoProfile -NonInteractive -ExecutionPolicy Bypass"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


# ── PowerShell helpers ────────────────────────────────────────────────────

def ps_single_quote_escape(text: str) -> str:
    return text.replace("'", "''")


def ps_quote(text: str) -> str:
    return f"'{ps_single_quote_escape(text)}'"


def powershell_command(script: str) -> str:
    """Wrap *script* as ``powershell ... -Command "<script>"``."""
    return f'{POWERSHELL} -Command "{script.replace(chr(34), chr(34) * 3)}"'


def powershell_encoded(script: str) -> str:
    """Wrap *script* as ``-EncodedCommand`` (base64 of UTF-16LE)."""
    encoded = base64.b64encode(script.strip().encode("utf-16-le")).decode("ascii")
    return f"{POWERSHELL} -EncodedCommand {encoded}"


def vmrun_locator_ps() -> str:
    paths = ",".join(ps_quote(p) for p in VMRUN_PATHS)
    return (
        f"$paths=@({paths});"
        "$vmrun=$paths|Where-Object{Test-Path -LiteralPath $_}|Select-Object -First 1;"
        "if(-not $vmrun){throw 'vmrun.exe not found (check VMware Workstation install path)'}"
    )


def _vmrun_script(args: str) -> str:
    return (
        f"& {{ {vmrun_locator_ps()} ; $out = & $vmrun -T ws {args} 2>&1; "
        "if ($LASTEXITCODE -ne 0) { exit $LASTEXITCODE }; $out }"
    )


def _password_args(password: Optional[SecretStr], redact: bool) -> str:
    if password is None:
        return ""
    value = REDACTED if redact else password.get_secret_value()
    return f"-vp {ps_quote(value)} "


_SCAN_TAIL = f"""
$paths=@()
foreach($root in $roots){{
  $paths += Get-ChildItem -LiteralPath $root -Recurse -File -Filter *.vmx -ErrorAction SilentlyContinue |
    Where-Object {{ $_.Extension -ieq '.vmx' }} |
    Select-Object -ExpandProperty FullName
}}

$paths = $paths | Sort-Object -Unique | Select-Object -First {SCAN_RESULT_LIMIT}
@($paths) | ConvertTo-Json -Compress
"""

_SCAN_DEFAULT_SCRIPT = r"""
$ProgressPreference = 'SilentlyContinue'
$roots=@()
if($env:USERPROFILE){ $roots += (Join-Path $env:USERPROFILE 'Documents\Virtual Machines') }
if($env:PUBLIC){ $roots += (Join-Path $env:PUBLIC 'Documents\Shared Virtual Machines') }
$roots = $roots | Where-Object { $_ -and (Test-Path -LiteralPath $_) } | Select-Object -Unique
""" + _SCAN_TAIL

_SCAN_ROOTS_HEAD = """
$ProgressPreference = 'SilentlyContinue'
$inputRoots = {roots_literal} | ConvertFrom-Json
$requested=@()
foreach($r in $inputRoots){{
  if(-not $r){{ continue }}
  $requested += [string]$r
}}
$requested = $requested | Select-Object -Unique

$roots=@()
foreach($root in $requested){{
  $resolved = $ExecutionContext.InvokeCommand.ExpandString($root)
  if($resolved -and (Test-Path -LiteralPath $resolved)){{
    $roots += $resolved
  }}
}}
$roots = $roots | Select-Object -Unique
"""


# ── Validation ────────────────────────────────────────────────────────────

def _check_vmx_path(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("vmx path must not be empty")
    if len(value) > MAX_VMX_PATH:
        raise ValueError(f"vmx path longer than {MAX_VMX_PATH} characters")
    if _CONTROL_CHARS.search(value):
        raise ValueError("vmx path contains control characters")
    return value


def _blank_password(value):
    if isinstance(value, str) and not value:
        return None
    return value


VmxPath = Annotated[str, AfterValidator(_check_vmx_path)]
VmPassword = Annotated[Optional[SecretStr], BeforeValidator(_blank_password)]


# ── Command variants ──────────────────────────────────────────────────────


class RemoteCommand(BaseModel):
    """Abstract base for all command variants."""

    model_config = {"frozen": True}

    @property
    @abstractmethod
    def action(self) -> str:
        """Operation name recorded in the trace."""

    @abstractmethod
    def render(self, *, redact: bool = False) -> str:
        """PowerShell text sent to the host."""

    def redacted(self) -> str:
        return self.render(redact=True)

    def secrets(self) -> list[str]:
        """Secret values that must be scrubbed from remote output."""
        return []


class RawCommand(RemoteCommand):
    kind: Literal["raw"] = "raw"
    text: str

    @field_validator("text")
    @classmethod
    def _check_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command must not be empty")
        if len(value) > MAX_RAW_COMMAND:
            raise ValueError("Command too long")
        return value

    @property
    def action(self) -> str:
        return "ssh_exec"

    def render(self, *, redact: bool = False) -> str:
        return self.text


class ListRunningCommand(RemoteCommand):
    kind: Literal["list_running"] = "list_running"

    @property
    def action(self) -> str:
        return "vmware_list_running"

    def render(self, *, redact: bool = False) -> str:
        return powershell_command(_vmrun_script("list"))


class StartVmCommand(RemoteCommand):
    kind: Literal["start_vm"] = "start_vm"
    vmx_path: VmxPath
    password: VmPassword = None

    @property
    def action(self) -> str:
        return "vmware_start_vm"

    def render(self, *, redact: bool = False) -> str:
        args = f"{_password_args(self.password, redact)}start {ps_quote(self.vmx_path)} nogui"
        return powershell_command(_vmrun_script(args))

    def secrets(self) -> list[str]:
        return [self.password.get_secret_value()] if self.password else []


class StopVmCommand(RemoteCommand):
    kind: Literal["stop_vm"] = "stop_vm"
    vmx_path: VmxPath
    mode: StopMode = StopMode.soft
    password: VmPassword = None

    @property
    def action(self) -> str:
        return "vmware_stop_vm"

    def render(self, *, redact: bool = False) -> str:
        args = (
            f"{_password_args(self.password, redact)}"
            f"stop {ps_quote(self.vmx_path)} {self.mode.value}"
        )
        return powershell_command(_vmrun_script(args))

    def secrets(self) -> list[str]:
        return [self.password.get_secret_value()] if self.password else []


class ScanDefaultRootsCommand(RemoteCommand):
    kind: Literal["scan_default"] = "scan_default"

    @property
    def action(self) -> str:
        return "vmware_scan_default_vmx"

    def render(self, *, redact: bool = False) -> str:
        return powershell_encoded(_SCAN_DEFAULT_SCRIPT)


class ScanRootsCommand(RemoteCommand):
    kind: Literal["scan_roots"] = "scan_roots"
    roots: tuple[str, ...] = Field(min_length=1, max_length=MAX_SCAN_ROOTS)

    @field_validator("roots")
    @classmethod
    def _check_roots(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for root in value:
            if not root.strip():
                raise ValueError("scan roots must not contain empty entries")
            if _CONTROL_CHARS.search(root):
                raise ValueError("scan root contains control characters")
        return value

    @property
    def action(self) -> str:
        return "vmware_scan_vmx"

    def render(self, *, redact: bool = False) -> str:
        roots_json = json.dumps(list(self.roots), ensure_ascii=False, separators=(",", ":"))
        head = _SCAN_ROOTS_HEAD.format(roots_literal=ps_quote(roots_json))
        return powershell_encoded(head + _SCAN_TAIL)


AnyCommand = Union[
    RawCommand,
    ListRunningCommand,
    StartVmCommand,
    StopVmCommand,
    ScanDefaultRootsCommand,
    ScanRootsCommand,
]
