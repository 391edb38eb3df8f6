"""Parsers for remote PowerShell / vmrun output."""

from __future__ import annotations

import codecs
import json
import re
from typing import Iterable


def decode_remote_output(data: bytes) -> str:
    """Decode raw channel bytes from a Windows host.

    UTF-8 (BOM stripped) first, then UTF-16 with BOM, then GBK as the usual
    legacy console code page.
    """
    if data.startswith(codecs.BOM_UTF8):
        data = data[len(codecs.BOM_UTF8):]
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    if len(data) >= 2 and len(data) % 2 == 0:
        if data.startswith(codecs.BOM_UTF16_LE):
            return data[2:].decode("utf-16-le", errors="replace")
        if data.startswith(codecs.BOM_UTF16_BE):
            return data[2:].decode("utf-16-be", errors="replace")
    return data.decode("gbk", errors="replace")


def dedupe_paths(paths: Iterable[str]) -> list[str]:
    """Drop case-insensitive duplicates, keeping the first spelling seen."""
    seen: set[str] = set()
    result: list[str] = []
    for path in paths:
        key = path.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(path)
    return result


def same_path(a: str, b: str) -> bool:
    return a.casefold() == b.casefold()


def parse_vmrun_list_output(output: str) -> list[str]:
    """Parse ``vmrun -T ws list``.

    Example::

        Total running VMs: 2
        C:\\VMs\\A\\A.vmx
        C:\\VMs\\B\\B.vmx
    """
    paths = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.lower().startswith("total "):
            continue
        paths.append(line.strip('"'))
    return dedupe_paths(paths)


def parse_json_string_array(output: str) -> list[str]:
    """Parse the compact JSON printed by the scan scripts.

    ``ConvertTo-Json`` emits a bare string rather than an array when exactly
    one path was found, so both shapes are accepted.
    """
    text = output.strip()
    if not text:
        return []
    candidate = next(
        (line.strip() for line in text.splitlines() if line.strip()), text,
    )
    try:
        value = json.loads(candidate)
    except ValueError:
        value = None
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return dedupe_paths(value)
    if value is None and candidate == "null":
        return []
    snippet = candidate if len(candidate) <= 240 else candidate[:239] + "…"
    raise ValueError(f"Failed to parse JSON array from output (first line: {snippet})")


# vmrun reports these when start/stop is a no-op.
_ALREADY_RUNNING = re.compile(r"virtual\s+machine\s+is\s+already\s+running", re.I)
_NOT_RUNNING = re.compile(
    r"virtual\s+machine\s+is\s+(?:not\s+running|not\s+powered\s+on|powered\s+off)", re.I,
)


def is_already_running(output: str) -> bool:
    return bool(_ALREADY_RUNNING.search(output))


def is_not_running(output: str) -> bool:
    return bool(_NOT_RUNNING.search(output))


def guess_vm_name(vmx_path: str) -> str:
    """Display name for a ``.vmx`` path: file stem, else parent directory."""
    parts = [p for p in vmx_path.replace("/", "\\").split("\\") if p]
    if not parts:
        return vmx_path
    stem = parts[-1]
    if stem.lower().endswith(".vmx"):
        stem = stem[:-4]
    if stem.strip():
        return stem
    if len(parts) > 1:
        return parts[-2]
    return "Unnamed VM"
