"""Application settings loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is driven by environment variables."""

    # Local state (SSH private key lives under <data_dir>/ssh/)
    vmrelay_data_dir: str = Field(default="/data/vmrelay")

    # API key
    vmrelay_api_key: str = ""

    # SSH transport
    vmrelay_ssh_connect_timeout_seconds: float = 10.0
    vmrelay_ssh_idle_timeout_seconds: int = 30
    vmrelay_ssh_max_workers: int = 8
    vmrelay_key_max_bytes: int = 256 * 1024

    # Remote execution
    vmrelay_exec_timeout_seconds: float = 120.0

    # Start / stop policy
    vmrelay_retry_attempts: int = 2
    vmrelay_retry_backoff_ms: int = 800
    vmrelay_reconcile_timeout_seconds: float = 30.0
    vmrelay_reconcile_polls: int = 3
    vmrelay_reconcile_interval_ms: int = 400

    # Trace ledger
    vmrelay_trace_capacity: int = 200

    # Logging
    vmrelay_log_level: str = "INFO"
    vmrelay_log_json: bool = False

    # Enables POST /e2e/exit for the verification harness
    vmrelay_e2e_enabled: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def ssh_key_path(self) -> Path:
        return Path(self.vmrelay_data_dir) / "ssh" / "private_key"
