"""Request-scoped accessors for the services owned by the application."""

from __future__ import annotations

from fastapi import Request

from vmrelay.config import Settings
from vmrelay.services.key_store import CredentialManager
from vmrelay.services.tracer import CommandTracer
from vmrelay.services.vm_control import VMControlService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_tracer(request: Request) -> CommandTracer:
    return request.app.state.tracer


def get_vm_service(request: Request) -> VMControlService:
    return request.app.state.vm_service


def get_credentials(request: Request) -> CredentialManager:
    return request.app.state.credentials
