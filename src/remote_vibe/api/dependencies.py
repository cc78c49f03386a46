"""Accessors for the collaborators wired by the application factory."""

from __future__ import annotations

from fastapi import Request

from ..infrastructure.session_store import SessionStore
from ..services.command_executor import CommandExecutor
from ..services.notification_bridge import NotificationBridge


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_bridge(request: Request) -> NotificationBridge:
    return request.app.state.bridge


def get_executor(request: Request) -> CommandExecutor:
    return request.app.state.executor
