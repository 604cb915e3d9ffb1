"""Custom exceptions for the Lark record bridge."""

from __future__ import annotations

from typing import Any, Dict, Optional


class BridgeError(Exception):
    """Base exception for the Lark record bridge."""

    pass


class ConfigurationMissing(BridgeError):
    """No credentials or table configuration has been set."""

    pass


class InvalidCredentials(BridgeError):
    """The remote service rejected the app id / app secret pair."""

    pass


class ValidationError(BridgeError):
    """Request payload validation errors."""

    pass


class RemoteError(BridgeError):
    """Errors returned by the remote table service."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        msg: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.msg = msg
        self.body = body


class RemoteTransient(RemoteError):
    """Network, timeout or rate-limit failures that may succeed on retry."""

    pass


class RemoteFatal(RemoteError):
    """Malformed requests, missing tables, permanent auth failures."""

    pass


class NotificationError(RemoteError):
    """Errors while delivering a chat notification."""

    pass


class TaskCreationError(RemoteError):
    """Errors while creating a task."""

    pass


class AIServiceError(BridgeError):
    """Errors related to the AI parsing API."""

    pass
