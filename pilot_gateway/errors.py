"""Error taxonomy shared by the gateway components."""

from __future__ import annotations

from typing import Any, Optional


class GatewayError(RuntimeError):
    """Base class for every error raised by pilot-gateway."""


class ConfigurationError(GatewayError):
    """Raised when broker credentials or session settings are missing or invalid."""


class TransportError(GatewayError):
    """Raised when the broker transport cannot connect, publish or subscribe."""


class DecodeError(GatewayError):
    """Raised internally by the codec for payloads it cannot interpret."""


class StorageError(GatewayError):
    """Raised when the telemetry store fails to persist or read samples."""


class CorrelationError(GatewayError):
    """Base class for failures of a correlated command."""

    def __init__(
        self,
        message: str,
        *,
        transaction_id: Optional[str] = None,
        method: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id
        self.method = method


class CorrelationTimeout(CorrelationError):
    """No reply carrying the command's transaction id arrived in time."""


class CommandCancelled(CorrelationError):
    """The session was closed while the command was still pending."""


class CommandRejected(CorrelationError):
    """The device replied with a non-zero result code."""

    def __init__(
        self,
        message: str,
        *,
        result: Any,
        data: Optional[dict] = None,
        transaction_id: Optional[str] = None,
        method: Optional[str] = None,
    ) -> None:
        super().__init__(message, transaction_id=transaction_id, method=method)
        self.result = result
        self.data = data or {}
