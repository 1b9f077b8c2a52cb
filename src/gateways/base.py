"""
Base Gateway Types for outbound integrations.

Shared error, configuration and result types used by gateways that talk to
external systems over HTTP.
"""

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

TResponse = TypeVar("TResponse")


class GatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.original_error = original_error


@dataclass
class GatewayConfig:
    """Configuration for a gateway instance."""

    base_url: str
    timeout_seconds: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class GatewayResult(Generic[TResponse]):
    """Result wrapper for gateway responses."""

    success: bool
    status_code: Optional[int] = None
    data: Optional[TResponse] = None
    error: Optional[str] = None
    latency_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)
