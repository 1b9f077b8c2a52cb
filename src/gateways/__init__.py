"""
Gateway Module for outbound integrations.

Currently a single gateway: the NPHIES clearinghouse transport.
"""

from src.gateways.base import (
    GatewayConfig,
    GatewayError,
    GatewayResult,
)
from src.gateways.nphies_gateway import (
    NphiesGateway,
    NphiesGatewayError,
    NphiesResponse,
    close_nphies_gateway,
    get_nphies_gateway,
)

__all__ = [
    # Base
    "GatewayConfig",
    "GatewayResult",
    "GatewayError",
    # NPHIES
    "NphiesGateway",
    "NphiesGatewayError",
    "NphiesResponse",
    "get_nphies_gateway",
    "close_nphies_gateway",
]
