"""Execution gateway client implementations."""

from mission_control.scheduler.gateway.base import (
    ExecutionGateway,
    GatewayError,
    SpawnRequest,
    SpawnResult,
)
from mission_control.scheduler.gateway.client import (
    GatewayClient,
    load_gateway_token,
    read_gateway_agents,
)

__all__ = [
    "ExecutionGateway",
    "GatewayClient",
    "GatewayError",
    "SpawnRequest",
    "SpawnResult",
    "load_gateway_token",
    "read_gateway_agents",
]
