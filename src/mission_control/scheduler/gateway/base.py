"""Gateway interface for starting isolated agent sessions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from mission_control.scheduler.briefing import Briefing


class GatewayError(RuntimeError):
    """Gateway spawn error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class SpawnRequest:
    """Inputs required to start one session."""

    briefing: Briefing
    agent_id: str | None
    label: str
    timeout_seconds: int
    cleanup: str = "delete"
    model: str | None = None


@dataclass(slots=True)
class SpawnResult:
    """Session handle returned once the gateway accepted the spawn."""

    session_key: str
    run_id: str | None = None
    status: str | None = None


class ExecutionGateway(Protocol):
    """Protocol implemented by gateway clients."""

    def spawn(self, request: SpawnRequest) -> SpawnResult:
        """Start a session and return without waiting for it to finish."""
