"""Error taxonomy and classified outcomes for gateway operations."""

from __future__ import annotations

from enum import Enum


class GatewayWardenError(Exception):
    """Base class for controller errors."""


class SpawnFailure(GatewayWardenError):
    """Raised when the bridge executable cannot be started at all."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Failed to start {command}: {reason}")
        self.command = command
        self.reason = reason


class OperationCancelled(GatewayWardenError):
    """Raised when a cancellation token fires while an operation is suspended."""


class ControllerBusy(GatewayWardenError):
    """Raised when a user operation starts while another one is in progress."""


class StartOutcome(str, Enum):
    """Classified result of one gateway start attempt."""

    RUNNING = "running"
    HEALTHY = "healthy"
    INVALID_INPUT = "invalid_input"
    SPAWN_FAILURE = "spawn_failure"
    FAILED = "failed"
    PORT_IN_USE = "port_in_use"
    CANCELED = "canceled"
    UNREACHABLE = "unreachable"

    @property
    def ok(self) -> bool:
        return self in {StartOutcome.RUNNING, StartOutcome.HEALTHY}
