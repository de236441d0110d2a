"""
Errors raised by the rtensor client.

Every failure a caller can see derives from RemoteError. Local validation
errors (ShapeMismatch, DtypeMismatch) never touch the network; the rest
come back from the connection or the remote executor.

The helper functions at the bottom build the recurring error messages.
"""

import builtins


class RemoteError(Exception):
    """Base class for all rtensor errors."""
    pass


class ConnectionError(RemoteError, builtins.ConnectionError):
    """Cannot establish a channel to the endpoint."""
    pass


class ConnectionLost(RemoteError):
    """The channel died mid-session. All pending work fails with this."""
    pass


class ProtocolError(RemoteError):
    """A message could not be decoded. Fatal to that message only."""
    pass


class CorrelationIdExhausted(ProtocolError):
    """The correlation id space ran out (ids never wrap)."""
    pass


class ShapeMismatch(RemoteError, ValueError):
    """Input shapes are incompatible for the operation."""
    pass


class DtypeMismatch(RemoteError, TypeError):
    """Input dtypes are incompatible for the operation."""
    pass


class StaleHandle(RemoteError):
    """Use of a handle that was released or invalidated by a reconnect."""
    pass


class RemoteExecutionError(RemoteError):
    """The remote executor reports that the operation itself failed."""

    def __init__(self, message: str, opcode: str = None):
        super().__init__(message)
        self.opcode = opcode


class Timeout(RemoteError, builtins.TimeoutError):
    """No response arrived within the configured timeout."""
    pass


def not_connected_error(endpoint: str):
    """Error when the connection is gone for good."""
    return f"Connection to {endpoint} is closed. Create a new RemoteDevice to continue."


def unreachable_error(endpoint: str, details: str):
    """Error when the endpoint cannot be reached."""
    return f"Cannot connect to {endpoint}: {details}"


def operation_failed_error(op: str, details: str):
    """Error when an operation fails on the remote executor."""
    return f"Operation '{op}' failed: {details}"


def stale_handle_error(remote_id: int, state: str):
    """Error when a handle is used after release or reconnect."""
    return f"Remote tensor {remote_id} is {state} and can no longer be used"


def timeout_error(op: str, correlation_id: int, timeout: float):
    """Error when a request did not complete in time."""
    return f"Operation '{op}' (request #{correlation_id}) timed out after {timeout:.1f}s"
