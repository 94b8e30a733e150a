"""
Exception hierarchy for the MCP service host.

Every error raised by the process, protocol, service and registry layers
derives from MCPHostError so callers can surface them uniformly.
"""

from typing import Any, Optional


class MCPHostError(Exception):
    """Base class for all service host errors."""


# Process layer


class ProcessError(MCPHostError):
    """A failure managing a tool provider process."""


class ProcessSpawnError(ProcessError):
    """The tool provider process could not be started."""


class ProcessExitError(ProcessError):
    """The tool provider process is gone (exited, crashed or never ran)."""


class AlreadyRunningError(ProcessError):
    """start() was called while a process is still live."""


# Protocol layer


class ProtocolError(MCPHostError):
    """A JSON-RPC error response returned by the server."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        if code is not None:
            message = f"{message} ({code})"
        super().__init__(message)

    @classmethod
    def from_error_object(cls, error: Any) -> "ProtocolError":
        """Build from a JSON-RPC error object."""
        if not isinstance(error, dict):
            return cls(f"Malformed error response: {error!r}")
        return cls(
            str(error.get("message", "Unknown error")),
            code=error.get("code"),
            data=error.get("data"),
        )


class ConnectionClosedError(ProtocolError):
    """The connection went away while a request was outstanding."""

    def __init__(self, message: str = "Connection closed"):
        super().__init__(message)


class ProtocolTimeoutError(MCPHostError, TimeoutError):
    """No response arrived for a request within the timeout window."""


class ParseError(MCPHostError):
    """A line received from the server is not valid JSON-RPC."""

    def __init__(self, message: str, line: str = ""):
        self.line = line
        super().__init__(message)


class NotConnectedError(MCPHostError):
    """A request was made before the handshake completed."""


class AlreadyConnectedError(MCPHostError):
    """initialize() was called on an already connected client."""


# Service layer


class NotRunningError(MCPHostError):
    """The service is not running or not connected."""


class InvalidTransitionError(MCPHostError):
    """The requested status change is not allowed from the current status."""

    def __init__(self, current: Any, requested: Any):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot move service from {getattr(current, 'value', current)} "
            f"to {getattr(requested, 'value', requested)}"
        )


# Registry / configuration layer


class ConfigError(MCPHostError, ValueError):
    """Invalid service configuration."""


class ConfigConflictError(ConfigError):
    """A service with the same name is already registered."""


class ServiceNotFoundError(MCPHostError):
    """No service is registered under the requested name."""
