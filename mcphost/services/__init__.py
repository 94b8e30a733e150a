"""
MCP Service Host

Supervises external MCP tool provider processes, speaks JSON-RPC to them over
stdio, and exposes their tools through a persisted registry.
"""

from .config import (
    HostSettings,
    ServiceConfig,
    load_registry_document,
    parse_registry_document,
    save_registry_document,
)
from .errors import (
    AlreadyConnectedError,
    AlreadyRunningError,
    ConfigConflictError,
    ConfigError,
    ConnectionClosedError,
    InvalidTransitionError,
    MCPHostError,
    NotConnectedError,
    NotRunningError,
    ParseError,
    ProcessError,
    ProcessExitError,
    ProcessSpawnError,
    ProtocolError,
    ProtocolTimeoutError,
    ServiceNotFoundError,
)
from .process import ProcessEvents, ProcessSupervisor
from .protocol import (
    MCPMessage,
    MCPPrompt,
    MCPResource,
    MCPServerInfo,
    MCPTool,
    ProtocolClient,
    ProtocolEvents,
)
from .service import MCPService, ServiceEvents, ServiceLog, ServiceStatus
from .registry import RegistryStats, ServiceInstance, ServiceRegistry
from .adapter import (
    ToolAdapterEntry,
    call_composite_tool,
    collect_openai_tools,
    collect_tool_entries,
    convert_tool,
    execute_tool_calls,
    find_tool_entry,
    format_tool_result,
    parse_composite_name,
    to_openai_descriptor,
)

__all__ = [
    "HostSettings",
    "ServiceConfig",
    "load_registry_document",
    "parse_registry_document",
    "save_registry_document",
    "AlreadyConnectedError",
    "AlreadyRunningError",
    "ConfigConflictError",
    "ConfigError",
    "ConnectionClosedError",
    "InvalidTransitionError",
    "MCPHostError",
    "NotConnectedError",
    "NotRunningError",
    "ParseError",
    "ProcessError",
    "ProcessExitError",
    "ProcessSpawnError",
    "ProtocolError",
    "ProtocolTimeoutError",
    "ServiceNotFoundError",
    "ProcessEvents",
    "ProcessSupervisor",
    "MCPMessage",
    "MCPPrompt",
    "MCPResource",
    "MCPServerInfo",
    "MCPTool",
    "ProtocolClient",
    "ProtocolEvents",
    "MCPService",
    "ServiceEvents",
    "ServiceLog",
    "ServiceStatus",
    "RegistryStats",
    "ServiceInstance",
    "ServiceRegistry",
    "ToolAdapterEntry",
    "call_composite_tool",
    "collect_openai_tools",
    "collect_tool_entries",
    "convert_tool",
    "execute_tool_calls",
    "find_tool_entry",
    "format_tool_result",
    "parse_composite_name",
    "to_openai_descriptor",
]
