"""
JSON-RPC protocol client for MCP tool providers.

This module provides the ProtocolClient class that speaks newline-delimited
JSON-RPC 2.0 over a duplex channel, together with the message and capability
models exchanged with the server. The client knows nothing about processes:
outbound text goes through ``channel.write()`` and inbound text is pushed in
through ``handle_message()``.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .config import HostSettings
from .errors import (
    AlreadyConnectedError,
    ConnectionClosedError,
    MCPHostError,
    NotConnectedError,
    ParseError,
    ProtocolError,
    ProtocolTimeoutError,
)

logger = logging.getLogger(__name__)

# JSON-RPC error code answered to server-initiated requests
METHOD_NOT_FOUND = -32601

# Server notifications that invalidate cached capabilities
TOOLS_LIST_CHANGED = "notifications/tools/list_changed"
RESOURCES_LIST_CHANGED = "notifications/resources/list_changed"
RESOURCES_UPDATED = "notifications/resources/updated"
PROMPTS_LIST_CHANGED = "notifications/prompts/list_changed"


@dataclass
class MCPTool:
    """A tool advertised by an MCP server."""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def __post_init__(self):
        """Validate tool after initialization."""
        if not self.name:
            raise ValueError("Tool name cannot be empty")
        if not isinstance(self.input_schema, dict):
            raise ValueError("Tool input_schema must be a dictionary")

    @classmethod
    def from_mcp_response(cls, tool_data: Dict[str, Any]) -> "MCPTool":
        """Create MCPTool from MCP server response data."""
        return cls(
            name=tool_data.get("name", ""),
            description=tool_data.get("description") or "",
            input_schema=tool_data.get("inputSchema") or {"type": "object", "properties": {}},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class MCPResource:
    """A resource advertised by an MCP server."""

    uri: str
    name: str
    description: Optional[str] = None
    mime_type: Optional[str] = None

    def __post_init__(self):
        if not self.uri:
            raise ValueError("Resource uri cannot be empty")

    @classmethod
    def from_mcp_response(cls, resource_data: Dict[str, Any]) -> "MCPResource":
        """Create MCPResource from MCP server response data."""
        uri = resource_data.get("uri", "")
        return cls(
            uri=uri,
            name=resource_data.get("name") or uri,
            description=resource_data.get("description"),
            mime_type=resource_data.get("mimeType"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"uri": self.uri, "name": self.name}
        if self.description is not None:
            data["description"] = self.description
        if self.mime_type is not None:
            data["mimeType"] = self.mime_type
        return data


@dataclass
class MCPPrompt:
    """A prompt template advertised by an MCP server."""

    name: str
    description: Optional[str] = None
    arguments: Optional[List[Dict[str, Any]]] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Prompt name cannot be empty")

    @classmethod
    def from_mcp_response(cls, prompt_data: Dict[str, Any]) -> "MCPPrompt":
        """Create MCPPrompt from MCP server response data."""
        return cls(
            name=prompt_data.get("name", ""),
            description=prompt_data.get("description"),
            arguments=prompt_data.get("arguments"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name}
        if self.description is not None:
            data["description"] = self.description
        if self.arguments is not None:
            data["arguments"] = self.arguments
        return data


@dataclass
class MCPServerInfo:
    """Information about an MCP server, captured during the handshake."""

    name: str
    version: str
    protocol_version: str = "2024-11-05"
    capabilities: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mcp_response(
        cls, info_data: Dict[str, Any], server_name: str
    ) -> "MCPServerInfo":
        """
        Create MCPServerInfo from an initialize result.

        Servers either put name and version at the top level or nest them
        under ``serverInfo``; both are accepted.
        """
        nested = info_data.get("serverInfo")
        nested = nested if isinstance(nested, dict) else {}
        return cls(
            name=nested.get("name") or info_data.get("name") or server_name,
            version=nested.get("version") or info_data.get("version") or "unknown",
            protocol_version=info_data.get("protocolVersion", "2024-11-05"),
            capabilities=info_data.get("capabilities") or {},
        )


@dataclass
class MCPMessage:
    """Represents a JSON-RPC 2.0 message."""

    jsonrpc: str = "2.0"
    id: Optional[Union[str, int]] = None
    method: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary."""
        msg: Dict[str, Any] = {"jsonrpc": self.jsonrpc}

        if self.id is not None:
            msg["id"] = self.id
        if self.method is not None:
            msg["method"] = self.method
        if self.params is not None:
            msg["params"] = self.params
        if self.error is not None:
            msg["error"] = self.error
        elif self.id is not None and self.method is None:
            msg["result"] = self.result

        return msg

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MCPMessage":
        """Create message from dictionary."""
        return cls(
            jsonrpc=data.get("jsonrpc", "2.0"),
            id=data.get("id"),
            method=data.get("method"),
            params=data.get("params"),
            result=data.get("result"),
            error=data.get("error"),
        )

    def is_request(self) -> bool:
        """Check if this is a request message."""
        return self.method is not None and self.id is not None

    def is_response(self) -> bool:
        """Check if this is a response message."""
        return self.id is not None and self.method is None

    def is_notification(self) -> bool:
        """Check if this is a notification message."""
        return self.method is not None and self.id is None


def _valid_id(message_id: Any) -> bool:
    """JSON-RPC ids are strings, integers or absent; booleans are not integers here."""
    if isinstance(message_id, bool):
        return False
    return message_id is None or isinstance(message_id, (str, int))


@dataclass
class PendingRequest:
    """An outbound request waiting for its response."""

    id: int
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


@dataclass
class ProtocolEvents:
    """Callbacks fired by a ProtocolClient."""

    on_connected: Optional[Callable[[MCPServerInfo], None]] = None
    on_disconnected: Optional[Callable[[], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    on_notification: Optional[Callable[[str, Dict[str, Any]], None]] = None
    on_tools_changed: Optional[Callable[[], None]] = None
    on_resources_changed: Optional[Callable[[], None]] = None
    on_prompts_changed: Optional[Callable[[], None]] = None
    on_resource_updated: Optional[Callable[[Optional[str]], None]] = None


class ProtocolClient:
    """
    JSON-RPC 2.0 client for one MCP server connection.

    Requests are correlated with responses strictly by id. Every outbound
    request owns a timer; the pending entry is removed when its response
    arrives, when the timer fires, or when the client disconnects.

    A client is single use: once disconnected it refuses further requests.
    """

    def __init__(
        self,
        channel: Any,
        events: Optional[ProtocolEvents] = None,
        settings: Optional[HostSettings] = None,
        name: str = "mcp-server",
    ):
        """
        Initialize the protocol client.

        Args:
            channel: Object with an ``async write(data: str)`` method
            events: Callbacks for connection, errors and notifications
            settings: Host settings (request timeout, client identity)
            name: Server name used in log messages and as fallback server name
        """
        self.channel = channel
        self.events = events or ProtocolEvents()
        self.settings = settings or HostSettings()
        self.name = name

        self._request_id = 0
        self._pending: Dict[int, PendingRequest] = {}
        self._connected = False
        self._closed = False
        self._server_info: Optional[MCPServerInfo] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        """Check if the handshake has completed and the client is open."""
        return self._connected

    @property
    def server_info(self) -> Optional[MCPServerInfo]:
        return self._server_info

    @property
    def pending_count(self) -> int:
        """Number of requests still waiting for a response."""
        return len(self._pending)

    async def initialize(self) -> MCPServerInfo:
        """
        Perform the MCP handshake.

        Returns:
            Server information from the initialize result

        Raises:
            AlreadyConnectedError: If the handshake already completed
            ProtocolTimeoutError: If the server did not answer in time
            ProtocolError: If the server answered with an error
        """
        if self._connected:
            raise AlreadyConnectedError(f"Client for {self.name} is already connected")

        params = {
            "protocolVersion": self.settings.protocol_version,
            "capabilities": {"tools": {}, "resources": {}, "prompts": {}},
            "clientInfo": {
                "name": self.settings.client_name,
                "version": self.settings.client_version,
            },
        }

        try:
            logger.info(f"Initializing MCP server {self.name}...")
            result = await self.send_request("initialize", params)
            if not isinstance(result, dict):
                raise ProtocolError(f"Invalid initialize response: {result!r}")

            server_info = MCPServerInfo.from_mcp_response(result, self.name)
            await self.send_notification(self.settings.initialized_method, {})

            if self._closed:
                raise ConnectionClosedError()
        except MCPHostError as e:
            logger.error(f"Failed to initialize MCP server {self.name}: {e}")
            self._emit(self.events.on_error, e)
            raise

        self._connected = True
        self._server_info = server_info
        logger.info(
            f"Successfully initialized MCP server {self.name}: "
            f"{server_info.name} v{server_info.version}"
        )
        self._emit(self.events.on_connected, server_info)
        return server_info

    async def disconnect(self) -> None:
        """
        Close the client and reject every outstanding request.

        Safe to call more than once.
        """
        was_connected = self._connected
        self._closed = True
        self._connected = False
        self._server_info = None

        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            request.timer.cancel()
            if not request.future.done():
                request.future.set_exception(ConnectionClosedError())

        if pending:
            logger.debug(f"Rejected {len(pending)} pending requests for {self.name}")

        if was_connected:
            logger.info(f"Protocol client for {self.name} disconnected")
            self._emit(self.events.on_disconnected)

    async def get_tools(self) -> List[MCPTool]:
        """List the server's tools."""
        self._ensure_connected()
        result = await self.send_request("tools/list", {})
        return self._parse_list(result, "tools", MCPTool.from_mcp_response)

    async def get_resources(self) -> List[MCPResource]:
        """List the server's resources."""
        self._ensure_connected()
        result = await self.send_request("resources/list", {})
        return self._parse_list(result, "resources", MCPResource.from_mcp_response)

    async def get_prompts(self) -> List[MCPPrompt]:
        """List the server's prompts."""
        self._ensure_connected()
        result = await self.send_request("prompts/list", {})
        return self._parse_list(result, "prompts", MCPPrompt.from_mcp_response)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """
        Call a tool on the server.

        Returns:
            The raw tool result (``{content: [...], isError?}``)
        """
        self._ensure_connected()
        return await self.send_request("tools/call", {"name": name, "arguments": arguments})

    async def read_resource(self, uri: str) -> Dict[str, Any]:
        """Read a resource by uri."""
        self._ensure_connected()
        return await self.send_request("resources/read", {"uri": uri})

    async def get_prompt(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Render a prompt with the given arguments."""
        self._ensure_connected()
        return await self.send_request(
            "prompts/get", {"name": name, "arguments": arguments or {}}
        )

    async def send_request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Send a request and wait for the matching response.

        Raises:
            ConnectionClosedError: If the client is closed or closes while waiting
            ProtocolTimeoutError: If no response arrives within request_timeout
            ProtocolError: If the server answers with an error
        """
        if self._closed:
            raise ConnectionClosedError()

        request_id = self._get_next_request_id()
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(self.settings.request_timeout, self._expire, request_id)
        self._pending[request_id] = PendingRequest(request_id, method, future, timer)

        try:
            await self._send(MCPMessage(id=request_id, method=method, params=params or {}))
        except Exception:
            self._discard(request_id)
            raise

        return await future

    async def send_notification(
        self, method: str, params: Optional[Dict[str, Any]] = None
    ) -> None:
        """Send a notification (no response expected)."""
        if self._closed:
            raise ConnectionClosedError()
        await self._send(MCPMessage(method=method, params=params or {}))

    def handle_message(self, chunk: str) -> None:
        """
        Process a chunk of server output.

        The chunk may hold several newline-separated messages; each line is
        parsed and dispatched on its own, and a malformed line is reported
        without stopping the lines after it.
        """
        for line in chunk.split("\n"):
            line = line.strip()
            if not line:
                continue

            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                self._report_parse_error(f"Failed to parse JSON-RPC message: {e}", line)
                continue

            if not isinstance(data, dict):
                self._report_parse_error("JSON-RPC message is not an object", line)
                continue

            if not _valid_id(data.get("id")):
                self._report_parse_error("Invalid JSON-RPC id", line)
                continue

            self._process_message(MCPMessage.from_dict(data))

    def _process_message(self, message: MCPMessage) -> None:
        """Route one parsed message."""
        if message.is_response():
            self._resolve(message)
        elif message.is_notification():
            self._handle_notification(message)
        elif message.is_request():
            self._handle_server_request(message)
        else:
            logger.warning(f"Unhandled message from {self.name}: {message.to_dict()}")

    def _resolve(self, message: MCPMessage) -> None:
        """Settle the pending request matching a response."""
        pending = self._pending.pop(message.id, None)
        if pending is None:
            logger.warning(f"Response from {self.name} matches no pending request: id={message.id}")
            return

        pending.timer.cancel()
        if pending.future.done():
            return

        if message.error is not None:
            pending.future.set_exception(ProtocolError.from_error_object(message.error))
        else:
            pending.future.set_result(message.result)

    def _handle_notification(self, message: MCPMessage) -> None:
        """Route a server notification to the matching signal."""
        method = message.method
        params = message.params if isinstance(message.params, dict) else {}
        logger.debug(f"Received notification from {self.name}: {method}")

        if method == TOOLS_LIST_CHANGED:
            self._emit(self.events.on_tools_changed)
        elif method == RESOURCES_LIST_CHANGED:
            self._emit(self.events.on_resources_changed)
        elif method == RESOURCES_UPDATED:
            self._emit(self.events.on_resource_updated, params.get("uri"))
        elif method == PROMPTS_LIST_CHANGED:
            self._emit(self.events.on_prompts_changed)

        self._emit(self.events.on_notification, method, params)

    def _handle_server_request(self, message: MCPMessage) -> None:
        """Answer a server-initiated request; none are supported."""
        logger.debug(f"Rejecting server request from {self.name}: {message.method}")
        response = MCPMessage(
            id=message.id,
            error={"code": METHOD_NOT_FOUND, "message": "Method not found"},
        )
        task = asyncio.get_running_loop().create_task(self._send(response))
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Failed to answer server request from {self.name}: {task.exception()}")

    def _expire(self, request_id: int) -> None:
        """Reject a request whose response did not arrive in time."""
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        logger.error(f"Request timeout for {pending.method} on {self.name}")
        pending.future.set_exception(ProtocolTimeoutError(f"Request timeout: {pending.method}"))

    def _discard(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timer.cancel()

    async def _send(self, message: MCPMessage) -> None:
        data = json.dumps(message.to_dict()) + "\n"
        await self.channel.write(data)
        logger.debug(f"Sent message to {self.name}: {message.method or message.id}")

    def _parse_list(
        self, result: Any, key: str, factory: Callable[[Dict[str, Any]], Any]
    ) -> List[Any]:
        """Parse a ``{key: [...]}`` list result, skipping malformed entries."""
        if not isinstance(result, dict):
            raise ProtocolError(f"Invalid {key} list response: {result!r}")

        items = result.get(key) or []
        if not isinstance(items, list):
            raise ProtocolError(f"Expected '{key}' to be a list in response")

        parsed = []
        for i, item in enumerate(items):
            if not isinstance(item, dict):
                logger.warning(f"Entry {i} of {key} from {self.name} is not an object")
                continue
            try:
                parsed.append(factory(item))
            except ValueError as e:
                logger.warning(f"Failed to parse entry {i} of {key} from {self.name}: {e}")
        return parsed

    def _report_parse_error(self, message: str, line: str) -> None:
        error = ParseError(f"{message} (from {self.name})", line)
        logger.warning(str(error))
        self._emit(self.events.on_error, error)

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise NotConnectedError(f"MCP client for {self.name} is not connected")

    def _get_next_request_id(self) -> int:
        """Get the next request ID."""
        self._request_id += 1
        return self._request_id

    def _emit(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        """Invoke an event callback, logging handler failures."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Error in protocol event handler for {self.name}: {e}")

    def __repr__(self) -> str:
        return (
            f"ProtocolClient(name={self.name}, connected={self._connected}, "
            f"pending={len(self._pending)})"
        )
