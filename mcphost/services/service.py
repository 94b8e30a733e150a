"""
Service orchestration for MCP tool providers.

This module provides the MCPService class that drives one tool provider
through its lifecycle: spawn the process, perform the handshake, discover
tools, resources and prompts, serve tool calls, and tear everything down
again. Status changes follow an explicit transition table.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set

from .config import HostSettings, ServiceConfig
from .errors import (
    InvalidTransitionError,
    MCPHostError,
    NotRunningError,
    ProcessError,
    ProcessExitError,
)
from .process import ProcessEvents, ProcessSupervisor
from .protocol import (
    MCPPrompt,
    MCPResource,
    MCPServerInfo,
    MCPTool,
    ProtocolClient,
    ProtocolEvents,
)

logger = logging.getLogger(__name__)


class ServiceStatus(Enum):
    """Lifecycle status of a service."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


# Allowed status changes; anything else raises InvalidTransitionError
TRANSITIONS: Dict[ServiceStatus, FrozenSet[ServiceStatus]] = {
    ServiceStatus.STOPPED: frozenset({ServiceStatus.STARTING, ServiceStatus.ERROR}),
    ServiceStatus.STARTING: frozenset(
        {
            ServiceStatus.RUNNING,
            ServiceStatus.STOPPING,
            ServiceStatus.STOPPED,
            ServiceStatus.ERROR,
        }
    ),
    ServiceStatus.RUNNING: frozenset(
        {ServiceStatus.STOPPING, ServiceStatus.STOPPED, ServiceStatus.ERROR}
    ),
    ServiceStatus.STOPPING: frozenset({ServiceStatus.STOPPED, ServiceStatus.ERROR}),
    ServiceStatus.ERROR: frozenset({ServiceStatus.STOPPING, ServiceStatus.STOPPED}),
}


def can_transition(current: ServiceStatus, requested: ServiceStatus) -> bool:
    """Check whether a status change is allowed."""
    return requested in TRANSITIONS[current]


class ServiceLog:
    """Bounded, timestamped log of service events. Oldest entries drop first."""

    def __init__(self, limit: int = 100):
        self._entries: deque = deque(maxlen=limit)

    def append(self, message: str) -> str:
        """Add a message and return the stored entry."""
        entry = f"[{datetime.now().strftime('%H:%M:%S')}] {message}"
        self._entries.append(entry)
        return entry

    def clear(self) -> None:
        self._entries.clear()

    @property
    def entries(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))


@dataclass
class ServiceEvents:
    """Callbacks fired by an MCPService."""

    on_status_change: Optional[Callable[[ServiceStatus], None]] = None
    on_log: Optional[Callable[[str], None]] = None
    on_tools_update: Optional[Callable[[List[MCPTool]], None]] = None
    on_resources_update: Optional[Callable[[List[MCPResource]], None]] = None
    on_prompts_update: Optional[Callable[[List[MCPPrompt]], None]] = None


class MCPService:
    """
    Orchestrates one tool provider process and its protocol client.

    Each start creates a fresh ProcessSupervisor and ProtocolClient. Events
    are bound to the start that created them, so late events from a torn
    down process or client are ignored.
    """

    def __init__(
        self,
        config: ServiceConfig,
        settings: Optional[HostSettings] = None,
        events: Optional[ServiceEvents] = None,
    ):
        """
        Initialize the service.

        Args:
            config: Launch configuration
            settings: Host settings (delays, timeouts, log limit)
            events: Callbacks for status, log and capability changes
        """
        self.config = config
        self.settings = settings or HostSettings()
        self.events = events or ServiceEvents()

        self._status = ServiceStatus.STOPPED
        self._process: Optional[ProcessSupervisor] = None
        self._client: Optional[ProtocolClient] = None
        self._tools: List[MCPTool] = []
        self._resources: List[MCPResource] = []
        self._prompts: List[MCPPrompt] = []
        self._log = ServiceLog(self.settings.log_limit)

        # Bumped whenever the current process/client pair is detached
        self._generation = 0
        self._stop_requested = False
        self._background: Set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def status(self) -> ServiceStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status == ServiceStatus.RUNNING

    @property
    def is_connected(self) -> bool:
        """Check if the handshake has completed on the current client."""
        return self._client is not None and self._client.connected

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def server_info(self) -> Optional[MCPServerInfo]:
        return self._client.server_info if self._client is not None else None

    @property
    def tools(self) -> List[MCPTool]:
        return list(self._tools)

    @property
    def resources(self) -> List[MCPResource]:
        return list(self._resources)

    @property
    def prompts(self) -> List[MCPPrompt]:
        return list(self._prompts)

    @property
    def logs(self) -> List[str]:
        return self._log.entries

    async def start(self) -> None:
        """
        Start the service: spawn, handshake, discover.

        Raises:
            InvalidTransitionError: If the service is not stopped
            MCPHostError: If spawning or the handshake fails; the service
                ends in ERROR
        """
        self._transition(ServiceStatus.STARTING)
        self._stop_requested = False
        self._generation += 1
        generation = self._generation

        command_line = " ".join([self.config.command, *self.config.args])
        self._add_log(f"Starting service: {command_line}")

        process: Optional[ProcessSupervisor] = None
        client: Optional[ProtocolClient] = None
        try:
            process = ProcessSupervisor(
                self.config, self._process_events(generation), self.settings
            )
            self._process = process
            await process.start()

            # Give the child a moment to set up its stdio
            await asyncio.sleep(self.settings.settle_delay)
            self._ensure_current(generation)

            client = ProtocolClient(
                process, self._protocol_events(generation), self.settings, name=self.name
            )
            self._client = client
            await client.initialize()
            self._ensure_current(generation)

            tools, resources, prompts = await asyncio.gather(
                self._fetch("tools", client.get_tools),
                self._fetch("resources", client.get_resources),
                self._fetch("prompts", client.get_prompts),
            )
            self._ensure_current(generation)

            self._set_tools(tools)
            self._set_resources(resources)
            self._set_prompts(prompts)
            self._transition(ServiceStatus.RUNNING)
            self._add_log(
                f"Service started: {len(tools)} tools, {len(resources)} resources, "
                f"{len(prompts)} prompts"
            )
        except asyncio.CancelledError:
            await self._abandon_start(generation, process, client)
            self._add_log("Start cancelled")
            if self._status == ServiceStatus.STARTING:
                self._transition(ServiceStatus.STOPPED)
            raise
        except Exception as e:
            await self._abandon_start(generation, process, client)
            if self._stop_requested or self._status == ServiceStatus.STOPPING:
                raise
            self._add_log(f"Failed to start service: {e}")
            self._transition(ServiceStatus.ERROR)
            raise

    async def stop(self) -> None:
        """
        Stop the service.

        Does nothing when already stopped.

        Raises:
            InvalidTransitionError: If a stop is already in progress
            ProcessError: If the process could not be terminated; the
                service ends in ERROR
        """
        if self._status == ServiceStatus.STOPPED:
            return

        self._transition(ServiceStatus.STOPPING)
        self._stop_requested = True
        self._add_log("Stopping service")

        self._generation += 1
        process, client = self._detach()
        try:
            await self._teardown(process, client, strict=True)
        except Exception as e:
            self._add_log(f"Failed to stop service: {e}")
            self._transition(ServiceStatus.ERROR)
            raise

        self._transition(ServiceStatus.STOPPED)
        self._add_log("Service stopped")

    async def restart(self) -> None:
        """Stop the service, wait restart_delay, then start it again."""
        self._add_log("Restarting service")
        await self.stop()
        await asyncio.sleep(self.settings.restart_delay)
        await self.start()

    async def call_tool(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Call a tool on the running service.

        Failures are logged and raised to the caller; they never change the
        service status.

        Raises:
            NotRunningError: If the service is not running and connected
        """
        client = self._require_client()
        self._add_log(f"Calling tool: {name}")
        try:
            result = await client.call_tool(name, arguments or {})
        except Exception as e:
            self._add_log(f"Tool call failed: {name} - {e}")
            raise

        if isinstance(result, dict) and result.get("isError"):
            self._add_log(f"Tool call returned an error: {name}")
        else:
            self._add_log(f"Tool call succeeded: {name}")
        return result

    async def refresh_data(self) -> None:
        """Re-fetch tools, resources and prompts from the server."""
        client = self._require_client()
        tools, resources, prompts = await asyncio.gather(
            self._fetch("tools", client.get_tools),
            self._fetch("resources", client.get_resources),
            self._fetch("prompts", client.get_prompts),
        )
        if client is not self._client:
            return
        self._set_tools(tools)
        self._set_resources(resources)
        self._set_prompts(prompts)
        self._add_log("Service data refreshed")

    async def read_resource(self, uri: str) -> Dict[str, Any]:
        """Read a resource from the running service."""
        client = self._require_client()
        self._add_log(f"Reading resource: {uri}")
        try:
            return await client.read_resource(uri)
        except Exception as e:
            self._add_log(f"Resource read failed: {uri} - {e}")
            raise

    async def get_prompt(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Render a prompt on the running service."""
        client = self._require_client()
        self._add_log(f"Getting prompt: {name}")
        try:
            return await client.get_prompt(name, arguments)
        except Exception as e:
            self._add_log(f"Prompt request failed: {name} - {e}")
            raise

    def clear_logs(self) -> None:
        self._log.clear()

    # Internals

    def _transition(self, requested: ServiceStatus) -> None:
        """Move to a new status, enforcing the transition table."""
        current = self._status
        if not can_transition(current, requested):
            raise InvalidTransitionError(current, requested)

        self._status = requested
        self._add_log(f"Status: {current.value} -> {requested.value}")
        self._emit(self.events.on_status_change, requested)

    def _require_client(self) -> ProtocolClient:
        client = self._client
        if self._status != ServiceStatus.RUNNING or client is None or not client.connected:
            raise NotRunningError(f"Service {self.name} is not running")
        return client

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise ProcessExitError(f"Service {self.name} lost its process during start")

    def _detach(self):
        """Release the current process and client, clearing cached data."""
        process, client = self._process, self._client
        self._process = None
        self._client = None
        self._set_tools([])
        self._set_resources([])
        self._set_prompts([])
        return process, client

    async def _teardown(
        self,
        process: Optional[ProcessSupervisor],
        client: Optional[ProtocolClient],
        strict: bool = False,
    ) -> None:
        """Disconnect the client, then stop the process."""
        if client is not None:
            await client.disconnect()
        if process is not None:
            try:
                await process.stop()
            except ProcessError as e:
                if strict:
                    raise
                logger.warning(f"Cleanup of {self.name} failed: {e}")

    async def _abandon_start(
        self,
        generation: int,
        process: Optional[ProcessSupervisor],
        client: Optional[ProtocolClient],
    ) -> None:
        """Tear down the process and client created by a failed start."""
        if generation == self._generation:
            self._generation += 1
            self._detach()
        # A concurrent stop may have run before the spawn finished
        await self._teardown(process, client)

    async def _fetch(
        self, kind: str, getter: Callable[[], Awaitable[List[Any]]]
    ) -> List[Any]:
        """Fetch one capability list, degrading to an empty list on failure."""
        try:
            return await getter()
        except MCPHostError as e:
            self._add_log(f"Failed to fetch {kind}: {e}")
            return []

    async def _refresh(self, kind: str, generation: int) -> None:
        """Refresh a single capability list after a list_changed notification."""
        client = self._client
        if generation != self._generation or client is None or not client.connected:
            return

        getters = {
            "tools": (client.get_tools, self._set_tools),
            "resources": (client.get_resources, self._set_resources),
            "prompts": (client.get_prompts, self._set_prompts),
        }
        getter, setter = getters[kind]
        items = await self._fetch(kind, getter)
        if generation == self._generation:
            setter(items)
            self._add_log(f"Refreshed {kind}: {len(items)}")

    def _set_tools(self, tools: List[MCPTool]) -> None:
        if not tools and not self._tools:
            return
        self._tools = list(tools)
        self._emit(self.events.on_tools_update, self.tools)

    def _set_resources(self, resources: List[MCPResource]) -> None:
        if not resources and not self._resources:
            return
        self._resources = list(resources)
        self._emit(self.events.on_resources_update, self.resources)

    def _set_prompts(self, prompts: List[MCPPrompt]) -> None:
        if not prompts and not self._prompts:
            return
        self._prompts = list(prompts)
        self._emit(self.events.on_prompts_update, self.prompts)

    def _connection_lost(self, generation: int, reason: str) -> None:
        """Handle an unsolicited exit or disconnect of the current pair."""
        if generation != self._generation:
            return
        if self._status not in (ServiceStatus.STARTING, ServiceStatus.RUNNING):
            return

        self._add_log(reason)
        self._generation += 1
        process, client = self._detach()
        self._transition(ServiceStatus.STOPPED)
        self._spawn(self._teardown(process, client))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task for {self.name} failed: {task.exception()}")

    # Process events

    def _process_events(self, generation: int) -> ProcessEvents:
        return ProcessEvents(
            on_start=partial(self._on_process_start, generation),
            on_stdout=partial(self._on_process_stdout, generation),
            on_stderr=partial(self._on_process_stderr, generation),
            on_exit=partial(self._on_process_exit, generation),
            on_error=partial(self._on_process_error, generation),
        )

    def _on_process_start(self, generation: int, pid: int) -> None:
        if generation == self._generation:
            self._add_log(f"Process started with pid {pid}")

    def _on_process_stdout(self, generation: int, text: str) -> None:
        if generation != self._generation:
            return
        if self._client is None:
            logger.debug(f"Output from {self.name} before protocol client was ready: {text!r}")
            return
        self._client.handle_message(text)

    def _on_process_stderr(self, generation: int, text: str) -> None:
        if generation == self._generation and text.strip():
            self._add_log(f"stderr: {text.rstrip()}")

    def _on_process_exit(self, generation: int, code: Optional[int]) -> None:
        self._connection_lost(generation, f"Process exited with code {code}")

    def _on_process_error(self, generation: int, message: str) -> None:
        # A dead process is always reported through on_exit as well
        if generation == self._generation:
            self._add_log(f"Process error: {message}")

    # Protocol events

    def _protocol_events(self, generation: int) -> ProtocolEvents:
        return ProtocolEvents(
            on_connected=partial(self._on_connected, generation),
            on_disconnected=partial(self._on_disconnected, generation),
            on_error=partial(self._on_protocol_error, generation),
            on_notification=partial(self._on_notification, generation),
            on_tools_changed=partial(self._on_list_changed, generation, "tools"),
            on_resources_changed=partial(self._on_list_changed, generation, "resources"),
            on_prompts_changed=partial(self._on_list_changed, generation, "prompts"),
            on_resource_updated=partial(self._on_resource_updated, generation),
        )

    def _on_connected(self, generation: int, server_info: MCPServerInfo) -> None:
        if generation == self._generation:
            self._add_log(f"Connected to {server_info.name} v{server_info.version}")

    def _on_disconnected(self, generation: int) -> None:
        self._connection_lost(generation, "Protocol connection closed")

    def _on_protocol_error(self, generation: int, error: Exception) -> None:
        if generation == self._generation:
            self._add_log(f"Protocol error: {error}")

    def _on_notification(self, generation: int, method: str, params: Dict[str, Any]) -> None:
        if generation == self._generation:
            logger.debug(f"Notification from {self.name}: {method}")

    def _on_list_changed(self, generation: int, kind: str) -> None:
        if generation == self._generation and self._status == ServiceStatus.RUNNING:
            self._spawn(self._refresh(kind, generation))

    def _on_resource_updated(self, generation: int, uri: Optional[str]) -> None:
        if generation == self._generation:
            self._add_log(f"Resource updated: {uri}")

    def _add_log(self, message: str) -> None:
        entry = self._log.append(message)
        logger.info(f"[{self.name}] {message}")
        self._emit(self.events.on_log, entry)

    def _emit(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        """Invoke an event callback, logging handler failures."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Error in service event handler for {self.name}: {e}")

    def __repr__(self) -> str:
        return f"MCPService(name={self.name}, status={self._status.value}, pid={self.pid})"
