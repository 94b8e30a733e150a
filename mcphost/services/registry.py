"""
Registry of configured MCP services.

This module provides the ServiceRegistry class that owns every configured
service, keeps a snapshot of each one's state for readers, and persists the
configuration (never the runtime state) to a JSON document.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Set, Union

from .config import (
    HostSettings,
    ServiceConfig,
    load_registry_document,
    parse_registry_document,
    save_registry_document,
)
from .errors import ConfigConflictError, ConfigError, MCPHostError, ServiceNotFoundError
from .protocol import MCPPrompt, MCPResource, MCPTool
from .service import MCPService, ServiceEvents, ServiceStatus

logger = logging.getLogger(__name__)


@dataclass
class ServiceInstance:
    """
    A registered service plus a mirror of its current state.

    The mirrored fields are kept current by callbacks wired into the
    MCPService when the instance is built.
    """

    config: ServiceConfig
    settings: HostSettings = field(default_factory=HostSettings)
    on_change: Optional[Callable[["ServiceInstance"], None]] = field(default=None, repr=False)

    status: ServiceStatus = field(default=ServiceStatus.STOPPED, init=False)
    is_connected: bool = field(default=False, init=False)
    pid: Optional[int] = field(default=None, init=False)
    tools: List[MCPTool] = field(default_factory=list, init=False)
    resources: List[MCPResource] = field(default_factory=list, init=False)
    prompts: List[MCPPrompt] = field(default_factory=list, init=False)
    logs: List[str] = field(default_factory=list, init=False, repr=False)
    service: MCPService = field(init=False, repr=False)

    def __post_init__(self):
        self.service = MCPService(
            self.config,
            self.settings,
            ServiceEvents(
                on_status_change=self._on_status_change,
                on_log=self._on_log,
                on_tools_update=self._on_tools_update,
                on_resources_update=self._on_resources_update,
                on_prompts_update=self._on_prompts_update,
            ),
        )

    @property
    def name(self) -> str:
        return self.config.name

    def clear_logs(self) -> None:
        self.service.clear_logs()
        self.logs = []
        self._notify()

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot of the instance for display or serialization."""
        return {
            "name": self.name,
            "config": self.config.to_dict(),
            "status": self.status.value,
            "is_connected": self.is_connected,
            "pid": self.pid,
            "tools": [tool.to_dict() for tool in self.tools],
            "resources": [resource.to_dict() for resource in self.resources],
            "prompts": [prompt.to_dict() for prompt in self.prompts],
            "logs": list(self.logs),
        }

    def _sync(self) -> None:
        self.status = self.service.status
        self.is_connected = self.service.is_connected
        self.pid = self.service.pid

    def _on_status_change(self, status: ServiceStatus) -> None:
        self._sync()
        self._notify()

    def _on_log(self, entry: str) -> None:
        self.logs = self.service.logs
        self._sync()
        self._notify()

    def _on_tools_update(self, tools: List[MCPTool]) -> None:
        self.tools = list(tools)
        self._notify()

    def _on_resources_update(self, resources: List[MCPResource]) -> None:
        self.resources = list(resources)
        self._notify()

    def _on_prompts_update(self, prompts: List[MCPPrompt]) -> None:
        self.prompts = list(prompts)
        self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self)


@dataclass
class RegistryStats:
    """Counts over the registered services."""

    services_configured: int
    services_running: int
    services_errored: int
    tools_available: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary."""
        return {
            "services_configured": self.services_configured,
            "services_running": self.services_running,
            "services_errored": self.services_errored,
            "tools_available": self.tools_available,
        }


class ServiceRegistry:
    """
    Owns the configured services and their lifecycles.

    When a ``store_path`` is given, every configuration change is written to
    it. Loading a stored registry never starts anything.
    """

    def __init__(
        self,
        settings: Optional[HostSettings] = None,
        store_path: Optional[Union[str, Path]] = None,
        on_change: Optional[Callable[[ServiceInstance], None]] = None,
    ):
        """
        Initialize the registry.

        Args:
            settings: Host settings shared by every service
            store_path: JSON document to persist configuration to
            on_change: Called with the instance whenever a service's state changes
        """
        self.settings = settings or HostSettings()
        self.store_path = Path(store_path) if store_path is not None else None
        self.on_change = on_change
        self._instances: Dict[str, ServiceInstance] = {}
        self._pending_stops: Set[asyncio.Task] = set()

    @classmethod
    def load(
        cls,
        path: Union[str, Path],
        settings: Optional[HostSettings] = None,
        on_change: Optional[Callable[[ServiceInstance], None]] = None,
    ) -> "ServiceRegistry":
        """
        Rebuild a registry from a stored document.

        Every service comes back STOPPED with an empty log. A missing file
        yields an empty registry that will be written to ``path``.
        """
        registry = cls(settings=settings, store_path=path, on_change=on_change)
        for name, config in load_registry_document(path).items():
            registry._instances[name] = registry._build(config)
        logger.info(f"Registry loaded with {len(registry)} services")
        return registry

    @property
    def names(self) -> List[str]:
        return list(self._instances)

    def get(self, name: str) -> ServiceInstance:
        """
        Get a registered instance.

        Raises:
            ServiceNotFoundError: If no service has that name
        """
        instance = self._instances.get(name)
        if instance is None:
            raise ServiceNotFoundError(f"Service not found: {name}")
        return instance

    def instances(self) -> List[ServiceInstance]:
        return list(self._instances.values())

    def add_service(self, config: ServiceConfig) -> ServiceInstance:
        """
        Register a new service in the STOPPED state.

        Raises:
            ConfigConflictError: If the name is already registered
            ConfigError: If the store cannot be written; nothing is added
        """
        if config.name in self._instances:
            raise ConfigConflictError(f"Service already exists: {config.name}")

        instance = self._build(config)
        self._commit({**self._instances, config.name: instance})
        logger.info(f"Added service {config}")
        return instance

    def remove_service(self, name: str) -> None:
        """
        Unregister a service.

        A live service is stopped in the background; removal does not wait
        for the stop to finish.
        """
        instance = self.get(name)
        self._commit({n: i for n, i in self._instances.items() if n != name})
        self._schedule_stop(instance)
        logger.info(f"Removed service {name}")

    def update_service(self, name: str, **changes: Any) -> ServiceInstance:
        """
        Change a service's configuration.

        The old service is stopped in the background and replaced by a new
        STOPPED instance built from the merged configuration.

        Raises:
            ConfigError: If the changes are invalid or try to rename the service
        """
        instance = self.get(name)
        if changes.get("name", name) != name:
            raise ConfigError(f"Service {name} cannot be renamed")

        config = instance.config.merged(**changes)
        replacement = self._build(config)
        self._commit({**self._instances, name: replacement})
        self._schedule_stop(instance)
        logger.info(f"Updated service {config}")
        return replacement

    async def start_service(self, name: str) -> ServiceInstance:
        instance = self.get(name)
        await instance.service.start()
        return instance

    async def stop_service(self, name: str) -> ServiceInstance:
        instance = self.get(name)
        await instance.service.stop()
        return instance

    async def restart_service(self, name: str) -> ServiceInstance:
        instance = self.get(name)
        await instance.service.restart()
        return instance

    async def call_service_tool(
        self, name: str, tool_name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Call a tool on a registered service."""
        return await self.get(name).service.call_tool(tool_name, arguments)

    async def refresh_service_data(self, name: str) -> ServiceInstance:
        instance = self.get(name)
        await instance.service.refresh_data()
        return instance

    async def read_service_resource(self, name: str, uri: str) -> Dict[str, Any]:
        return await self.get(name).service.read_resource(uri)

    async def get_service_prompt(
        self, name: str, prompt_name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return await self.get(name).service.get_prompt(prompt_name, arguments)

    def clear_service_logs(self, name: str) -> None:
        self.get(name).clear_logs()

    def export_configuration(self) -> Dict[str, Dict[str, Any]]:
        """Export every config as a ``{name: {command, args, env, cwd}}`` document."""
        return {name: instance.config.to_dict() for name, instance in self._instances.items()}

    def import_configuration(self, document: Mapping[str, Any]) -> List[str]:
        """
        Add every service described by a registry document.

        The document is validated as a whole first; nothing is added if any
        entry is invalid or any name is already registered.

        Returns:
            The names that were added

        Raises:
            ConfigError: If an entry is invalid
            ConfigConflictError: If a name is already registered
        """
        configs = parse_registry_document(document)
        conflicts = sorted(name for name in configs if name in self._instances)
        if conflicts:
            raise ConfigConflictError(f"Services already exist: {', '.join(conflicts)}")

        added = {name: self._build(config) for name, config in configs.items()}
        self._commit({**self._instances, **added})
        logger.info(f"Imported {len(configs)} services")
        return list(configs)

    def save(self, path: Optional[Union[str, Path]] = None) -> None:
        """
        Write the configuration document.

        Raises:
            ConfigError: If no path is known or the file cannot be written
        """
        target = Path(path) if path is not None else self.store_path
        if target is None:
            raise ConfigError("No store path configured for the registry")

        self._write(target, self._instances)

    def _write(self, target: Path, instances: Mapping[str, ServiceInstance]) -> None:
        try:
            save_registry_document(
                target, {name: instance.config for name, instance in instances.items()}
            )
        except OSError as e:
            logger.error(f"Failed to save registry to {target}: {e}")
            raise ConfigError(f"Failed to save registry to {target}: {e}") from e

    def get_stats(self) -> RegistryStats:
        instances = self.instances()
        return RegistryStats(
            services_configured=len(instances),
            services_running=sum(1 for i in instances if i.status == ServiceStatus.RUNNING),
            services_errored=sum(1 for i in instances if i.status == ServiceStatus.ERROR),
            tools_available=sum(len(i.tools) for i in instances),
        )

    async def shutdown(self) -> None:
        """Stop every live service and wait for background stops."""
        live = [i for i in self._instances.values() if i.status != ServiceStatus.STOPPED]
        if live:
            logger.info(f"Shutting down {len(live)} services")
        await asyncio.gather(*(self._stop_quietly(i) for i in live))

        if self._pending_stops:
            await asyncio.gather(*list(self._pending_stops))

    def _build(self, config: ServiceConfig) -> ServiceInstance:
        return ServiceInstance(config, self.settings, on_change=self._instance_changed)

    def _instance_changed(self, instance: ServiceInstance) -> None:
        # Ignore late events from removed or replaced instances
        if self._instances.get(instance.name) is not instance or self.on_change is None:
            return
        try:
            self.on_change(instance)
        except Exception as e:
            logger.error(f"Error in registry change handler for {instance.name}: {e}")

    def _schedule_stop(self, instance: ServiceInstance) -> None:
        if instance.service.status == ServiceStatus.STOPPED:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; cannot stop service {instance.name}")
            return

        task = loop.create_task(self._stop_quietly(instance))
        self._pending_stops.add(task)
        task.add_done_callback(self._pending_stops.discard)

    async def _stop_quietly(self, instance: ServiceInstance) -> None:
        try:
            await instance.service.stop()
        except MCPHostError as e:
            logger.warning(f"Failed to stop service {instance.name}: {e}")

    def _commit(self, instances: Dict[str, ServiceInstance]) -> None:
        """Write a new service map to the store, then make it current."""
        if self.store_path is not None:
            self._write(self.store_path, instances)
        self._instances = instances

    def __contains__(self, name: object) -> bool:
        return name in self._instances

    def __len__(self) -> int:
        return len(self._instances)

    def __iter__(self) -> Iterator[ServiceInstance]:
        return iter(self.instances())
