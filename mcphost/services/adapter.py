"""
Adapters between MCP tools and OpenAI-style function calling.

Tools from every running service share one flat namespace, so each is
exposed as ``{service}_{tool}``. Calls coming back from a model are routed by
splitting that composite name at the first underscore.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

from .errors import MCPHostError
from .protocol import MCPTool
from .service import ServiceStatus

if TYPE_CHECKING:
    from .registry import ServiceRegistry

logger = logging.getLogger(__name__)

SEPARATOR = "_"


@dataclass
class ToolAdapterEntry:
    """An MCP tool together with its function-call descriptor."""

    service_name: str
    tool: MCPTool
    descriptor: Dict[str, Any]

    @property
    def composite_name(self) -> str:
        return self.descriptor["function"]["name"]


def to_openai_descriptor(service_name: str, tool: MCPTool) -> Dict[str, Any]:
    """
    Build a function-call descriptor for a tool.

    Args:
        service_name: Name of the service exposing the tool
        tool: The tool as advertised by the server

    Returns:
        ``{"type": "function", "function": {name, description, parameters}}``
    """
    schema = tool.input_schema or {}
    parameters: Dict[str, Any] = {
        "type": "object",
        "properties": schema.get("properties") or {},
    }
    if schema.get("required"):
        parameters["required"] = list(schema["required"])

    return {
        "type": "function",
        "function": {
            "name": f"{service_name}{SEPARATOR}{tool.name}",
            "description": tool.description,
            "parameters": parameters,
        },
    }


def parse_composite_name(name: str) -> Tuple[str, str]:
    """
    Split a composite tool name into service and tool names.

    The split happens at the first separator, so a service whose own name
    contains an underscore cannot be addressed: ``git_hub_search`` parses as
    ``("git", "hub_search")``.

    Raises:
        ValueError: If the name has no separator or either side is empty
    """
    service_name, sep, tool_name = name.partition(SEPARATOR)
    if not sep or not service_name or not tool_name:
        raise ValueError(f"Invalid tool name format: {name}")
    return service_name, tool_name


def convert_tool(service_name: str, tool: MCPTool) -> ToolAdapterEntry:
    return ToolAdapterEntry(
        service_name=service_name,
        tool=tool,
        descriptor=to_openai_descriptor(service_name, tool),
    )


def collect_tool_entries(
    registry: "ServiceRegistry", service_names: Optional[Iterable[str]] = None
) -> List[ToolAdapterEntry]:
    """
    Convert the tools of every running, connected service.

    Args:
        registry: Registry to read services from
        service_names: Restrict to these services; unknown names are skipped

    Returns:
        One entry per tool, in service order
    """
    names = list(service_names) if service_names is not None else registry.names

    entries: List[ToolAdapterEntry] = []
    for name in names:
        if name not in registry:
            logger.debug(f"Skipping unknown service {name}")
            continue
        instance = registry.get(name)
        if instance.status != ServiceStatus.RUNNING or not instance.is_connected:
            continue
        entries.extend(convert_tool(name, tool) for tool in instance.tools)
    return entries


def collect_openai_tools(
    registry: "ServiceRegistry", service_names: Optional[Iterable[str]] = None
) -> List[Dict[str, Any]]:
    """Function-call descriptors for the tools of every running service."""
    return [entry.descriptor for entry in collect_tool_entries(registry, service_names)]


def find_tool_entry(
    entries: Iterable[ToolAdapterEntry], composite_name: str
) -> Optional[ToolAdapterEntry]:
    """Look up an entry by its exact composite name."""
    for entry in entries:
        if entry.composite_name == composite_name:
            return entry
    return None


def format_tool_result(result: Any) -> str:
    """
    Render a tool result as text.

    Text content items are joined with newlines; results without text fall
    back to their JSON encoding.
    """
    if not isinstance(result, dict) or not result.get("content"):
        return json.dumps(result, ensure_ascii=False)

    texts = [
        item.get("text", "")
        for item in result["content"]
        if isinstance(item, dict) and item.get("type") == "text"
    ]
    text = "\n".join(texts)
    if text:
        return text
    return json.dumps(result, ensure_ascii=False)


async def call_composite_tool(
    registry: "ServiceRegistry", composite_name: str, arguments: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Route a call made with a composite name to the owning service.

    Raises:
        ValueError: If the name cannot be parsed
        ServiceNotFoundError: If the parsed service is not registered
        NotRunningError: If the service is not running
    """
    service_name, tool_name = parse_composite_name(composite_name)
    return await registry.call_service_tool(service_name, tool_name, arguments or {})


async def execute_tool_calls(
    registry: "ServiceRegistry", tool_calls: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """
    Execute model tool calls concurrently.

    Each call is ``{"id", "function": {"name", "arguments"}}`` with
    ``arguments`` as a JSON string. A failing call yields an error message as
    its content instead of failing the batch.

    Returns:
        ``{"role": "tool", "content", "tool_call_id"}`` messages in call order
    """

    async def execute(tool_call: Dict[str, Any]) -> Dict[str, Any]:
        function = tool_call.get("function") or {}
        name = function.get("name", "")
        try:
            raw_arguments = function.get("arguments") or "{}"
            arguments = json.loads(raw_arguments) if isinstance(raw_arguments, str) else raw_arguments
            result = await call_composite_tool(registry, name, arguments)
            content = format_tool_result(result)
        except (ValueError, MCPHostError) as e:
            logger.warning(f"Tool call {name} failed: {e}")
            content = f"Tool call failed: {e}"

        return {"role": "tool", "content": content, "tool_call_id": tool_call.get("id")}

    return list(await asyncio.gather(*(execute(call) for call in tool_calls)))
