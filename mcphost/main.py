import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .logging_config import setup_logging
from .services import (
    HostSettings,
    MCPHostError,
    ServiceRegistry,
    call_composite_tool,
    collect_openai_tools,
    format_tool_result,
    parse_composite_name,
)

DEFAULT_CONFIG = "mcp_services.json"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcphost", description="Run MCP tool provider services over stdio."
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Registry document with service definitions (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--log-file", help="Write logs to this file instead of stderr")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("list", help="List configured services")

    tools_parser = subparsers.add_parser(
        "tools", help="Start services and print their tools as function descriptors"
    )
    tools_parser.add_argument("names", nargs="*", help="Services to start (default: all)")

    call_parser = subparsers.add_parser("call", help="Call a tool by its composite name")
    call_parser.add_argument("name", help="Composite tool name, e.g. github_search_issues")
    call_parser.add_argument("--args", default="{}", help="Tool arguments as a JSON object")

    return parser


async def list_services(registry: ServiceRegistry) -> int:
    print(json.dumps(registry.export_configuration(), indent=2, ensure_ascii=False))
    return 0


async def print_tools(registry: ServiceRegistry, names: List[str]) -> int:
    names = names or registry.names
    results = await asyncio.gather(
        *(registry.start_service(name) for name in names), return_exceptions=True
    )
    for name, result in zip(names, results):
        if isinstance(result, Exception):
            logging.error(f"Failed to start service {name}: {result}")

    print(json.dumps(collect_openai_tools(registry, names), indent=2, ensure_ascii=False))
    return 0


async def call_tool(registry: ServiceRegistry, name: str, raw_arguments: str) -> int:
    try:
        arguments = json.loads(raw_arguments)
    except json.JSONDecodeError as e:
        logging.error(f"Invalid --args JSON: {e}")
        return 2
    if not isinstance(arguments, dict):
        logging.error("--args must be a JSON object")
        return 2

    service_name, _ = parse_composite_name(name)
    await registry.start_service(service_name)
    result = await call_composite_tool(registry, name, arguments)
    print(format_tool_result(result))
    return 1 if isinstance(result, dict) and result.get("isError") else 0


async def main(argv: Optional[List[str]] = None) -> int:
    """
    The main entry point for the mcphost command.

    Loads the registry document, runs the requested command, and stops every
    service it started before returning.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file)

    try:
        registry = ServiceRegistry.load(args.config, HostSettings.from_env())
    except MCPHostError as e:
        logging.error(f"Failed to load {args.config}: {e}")
        return 1

    try:
        if args.command == "list":
            return await list_services(registry)
        if args.command == "tools":
            return await print_tools(registry, args.names)
        return await call_tool(registry, args.name, args.args)
    except (MCPHostError, ValueError) as e:
        logging.error(f"{args.command} failed: {e}")
        return 1
    finally:
        await registry.shutdown()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
