"""
Configuration management for the MCP service host.

This module defines the per-service launch configuration, the host-wide
tuning settings, and the helpers that read and write the declarative
registry document ``{serviceName: {command, args, env, cwd}}``.
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .. import __version__
from .errors import ConfigError

logger = logging.getLogger(__name__)

# Keys of a single entry in the registry document
CONFIG_KEYS = ("command", "args", "env", "cwd")

# Wrapper key used by the common desktop-client configuration files
SERVERS_KEY = "mcpServers"


@dataclass(frozen=True)
class ServiceConfig:
    """Launch configuration for a single tool provider process."""

    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    def __post_init__(self):
        """Validate and normalise the configuration."""
        if not isinstance(self.name, str) or not self.name:
            raise ConfigError("Service name cannot be empty")
        if not isinstance(self.command, str) or not self.command:
            raise ConfigError(f"Service '{self.name}' requires a command")

        args = self.args if self.args is not None else []
        if isinstance(args, str) or not all(isinstance(a, str) for a in args):
            raise ConfigError(f"Service '{self.name}': args must be a list of strings")

        env = self.env if self.env is not None else {}
        if not isinstance(env, Mapping) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in env.items()
        ):
            raise ConfigError(
                f"Service '{self.name}': env must map strings to strings"
            )

        if self.cwd is not None and not isinstance(self.cwd, str):
            raise ConfigError(f"Service '{self.name}': cwd must be a string")

        # Own copies so callers cannot mutate a registered config
        object.__setattr__(self, "args", list(args))
        object.__setattr__(self, "env", dict(env))

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "ServiceConfig":
        """
        Create a config from one entry of the registry document.

        Args:
            name: Service name (the document key)
            data: Mapping with command, args, env and cwd

        Raises:
            ConfigError: If the entry is malformed
        """
        if not isinstance(data, Mapping):
            raise ConfigError(f"Invalid service configuration '{name}': expected an object")

        extra = set(data) - set(CONFIG_KEYS) - {"name"}
        if extra:
            logger.debug(f"Ignoring unknown keys for service {name}: {sorted(extra)}")

        return cls(
            name=name,
            command=data.get("command", ""),
            args=data.get("args") or [],
            env=data.get("env") or {},
            cwd=data.get("cwd"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a registry document entry (the name is the key)."""
        data: Dict[str, Any] = {
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
        }
        if self.cwd is not None:
            data["cwd"] = self.cwd
        return data

    def merged(self, **changes: Any) -> "ServiceConfig":
        """
        Return a new config with the given fields replaced.

        Raises:
            ConfigError: If an unknown field is given or the result is invalid
        """
        unknown = set(changes) - set(CONFIG_KEYS) - {"name"}
        if unknown:
            raise ConfigError(f"Unknown configuration fields: {sorted(unknown)}")
        return dataclasses.replace(self, **changes)

    def __str__(self) -> str:
        return f"ServiceConfig({self.name}: {' '.join([self.command, *self.args])})"


@dataclass
class HostSettings:
    """Tuning knobs shared by every service in a registry."""

    request_timeout: float = 30.0
    settle_delay: float = 0.5
    restart_delay: float = 1.0
    stop_timeout: float = 5.0
    log_limit: int = 100
    stream_limit: int = 16 * 1024 * 1024
    protocol_version: str = "2024-11-05"
    initialized_method: str = "initialized"
    client_name: str = "mcphost"
    client_version: str = __version__

    def __post_init__(self):
        """Validate settings after initialization."""
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.settle_delay < 0:
            raise ValueError("settle_delay must be non-negative")
        if self.restart_delay < 0:
            raise ValueError("restart_delay must be non-negative")
        if self.stop_timeout <= 0:
            raise ValueError("stop_timeout must be positive")
        if self.log_limit <= 0:
            raise ValueError("log_limit must be positive")
        if self.stream_limit <= 0:
            raise ValueError("stream_limit must be positive")
        if not self.initialized_method:
            raise ValueError("initialized_method cannot be empty")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HostSettings":
        """
        Build settings from MCPHOST_* environment variables.

        Unset variables keep their defaults.
        """
        environ = os.environ if environ is None else environ
        float_vars = {
            "request_timeout": "MCPHOST_REQUEST_TIMEOUT",
            "settle_delay": "MCPHOST_SETTLE_DELAY",
            "restart_delay": "MCPHOST_RESTART_DELAY",
            "stop_timeout": "MCPHOST_STOP_TIMEOUT",
        }

        kwargs: Dict[str, Any] = {}
        try:
            for attr, var in float_vars.items():
                if environ.get(var):
                    kwargs[attr] = float(environ[var])
            if environ.get("MCPHOST_LOG_LIMIT"):
                kwargs["log_limit"] = int(environ["MCPHOST_LOG_LIMIT"])
        except ValueError as e:
            raise ConfigError(f"Invalid MCPHOST_* environment setting: {e}") from e

        if environ.get("MCPHOST_INITIALIZED_METHOD"):
            kwargs["initialized_method"] = environ["MCPHOST_INITIALIZED_METHOD"]

        try:
            return cls(**kwargs)
        except ValueError as e:
            raise ConfigError(f"Invalid MCPHOST_* environment setting: {e}") from e


def _is_wrapped(document: Mapping[str, Any]) -> bool:
    """Check for the ``mcpServers`` wrapper, not a service of that name."""
    if SERVERS_KEY not in document:
        return False
    value = document[SERVERS_KEY]
    # A service entry always carries a string command
    return not (isinstance(value, Mapping) and isinstance(value.get("command"), str))


def parse_registry_document(document: Mapping[str, Any]) -> Dict[str, ServiceConfig]:
    """
    Convert a registry document into service configs.

    Accepts both the bare ``{name: {...}}`` shape and the
    ``{"mcpServers": {name: {...}}}`` wrapper.

    Raises:
        ConfigError: If the document or any entry is invalid
    """
    if not isinstance(document, Mapping):
        raise ConfigError("Registry document must be an object")

    servers = document
    if _is_wrapped(document):
        servers = document[SERVERS_KEY]
    if not isinstance(servers, Mapping):
        raise ConfigError(f"{SERVERS_KEY} must be an object")

    configs: Dict[str, ServiceConfig] = {}
    for name, data in servers.items():
        try:
            configs[name] = ServiceConfig.from_dict(name, data)
        except ConfigError as e:
            logger.error(f"Failed to load service config '{name}': {e}")
            raise
    return configs


def load_registry_document(path: Union[str, Path]) -> Dict[str, ServiceConfig]:
    """
    Load service configs from a JSON registry document.

    A missing file is treated as an empty registry.

    Raises:
        ConfigError: If the file is not valid JSON or an entry is invalid
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No registry document at {path}, starting empty")
        return {}

    logger.info(f"Loading service registry from {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in registry document {path}: {e}") from e

    configs = parse_registry_document(document)
    logger.info(f"Loaded configuration for {len(configs)} services")
    return configs


def save_registry_document(
    path: Union[str, Path], configs: Mapping[str, ServiceConfig]
) -> None:
    """Write service configs to a JSON registry document."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    document = {name: config.to_dict() for name, config in configs.items()}
    logger.debug(f"Saving {len(document)} service configs to {path}")

    with open(path, "w", encoding="utf-8") as f:
        json.dump(document, f, indent=2, ensure_ascii=False)
