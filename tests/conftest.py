import sys

import pytest

# Import logging configuration
from tests.conftest_logging import configure_test_logging

from tests.helpers import SCRIPTED_SERVER

from mcphost.services.config import HostSettings, ServiceConfig


@pytest.fixture
def fast_settings():
    """Host settings with short delays so lifecycle tests run quickly."""
    return HostSettings(
        request_timeout=5.0,
        settle_delay=0.05,
        restart_delay=0.05,
        stop_timeout=2.0,
    )


@pytest.fixture
def scripted_config():
    """Config for the scripted JSON-RPC test server."""
    return ServiceConfig(
        name="scripted",
        command=sys.executable,
        args=[str(SCRIPTED_SERVER)],
    )


@pytest.fixture
def silent_config():
    """Config for a process that never answers on stdout."""
    return ServiceConfig(
        name="silent",
        command=sys.executable,
        args=["-c", "import time; time.sleep(30)"],
    )


@pytest.fixture
def sample_document():
    """A registry document with two services."""
    return {
        "github": {
            "command": "npx",
            "args": ["-y", "@modelcontextprotocol/server-github"],
            "env": {"GITHUB_TOKEN": "test-token"},
        },
        "filesystem": {
            "command": "npx",
            "args": ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"],
            "env": {},
            "cwd": "/tmp",
        },
    }
