import asyncio
from pathlib import Path
from typing import Callable

TEST_SERVERS = Path(__file__).parent / "test_servers"
SCRIPTED_SERVER = TEST_SERVERS / "scripted_server.py"
FASTMCP_SERVER = TEST_SERVERS / "stdio_server.py"


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01):
    """Poll until predicate() is true, failing the test after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)
