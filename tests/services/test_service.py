"""
Tests for the service orchestrator and its state machine.
"""

import asyncio
import re
import shutil
import sys

import pytest

from mcphost.services.config import HostSettings, ServiceConfig
from mcphost.services.errors import (
    InvalidTransitionError,
    MCPHostError,
    NotRunningError,
    ProcessSpawnError,
    ProtocolError,
    ProtocolTimeoutError,
)
from mcphost.services.service import (
    TRANSITIONS,
    MCPService,
    ServiceEvents,
    ServiceLog,
    ServiceStatus,
    can_transition,
)
from tests.helpers import SCRIPTED_SERVER, wait_until

LOG_ENTRY = re.compile(r"^\[\d{2}:\d{2}:\d{2}\] .+$")


class Recorder:
    """Collects service events, noting the connection state at each status."""

    def __init__(self):
        self.service = None
        self.statuses = []
        self.connected_at = []
        self.tool_updates = []

    def events(self) -> ServiceEvents:
        return ServiceEvents(
            on_status_change=self.on_status_change,
            on_tools_update=self.tool_updates.append,
        )

    def on_status_change(self, status):
        self.statuses.append(status)
        self.connected_at.append(self.service.is_connected)


def make_service(config, settings, recorder=None) -> MCPService:
    recorder = recorder or Recorder()
    service = MCPService(config, settings, recorder.events())
    recorder.service = service
    return service


class TestStateMachine:
    """Test the transition table and log buffer."""

    def test_every_status_has_transitions(self):
        assert set(TRANSITIONS) == set(ServiceStatus)

    @pytest.mark.parametrize(
        "current, requested, allowed",
        [
            (ServiceStatus.STOPPED, ServiceStatus.STARTING, True),
            (ServiceStatus.STOPPED, ServiceStatus.RUNNING, False),
            (ServiceStatus.STARTING, ServiceStatus.RUNNING, True),
            (ServiceStatus.RUNNING, ServiceStatus.STARTING, False),
            (ServiceStatus.RUNNING, ServiceStatus.STOPPED, True),
            (ServiceStatus.STOPPING, ServiceStatus.STARTING, False),
            (ServiceStatus.ERROR, ServiceStatus.STARTING, False),
            (ServiceStatus.ERROR, ServiceStatus.STOPPING, True),
        ],
    )
    def test_can_transition(self, current, requested, allowed):
        assert can_transition(current, requested) is allowed

    def test_status_values(self):
        assert [s.value for s in ServiceStatus] == [
            "stopped",
            "starting",
            "running",
            "stopping",
            "error",
        ]

    def test_log_format(self):
        log = ServiceLog()
        entry = log.append("Service started")

        assert LOG_ENTRY.match(entry)
        assert entry.endswith("] Service started")
        assert log.entries == [entry]

    def test_log_evicts_oldest(self):
        """Test that the buffer keeps only the newest entries."""
        log = ServiceLog(limit=3)
        for i in range(5):
            log.append(f"message {i}")

        assert len(log) == 3
        assert [entry.split("] ", 1)[1] for entry in log] == ["message 2", "message 3", "message 4"]

    def test_log_clear(self):
        log = ServiceLog()
        log.append("x")
        log.clear()
        assert log.entries == []


class TestServiceWithoutProcess:
    """Test guards that must hold without any child process."""

    @pytest.fixture
    def service(self, fast_settings):
        return MCPService(ServiceConfig(name="svc", command="npx"), fast_settings)

    @pytest.mark.asyncio
    async def test_call_tool_when_stopped(self, service):
        """Test that call_tool fails before any I/O when not running."""
        with pytest.raises(NotRunningError):
            await service.call_tool("echo", {"text": "hi"})

        assert service.pid is None
        assert not any("Calling tool" in entry for entry in service.logs)

    @pytest.mark.asyncio
    async def test_other_requests_when_stopped(self, service):
        with pytest.raises(NotRunningError):
            await service.refresh_data()
        with pytest.raises(NotRunningError):
            await service.read_resource("memo://x")
        with pytest.raises(NotRunningError):
            await service.get_prompt("summarize")

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, fast_settings):
        recorder = Recorder()
        service = make_service(ServiceConfig(name="svc", command="npx"), fast_settings, recorder)

        await service.stop()

        assert service.status == ServiceStatus.STOPPED
        assert recorder.statuses == []

    @pytest.mark.asyncio
    async def test_spawn_failure(self, fast_settings):
        """Test that a spawn failure leaves the service in ERROR."""
        recorder = Recorder()
        service = make_service(
            ServiceConfig(name="missing", command="/nonexistent/mcp-server-binary"),
            fast_settings,
            recorder,
        )

        with pytest.raises(ProcessSpawnError):
            await service.start()

        assert recorder.statuses == [ServiceStatus.STARTING, ServiceStatus.ERROR]
        assert service.is_connected is False
        assert service.pid is None
        assert any("Failed to start service" in entry for entry in service.logs)

    @pytest.mark.asyncio
    async def test_error_is_left_only_by_stop_or_restart(self, fast_settings):
        service = MCPService(
            ServiceConfig(name="missing", command="/nonexistent/mcp-server-binary"), fast_settings
        )
        with pytest.raises(ProcessSpawnError):
            await service.start()

        with pytest.raises(InvalidTransitionError):
            await service.start()

        await service.stop()
        assert service.status == ServiceStatus.STOPPED

    @pytest.mark.asyncio
    async def test_log_limit_from_settings(self):
        settings = HostSettings(settle_delay=0, log_limit=3)
        service = MCPService(
            ServiceConfig(name="missing", command="/nonexistent/mcp-server-binary"), settings
        )
        with pytest.raises(ProcessSpawnError):
            await service.start()

        assert len(service.logs) == 3

    @pytest.mark.asyncio
    async def test_clear_logs(self, service):
        service._add_log("something happened")

        service.clear_logs()

        assert service.logs == []


class TestServiceLifecycle:
    """Test the full lifecycle against the scripted test server."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scripted_config, fast_settings):
        """Test STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED."""
        recorder = Recorder()
        service = make_service(scripted_config, fast_settings, recorder)

        await service.start()
        try:
            assert service.status == ServiceStatus.RUNNING
            assert recorder.statuses == [ServiceStatus.STARTING, ServiceStatus.RUNNING]
            # Connected only once the handshake completed
            assert recorder.connected_at == [False, True]
            assert service.is_connected is True
            assert service.pid is not None
            assert service.server_info.name == "scripted"
            assert [tool.name for tool in service.tools][:2] == ["echo", "fail"]
            assert [r.uri for r in service.resources] == ["memo://greeting"]
            assert [p.name for p in service.prompts] == ["summarize"]
        finally:
            await service.stop()

        assert recorder.statuses[-2:] == [ServiceStatus.STOPPING, ServiceStatus.STOPPED]
        assert service.pid is None
        assert service.is_connected is False
        assert service.tools == []
        assert recorder.tool_updates[-1] == []

    @pytest.mark.asyncio
    async def test_start_when_running(self, scripted_config, fast_settings):
        """Test that a second start is rejected without spawning a process."""
        service = MCPService(scripted_config, fast_settings)
        await service.start()
        pid = service.pid

        try:
            with pytest.raises(InvalidTransitionError):
                await service.start()
            assert service.pid == pid
            assert service.status == ServiceStatus.RUNNING
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_nested_server_info(self, fast_settings):
        config = ServiceConfig(
            name="nested",
            command=sys.executable,
            args=[str(SCRIPTED_SERVER), "--nested-info"],
        )
        service = MCPService(config, fast_settings)

        await service.start()
        try:
            assert service.server_info.name == "scripted"
            assert service.server_info.version == "1.0.0"
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_fetch_failure_degrades_to_empty(self, fast_settings):
        """Test that a failing list request does not fail the start."""
        config = ServiceConfig(
            name="partial",
            command=sys.executable,
            args=[str(SCRIPTED_SERVER), "--fail-prompts"],
        )
        service = MCPService(config, fast_settings)

        await service.start()
        try:
            assert service.status == ServiceStatus.RUNNING
            assert service.prompts == []
            assert len(service.tools) > 0
            assert any("Failed to fetch prompts" in entry for entry in service.logs)
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_call_tool(self, scripted_config, fast_settings):
        service = MCPService(scripted_config, fast_settings)
        await service.start()

        try:
            result = await service.call_tool("echo", {"text": "hello"})
            assert result == {"content": [{"type": "text", "text": "hello"}]}
            assert any("Calling tool: echo" in entry for entry in service.logs)
            assert any("Tool call succeeded: echo" in entry for entry in service.logs)
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_failed_tool_call_keeps_service_running(self, scripted_config, fast_settings):
        """Test that a tool error only fails that call."""
        service = MCPService(scripted_config, fast_settings)
        await service.start()

        try:
            with pytest.raises(ProtocolError) as exc_info:
                await service.call_tool("fail")
            assert exc_info.value.code == -32000

            assert service.status == ServiceStatus.RUNNING
            assert any("Tool call failed: fail" in entry for entry in service.logs)
            assert (await service.call_tool("echo", {"text": "still here"}))["content"][0]["text"] == "still here"
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_tool_call_timeout(self, scripted_config):
        settings = HostSettings(request_timeout=0.3, settle_delay=0.05, stop_timeout=2.0)
        service = MCPService(scripted_config, settings)
        await service.start()

        try:
            with pytest.raises(ProtocolTimeoutError):
                await service.call_tool("slow", {"seconds": 1})
            assert service.status == ServiceStatus.RUNNING
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_read_resource_and_get_prompt(self, scripted_config, fast_settings):
        service = MCPService(scripted_config, fast_settings)
        await service.start()

        try:
            resource = await service.read_resource("memo://greeting")
            assert resource["contents"][0]["text"] == "hello"

            prompt = await service.get_prompt("summarize", {"text": "a story"})
            assert prompt["messages"][0]["content"]["text"] == "Summarize: a story"
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_refresh_data(self, scripted_config, fast_settings):
        service = MCPService(scripted_config, fast_settings)
        await service.start()

        try:
            await service.refresh_data()
            assert len(service.tools) == 6
            assert any("Service data refreshed" in entry for entry in service.logs)
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_stderr_is_logged(self, scripted_config, fast_settings):
        service = MCPService(scripted_config, fast_settings)
        await service.start()

        try:
            await service.call_tool("log_stderr")
            await wait_until(
                lambda: any("stderr: diagnostic message" in entry for entry in service.logs)
            )
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_list_changed_refreshes_tools(self, scripted_config, fast_settings):
        """Test that a tools list_changed notification triggers a refresh."""
        service = MCPService(scripted_config, fast_settings)
        await service.start()

        try:
            await service.call_tool("notify")
            await wait_until(lambda: "extra" in [tool.name for tool in service.tools])
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_server_request_is_refused(self, scripted_config, fast_settings):
        service = MCPService(scripted_config, fast_settings)
        await service.start()

        try:
            await service.call_tool("notify")
            await wait_until(
                lambda: any("client replied" in e and "-32601" in e for e in service.logs)
            )
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_crash_moves_to_stopped(self, scripted_config, fast_settings):
        """Test that an unexpected exit stops the service and fails pending calls."""
        recorder = Recorder()
        service = make_service(scripted_config, fast_settings, recorder)
        await service.start()

        with pytest.raises(MCPHostError):
            await service.call_tool("crash")

        assert service.status == ServiceStatus.STOPPED
        assert service.is_connected is False
        assert recorder.statuses[-1] == ServiceStatus.STOPPED
        assert ServiceStatus.ERROR not in recorder.statuses
        await wait_until(lambda: any("Process exited with code 3" in e for e in service.logs))

        with pytest.raises(NotRunningError):
            await service.call_tool("echo", {"text": "x"})

    @pytest.mark.asyncio
    async def test_start_after_crash(self, scripted_config, fast_settings):
        service = MCPService(scripted_config, fast_settings)
        await service.start()
        with pytest.raises(MCPHostError):
            await service.call_tool("crash")

        await service.start()
        try:
            assert service.status == ServiceStatus.RUNNING
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_restart(self, scripted_config, fast_settings):
        recorder = Recorder()
        service = make_service(scripted_config, fast_settings, recorder)
        await service.start()
        first_pid = service.pid

        await service.restart()
        try:
            assert service.status == ServiceStatus.RUNNING
            assert service.pid != first_pid
            assert recorder.statuses == [
                ServiceStatus.STARTING,
                ServiceStatus.RUNNING,
                ServiceStatus.STOPPING,
                ServiceStatus.STOPPED,
                ServiceStatus.STARTING,
                ServiceStatus.RUNNING,
            ]
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_restart_from_error(self, scripted_config, fast_settings):
        service = MCPService(scripted_config, fast_settings)
        service._transition(ServiceStatus.ERROR)

        await service.restart()
        try:
            assert service.status == ServiceStatus.RUNNING
        finally:
            await service.stop()


class TestFailedStarts:
    """Test starts that never complete the handshake."""

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, silent_config):
        """Test that a silent process fails the start and is cleaned up."""
        settings = HostSettings(request_timeout=0.3, settle_delay=0.05, stop_timeout=2.0)
        recorder = Recorder()
        service = make_service(silent_config, settings, recorder)

        with pytest.raises(ProtocolTimeoutError):
            await service.start()

        assert service.status == ServiceStatus.ERROR
        assert service.is_connected is False
        assert service.pid is None
        assert recorder.connected_at == [False, False]

    @pytest.mark.asyncio
    @pytest.mark.skipif(shutil.which("printf") is None, reason="printf not available")
    async def test_printf_never_connects(self):
        """Test a command that prints and exits without speaking the protocol."""
        settings = HostSettings(request_timeout=1.0, settle_delay=0.05, stop_timeout=2.0)
        service = MCPService(ServiceConfig(name="echo", command="printf", args=["hello"]), settings)

        with pytest.raises(MCPHostError):
            await service.start()

        assert service.status == ServiceStatus.ERROR
        assert service.is_connected is False

    @pytest.mark.asyncio
    async def test_stop_during_start(self, silent_config):
        """Test that stopping a starting service ends in STOPPED, not ERROR."""
        settings = HostSettings(request_timeout=5.0, settle_delay=0.05, stop_timeout=2.0)
        recorder = Recorder()
        service = make_service(silent_config, settings, recorder)

        start = asyncio.create_task(service.start())
        await wait_until(lambda: service.pid is not None)

        await service.stop()

        with pytest.raises(MCPHostError):
            await start
        assert service.status == ServiceStatus.STOPPED
        assert ServiceStatus.ERROR not in recorder.statuses
        assert service.pid is None
