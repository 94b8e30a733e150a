"""
Process supervision for stdio tool providers.

This module provides the ProcessSupervisor class that spawns and stops one
external tool provider process and forwards its raw output. It does no
message framing: stdout and stderr are delivered line by line to the
callbacks supplied at construction time.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .config import HostSettings, ServiceConfig
from .errors import AlreadyRunningError, ProcessError, ProcessExitError, ProcessSpawnError

logger = logging.getLogger(__name__)

# How long to wait for the output readers to drain after the process exits
DRAIN_TIMEOUT = 1.0


@dataclass
class ProcessEvents:
    """Callbacks fired by a ProcessSupervisor."""

    on_start: Optional[Callable[[int], None]] = None
    on_stdout: Optional[Callable[[str], None]] = None
    on_stderr: Optional[Callable[[str], None]] = None
    on_exit: Optional[Callable[[Optional[int]], None]] = None
    on_error: Optional[Callable[[str], None]] = None


class ProcessSupervisor:
    """
    Spawns, watches and stops a single tool provider process.

    The supervisor also acts as the write half of the duplex channel used by
    the protocol client: ``write()`` sends text to the child's stdin.
    """

    def __init__(
        self,
        config: ServiceConfig,
        events: Optional[ProcessEvents] = None,
        settings: Optional[HostSettings] = None,
    ):
        """
        Initialize the supervisor.

        Args:
            config: Launch configuration of the service
            events: Callbacks for process start, output, exit and errors
            settings: Host settings (stop timeout, stream buffer limit)
        """
        self.config = config
        self.events = events or ProcessEvents()
        self.settings = settings or HostSettings()
        self._process: Optional[asyncio.subprocess.Process] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        """Check if the process is live."""
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        """Process id of the live process, if any."""
        return self._process.pid if self._process is not None else None

    async def start(self) -> int:
        """
        Spawn the configured command.

        Returns:
            The process id

        Raises:
            AlreadyRunningError: If a process is already live
            ProcessSpawnError: If the process could not be started
        """
        if self.is_running:
            raise AlreadyRunningError(
                f"Process for {self.config.name} is already running (pid {self.pid})"
            )

        command_line = " ".join([self.config.command, *self.config.args])
        logger.info(f"Starting process for {self.config.name}: {command_line}")

        try:
            process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.config.env},
                cwd=self.config.cwd,
                limit=self.settings.stream_limit,
            )
        except (OSError, ValueError) as e:
            self._cleanup()
            message = f"Failed to start process for {self.config.name}: {e}"
            logger.error(message)
            self._emit(self.events.on_error, message)
            raise ProcessSpawnError(message) from e

        self._process = process
        readers = [
            asyncio.create_task(
                self._pump(process.stdout, self.events.on_stdout),
                name=f"{self.config.name}-stdout",
            ),
            asyncio.create_task(
                self._pump(process.stderr, self.events.on_stderr),
                name=f"{self.config.name}-stderr",
            ),
        ]
        watcher = asyncio.create_task(
            self._watch(process, readers), name=f"{self.config.name}-watch"
        )
        self._tasks = [*readers, watcher]

        logger.info(f"Process for {self.config.name} started with pid {process.pid}")
        self._emit(self.events.on_start, process.pid)
        return process.pid

    async def stop(self) -> None:
        """
        Terminate the live process.

        Bookkeeping is cleared even if termination fails. Calling this on a
        stopped supervisor does nothing.

        Raises:
            ProcessError: If the process could not be terminated
        """
        process = self._process
        if process is None:
            return

        tasks = list(self._tasks)
        if process.returncode is None:
            logger.info(f"Stopping process for {self.config.name} (pid {process.pid})")
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.settings.stop_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Force killing process for {self.config.name}")
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                logger.debug(f"Process for {self.config.name} already exited")
            except OSError as e:
                message = f"Failed to stop process for {self.config.name}: {e}"
                logger.error(message)
                self._emit(self.events.on_error, message)
                raise ProcessError(message) from e
            finally:
                self._cleanup()
        else:
            self._cleanup()

        if tasks:
            await asyncio.wait(tasks, timeout=DRAIN_TIMEOUT)

    async def write(self, data: str) -> None:
        """
        Write text to the process's standard input.

        Raises:
            ProcessExitError: If no process is live or its input is closed
        """
        process = self._process
        if process is None or process.returncode is not None or process.stdin is None:
            raise ProcessExitError(f"Process for {self.config.name} is not running")

        try:
            process.stdin.write(data.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProcessExitError(
                f"Process for {self.config.name} closed its input: {e}"
            ) from e

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        callback: Optional[Callable[[str], None]],
    ) -> None:
        """Forward each line of an output stream to a callback."""
        if stream is None:
            return

        while True:
            try:
                line = await stream.readline()
            except ValueError as e:
                # Line longer than stream_limit; the reader already discarded it
                message = f"Dropped oversized output line from {self.config.name}: {e}"
                logger.error(message)
                self._emit(self.events.on_error, message)
                continue

            if not line:  # EOF
                break
            self._emit(callback, line.decode("utf-8", errors="replace"))

    async def _watch(
        self, process: asyncio.subprocess.Process, readers: List[asyncio.Task]
    ) -> None:
        """Wait for the process to end and report its exit code."""
        code = await process.wait()
        # Let buffered output reach the callbacks before the exit event
        await asyncio.wait(readers, timeout=DRAIN_TIMEOUT)

        logger.info(f"Process for {self.config.name} exited with code {code}")
        if self._process is process:
            self._cleanup()
        self._emit(self.events.on_exit, code)

    def _cleanup(self) -> None:
        """Forget the current process."""
        process = self._process
        if process is not None and process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        self._process = None
        self._tasks = []

    def _emit(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        """Invoke an event callback, logging handler failures."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Error in process event handler for {self.config.name}: {e}")

    def __repr__(self) -> str:
        return (
            f"ProcessSupervisor(name={self.config.name}, "
            f"running={self.is_running}, pid={self.pid})"
        )
