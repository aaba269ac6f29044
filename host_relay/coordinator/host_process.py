"""SubprocessHostLauncher - Spawns and talks to the resource host process."""

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional

from ..config.relay_config import RelayConfig
from ..ipc.messages import HostPong, PingHost, Shutdown
from ..ipc.stdio_bridge import (
    HostCommunicationError,
    HostUnreachableError,
    decode_host_event,
    encode_message,
)
from .metrics import metrics_collector

logger = logging.getLogger(__name__)

# Directory that contains the host_relay package
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

# Large job results travel as one JSON line
STDOUT_LINE_LIMIT = 16 * 1024 * 1024

EventHandler = Callable[[object], Awaitable[None]]
ExitHandler = Callable[[Optional[int]], Awaitable[None]]


class HostSpawnError(Exception):
    """Failed to start the resource host process."""
    pass


class SubprocessHostLauncher:
    """
    Host-management collaborator backed by a child process.

    - is_alive(): process exists and has not exited
    - create(): spawn `python -m host_relay.host <engine> <host_id>`, confirm
      its command loop answers a ping
    - send(): one JSON line on the host's stdin
    - events: a reader task decodes stdout lines and awaits on_event for each,
      in the order the host wrote them; on EOF it awaits on_exit
    """

    def __init__(self, config: RelayConfig):
        self.config = config
        self.process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._startup: Optional[asyncio.Future] = None
        self._send_lock = asyncio.Lock()
        self._host_counter: int = 0
        self._on_event: Optional[EventHandler] = None
        self._on_exit: Optional[ExitHandler] = None

    def attach(self, on_event: EventHandler, on_exit: ExitHandler) -> None:
        """Register the coordinator's event and exit handlers."""
        self._on_event = on_event
        self._on_exit = on_exit

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    def is_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def create(self) -> None:
        """
        Spawn a resource host and wait until it answers on its command channel.

        Raises:
            HostSpawnError: If the process cannot start or does not answer in time
        """
        if self.is_alive():
            return

        self._host_counter += 1
        host_id = self._host_counter
        python_exe = self.config.python_executable or sys.executable
        host_args = [python_exe, "-m", "host_relay.host", self.config.engine, str(host_id)]

        host_env = os.environ.copy()
        host_env.setdefault("PYTHONUNBUFFERED", "1")
        pythonpath = host_env.get("PYTHONPATH")
        host_env["PYTHONPATH"] = (
            f"{PROJECT_ROOT}{os.pathsep}{pythonpath}" if pythonpath else str(PROJECT_ROOT)
        )

        logger.info(f"Spawning resource host #{host_id} (engine: {self.config.engine})")
        try:
            # stderr inherited: the host logs there, stdout is reserved for IPC
            process = await asyncio.create_subprocess_exec(
                *host_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=host_env,
                cwd=str(PROJECT_ROOT),
                limit=STDOUT_LINE_LIMIT,
            )
        except OSError as e:
            raise HostSpawnError(f"Failed to spawn resource host: {e}") from e

        self.process = process
        metrics_collector.record_host_spawn()
        logger.debug(f"Resource host spawned with PID: {process.pid}")

        self._startup = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.ensure_future(self._read_events(process))

        timeout = self.config.host_start_timeout_seconds
        try:
            await self.send(PingHost())
            await asyncio.wait_for(asyncio.shield(self._startup), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Resource host did not answer within {timeout}s, killing it")
            await self._kill(process)
            raise HostSpawnError(f"Resource host did not start within {timeout}s")
        except HostUnreachableError as e:
            await self._kill(process)
            raise HostSpawnError(f"Resource host died during startup: {e}") from e

        logger.info(f"Resource host #{host_id} ready (PID: {process.pid})")

    async def send(self, command) -> None:
        """
        Write one command to the host.

        Raises:
            HostUnreachableError: If no host is running or the pipe is broken
        """
        process = self.process
        if process is None or process.returncode is not None:
            raise HostUnreachableError("Resource host is not running")

        async with self._send_lock:
            try:
                process.stdin.write(encode_message(command))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as e:
                raise HostUnreachableError(
                    f"Failed to send {command.type} to resource host: {e}"
                )

    async def _read_events(self, process: asyncio.subprocess.Process) -> None:
        """Forward host events to the coordinator until the host's stdout closes."""
        while True:
            try:
                line = await process.stdout.readline()
            except ValueError as e:
                logger.error(f"Oversized line from resource host skipped: {e}")
                continue
            if not line:
                break

            try:
                event = decode_host_event(line)
            except HostCommunicationError as e:
                logger.warning(f"Ignoring invalid line from resource host: {e}")
                continue

            if isinstance(event, HostPong) and self._startup and not self._startup.done():
                self._startup.set_result(True)
                continue

            if self._on_event is not None:
                try:
                    await self._on_event(event)
                except Exception as e:
                    logger.error(f"Failed to handle host event {event.type}: {e}", exc_info=True)

        returncode = await process.wait()
        logger.info(f"Resource host stdout closed (returncode: {returncode})")

        if self._startup is not None and not self._startup.done():
            self._startup.set_exception(
                HostUnreachableError(f"exited with code {returncode}")
            )

        if self._on_exit is not None:
            try:
                await self._on_exit(returncode)
            except Exception as e:
                logger.error(f"Failed to handle host exit: {e}", exc_info=True)

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        """Force-kill the host process (SIGKILL) and reap it."""
        if process.returncode is not None:
            return
        logger.info(f"Force-killing resource host (PID: {process.pid})")
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    async def shutdown(self) -> None:
        """
        Stop the host: send Shutdown, wait shutdown_grace_seconds, then SIGKILL.
        """
        process = self.process
        if process is None or process.returncode is not None:
            return

        logger.info(f"Stopping resource host (PID: {process.pid})")
        try:
            await self.send(Shutdown())
        except HostUnreachableError:
            logger.warning("Could not send shutdown to resource host (may be dead)")

        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.shutdown_grace_seconds)
            logger.info(f"Resource host exited gracefully (returncode: {process.returncode})")
        except asyncio.TimeoutError:
            logger.warning("Resource host did not exit gracefully, sending SIGKILL")
            await self._kill(process)

        if self._reader_task is not None:
            await self._reader_task
            self._reader_task = None
