"""stdin/stdout JSON IPC bridge for coordinator ↔ resource host communication."""

import sys
import logging
import threading
from typing import Optional, Union

from pydantic import BaseModel, ValidationError

from .messages import (
    AlreadyInitializing,
    HostPong,
    InitError,
    JobOutputChunk,
    JobResult,
    ResourceProgress,
    ResourceReady,
    RunError,
    encode_wire_text,
    parse_host_command,
    parse_host_event,
)

logger = logging.getLogger(__name__)


class StdioIPCError(Exception):
    """Base exception for stdio IPC errors."""
    pass


class HostCommunicationError(StdioIPCError):
    """Host sent a line that is not a valid event."""
    pass


class HostUnreachableError(StdioIPCError):
    """Host is not running or its stdin is closed."""
    pass


class InvalidCommandError(StdioIPCError):
    """Coordinator sent a line that is not a valid command."""
    pass


def encode_message(message: BaseModel) -> bytes:
    """Serialize a message as one newline-terminated JSON line."""
    return (message.model_dump_json() + "\n").encode("utf-8")


def decode_host_event(line: Union[str, bytes]):
    """
    Parse one stdout line from the host.

    Args:
        line: Raw line (trailing newline allowed)

    Returns:
        Parsed event model

    Raises:
        HostCommunicationError: If the line is empty, not JSON, or an unknown kind
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        raise HostCommunicationError("Empty line from host")
    try:
        return parse_host_event(line)
    except ValidationError as e:
        raise HostCommunicationError(f"Invalid message from host: {e}")


class HostStdioHandler:
    """Host-side stdio message handler (for use in the resource host process).

    The command loop and the background worker both emit events, so every
    write goes through one lock to keep lines whole.
    """

    def __init__(self, stdin=None, stdout=None):
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stdout = stdout if stdout is not None else sys.stdout
        self._write_lock = threading.Lock()

    def _send(self, message: BaseModel) -> None:
        with self._write_lock:
            self._stdout.write(message.model_dump_json() + "\n")
            self._stdout.flush()

    def send_ready(self, memory_gb: float) -> None:
        """Report the resource as loaded."""
        self._send(ResourceReady(memory_gb=memory_gb))

    def send_progress(self, percent: int) -> None:
        self._send(ResourceProgress(percent=percent))

    def send_already_initializing(self) -> None:
        self._send(AlreadyInitializing())

    def send_init_error(self, error: str, error_type: Optional[str] = None) -> None:
        self._send(InitError(error=error, error_type=error_type))

    def send_chunk(self, text: str, job_id: Optional[str] = None) -> None:
        text, raw = encode_wire_text(text)
        self._send(JobOutputChunk(job_id=job_id, text=text, raw=raw))

    def send_result(self, output: str, job_id: Optional[str] = None) -> None:
        output, raw = encode_wire_text(output)
        self._send(JobResult(job_id=job_id, output=output, raw=raw))

    def send_run_error(
        self,
        error: str,
        error_type: Optional[str] = None,
        job_id: Optional[str] = None
    ) -> None:
        self._send(RunError(job_id=job_id, error=error, error_type=error_type))

    def send_pong(self) -> None:
        self._send(HostPong())

    def receive_command(self):
        """
        Receive a command from the coordinator via stdin.

        Returns:
            Parsed command, or None if stdin closed (coordinator gone)

        Raises:
            InvalidCommandError: If the line is not a valid command
        """
        line = self._stdin.readline()
        if not line:
            logger.debug("EOF on stdin")
            return None

        try:
            return parse_host_command(line)
        except ValidationError as e:
            raise InvalidCommandError(f"Invalid command from coordinator: {e}")
