"""RelayClient - Stateless HTTP client for the host relay coordinator.

The client keeps no lifecycle state of its own between calls. On construction
it reads the coordinator's persisted status, so a client that was destroyed
and recreated (a closed popup, a restarted script) picks up where the
resource actually is.
"""

import logging
import time
from typing import Iterator, Optional

import requests
from pydantic import BaseModel

from .coordinator.errors import error_from_reply
from .coordinator.status_store import StatusRecord
from .ipc.messages import (
    ErrorReply,
    JobOutput,
    LoadResource,
    LoadStarted,
    OutputChunk,
    Ping,
    ResourceStatus,
    SubmitJob,
    decode_wire_text,
    parse_server_message,
)

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://127.0.0.1:11450"


class RelayClient:
    """Typed wrapper over the coordinator's HTTP surface."""

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        recover: bool = True
    ):
        """
        Args:
            base_url: Coordinator URL
            timeout: Per-request timeout in seconds (None waits for long jobs)
            session: requests.Session to reuse (a new one if omitted)
            recover: Read the persisted status immediately
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.status: Optional[StatusRecord] = None

        if recover:
            self.recover_status()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _reply(self, response: requests.Response):
        """Parse a reply body; ErrorReply bodies become typed exceptions."""
        if response.status_code == 422:
            response.raise_for_status()
        reply = parse_server_message(response.json())
        if isinstance(reply, ErrorReply):
            raise error_from_reply(reply)
        return reply

    def _post(self, message: BaseModel, stream: bool = False) -> requests.Response:
        return self.session.post(
            self._url("/v1/messages"),
            json=message.model_dump(mode="json"),
            timeout=self.timeout,
            stream=stream,
        )

    # =========================================================================
    # Status
    # =========================================================================

    def recover_status(self) -> StatusRecord:
        """Fetch the persisted status record from the coordinator."""
        response = self.session.get(self._url("/v1/status"), timeout=self.timeout)
        response.raise_for_status()
        self.status = StatusRecord.model_validate(response.json())
        logger.debug(f"Recovered status: {self.status.status.value}")
        return self.status

    def wait_until_ready(self, timeout: float = 60.0, poll_interval: float = 0.5) -> StatusRecord:
        """
        Poll the persisted status until the resource is ready.

        Raises:
            InitError: If loading failed
            TimeoutError: If not ready within timeout
        """
        deadline = time.monotonic() + timeout
        while True:
            record = self.recover_status()
            if record.status == ResourceStatus.READY:
                return record
            if record.status == ResourceStatus.FAILED:
                raise error_from_reply(ErrorReply(
                    kind="init_error",
                    message=record.detail_message or "Resource failed to load",
                ))
            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"Resource not ready after {timeout}s (status: {record.status.value})"
                )
            time.sleep(poll_interval)

    # =========================================================================
    # Messages
    # =========================================================================

    def ping(self) -> bool:
        return self._reply(self._post(Ping())).ok

    def load_resource(self) -> LoadStarted:
        """Ask for the resource to be loaded. Readiness arrives as StatusChanged."""
        return self._reply(self._post(LoadResource()))

    def submit_job(self, input: str) -> str:
        """
        Run one job and return its full output.

        Raises:
            NotReadyError, BusyError, RunError
        """
        reply: JobOutput = self._reply(self._post(SubmitJob(input=input)))
        return decode_wire_text(reply.output, reply.raw)

    def stream_job(self, input: str) -> Iterator[str]:
        """
        Run one job, yielding output chunks as the host flushes them.

        Raises:
            NotReadyError, BusyError (before the first chunk), RunError
        """
        response = self._post(SubmitJob(input=input, stream=True), stream=True)
        with response:
            if response.headers.get("content-type", "").startswith("application/json"):
                self._reply(response)
                return
            for message in self._iter_sse(response):
                if isinstance(message, OutputChunk):
                    yield decode_wire_text(message.text, message.raw)
                elif isinstance(message, ErrorReply):
                    raise error_from_reply(message)
                elif isinstance(message, JobOutput):
                    return

    def iter_events(self) -> Iterator[BaseModel]:
        """Yield StatusChanged and OutputChunk broadcasts until the connection closes."""
        response = self.session.get(self._url("/v1/events"), stream=True, timeout=self.timeout)
        with response:
            response.raise_for_status()
            yield from self._iter_sse(response)

    @staticmethod
    def _iter_sse(response: requests.Response) -> Iterator[BaseModel]:
        for line in response.iter_lines(decode_unicode=True):
            if line and line.startswith("data: "):
                yield parse_server_message(line[len("data: "):])
