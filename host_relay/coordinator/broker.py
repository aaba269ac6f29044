"""MessageBroker - Routes client messages to the resource host and host events back.

The broker is the coordinator-owned object that holds all mutable routing
state: the response correlator (the single pending job), the lifecycle
manager (the creation ticket) and the load-in-flight flag. Handlers receive
it by reference; nothing lives at module level.
"""

import asyncio
import logging
import uuid
from typing import Optional, Union

from ..config.relay_config import RelayConfig
from ..ipc.messages import (
    AlreadyInitializing,
    ClientReply,
    HostPong,
    InitError as InitErrorEvent,
    InitResource,
    JobOutput,
    JobOutputChunk,
    JobResult,
    LoadResource,
    LoadStarted,
    OutputChunk,
    Ping,
    Pong,
    ResourceProgress,
    ResourceReady,
    ResourceStatus,
    RunError as RunErrorEvent,
    RunJob,
    SubmitJob,
)
from ..ipc.stdio_bridge import HostUnreachableError
from .correlator import PendingRequest, ResponseCorrelator
from .errors import CreationError, NotReadyError, RelayError, RunError
from .lifecycle import SingletonLifecycleManager
from .metrics import metrics_collector
from .notifier import ClientNotifier
from .status_store import StatusRecord, StatusStore

logger = logging.getLogger(__name__)

# RunError.error_type sent by a host that has no resource loaded
NOT_LOADED_ERROR_TYPE = "NotLoaded"


class MessageBroker:
    """Single typed-message entry point of the coordinator."""

    def __init__(
        self,
        config: RelayConfig,
        launcher,
        status_store: StatusStore,
        notifier: Optional[ClientNotifier] = None,
    ):
        """
        Args:
            config: RelayConfig instance
            launcher: Host launcher (is_alive, create, send, shutdown, attach)
            status_store: Persisted status record
            notifier: Client notifier (a new one if omitted)
        """
        self.config = config
        self.launcher = launcher
        self.status_store = status_store
        self.notifier = notifier or ClientNotifier()
        self.lifecycle = SingletonLifecycleManager(launcher)
        self.correlator = ResponseCorrelator()

        self._status: StatusRecord = StatusRecord()
        self._load_in_flight: bool = False

        launcher.attach(on_event=self.handle_host_event, on_exit=self.handle_host_exit)

    # =========================================================================
    # Status
    # =========================================================================

    @property
    def status(self) -> StatusRecord:
        return self._status

    def start(self) -> StatusRecord:
        """
        Load the persisted status on coordinator activation.

        A fresh coordinator has no resource host, so a persisted loading or
        ready state is stale and is rewritten as not_loaded.
        """
        record = self.status_store.initialize()
        if (
            record.status in (ResourceStatus.LOADING, ResourceStatus.READY)
            and not self.lifecycle.host_exists()
        ):
            logger.info(
                f"Persisted status '{record.status.value}' has no live resource host, "
                f"resetting to not_loaded"
            )
            record = self.status_store.update(
                ResourceStatus.NOT_LOADED,
                detail_message="Resource host is not running",
            )
        self._status = record
        metrics_collector.update_status(record.status)
        return record

    def _set_status(
        self,
        status: ResourceStatus,
        detail_message: Optional[str] = None,
        progress_percent: Optional[int] = None
    ) -> StatusRecord:
        """Persist a transition and broadcast it to listening clients."""
        record = self.status_store.update(status, detail_message, progress_percent)
        self._status = record
        metrics_collector.update_status(status)
        self.notifier.broadcast(record.to_event())
        logger.info(
            f"Status -> {status.value}"
            + (f" ({progress_percent}%)" if progress_percent is not None else "")
            + (f": {detail_message}" if detail_message else "")
        )
        return record

    # =========================================================================
    # Client → Coordinator
    # =========================================================================

    async def handle_client_message(self, message) -> Union[ClientReply, PendingRequest]:
        """
        Execute the handler for one client message.

        Returns:
            An immediate reply, or for an accepted SubmitJob the PendingRequest
            whose reply arrives later (see await_reply)
        """
        kind = message.type
        try:
            if isinstance(message, Ping):
                result = Pong()
            elif isinstance(message, LoadResource):
                result = await self._handle_load()
            elif isinstance(message, SubmitJob):
                result = await self._handle_submit(message)
            else:
                raise TypeError(f"Unhandled client message kind: {kind}")
        except RelayError as e:
            logger.warning(f"{kind} rejected ({e.kind}): {e.message}")
            metrics_collector.record_client_message(kind, e.kind)
            return e.to_reply()

        metrics_collector.record_client_message(kind, "accepted")
        return result

    async def _handle_load(self) -> LoadStarted:
        current = self._status.status

        if current == ResourceStatus.READY and self.lifecycle.host_exists():
            logger.info("Resource already loaded, reporting ready")
            self.notifier.broadcast(self._status.to_event())
            return LoadStarted(status=ResourceStatus.READY)

        if self._load_in_flight:
            logger.info("Load already in progress, not dispatching another InitResource")
            return LoadStarted(status=ResourceStatus.LOADING)

        # Claim the load before the first await so a concurrent LoadResource sees it
        self._load_in_flight = True
        self._set_status(ResourceStatus.LOADING, detail_message="Starting resource host")

        try:
            await self.lifecycle.ensure_resource_host()
            await self.launcher.send(
                InitResource(resource_locator=self.config.resource_locator)
            )
        except CreationError as e:
            self._load_in_flight = False
            self._set_status(ResourceStatus.FAILED, detail_message=e.message)
            raise
        except HostUnreachableError as e:
            self._load_in_flight = False
            message = f"Resource host unreachable: {e}"
            self._set_status(ResourceStatus.FAILED, detail_message=message)
            raise CreationError(message) from e

        logger.info(f"InitResource dispatched: {self.config.resource_locator}")
        return LoadStarted(status=ResourceStatus.LOADING)

    async def _handle_submit(self, message: SubmitJob) -> PendingRequest:
        if not self.lifecycle.host_exists() or self._status.status != ResourceStatus.READY:
            raise NotReadyError(
                f"Resource is not ready (status: {self._status.status.value}); "
                f"send load_resource first"
            )

        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            job_id=uuid.uuid4().hex,
            reply=loop.create_future(),
            stream=asyncio.Queue() if message.stream else None,
        )
        self.correlator.bind(pending)

        try:
            await self.launcher.send(RunJob(
                job_id=pending.job_id,
                input=message.input,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                top_k=self.config.top_k,
                top_p=self.config.top_p,
            ))
        except HostUnreachableError as e:
            self.correlator.release(pending)
            raise NotReadyError(f"Resource host unreachable: {e}") from e

        logger.info(f"Job {pending.job_id} dispatched ({len(message.input)} chars)")
        return pending

    async def await_reply(self, pending: PendingRequest) -> ClientReply:
        """
        Wait for the reply of an accepted job, converting errors to ErrorReply.

        Applies job_timeout_seconds when configured; an expired job frees the
        pending slot and a late result for it is dropped by job_id.
        """
        try:
            return await pending.wait(self.config.job_timeout_seconds)
        except asyncio.TimeoutError:
            self.correlator.release(pending)
            metrics_collector.record_job("timeout")
            error = RunError(
                f"Job {pending.job_id} timed out after {self.config.job_timeout_seconds}s"
            )
            logger.warning(f"{error.message} (pending for {pending.age_seconds:.2f}s)")
            return error.to_reply()
        except RelayError as e:
            return e.to_reply()

    # =========================================================================
    # Resource Host → Coordinator
    # =========================================================================

    async def handle_host_event(self, event) -> None:
        """Apply one host event: status transitions, job correlation, relaying."""
        if isinstance(event, ResourceProgress):
            self._set_status(
                ResourceStatus.LOADING,
                detail_message="Loading resource",
                progress_percent=event.percent,
            )

        elif isinstance(event, ResourceReady):
            self._load_in_flight = False
            self._set_status(
                ResourceStatus.READY,
                detail_message=f"Resource loaded ({event.memory_gb:.2f} GB)",
                progress_percent=100,
            )

        elif isinstance(event, AlreadyInitializing):
            # The host's live report wins over whatever we had locally
            self._set_status(
                ResourceStatus.LOADING,
                detail_message="Resource is already loading",
                progress_percent=self._status.progress_percent,
            )

        elif isinstance(event, InitErrorEvent):
            self._load_in_flight = False
            self._set_status(ResourceStatus.FAILED, detail_message=event.error)

        elif isinstance(event, JobOutputChunk):
            pending = self.correlator.matches(event.job_id)
            self.notifier.notify(
                OutputChunk(job_id=event.job_id, text=event.text, raw=event.raw),
                reply=pending.stream if pending else None,
            )

        elif isinstance(event, JobResult):
            delivered = self.correlator.resolve(
                JobOutput(job_id=event.job_id, output=event.output, raw=event.raw),
                job_id=event.job_id,
            )
            metrics_collector.record_job("success" if delivered else "dropped")

        elif isinstance(event, RunErrorEvent):
            if event.error_type == NOT_LOADED_ERROR_TYPE:
                self.correlator.reject(NotReadyError(event.error), job_id=event.job_id)
                self._set_status(ResourceStatus.NOT_LOADED, detail_message=event.error)
            else:
                self.correlator.reject(RunError(event.error), job_id=event.job_id)
            metrics_collector.record_job("error")

        elif isinstance(event, HostPong):
            logger.debug("Resource host answered ping")

        else:
            raise TypeError(f"Unhandled host event kind: {event.type}")

    async def handle_host_exit(self, returncode: Optional[int]) -> None:
        """Resource host process ended: fail the pending job and reset status."""
        logger.warning(f"Resource host exited (returncode: {returncode})")
        self._load_in_flight = False

        if self.correlator.has_pending():
            self.correlator.reject(RunError(f"Resource host exited (code {returncode})"))
            metrics_collector.record_job("error")

        if self._status.status in (ResourceStatus.LOADING, ResourceStatus.READY):
            self._set_status(
                ResourceStatus.NOT_LOADED,
                detail_message=f"Resource host exited (code {returncode})",
            )

    async def shutdown(self) -> None:
        """Stop the resource host (coordinator exit)."""
        if self.correlator.has_pending():
            self.correlator.reject(RunError("Coordinator is shutting down"))
        await self.launcher.shutdown()
