"""FastAPI application for the host relay coordinator."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from fastapi import Body, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from ..config.relay_config import RelayConfig
from ..ipc.messages import ErrorReply, parse_client_message
from .broker import MessageBroker
from .correlator import PendingRequest
from .errors import BusyError, CreationError, InitError, NotReadyError, RunError
from .health_checks import check_host_health, check_memory_health
from .metrics import metrics_collector, metrics_router

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# HTTP status for each ErrorReply kind
ERROR_STATUS_CODES: Dict[str, int] = {
    NotReadyError.kind: 409,
    BusyError.kind: 429,
    CreationError.kind: 503,
    InitError.kind: 502,
    RunError.kind: 502,
}


def format_sse(message: BaseModel) -> str:
    """One server-sent event carrying a message as JSON."""
    return f"event: {message.type}\ndata: {message.model_dump_json()}\n\n"


def reply_response(reply: BaseModel) -> JSONResponse:
    """JSON response for a client reply, with the HTTP status of its error kind."""
    status_code = 200
    if isinstance(reply, ErrorReply):
        status_code = ERROR_STATUS_CODES.get(reply.kind, 500)
    return JSONResponse(status_code=status_code, content=reply.model_dump(mode="json"))


def create_app(config: RelayConfig, broker: MessageBroker) -> FastAPI:
    """
    Create FastAPI application.

    Args:
        config: Relay configuration
        broker: MessageBroker instance (owns all routing state)

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        record = broker.start()
        metrics_collector.set_server_info(VERSION, config.engine)
        logger.info(f"Coordinator started (resource status: {record.status.value})")
        yield
        logger.info("Coordinator stopping, shutting down resource host")
        await broker.shutdown()

    app = FastAPI(
        title="Host Relay",
        description="Coordinator for a single on-demand resource host",
        version=VERSION,
        lifespan=lifespan,
    )
    app.include_router(metrics_router)

    async def stream_job(pending: PendingRequest) -> AsyncIterator[str]:
        """
        OutputChunk events for one job, then its final reply.

        A client that disconnects does not cancel the job: the correlator slot
        stays bound, and other submits get busy, until the host reports the
        job's result or error.
        """
        reply_task = asyncio.ensure_future(broker.await_reply(pending))
        try:
            while True:
                chunk_task = asyncio.ensure_future(pending.stream.get())
                done, _ = await asyncio.wait(
                    {chunk_task, reply_task},
                    return_when=asyncio.FIRST_COMPLETED
                )
                if chunk_task in done:
                    yield format_sse(chunk_task.result())
                    continue
                chunk_task.cancel()
                break

            # Chunks emitted before the result are still queued
            while not pending.stream.empty():
                yield format_sse(pending.stream.get_nowait())
            yield format_sse(reply_task.result())
        finally:
            if not reply_task.done():
                logger.info(
                    f"Streaming client of job {pending.job_id} disconnected, "
                    f"job keeps the pending slot until it finishes"
                )
                reply_task.cancel()

    # Health check
    @app.get("/health")
    async def health_check():
        """Coordinator liveness plus resource host and memory checks."""
        memory = check_memory_health()
        host = check_host_health(broker)
        return {
            "status": "healthy" if memory["healthy"] else "degraded",
            "version": VERSION,
            "host": host,
            "memory": memory,
        }

    @app.get("/v1/status")
    async def get_status():
        """Persisted resource status (what a recreated client recovers)."""
        return broker.status_store.read().model_dump(mode="json")

    @app.post("/v1/messages")
    async def post_message(payload: Dict[str, Any] = Body(...)):
        """
        Single typed entry point for client messages.

        SubmitJob waits for the job's reply; with stream=true the response is
        an event stream of OutputChunk events followed by the reply.
        """
        try:
            message = parse_client_message(payload)
        except ValidationError as e:
            raise RequestValidationError(e.errors())

        result = await broker.handle_client_message(message)
        if not isinstance(result, PendingRequest):
            return reply_response(result)

        if result.stream is not None:
            return StreamingResponse(stream_job(result), media_type="text/event-stream")

        return reply_response(await broker.await_reply(result))

    @app.get("/v1/events")
    async def events():
        """Server-sent StatusChanged and OutputChunk broadcasts."""

        async def event_stream() -> AsyncIterator[str]:
            with broker.notifier.subscribe() as queue:
                yield format_sse(broker.status.to_event())
                while True:
                    yield format_sse(await queue.get())

        return StreamingResponse(event_stream(), media_type="text/event-stream")

    return app
