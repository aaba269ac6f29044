"""Typed messages for client ↔ coordinator ↔ resource host communication."""

from enum import Enum
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter


class ResourceStatus(str, Enum):
    """Lifecycle state of the loaded resource."""
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


def encode_wire_text(text: str) -> Tuple[str, bool]:
    """
    Make job output safe for JSON.

    Byte output that is not valid UTF-8 reaches the host as surrogate-escaped
    text, which JSON cannot carry. Such text is sent as its raw bytes mapped
    one-to-one onto latin-1 characters.

    Returns:
        (wire text, raw flag)
    """
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return text.encode("utf-8", "surrogateescape").decode("latin-1"), True
    return text, False


def decode_wire_text(text: str, raw: bool = False) -> str:
    """Inverse of encode_wire_text."""
    if raw:
        return text.encode("latin-1").decode("utf-8", "surrogateescape")
    return text


# Client → Coordinator Messages

class Ping(BaseModel):
    """Liveness probe, answered synchronously."""
    type: Literal["ping"] = "ping"


class LoadResource(BaseModel):
    """Ask the coordinator to bring the resource host up and load the resource."""
    type: Literal["load_resource"] = "load_resource"


class SubmitJob(BaseModel):
    """Run one job against the loaded resource."""
    type: Literal["submit_job"] = "submit_job"
    input: str
    stream: bool = False  # Relay OutputChunk events to this caller before the reply


# Coordinator → Client Messages

class Pong(BaseModel):
    """Reply to Ping."""
    type: Literal["pong"] = "pong"
    ok: bool = True


class LoadStarted(BaseModel):
    """Reply to LoadResource. Readiness arrives later as StatusChanged."""
    type: Literal["load_started"] = "load_started"
    started: bool = True
    status: ResourceStatus = ResourceStatus.LOADING


class JobOutput(BaseModel):
    """Final reply to SubmitJob."""
    type: Literal["job_output"] = "job_output"
    job_id: Optional[str] = None
    output: str
    raw: bool = False  # output is latin-1 mapped bytes, see decode_wire_text


class ErrorReply(BaseModel):
    """Typed error reply (creation_error, init_error, run_error, not_ready, busy)."""
    type: Literal["error"] = "error"
    kind: str
    message: str


class StatusChanged(BaseModel):
    """Broadcast whenever the persisted status changes."""
    type: Literal["status_changed"] = "status_changed"
    status: ResourceStatus
    detail_message: Optional[str] = None
    progress_percent: Optional[int] = Field(default=None, ge=0, le=100)


class OutputChunk(BaseModel):
    """Incremental output of the running job."""
    type: Literal["output_chunk"] = "output_chunk"
    job_id: Optional[str] = None
    text: str
    raw: bool = False


# Coordinator → Resource Host Messages

class InitResource(BaseModel):
    """Load the resource into the host's engine."""
    type: Literal["init_resource"] = "init_resource"
    resource_locator: str


class RunJob(BaseModel):
    """Run one job on the host's background worker."""
    type: Literal["run_job"] = "run_job"
    job_id: Optional[str] = None
    input: str
    max_tokens: int = 256
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.9


class PingHost(BaseModel):
    """Check the host is answering on its command channel."""
    type: Literal["ping_host"] = "ping_host"


class Shutdown(BaseModel):
    """Ask the host to exit gracefully."""
    type: Literal["shutdown"] = "shutdown"


# Resource Host → Coordinator Messages

class ResourceReady(BaseModel):
    """Host finished loading (or was already loaded)."""
    type: Literal["resource_ready"] = "resource_ready"
    memory_gb: float = 0.0


class ResourceProgress(BaseModel):
    """Load progress."""
    type: Literal["resource_progress"] = "resource_progress"
    percent: int = Field(ge=0, le=100)


class AlreadyInitializing(BaseModel):
    """InitResource received while a load is already running."""
    type: Literal["already_initializing"] = "already_initializing"


class InitError(BaseModel):
    """Engine failed to load the resource."""
    type: Literal["init_error"] = "init_error"
    error: str
    error_type: Optional[str] = None  # Exception class name


class JobOutputChunk(BaseModel):
    """One flushed chunk of job output."""
    type: Literal["job_output_chunk"] = "job_output_chunk"
    job_id: Optional[str] = None
    text: str
    raw: bool = False


class JobResult(BaseModel):
    """Job finished; output is the full text."""
    type: Literal["job_result"] = "job_result"
    job_id: Optional[str] = None
    output: str
    raw: bool = False


class RunError(BaseModel):
    """Job failed, or no resource was loaded (error_type == "NotLoaded")."""
    type: Literal["run_error"] = "run_error"
    job_id: Optional[str] = None
    error: str
    error_type: Optional[str] = None


class HostPong(BaseModel):
    """Reply to PingHost."""
    type: Literal["host_pong"] = "host_pong"


ClientMessage = Annotated[
    Union[Ping, LoadResource, SubmitJob],
    Field(discriminator="type"),
]

ClientReply = Union[Pong, LoadStarted, JobOutput, ErrorReply]

HostCommand = Annotated[
    Union[InitResource, RunJob, PingHost, Shutdown],
    Field(discriminator="type"),
]

HostEvent = Annotated[
    Union[
        ResourceReady,
        ResourceProgress,
        AlreadyInitializing,
        InitError,
        JobOutputChunk,
        JobResult,
        RunError,
        HostPong,
    ],
    Field(discriminator="type"),
]

_client_adapter = TypeAdapter(ClientMessage)
_command_adapter = TypeAdapter(HostCommand)
_event_adapter = TypeAdapter(HostEvent)


def parse_client_message(data: Union[str, bytes, dict]):
    """Parse a client message from JSON text or a dict.

    Raises:
        pydantic.ValidationError: Unknown type or invalid payload
    """
    if isinstance(data, dict):
        return _client_adapter.validate_python(data)
    return _client_adapter.validate_json(data)


def parse_host_command(data: Union[str, bytes, dict]):
    """Parse a coordinator → host command."""
    if isinstance(data, dict):
        return _command_adapter.validate_python(data)
    return _command_adapter.validate_json(data)


def parse_host_event(data: Union[str, bytes, dict]):
    """Parse a host → coordinator event."""
    if isinstance(data, dict):
        return _event_adapter.validate_python(data)
    return _event_adapter.validate_json(data)


# Everything the coordinator sends to a client: replies and SSE events
ServerMessage = Annotated[
    Union[Pong, LoadStarted, JobOutput, ErrorReply, StatusChanged, OutputChunk],
    Field(discriminator="type"),
]

_server_adapter = TypeAdapter(ServerMessage)


def parse_server_message(data: Union[str, bytes, dict]):
    """Parse a coordinator → client reply or event."""
    if isinstance(data, dict):
        return _server_adapter.validate_python(data)
    return _server_adapter.validate_json(data)
