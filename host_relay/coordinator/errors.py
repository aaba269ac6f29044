"""Typed errors surfaced to clients by the coordinator."""

from ..ipc.messages import ErrorReply


class RelayError(Exception):
    """Base exception for client-facing coordinator errors."""

    kind = "relay_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_reply(self) -> ErrorReply:
        return ErrorReply(kind=self.kind, message=self.message)


class CreationError(RelayError):
    """Resource host could not be created. Retry LoadResource to recover."""
    kind = "creation_error"


class InitError(RelayError):
    """Engine failed to load the resource."""
    kind = "init_error"


class RunError(RelayError):
    """Job failed after the resource was ready."""
    kind = "run_error"


class NotReadyError(RelayError):
    """Job submitted with no loaded resource."""
    kind = "not_ready"


class BusyError(RelayError):
    """Job submitted while another job is pending."""
    kind = "busy"


ERROR_KINDS = {
    cls.kind: cls
    for cls in (CreationError, InitError, RunError, NotReadyError, BusyError)
}


def error_from_reply(reply: ErrorReply) -> RelayError:
    """Rebuild the typed error carried by an ErrorReply."""
    cls = ERROR_KINDS.get(reply.kind, RelayError)
    return cls(reply.message)
