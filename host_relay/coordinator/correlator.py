"""Response correlation between SubmitJob callers and host job events.

The host reports results on its event stream, not as replies to a specific
request. Only one job may be in flight, so correlation is "the one stored
reply handle, if any". Events that carry a job_id are checked against the
pending job; supporting several concurrent jobs means indexing pending
requests by that id instead of holding a single slot.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from .errors import BusyError, RelayError

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """Binding between an in-flight job and the caller waiting for it."""

    job_id: str
    reply: asyncio.Future
    stream: Optional[asyncio.Queue] = None  # Direct channel for OutputChunk events
    created_at: float = field(default_factory=time.time)

    @property
    def age_seconds(self) -> float:
        return time.time() - self.created_at

    def resolve(self, result) -> bool:
        """Deliver result to the caller. Returns False if nobody is listening."""
        if self.reply.done():
            return False
        self.reply.set_result(result)
        return True

    def reject(self, error: Exception) -> bool:
        """Deliver error to the caller. Returns False if nobody is listening."""
        if self.reply.done():
            return False
        self.reply.set_exception(error)
        return True

    async def wait(self, timeout: Optional[float] = None):
        """Wait for the reply. timeout of None or 0 waits forever."""
        if timeout:
            return await asyncio.wait_for(self.reply, timeout=timeout)
        return await self.reply


class ResponseCorrelator:
    """Holds at most one PendingRequest."""

    def __init__(self):
        self._pending: Optional[PendingRequest] = None

    @property
    def pending(self) -> Optional[PendingRequest]:
        return self._pending

    def has_pending(self) -> bool:
        return self._pending is not None

    def bind(self, pending: PendingRequest) -> None:
        """
        Store the reply handle for a new job.

        Raises:
            BusyError: If a job is already pending (the first caller keeps its slot)
        """
        if self._pending is not None:
            raise BusyError(
                f"Job {self._pending.job_id} is still running; try again when it completes"
            )
        self._pending = pending
        logger.debug(f"Bound pending job {pending.job_id}")

    def release(self, pending: PendingRequest) -> bool:
        """Clear the slot if it still holds this exact request."""
        if self._pending is pending:
            self._pending = None
            return True
        return False

    def _take(self, job_id: Optional[str], what: str) -> Optional[PendingRequest]:
        pending = self._pending
        if pending is None:
            logger.warning(f"Dropping {what}: no caller is waiting")
            return None
        if job_id is not None and job_id != pending.job_id:
            logger.warning(
                f"Dropping {what} for job {job_id}: pending job is {pending.job_id}"
            )
            return None
        self._pending = None
        return pending

    def resolve(self, result, job_id: Optional[str] = None) -> bool:
        """
        Consume the pending request and deliver result through it.

        Returns:
            True if a waiting caller received the result
        """
        pending = self._take(job_id, "job result")
        if pending is None:
            return False
        if not pending.resolve(result):
            logger.warning(f"Caller of job {pending.job_id} is gone; result dropped")
            return False
        return True

    def reject(self, error: RelayError, job_id: Optional[str] = None) -> bool:
        """Consume the pending request and deliver error through it."""
        pending = self._take(job_id, f"job error ({error.kind})")
        if pending is None:
            return False
        if not pending.reject(error):
            logger.warning(f"Caller of job {pending.job_id} is gone; error dropped")
            return False
        return True

    def matches(self, job_id: Optional[str]) -> Optional[PendingRequest]:
        """Return the pending request an event belongs to, without consuming it."""
        pending = self._pending
        if pending is None:
            return None
        if job_id is not None and job_id != pending.job_id:
            return None
        return pending
