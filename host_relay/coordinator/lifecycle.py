"""Singleton lifecycle manager for the resource host."""

import asyncio
import logging
from typing import Optional, Protocol

from .errors import CreationError

logger = logging.getLogger(__name__)


class HostLauncher(Protocol):
    """External host-management collaborator."""

    def is_alive(self) -> bool:
        """Existence probe: is a resource host running right now?"""
        ...

    async def create(self) -> None:
        """Creation primitive: start a resource host. Raises on failure."""
        ...


class SingletonLifecycleManager:
    """
    Guarantees at most one resource host and makes ensure_resource_host()
    idempotent under concurrent callers.

    The creation ticket is a task shared by every caller that arrives while a
    creation is running. It is cleared when creation finishes, whether it
    succeeded or not, and callers re-probe afterwards instead of trusting the
    ticket's outcome: the host may have died in between.

    The probe-then-create sequence is not atomic with respect to the host being
    destroyed from outside; the next ensure_resource_host() call heals that.
    """

    def __init__(self, launcher: HostLauncher, max_attempts: int = 3):
        self.launcher = launcher
        self.max_attempts = max_attempts
        self._ticket: Optional[asyncio.Task] = None
        self.creations: int = 0  # Number of times the creation primitive ran

    @property
    def creating(self) -> bool:
        return self._ticket is not None

    def host_exists(self) -> bool:
        return self.launcher.is_alive()

    async def _create(self) -> None:
        self.creations += 1
        logger.info(f"Creating resource host (creation #{self.creations})")
        try:
            await self.launcher.create()
        finally:
            self._ticket = None

    async def ensure_resource_host(self) -> None:
        """
        Return once a resource host is confirmed alive.

        Raises:
            CreationError: If the creation primitive failed (cause chained)
        """
        for attempt in range(self.max_attempts):
            if self.launcher.is_alive():
                return

            ticket = self._ticket
            if ticket is None:
                ticket = asyncio.ensure_future(self._create())
                self._ticket = ticket
            else:
                logger.debug("Resource host creation in progress, waiting on it")

            try:
                # shield: a cancelled caller must not cancel creation for the others
                await asyncio.shield(ticket)
            except Exception as e:
                if self.launcher.is_alive():
                    return
                logger.error(f"Resource host creation failed: {e}")
                raise CreationError(f"Could not create resource host: {e}") from e

            if self.launcher.is_alive():
                return
            logger.warning(
                f"Resource host exited right after creation "
                f"(attempt {attempt + 1}/{self.max_attempts})"
            )

        raise CreationError(
            f"Resource host did not stay alive after {self.max_attempts} attempts"
        )
