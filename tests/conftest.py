"""
Pytest Configuration and Shared Fixtures

Provides an in-memory resource host launcher and broker fixtures for all tests.
"""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from host_relay.config.relay_config import RelayConfig
from host_relay.coordinator.broker import MessageBroker
from host_relay.coordinator.status_store import StatusStore
from host_relay.host.output_buffer import iter_chunks
from host_relay.ipc.messages import (
    InitResource,
    JobOutputChunk,
    JobResult,
    ResourceProgress,
    ResourceReady,
    RunJob,
)
from host_relay.ipc.stdio_bridge import HostUnreachableError


class FakeHostLauncher:
    """
    In-memory stand-in for SubprocessHostLauncher.

    Records every command sent to the "host"; tests play host events back
    through emit() and end the host with exit().
    """

    def __init__(
        self,
        fail_create: Optional[Exception] = None,
        create_delay: float = 0.0,
        auto_reply: bool = False
    ):
        self.alive = False
        self.auto_reply = auto_reply
        self.fail_create = fail_create
        self.create_delay = create_delay
        self.create_calls = 0
        self.shutdown_calls = 0
        self.sent: List[object] = []
        self.send_error: Optional[Exception] = None
        self.pid = None
        self._on_event = None
        self._on_exit = None

    def attach(self, on_event, on_exit) -> None:
        self._on_event = on_event
        self._on_exit = on_exit

    def is_alive(self) -> bool:
        return self.alive

    async def create(self) -> None:
        self.create_calls += 1
        # Yield so concurrent callers pile up on the same ticket
        await asyncio.sleep(self.create_delay)
        if self.fail_create is not None:
            raise self.fail_create
        self.alive = True
        self.pid = 4242

    async def send(self, command) -> None:
        if not self.alive:
            raise HostUnreachableError("Resource host is not running")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(command)
        if self.auto_reply:
            asyncio.ensure_future(self._reply_to(command))

    async def _reply_to(self, command) -> None:
        """Answer like an echo host: ready on init, input echoed back per job."""
        if isinstance(command, InitResource):
            await self.emit(ResourceProgress(percent=50))
            await self.emit(ResourceReady(memory_gb=0.5))
        elif isinstance(command, RunJob):
            for chunk in iter_chunks(command.input.encode("utf-8")):
                await self.emit(JobOutputChunk(job_id=command.job_id, text=chunk))
            await self.emit(JobResult(job_id=command.job_id, output=command.input))

    async def shutdown(self) -> None:
        self.shutdown_calls += 1
        self.alive = False

    def sent_of(self, cls) -> list:
        return [c for c in self.sent if isinstance(c, cls)]

    async def emit(self, event) -> None:
        await self._on_event(event)

    async def exit(self, returncode: int = 1) -> None:
        self.alive = False
        await self._on_exit(returncode)


@pytest.fixture
def relay_config(tmp_path):
    """RelayConfig with state and logs under tmp_path."""
    return RelayConfig(
        state_dir=str(tmp_path / "state"),
        log_dir=str(tmp_path / "logs"),
        total_ram_gb=16,
    )


@pytest.fixture
def launcher_factory():
    """The FakeHostLauncher class, for tests that need custom options."""
    return FakeHostLauncher


@pytest.fixture
def fake_launcher():
    return FakeHostLauncher()


@pytest.fixture
def status_store(relay_config):
    return StatusStore(relay_config.state_dir)


@pytest.fixture
def broker(relay_config, fake_launcher, status_store):
    """Started MessageBroker wired to the fake launcher."""
    broker = MessageBroker(relay_config, fake_launcher, status_store)
    broker.start()
    return broker


@pytest.fixture(autouse=True)
def reset_logging():
    """
    Reset logging configuration between tests.

    Prevents log handler conflicts between tests.
    """
    import logging

    # Remove all handlers
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    yield

    # Clean up after test
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
