"""ResourceHost - Subprocess that owns the compute engine and its loaded resource."""

import sys
import signal
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

import setproctitle

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from host_relay.host.engine import InferenceEngine, create_engine
from host_relay.host.output_buffer import OutputChunkBuffer
from host_relay.ipc.messages import InitResource, PingHost, RunJob, Shutdown
from host_relay.ipc.stdio_bridge import HostStdioHandler, InvalidCommandError
from host_relay.utils.memory_utils import get_memory_usage_gb

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='[HOST] %(asctime)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stderr)]  # Log to stderr, stdout reserved for IPC
)
logger = logging.getLogger(__name__)

# RunError.error_type for a job that arrives before the resource is loaded
NOT_LOADED = "NotLoaded"


class ResourceHostProcess:
    """
    Main resource host class.

    The command loop runs on the main thread and never blocks on the engine:
    loading and jobs go to a single worker thread, so jobs run one at a time
    and an InitResource that arrives mid-load can be answered immediately.
    """

    def __init__(self, engine: InferenceEngine, host_id: int = 1, handler: HostStdioHandler = None):
        # Set process name for easy identification in ps/top
        setproctitle.setproctitle(f"host-relay-host-{host_id}")

        self.engine = engine
        self.host_id = host_id
        self.handler = handler or HostStdioHandler()
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="host-engine")
        self.running = True

        self.initializing = False
        self.loaded = False
        self._last_progress: Optional[int] = None

    def _handle_sigterm(self, signum, frame):
        """Handle SIGTERM/SIGINT - graceful shutdown."""
        logger.info(f"Signal {signum} received, shutting down resource host")
        self.running = False
        self.executor.shutdown(wait=False)
        sys.exit(0)

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_sigterm)
        signal.signal(signal.SIGINT, self._handle_sigterm)

    # =========================================================================
    # Resource initialization
    # =========================================================================

    def handle_init(self, command: InitResource) -> None:
        if self.initializing:
            logger.info("InitResource while loading, reporting AlreadyInitializing")
            self.handler.send_already_initializing()
            return

        if self.loaded:
            logger.info("InitResource while loaded, reporting ready")
            self.handler.send_ready(memory_gb=get_memory_usage_gb())
            return

        self.initializing = True
        self._last_progress = None
        self.executor.submit(self._init_resource, command.resource_locator)

    def _report_progress(self, percent: int) -> None:
        percent = max(0, min(100, int(percent)))
        if percent == self._last_progress:
            return
        self._last_progress = percent
        self.handler.send_progress(percent)

    def _init_resource(self, resource_locator: str) -> None:
        logger.info(f"Loading resource: {resource_locator}")
        try:
            self.engine.init(resource_locator, self._report_progress)
        except Exception as e:
            logger.error(f"Resource load failed: {e}", exc_info=True)
            self.initializing = False
            self.handler.send_init_error(error=str(e), error_type=e.__class__.__name__)
            return

        memory_gb = get_memory_usage_gb()
        self.loaded = True
        self.initializing = False
        logger.info(f"Resource loaded successfully, memory: {memory_gb:.2f} GB")
        self.handler.send_ready(memory_gb=memory_gb)

    # =========================================================================
    # Jobs
    # =========================================================================

    def handle_run(self, command: RunJob) -> None:
        if not self.loaded:
            logger.warning(f"Job {command.job_id} received before resource is loaded")
            self.handler.send_run_error(
                error="Resource is not loaded",
                error_type=NOT_LOADED,
                job_id=command.job_id,
            )
            return

        self.executor.submit(self._run_job, command)

    def _run_job(self, command: RunJob) -> None:
        buffer = OutputChunkBuffer()
        chunks = []

        def emit(chunk: Optional[str]) -> None:
            if chunk is None:
                return
            chunks.append(chunk)
            self.handler.send_chunk(chunk, job_id=command.job_id)

        logger.info(f"Running job {command.job_id} ({len(command.input)} chars)")
        try:
            for unit in self.engine.run(
                command.input,
                max_tokens=command.max_tokens,
                temperature=command.temperature,
                top_k=command.top_k,
                top_p=command.top_p,
            ):
                emit(buffer.append(unit))
        except Exception as e:
            logger.error(f"Job {command.job_id} failed: {e}", exc_info=True)
            emit(buffer.flush())
            self.handler.send_run_error(
                error=str(e),
                error_type=e.__class__.__name__,
                job_id=command.job_id,
            )
            return

        emit(buffer.flush())
        output = "".join(chunks)
        logger.info(f"Job {command.job_id} finished ({len(output)} chars)")
        self.handler.send_result(output, job_id=command.job_id)

    # =========================================================================
    # Command loop
    # =========================================================================

    def run(self) -> int:
        """Main command loop. Returns the process exit code."""
        logger.info("Resource host ready, entering command loop")
        while self.running:
            try:
                command = self.handler.receive_command()
            except InvalidCommandError as e:
                logger.error(str(e))
                continue

            if command is None:
                # stdin closed, coordinator died
                logger.info("stdin closed, exiting")
                break

            if isinstance(command, PingHost):
                self.handler.send_pong()

            elif isinstance(command, Shutdown):
                logger.info("Shutdown message received")
                break

            elif isinstance(command, InitResource):
                self.handle_init(command)

            elif isinstance(command, RunJob):
                self.handle_run(command)

        self.running = False
        self.executor.shutdown(wait=False)
        logger.info("Resource host exiting normally")
        return 0


def main():
    """Resource host entry point."""
    if len(sys.argv) < 2:
        print("Usage: python -m host_relay.host <engine> [host_id]", file=sys.stderr)
        sys.exit(1)

    engine_name = sys.argv[1]
    host_id = int(sys.argv[2]) if len(sys.argv) >= 3 else 1

    try:
        engine = create_engine(engine_name)
    except ValueError as e:
        logger.error(f"Invalid engine: {e}")
        sys.exit(1)

    logger.info(f"Resource host #{host_id} starting with engine: {engine_name}")
    host = ResourceHostProcess(engine, host_id)
    host.install_signal_handlers()
    sys.exit(host.run())


if __name__ == "__main__":
    main()
