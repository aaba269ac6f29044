#!/usr/bin/env python3
"""
Host Relay - Main Entry Point

Coordinator for one on-demand resource host process. Clients talk HTTP to the
coordinator; the coordinator spawns the host, relays jobs to it over
stdin/stdout and persists the resource status for clients to recover.
"""

import sys
import logging
from pathlib import Path

import uvicorn
import setproctitle

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from host_relay.config.relay_config import RelayConfig
from host_relay.coordinator.api import VERSION, create_app
from host_relay.coordinator.broker import MessageBroker
from host_relay.coordinator.host_process import SubprocessHostLauncher
from host_relay.coordinator.status_store import StatusStore


def setup_logging(config: RelayConfig):
    """Configure logging."""
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_dir / "host_relay.log"),
            logging.StreamHandler()
        ]
    )


def main():
    """Main entry point."""
    # Set process name for easy identification in ps/top
    setproctitle.setproctitle("host-relay")

    # Detect configuration
    config = RelayConfig.auto_detect()

    # Setup logging
    setup_logging(config)
    logger = logging.getLogger(__name__)

    logger.info("=" * 70)
    logger.info("Host Relay - On-Demand Resource Host Coordinator")
    logger.info("=" * 70)
    logger.info(f"Version: {VERSION}")
    logger.info(f"Total RAM: {config.total_ram_gb} GB")
    logger.info(f"Engine: {config.engine}")
    logger.info(f"Resource: {config.resource_locator}")
    logger.info(f"API Port: {config.port}")
    logger.info(f"State Dir: {config.state_dir}")
    logger.info(
        f"Job Timeout: {config.job_timeout_seconds}s" if config.job_timeout_seconds
        else "Job Timeout: none"
    )
    logger.info("=" * 70)

    launcher = SubprocessHostLauncher(config)
    status_store = StatusStore(config.state_dir)
    broker = MessageBroker(config, launcher, status_store)
    app = create_app(config, broker)

    # uvicorn handles SIGINT/SIGTERM; the app lifespan stops the resource host
    logger.info(f"API ready at http://{config.host}:{config.port}")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="info"
    )
    logger.info("Shutdown complete")


if __name__ == "__main__":
    main()
