"""
Relay Configuration

Defaults for the coordinator and its resource host, overridable through
RELAY_* environment variables.

Configuration:
- Coordinator API port: 11450
- Engine: "echo" (built in) or "llama_cpp" (needs llama-cpp-python)
- State directory holds the persisted resource status
"""

import os
from dataclasses import dataclass, field
from typing import Optional
import logging

import psutil


logger = logging.getLogger(__name__)

DEFAULT_PORT = 11450
DEFAULT_ENGINE = "echo"
DEFAULT_RESOURCE_LOCATOR = "echo:default"


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class RelayConfig:
    """
    Coordinator configuration.

    All settings overridable via environment variables.
    """

    # Network
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT

    # Resource host
    engine: str = DEFAULT_ENGINE
    resource_locator: str = DEFAULT_RESOURCE_LOCATOR
    python_executable: Optional[str] = None  # None = current interpreter

    # Timeouts (seconds)
    host_start_timeout_seconds: float = 30.0
    job_timeout_seconds: float = 0.0  # 0 = a pending job waits indefinitely
    shutdown_grace_seconds: float = 5.0

    # Job parameters sent with every RunJob
    max_tokens: int = 256
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.9

    # Paths
    state_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), "state"))
    log_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), "logs"))

    # Hardware info (for logging/debugging)
    total_ram_gb: int = 0

    @staticmethod
    def _get_ram_gb() -> int:
        """Total RAM in GB (rounded), 0 if it cannot be read."""
        try:
            return round(psutil.virtual_memory().total / (1024**3))
        except Exception as e:
            logger.warning(f"Failed to detect RAM: {e}")
            return 0

    @classmethod
    def auto_detect(cls) -> 'RelayConfig':
        """
        Build configuration from defaults and environment overrides.

        Environment variable overrides:
        - RELAY_HOST / RELAY_PORT: Listen address
        - RELAY_ENGINE: Engine loaded by the resource host
        - RELAY_RESOURCE_LOCATOR: Resource (model) path or URI sent in InitResource
        - RELAY_PYTHON: Interpreter used to spawn the resource host
        - RELAY_HOST_START_TIMEOUT: Seconds to wait for the host process to start
        - RELAY_JOB_TIMEOUT: Seconds before a pending job is rejected (0 = never)
        - RELAY_SHUTDOWN_GRACE: Seconds between Shutdown and SIGKILL
        - RELAY_MAX_TOKENS / RELAY_TEMPERATURE / RELAY_TOP_K / RELAY_TOP_P
        - RELAY_STATE_DIR: Where the status record lives
        - RELAY_LOG_DIR: Log directory

        Returns:
            RelayConfig instance
        """
        defaults = cls()

        config = cls(
            host=os.getenv("RELAY_HOST", defaults.host),
            port=_env_int("RELAY_PORT", defaults.port),
            engine=os.getenv("RELAY_ENGINE", defaults.engine),
            resource_locator=os.getenv("RELAY_RESOURCE_LOCATOR", defaults.resource_locator),
            python_executable=os.getenv("RELAY_PYTHON") or None,
            host_start_timeout_seconds=_env_float(
                "RELAY_HOST_START_TIMEOUT", defaults.host_start_timeout_seconds
            ),
            job_timeout_seconds=_env_float("RELAY_JOB_TIMEOUT", defaults.job_timeout_seconds),
            shutdown_grace_seconds=_env_float(
                "RELAY_SHUTDOWN_GRACE", defaults.shutdown_grace_seconds
            ),
            max_tokens=_env_int("RELAY_MAX_TOKENS", defaults.max_tokens),
            temperature=_env_float("RELAY_TEMPERATURE", defaults.temperature),
            top_k=_env_int("RELAY_TOP_K", defaults.top_k),
            top_p=_env_float("RELAY_TOP_P", defaults.top_p),
            state_dir=os.getenv("RELAY_STATE_DIR", defaults.state_dir),
            log_dir=os.getenv("RELAY_LOG_DIR", defaults.log_dir),
            total_ram_gb=cls._get_ram_gb(),
        )

        if config.job_timeout_seconds < 0:
            raise ValueError("RELAY_JOB_TIMEOUT must be >= 0")

        os.makedirs(config.state_dir, exist_ok=True)
        os.makedirs(config.log_dir, exist_ok=True)

        logger.info(f"Engine: {config.engine} ({config.resource_locator})")
        logger.info(f"State directory: {config.state_dir}")

        return config

    def __str__(self) -> str:
        """Human-readable configuration display."""
        job_timeout = (
            f"{self.job_timeout_seconds}s" if self.job_timeout_seconds else "none"
        )
        return f"""
Host Relay Configuration
========================
Network:
  Host:             {self.host}
  Port:             {self.port}

Resource Host:
  Engine:           {self.engine}
  Resource:         {self.resource_locator}
  Start Timeout:    {self.host_start_timeout_seconds}s
  Job Timeout:      {job_timeout}

Paths:
  State Directory:  {self.state_dir}
  Log Directory:    {self.log_dir}

Hardware:
  Total RAM:        {self.total_ram_gb} GB
========================
        """.strip()

    def to_dict(self) -> dict:
        """Dictionary representation of the configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "engine": self.engine,
            "resource_locator": self.resource_locator,
            "python_executable": self.python_executable,
            "host_start_timeout_seconds": self.host_start_timeout_seconds,
            "job_timeout_seconds": self.job_timeout_seconds,
            "shutdown_grace_seconds": self.shutdown_grace_seconds,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_k": self.top_k,
            "top_p": self.top_p,
            "state_dir": self.state_dir,
            "log_dir": self.log_dir,
            "total_ram_gb": self.total_ram_gb,
        }
