"""Health check utilities for the coordinator.

Component-level checks for system memory and the resource host, used by the
/health endpoint.
"""

import logging
from typing import Dict, Any

import psutil

logger = logging.getLogger(__name__)


def check_memory_health() -> Dict[str, Any]:
    """Check system memory usage.

    Returns:
        Dict with 'percent_used', 'healthy', 'available_gb', 'total_gb'
    """
    mem = psutil.virtual_memory()
    return {
        "percent_used": mem.percent,
        "healthy": mem.percent < 90,
        "available_gb": mem.available / (1024**3),
        "total_gb": mem.total / (1024**3)
    }


def check_host_health(broker) -> Dict[str, Any]:
    """Check resource host process health.

    Args:
        broker: MessageBroker instance

    Returns:
        Dict with 'alive', 'pid', 'status', 'job_pending'
    """
    pid = getattr(broker.launcher, "pid", None)
    return {
        "alive": broker.lifecycle.host_exists(),
        "pid": pid,
        "status": broker.status.status.value,
        "job_pending": broker.correlator.has_pending(),
    }
