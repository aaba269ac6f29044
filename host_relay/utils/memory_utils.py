"""Memory tracking utilities."""

import logging

import psutil

logger = logging.getLogger(__name__)


def get_memory_usage_gb() -> float:
    """
    Get resident memory of the current process in GB.

    Returns:
        Memory usage in GB (0.0 if it cannot be read)
    """
    try:
        rss_bytes = psutil.Process().memory_info().rss
        return round(rss_bytes / (1024**3), 4)

    except Exception as e:
        logger.error(f"Failed to get memory usage: {e}")
        return 0.0
