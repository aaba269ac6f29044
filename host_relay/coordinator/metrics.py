"""
Prometheus metrics for the coordinator.

Usage:
    from .metrics import metrics_router, metrics_collector
    app.include_router(metrics_router)
"""

from prometheus_client import (
    Counter, Gauge, Info,
    generate_latest, CONTENT_TYPE_LATEST,
    CollectorRegistry
)
from fastapi import Response, APIRouter

from ..ipc.messages import ResourceStatus

# Custom registry to avoid conflicts with the default registry
REGISTRY = CollectorRegistry()

SERVER_INFO = Info(
    'host_relay',
    'Host relay coordinator information',
    registry=REGISTRY
)

CLIENT_MESSAGES = Counter(
    'host_relay_client_messages_total',
    'Client messages handled, by kind and outcome',
    ['kind', 'outcome'],
    registry=REGISTRY
)

JOBS = Counter(
    'host_relay_jobs_total',
    'Jobs finished, by outcome',
    ['outcome'],
    registry=REGISTRY
)

HOST_SPAWNS = Counter(
    'host_relay_host_spawns_total',
    'Resource host processes started',
    registry=REGISTRY
)

RESOURCE_STATUS = Gauge(
    'host_relay_resource_status',
    'Current resource status (1 for the active state, 0 otherwise)',
    ['status'],
    registry=REGISTRY
)


class MetricsCollector:
    """Thin wrapper so callers do not touch metric objects directly."""

    def set_server_info(self, version: str, engine: str):
        SERVER_INFO.info({'version': version, 'engine': engine})

    def record_client_message(self, kind: str, outcome: str) -> None:
        CLIENT_MESSAGES.labels(kind=kind, outcome=outcome).inc()

    def record_job(self, outcome: str) -> None:
        JOBS.labels(outcome=outcome).inc()

    def record_host_spawn(self) -> None:
        HOST_SPAWNS.inc()

    def update_status(self, status: ResourceStatus) -> None:
        for candidate in ResourceStatus:
            RESOURCE_STATUS.labels(status=candidate.value).set(
                1 if candidate == status else 0
            )


# Global collector instance
metrics_collector = MetricsCollector()


metrics_router = APIRouter()


@metrics_router.get("/metrics")
async def prometheus_metrics():
    """Prometheus text exposition format."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST
    )
