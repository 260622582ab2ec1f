"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Allocation metrics
allocation_attempts = Counter(
    'allocation_attempts_total',
    'Total allocation requests',
    ['channel', 'outcome']  # outcome: admitted, pending, rejection code
)

allocation_latency = Histogram(
    'allocation_latency_seconds',
    'Allocation transaction latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

# Gate metrics
redemption_results = Counter(
    'redemption_results_total',
    'Check-in scan results',
    ['result']  # VALID, ALREADY_USED, INVALID
)

# Background job metrics
reservations_expired = Counter(
    'reservations_expired_total',
    'Paid reservations released by the expiry sweep'
)

draw_runs = Counter(
    'draw_runs_total',
    'Lottery draw invocations',
    ['result']  # completed, skipped, no_seats
)

background_task_failures = Counter(
    'background_task_failures_total',
    'Background ticks that raised',
    ['task']
)

# Database metrics
db_operations = Counter(
    'db_operations_total',
    'Total database operations',
    ['operation']  # commit, retry, conflict
)

db_retries = Counter(
    'db_retry_attempts_total',
    'Transaction retries due to serialization conflicts'
)

# Notification metrics
notifications = Counter(
    'notifications_total',
    'Outbound notifications',
    ['kind', 'result']  # sent, failed, dropped
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# Convenience functions for instrumentation
def record_allocation(channel: str, outcome: str):
    """Record an allocation decision."""
    allocation_attempts.labels(channel=channel, outcome=outcome).inc()

def record_redemption(result: str):
    redemption_results.labels(result=result).inc()

def record_draw_run(result: str):
    draw_runs.labels(result=result).inc()

def record_db_operation(operation: str):
    """Record database operation. Operation: commit, retry, conflict"""
    db_operations.labels(operation=operation).inc()

def record_notification(kind: str, result: str):
    notifications.labels(kind=kind, result=result).inc()

def record_background_failure(task: str):
    background_task_failures.labels(task=task).inc()
