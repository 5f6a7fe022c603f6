"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, Histogram, REGISTRY

# Webhook metrics
try:
    webhook_requests_counter = Counter(
        'webhook_requests_total',
        'Total number of webhook requests',
        ['status']
    )
except ValueError:
    webhook_requests_counter = REGISTRY._names_to_collectors.get('webhook_requests_total')

# Job metrics
try:
    job_processing_duration = Histogram(
        'job_processing_duration_seconds',
        'Duration of job processing in seconds',
        ['status'],
        buckets=(0.1, 0.5, 1, 2, 5, 10)
    )
except ValueError:
    job_processing_duration = REGISTRY._names_to_collectors.get('job_processing_duration_seconds')

try:
    queue_size_gauge = Gauge(
        'queue_size',
        'Current number of jobs in the payment queue',
        ['state']
    )
except ValueError:
    queue_size_gauge = REGISTRY._names_to_collectors.get('queue_size')

# Loyalty metrics
try:
    points_awarded_counter = Counter(
        'loyalty_points_awarded_total',
        'Total loyalty points awarded'
    )
except ValueError:
    points_awarded_counter = REGISTRY._names_to_collectors.get('loyalty_points_awarded_total')

try:
    events_failed_counter = Counter(
        'loyalty_events_failed_total',
        'Total number of events that exhausted their retry budget'
    )
except ValueError:
    events_failed_counter = REGISTRY._names_to_collectors.get('loyalty_events_failed_total')


def update_queue_size_gauge(counts: dict) -> None:
    """Publish queue depth per state"""
    for state, count in counts.items():
        queue_size_gauge.labels(state=state).set(count)
