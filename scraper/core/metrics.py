"""
Prometheus metrics for schedule health and callback processing.
"""
from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, CONTENT_TYPE_LATEST

registry = CollectorRegistry()

schedule_entries_by_health = Gauge(
    'scraper_schedule_entries',
    'Schedule entries by capacity health status',
    ['status'],
    registry=registry
)

schedule_subscribers = Gauge(
    'scraper_schedule_subscribers',
    'Active subscribers per target type and job kind',
    ['target_type', 'job_kind'],
    registry=registry
)

schedule_entries_out_of_sync = Gauge(
    'scraper_schedule_entries_out_of_sync',
    'Schedule entries whose external job input is known to be stale',
    registry=registry
)

job_webhooks_total = Counter(
    'scraper_job_webhooks_total',
    'Job completion callbacks processed',
    ['event_type', 'outcome'],
    registry=registry
)

schedule_rebuilds_total = Counter(
    'scraper_schedule_rebuilds_total',
    'External schedule input rebuilds',
    ['target_type', 'outcome'],
    registry=registry
)

lifecycle_events_total = Counter(
    'scraper_lifecycle_events_total',
    'Tenant lifecycle events handled',
    ['event', 'outcome'],
    registry=registry
)


def render_metrics():
    """Return (body, content_type) for the /metrics endpoint."""
    return generate_latest(registry), CONTENT_TYPE_LATEST
