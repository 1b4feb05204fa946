"""
Centralized router registry for all API endpoints
"""
from . import (
    health,  # Liveness and Prometheus metrics
    job_webhooks,  # Job platform completion callbacks
    lifecycle_webhooks,  # Subscription and target lifecycle events
    admin_schedules,  # Operator schedule management
)

# All routers to be registered with the FastAPI app
ROUTERS = [
    health.router,
    job_webhooks.router,
    lifecycle_webhooks.router,
    lifecycle_webhooks.stripe_router,
    admin_schedules.router,
]
