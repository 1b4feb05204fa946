import os

from celery import Celery

from scraper.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "review_scraper",
    broker=settings.get_celery_broker_url(),
    backend=settings.get_celery_result_backend(),
    include=[
        "scraper.tasks.schedule_maintenance_tasks",  # Count reconciliation, resync, consolidation
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=1800,  # 30 minutes
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,  # 8 minutes

    worker_concurrency=int(os.getenv('CELERY_WORKER_CONCURRENCY', '2')),
    worker_prefetch_multiplier=int(os.getenv('CELERY_WORKER_PREFETCH', '1')),
    worker_max_tasks_per_child=int(os.getenv('CELERY_MAX_TASKS_PER_CHILD', '100')),

    # Acknowledge only after completion; maintenance tasks are safe to rerun
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    task_routes={
        'scraper.tasks.schedule_maintenance_tasks.*': {'queue': 'schedule_maintenance', 'priority': 6},
    },

    task_default_queue='default',
    task_default_exchange='default',
    task_default_routing_key='default',
    task_create_missing_queues=True,
)

celery_app.conf.task_queues = {
    'default': {
        'exchange': 'default',
        'routing_key': 'default',
        'durable': True,
        'auto_delete': False,
    },
    'schedule_maintenance': {
        'exchange': 'schedule_maintenance',
        'routing_key': 'schedule_maintenance',
        'durable': True,
        'auto_delete': False,
    },
}

celery_app.conf.beat_schedule = {
    # Recount subscribers and push stale schedule inputs
    'reconcile-schedules': {
        'task': 'scraper.tasks.schedule_maintenance_tasks.reconcile_schedules',
        'schedule': 60.0 * settings.reconcile_interval_minutes,
        'options': {'queue': 'schedule_maintenance', 'expires': 60 * settings.reconcile_interval_minutes},
    },

    # Merge underutilized batches once a day
    'consolidate-schedules': {
        'task': 'scraper.tasks.schedule_maintenance_tasks.consolidate_schedules',
        'schedule': 60.0 * 60.0 * 24,  # Daily
        'options': {'queue': 'schedule_maintenance', 'expires': 3600},
    },
}
