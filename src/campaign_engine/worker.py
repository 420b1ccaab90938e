"""Celery worker configuration."""

from celery import Celery

from campaign_engine.config import settings
from campaign_engine.logging import setup_logging

# Setup logging before anything else
setup_logging()

# Create Celery app
celery_app = Celery(
    "campaign_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=1800,  # 30 minutes max for a full job drive
    task_soft_time_limit=1740,
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
    # Result backend
    result_expires=86400,  # 24 hours
    # Task routing
    task_routes={
        "creation.start_job": {"queue": "high"},
        "creation.drive_job": {"queue": "high"},
        "creation.cancel_job": {"queue": "high"},
        "creation.resume_jobs": {"queue": "default"},
        "queue.process_due_requests": {"queue": "default"},
        "maintenance.cleanup_recovered_failures": {"queue": "low"},
    },
    # Beat scheduler (for periodic tasks)
    beat_schedule={
        # Drain the request queue on a fixed tick
        "process-request-queue": {
            "task": "queue.process_due_requests",
            "schedule": float(settings.queue_tick_seconds),
            "options": {"queue": "default"},
        },
        # Pick up in-progress jobs whose drive was interrupted
        "resume-in-progress-jobs": {
            "task": "creation.resume_jobs",
            "schedule": float(settings.stale_slot_seconds),
            "options": {"queue": "default"},
        },
        "cleanup-recovered-failures-daily": {
            "task": "maintenance.cleanup_recovered_failures",
            "schedule": 86400.0,  # 24 hours
            "args": (30,),  # older_than_days
            "options": {"queue": "low"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["campaign_engine.jobs"])
