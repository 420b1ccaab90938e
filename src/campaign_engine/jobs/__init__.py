"""Celery job definitions."""

from campaign_engine.jobs.tasks import (
    cancel_job_task,
    cleanup_recovered_failures_task,
    drive_job_task,
    process_due_requests_task,
    resume_jobs_task,
    start_job_task,
)

__all__ = [
    # Creation jobs
    "start_job_task",
    "drive_job_task",
    "cancel_job_task",
    "resume_jobs_task",
    # Request queue
    "process_due_requests_task",
    # Maintenance
    "cleanup_recovered_failures_task",
]
