"""API route modules."""

from campaign_engine.api.routes import credentials, failures, health, jobs, queue

__all__ = ["credentials", "failures", "health", "jobs", "queue"]
