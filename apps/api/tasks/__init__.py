"""
Celery app for envelope maintenance.

Run the worker with the beat scheduler from apps/api:

    celery -A tasks worker --beat --loglevel=info

The API imports this package only to enqueue routing refinement.
"""
from celery import Celery

from celerybeat_schedule import beat_schedule
from core.config import settings

celery_app = Celery(
    "dinner_matching",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    enable_utc=True,
    timezone="UTC",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=24 * 60 * 60,
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,
    beat_schedule=beat_schedule,
)

from . import envelope_tasks  # noqa: E402,F401

__all__ = ["celery_app"]
