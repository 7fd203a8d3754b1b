from celery import Celery

from hookledger.core.config import get_settings

settings = get_settings()

celery = Celery(
    "hookledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

# Import tasks
celery.conf.imports = ["hookledger.tasks"]

# Set task routes
celery.conf.task_routes = {"hookledger.tasks.requeue_stale_events": {"queue": "maintenance"}}

if settings.stale_processing_seconds > 0:
    celery.conf.beat_schedule = {
        "requeue-stale-events": {
            "task": "hookledger.tasks.requeue_stale_events",
            "schedule": float(settings.sweep_interval_seconds),
        }
    }
