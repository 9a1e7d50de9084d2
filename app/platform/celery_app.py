from celery import Celery
from kombu import Queue

from app.platform.config import settings


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Queue Structure:
    - scan.pipeline: one task per scan, running crawl -> scan -> analyze

    A scan is one long task rather than a chain of per-phase tasks: the
    phases share a per-scan context and must run strictly in order.
    """
    celery_app = Celery(
        "a11y_crawler",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
    )

    # Task serialization
    celery_app.conf.update(
        task_serializer=settings.CELERY_TASK_SERIALIZER,
        result_serializer=settings.CELERY_RESULT_SERIALIZER,
        accept_content=[settings.CELERY_ACCEPT_CONTENT],
        timezone="UTC",
        enable_utc=True,
        task_track_started=settings.CELERY_TASK_TRACK_STARTED,
        task_time_limit=settings.CELERY_TASK_TIME_LIMIT,

        # Result settings
        result_expires=3600,  # Results expire after 1 hour

        task_routes={
            "app.features.scan.workers.tasks.run_scan_pipeline": {"queue": "scan.pipeline"},
        },

        task_queues=(
            Queue("default"),
            Queue("scan.pipeline"),
        ),

        task_default_queue="default",

        # One browser-heavy scan per worker process at a time
        worker_prefetch_multiplier=1,

        # A failed scan is terminal; never redeliver it
        task_acks_late=False,
        task_reject_on_worker_lost=False,
    )

    # Auto-discover tasks in the workers module
    celery_app.autodiscover_tasks(["app.features.scan.workers"])

    return celery_app


# Global Celery app instance
celery_app = create_celery_app()
