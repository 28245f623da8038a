# marketplace/celery_worker.py
from celery import Celery

from marketplace.utils.settings import CELERY_BROKER_URL, CELERY_RESULT_BACKEND

celery_app = Celery(
    "marketplace",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

# tasks have to be imported explicitly or the worker won't register them
celery_app.conf.imports = (
    "marketplace.tasks.reconcile",
    "marketplace.tasks.catalog_counters",
    "marketplace.services.notification_service",
)

celery_app.conf.beat_schedule = {
    "flag-unresolved-refunds-every-15-minutes": {
        "task": "marketplace.tasks.reconcile.flag_unresolved_refunds_task",
        "schedule": 15 * 60.0,
    },
}

celery_app.conf.timezone = "UTC"
