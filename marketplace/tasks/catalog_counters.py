# marketplace/tasks/catalog_counters.py
from marketplace.celery_worker import celery_app
from marketplace.domain.errors import ExternalDependencyError
from marketplace.services.catalog_client import CatalogClient
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


@celery_app.task(
    name="marketplace.tasks.catalog_counters.increment_store_order_count_task",
    bind=True,
    max_retries=5,
    default_retry_delay=30,
)
def increment_store_order_count_task(self, store_id: int):
    try:
        CatalogClient().increment_store_order_count(store_id)
    except ExternalDependencyError as e:
        logger.warning(f"Order count for store {store_id} not updated, retrying: {e.message}")
        raise self.retry(exc=e)

    logger.info(f"Order count incremented for store {store_id}")
    return {"store_id": store_id}
