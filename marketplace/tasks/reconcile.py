# marketplace/tasks/reconcile.py
from marketplace.celery_worker import celery_app
from marketplace.data import models  # noqa: F401
from marketplace.data.database import SessionLocal
from marketplace.repos.payment_repo import PaymentRepo
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


def flag_unresolved_refunds(db) -> list[int]:
    """
    Refunds whose gateway call timed out stay 'unknown' until a
    refund.processed webhook settles them. Anything still unknown here
    needs someone to look at the gateway dashboard.
    """
    refunds = PaymentRepo(db).list_unknown_refunds()
    for refund in refunds:
        logger.error(
            f"Refund {refund.id} of {refund.amount} on payment {refund.payment_id} "
            f"has unknown outcome since {refund.created_at:%Y-%m-%d %H:%M}"
        )
    return [r.id for r in refunds]


@celery_app.task(name="marketplace.tasks.reconcile.flag_unresolved_refunds_task")
def flag_unresolved_refunds_task():
    logger.info("Unresolved refunds check started")

    db = SessionLocal()
    try:
        refund_ids = flag_unresolved_refunds(db)
    finally:
        db.close()

    logger.info(f"Found {len(refund_ids)} refunds with unknown outcome")
    return {"unknown_refunds": refund_ids}
