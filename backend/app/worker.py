import logging
from datetime import timedelta
from typing import Any

from arq import cron

from app.core import database
from app.core.config import settings
from app.repositories.payment_repository import PaymentRepository
from app.repositories.property_repository import PropertyRepository
from app.services.mpesa.client import get_daraja_client
from app.services.notification_service import InlinePaymentNotifier
from app.services.payment_service import StatusReconciler
from app.tasks import redis_settings

logger = logging.getLogger(__name__)


async def reconcile_stale_payments_task(ctx: dict[str, Any]) -> dict[str, int]:
    """Background task: settle PENDING payments whose callback never arrived.

    Runs every 5 minutes and queries M-Pesa for every payment that has been
    pending longer than MPESA_RECONCILE_AFTER_MINUTES.
    """
    db = database.SessionLocal()
    try:
        reconciler = StatusReconciler(
            PaymentRepository(db),
            PropertyRepository(db),
            get_daraja_client(),
            notifier=InlinePaymentNotifier(),
        )
        counts = reconciler.reconcile_stale(
            timedelta(minutes=settings.MPESA_RECONCILE_AFTER_MINUTES)
        )
        if counts["checked"] > 0:
            logger.info(
                "Reconciled %d of %d stale payments (%d errors)",
                counts["settled"],
                counts["checked"],
                counts["errors"],
            )
        return counts
    finally:
        db.close()


class WorkerSettings:
    functions = [
        reconcile_stale_payments_task,
    ]
    cron_jobs = [
        cron(
            reconcile_stale_payments_task,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
        ),
    ]
    redis_settings = redis_settings
