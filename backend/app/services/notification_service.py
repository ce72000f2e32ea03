"""In-app notifications for settled payments."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from uuid import UUID

from fastapi import BackgroundTasks
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core import database
from app.models.notification import Notification
from app.models.payment import Payment, PaymentStatus
from app.repositories.notification_repository import NotificationRepository
from app.repositories.payment_repository import PaymentRepository
from app.repositories.property_repository import PropertyRepository

logger = logging.getLogger(__name__)

CATEGORY_PAYMENT = "payment"


class NotificationService:
    """Service for creating in-app notifications from payment events."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = NotificationRepository(db)

    def notify(
        self,
        *,
        user_id: int,
        title: str,
        message: str,
        category: str = CATEGORY_PAYMENT,
        resource_type: str | None = "payment",
        resource_id: UUID | None = None,
    ) -> Notification:
        """Create a notification."""
        return self.repo.create(
            user_id=user_id,
            category=category,
            title=title,
            message=message,
            resource_type=resource_type,
            resource_id=resource_id,
        )

    def notify_payment_completed(
        self, payment: Payment, owner_id: int | None = None
    ) -> list[Notification]:
        """Tell the payer (and the property owner, if known) that a payment went through."""
        amount = _format_amount(payment.amount)
        receipt = payment.mpesa_receipt_number
        payer_message = f"Your {payment.payment_type} payment of KES {amount} was received."
        if receipt:
            payer_message += f" M-Pesa receipt: {receipt}."
        sent = [
            self.notify(
                user_id=int(payment.user_id),
                title="Payment received",
                message=payer_message,
                resource_id=payment.id,  # type: ignore[arg-type]
            )
        ]
        if owner_id is not None and owner_id != payment.user_id:
            sent.append(
                self.notify(
                    user_id=owner_id,
                    title="New payment for your property",
                    message=(
                        f"A {payment.payment_type} payment of KES {amount} "
                        f"was made for property #{payment.property_id}."
                    ),
                    resource_id=payment.id,  # type: ignore[arg-type]
                )
            )
        return sent

    def notify_payment_failed(self, payment: Payment) -> Notification:
        """Tell the payer that a payment did not go through."""
        amount = _format_amount(payment.amount)
        message = f"Your {payment.payment_type} payment of KES {amount} was not completed."
        if payment.result_description:
            message += f" {payment.result_description}"
        return self.notify(
            user_id=int(payment.user_id),
            title="Payment failed",
            message=message,
            resource_id=payment.id,  # type: ignore[arg-type]
        )


def _format_amount(amount: Decimal | None) -> str:
    return f"{Decimal(amount or 0):,.2f}"


def send_payment_notifications(payment_id: UUID) -> int:
    """Notify the parties of a settled payment. Returns the number of notifications written.

    Runs after the triggering request has been answered, so failures are
    logged and never propagated.
    """
    db = database.SessionLocal()
    try:
        payment = PaymentRepository(db).get_by_id(payment_id)
        if payment is None:
            logger.warning("Cannot notify for unknown payment %s", payment_id)
            return 0
        service = NotificationService(db)
        if payment.status == PaymentStatus.COMPLETED.value:
            owner_id = PropertyRepository(db).get_owner_id(int(payment.property_id))
            return len(service.notify_payment_completed(payment, owner_id))
        if payment.status == PaymentStatus.FAILED.value:
            service.notify_payment_failed(payment)
            return 1
        return 0
    except SQLAlchemyError:
        logger.exception("Failed to write notifications for payment %s", payment_id)
        return 0
    finally:
        db.close()


class PaymentNotifier(ABC):
    """Fire-and-forget hook invoked after a payment reaches a terminal state."""

    @abstractmethod
    def payment_settled(self, payment_id: UUID) -> None:
        ...  # pragma: no cover


class BackgroundPaymentNotifier(PaymentNotifier):
    """Defers notifications until the HTTP response has been sent."""

    def __init__(self, background_tasks: BackgroundTasks):
        self.background_tasks = background_tasks

    def payment_settled(self, payment_id: UUID) -> None:
        self.background_tasks.add_task(send_payment_notifications, payment_id)


class InlinePaymentNotifier(PaymentNotifier):
    """Sends notifications immediately; used outside a request (worker jobs)."""

    def payment_settled(self, payment_id: UUID) -> None:
        send_payment_notifications(payment_id)
