"""Payment ledger: the durable store of M-Pesa payment records."""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.payment import Payment, PaymentStatus
from app.models.shared import utc_now


class PaymentLedger(ABC):
    """Repository interface for payment records.

    The ``*_if_*`` methods are compare-and-set transitions: each one changes
    the row only if it is still in the expected state, and returns True only
    to the caller whose update took effect.
    """

    @abstractmethod
    def create(
        self,
        *,
        user_id: int,
        property_id: int,
        amount: Decimal,
        phone_number: str,
        payment_type: str,
        checkout_request_id: str,
        merchant_request_id: str,
    ) -> Payment:
        """Create a PENDING payment."""
        ...  # pragma: no cover

    @abstractmethod
    def get_by_id(self, payment_id: UUID) -> Payment | None:
        ...  # pragma: no cover

    @abstractmethod
    def get_by_checkout_request_id(self, checkout_request_id: str) -> Payment | None:
        ...  # pragma: no cover

    @abstractmethod
    def list_for_user(self, user_id: int, skip: int = 0, limit: int = 100) -> list[Payment]:
        """Payments made by a user, newest first."""
        ...  # pragma: no cover

    @abstractmethod
    def list_for_property(self, property_id: int, skip: int = 0, limit: int = 100) -> list[Payment]:
        """Payments concerning a property, newest first."""
        ...  # pragma: no cover

    @abstractmethod
    def list_stale_pending(self, created_before: datetime, limit: int = 100) -> list[Payment]:
        """PENDING payments created before the given time, oldest first."""
        ...  # pragma: no cover

    @abstractmethod
    def complete_if_pending(
        self,
        checkout_request_id: str,
        *,
        receipt_number: str | None,
        completed_at: datetime,
        result_code: str = "0",
        result_description: str | None = None,
    ) -> bool:
        """PENDING -> COMPLETED."""
        ...  # pragma: no cover

    @abstractmethod
    def fail_if_pending(
        self,
        checkout_request_id: str,
        *,
        result_code: str | None = None,
        result_description: str | None = None,
    ) -> bool:
        """PENDING -> FAILED."""
        ...  # pragma: no cover

    @abstractmethod
    def refund_if_completed(self, payment_id: UUID) -> bool:
        """COMPLETED -> REFUNDED."""
        ...  # pragma: no cover

    @abstractmethod
    def summarize(self, since: datetime | None = None) -> dict[str, Any]:
        """Completed revenue and per-status counts for payments created since ``since``."""
        ...  # pragma: no cover


class PaymentRepository(PaymentLedger):
    """SQLAlchemy implementation of the payment ledger."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        user_id: int,
        property_id: int,
        amount: Decimal,
        phone_number: str,
        payment_type: str,
        checkout_request_id: str,
        merchant_request_id: str,
    ) -> Payment:
        payment = Payment(
            user_id=user_id,
            property_id=property_id,
            amount=amount,
            phone_number=phone_number,
            payment_type=payment_type,
            checkout_request_id=checkout_request_id,
            merchant_request_id=merchant_request_id,
            status=PaymentStatus.PENDING.value,
        )
        try:
            self.db.add(payment)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(payment)
        return payment

    def get_by_id(self, payment_id: UUID) -> Payment | None:
        return self.db.query(Payment).filter(Payment.id == payment_id).first()

    def get_by_checkout_request_id(self, checkout_request_id: str) -> Payment | None:
        return (
            self.db.query(Payment)
            .filter(Payment.checkout_request_id == checkout_request_id)
            .first()
        )

    def list_for_user(self, user_id: int, skip: int = 0, limit: int = 100) -> list[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def list_for_property(self, property_id: int, skip: int = 0, limit: int = 100) -> list[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.property_id == property_id)
            .order_by(Payment.created_at.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def list_stale_pending(self, created_before: datetime, limit: int = 100) -> list[Payment]:
        return (
            self.db.query(Payment)
            .filter(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at < created_before,
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
            .all()
        )

    def _transition(
        self,
        criteria: list[Any],
        expected: PaymentStatus,
        values: dict[str, Any],
    ) -> bool:
        """Apply ``values`` in one UPDATE guarded by the expected status."""
        values["updated_at"] = utc_now()
        try:
            updated = (
                self.db.query(Payment)
                .filter(*criteria, Payment.status == expected.value)
                .update(values, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            # Leave the session usable for the next payment in a sweep
            self.db.rollback()
            raise
        return updated == 1

    def complete_if_pending(
        self,
        checkout_request_id: str,
        *,
        receipt_number: str | None,
        completed_at: datetime,
        result_code: str = "0",
        result_description: str | None = None,
    ) -> bool:
        return self._transition(
            [Payment.checkout_request_id == checkout_request_id],
            PaymentStatus.PENDING,
            {
                "status": PaymentStatus.COMPLETED.value,
                "mpesa_receipt_number": receipt_number,
                "completed_at": completed_at,
                "result_code": result_code,
                "result_description": result_description,
            },
        )

    def fail_if_pending(
        self,
        checkout_request_id: str,
        *,
        result_code: str | None = None,
        result_description: str | None = None,
    ) -> bool:
        return self._transition(
            [Payment.checkout_request_id == checkout_request_id],
            PaymentStatus.PENDING,
            {
                "status": PaymentStatus.FAILED.value,
                "result_code": result_code,
                "result_description": result_description,
            },
        )

    def refund_if_completed(self, payment_id: UUID) -> bool:
        return self._transition(
            [Payment.id == payment_id],
            PaymentStatus.COMPLETED,
            {"status": PaymentStatus.REFUNDED.value},
        )

    def summarize(self, since: datetime | None = None) -> dict[str, Any]:
        query = self.db.query(
            Payment.status,
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.amount), 0),
        )
        if since is not None:
            query = query.filter(Payment.created_at >= since)
        rows = query.group_by(Payment.status).all()

        counts = {status.value: 0 for status in PaymentStatus}
        revenue = Decimal("0")
        for status, count, total in rows:
            counts[str(status)] = int(count)
            if status == PaymentStatus.COMPLETED.value:
                revenue = Decimal(str(total))
        return {
            "total_revenue": revenue,
            "completed_payments": counts[PaymentStatus.COMPLETED.value],
            "failed_payments": counts[PaymentStatus.FAILED.value],
            "pending_payments": counts[PaymentStatus.PENDING.value],
            "refunded_payments": counts[PaymentStatus.REFUNDED.value],
        }
