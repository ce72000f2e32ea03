"""M-Pesa push payments: initiation, callback reconciliation and status queries.

A payment row is created PENDING once the gateway has accepted the push
request. It becomes terminal (COMPLETED or FAILED) exactly once, through
whichever of the callback or a status query reaches the ledger first; the
ledger's compare-and-set decides the winner.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from app.core.auth import CurrentUser
from app.core.errors import (
    AuthorizationError,
    CallbackParseError,
    NotFoundError,
    PaymentServiceError,
)
from app.models.payment import Payment, PaymentStatus
from app.models.shared import utc_now
from app.repositories.payment_repository import PaymentLedger
from app.repositories.property_repository import PropertyDirectory
from app.services.mpesa.callback import parse_stk_callback
from app.services.mpesa.client import DarajaClient, StkPushResult
from app.services.mpesa.signing import EAT, eat_now, generate_password
from app.services.notification_service import PaymentNotifier

logger = logging.getLogger(__name__)

ACCOUNT_REFERENCE_PREFIX = "SPACEHUB-"
TRANSACTION_DESC_PREFIX = "Space Hub - "
MIN_WIRE_AMOUNT = 1


def to_wire_amount(amount: Decimal) -> int:
    """Round an amount half-up to whole shillings, the only unit Daraja accepts."""
    wire_amount = int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if wire_amount < MIN_WIRE_AMOUNT:
        raise ValueError(f"Amount must be at least {MIN_WIRE_AMOUNT} KES after rounding")
    return wire_amount


def can_view_payment(payment: Payment, user: CurrentUser, owner_id: int | None) -> bool:
    """Payments are visible to the payer, the property owner and admins."""
    if user.is_admin:
        return True
    return user.id == payment.user_id or (owner_id is not None and user.id == owner_id)


def ensure_can_view(payment: Payment, user: CurrentUser, properties: PropertyDirectory) -> None:
    owner_id = properties.get_owner_id(int(payment.property_id))
    if not can_view_payment(payment, user, owner_id):
        raise AuthorizationError(f"User {user.id} may not view payment {payment.id}")


def apply_gateway_result(
    ledger: PaymentLedger,
    checkout_request_id: str,
    *,
    success: bool,
    result_code: str | None,
    result_description: str | None,
    receipt_number: str | None = None,
    completed_at: datetime | None = None,
) -> bool:
    """Move a PENDING payment to its terminal state.

    Returns True only if this call made the transition.
    """
    if success:
        return ledger.complete_if_pending(
            checkout_request_id,
            receipt_number=receipt_number,
            completed_at=completed_at or utc_now(),
            result_code=result_code or "0",
            result_description=result_description,
        )
    return ledger.fail_if_pending(
        checkout_request_id,
        result_code=result_code,
        result_description=result_description,
    )


@dataclass
class InitiationResult:
    payment: Payment
    push: StkPushResult


class PushPaymentInitiator:
    """Sends STK push requests and records the accepted ones as PENDING."""

    def __init__(
        self,
        ledger: PaymentLedger,
        properties: PropertyDirectory,
        client: DarajaClient,
        clock: Callable[[], datetime] = eat_now,
    ):
        self.ledger = ledger
        self.properties = properties
        self.client = client
        self.config = client.config
        self._clock = clock

    def initiate(
        self,
        *,
        user_id: int,
        property_id: int,
        amount: Decimal,
        phone_number: str,
        payment_type: str,
    ) -> InitiationResult:
        """Start a push payment.

        Validation, configuration and property checks all happen before the
        gateway is contacted. The push itself is attempted once.

        Raises:
            ConfigurationError: required gateway settings are missing.
            ValueError: the amount rounds to less than one shilling.
            NotFoundError: the property does not exist.
            GatewayAuthError, GatewayRequestError, PaymentOutcomeUnknownError:
                see DarajaClient.stk_push.
        """
        self.config.require_push_settings()
        if amount <= 0:
            raise ValueError("Amount must be positive")
        wire_amount = to_wire_amount(amount)
        if self.properties.get_owner_id(property_id) is None:
            raise NotFoundError("Property not found")

        password, timestamp = generate_password(
            self.config.short_code, self.config.passkey, self._clock
        )
        push = self.client.stk_push(
            password=password,
            timestamp=timestamp,
            amount=wire_amount,
            phone_number=phone_number,
            account_reference=f"{ACCOUNT_REFERENCE_PREFIX}{property_id}",
            description=f"{TRANSACTION_DESC_PREFIX}{payment_type}",
        )

        try:
            payment = self.ledger.create(
                user_id=user_id,
                property_id=property_id,
                amount=amount,
                phone_number=phone_number,
                payment_type=payment_type,
                checkout_request_id=push.checkout_request_id,
                merchant_request_id=push.merchant_request_id,
            )
        except SQLAlchemyError:
            # The payer has been prompted; the callback will find no row.
            logger.exception(
                "Accepted STK push %s could not be recorded", push.checkout_request_id
            )
            raise

        logger.info(
            "Initiated STK push %s for payment %s (user %s, property %s, KES %s)",
            push.checkout_request_id,
            payment.id,
            user_id,
            property_id,
            wire_amount,
        )
        return InitiationResult(payment=payment, push=push)


class CallbackOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ALREADY_FINAL = "already_final"
    UNKNOWN_PAYMENT = "unknown_payment"
    MALFORMED = "malformed"
    ERROR = "error"


class CallbackReconciler:
    """Applies gateway callbacks to the ledger.

    Callbacks may arrive late, twice or never. The handler never raises:
    every outcome is logged and the gateway is always acknowledged.
    """

    def __init__(self, ledger: PaymentLedger, notifier: PaymentNotifier | None = None):
        self.ledger = ledger
        self.notifier = notifier

    def handle(self, payload: Any) -> CallbackOutcome:
        try:
            callback = parse_stk_callback(payload)
        except CallbackParseError as e:
            logger.warning("Ignoring malformed M-Pesa callback: %s", e.message)
            return CallbackOutcome.MALFORMED

        try:
            payment = self.ledger.get_by_checkout_request_id(callback.checkout_request_id)
            if payment is None:
                logger.warning(
                    "M-Pesa callback for unknown checkout request %s", callback.checkout_request_id
                )
                return CallbackOutcome.UNKNOWN_PAYMENT

            applied = apply_gateway_result(
                self.ledger,
                callback.checkout_request_id,
                success=callback.is_success,
                result_code=str(callback.result_code),
                result_description=callback.result_description,
                receipt_number=callback.receipt_number,
                completed_at=utc_now(),
            )
        except SQLAlchemyError:
            logger.exception(
                "Could not apply M-Pesa callback for %s", callback.checkout_request_id
            )
            return CallbackOutcome.ERROR

        if not applied:
            logger.info(
                "Duplicate M-Pesa callback for %s ignored; payment %s is already final",
                callback.checkout_request_id,
                payment.id,
            )
            return CallbackOutcome.ALREADY_FINAL

        if callback.is_success:
            if callback.amount is not None and callback.amount != Decimal(
                to_wire_amount(Decimal(payment.amount))
            ):
                logger.warning(
                    "Payment %s completed with amount %s, expected %s",
                    payment.id,
                    callback.amount,
                    payment.amount,
                )
            logger.info(
                "Payment %s completed, receipt %s", payment.id, callback.receipt_number
            )
        else:
            logger.info(
                "Payment %s failed with result %s: %s",
                payment.id,
                callback.result_code,
                callback.result_description,
            )

        if self.notifier is not None:
            self.notifier.payment_settled(payment.id)  # type: ignore[arg-type]
        return CallbackOutcome.COMPLETED if callback.is_success else CallbackOutcome.FAILED


@dataclass
class PaymentStatusReport:
    """Result of a status query.

    ``gateway_status`` is None when the ledger already held a terminal
    status and the gateway was not asked.
    """

    payment: Payment
    status: PaymentStatus
    gateway_status: PaymentStatus | None = None
    result_code: str | None = None
    result_description: str | None = None
    transition_applied: bool = False


class StatusReconciler:
    """Queries the gateway for PENDING payments and writes terminal answers to the ledger."""

    def __init__(
        self,
        ledger: PaymentLedger,
        properties: PropertyDirectory,
        client: DarajaClient,
        clock: Callable[[], datetime] = eat_now,
        notifier: PaymentNotifier | None = None,
    ):
        self.ledger = ledger
        self.properties = properties
        self.client = client
        self.config = client.config
        self._clock = clock
        self.notifier = notifier

    def query_status(self, checkout_request_id: str, requester: CurrentUser) -> PaymentStatusReport:
        """Report, and if possible settle, the status of a payment.

        Raises:
            NotFoundError: no payment has this checkout request id.
            AuthorizationError: the requester may not see this payment.
            ConfigurationError, GatewayAuthError, GatewayRequestError: the
                gateway could not be queried.
        """
        payment = self.ledger.get_by_checkout_request_id(checkout_request_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        ensure_can_view(payment, requester, self.properties)
        return self.reconcile(payment)

    def reconcile(self, payment: Payment) -> PaymentStatusReport:
        if payment.status != PaymentStatus.PENDING.value:
            return PaymentStatusReport(
                payment=payment,
                status=PaymentStatus(payment.status),
                result_code=payment.result_code,  # type: ignore[arg-type]
                result_description=payment.result_description,  # type: ignore[arg-type]
            )

        self.config.require_query_settings()
        checkout_request_id = str(payment.checkout_request_id)
        password, timestamp = generate_password(
            self.config.short_code, self.config.passkey, self._clock
        )
        result = self.client.stk_query(
            checkout_request_id=checkout_request_id,
            password=password,
            timestamp=timestamp,
        )

        if not result.is_terminal:
            return PaymentStatusReport(
                payment=payment,
                status=PaymentStatus.PENDING,
                gateway_status=PaymentStatus.PENDING,
            )

        gateway_status = PaymentStatus.COMPLETED if result.is_success else PaymentStatus.FAILED
        # The query response carries no receipt number
        applied = apply_gateway_result(
            self.ledger,
            checkout_request_id,
            success=result.is_success,
            result_code=result.result_code,
            result_description=result.result_description,
            receipt_number=None,
            completed_at=utc_now(),
        )
        current = self.ledger.get_by_checkout_request_id(checkout_request_id) or payment
        if applied:
            logger.info(
                "Payment %s reconciled to %s by status query", payment.id, gateway_status.value
            )
            if self.notifier is not None:
                self.notifier.payment_settled(current.id)  # type: ignore[arg-type]

        return PaymentStatusReport(
            payment=current,
            status=PaymentStatus(current.status),
            gateway_status=gateway_status,
            result_code=result.result_code,
            result_description=result.result_description,
            transition_applied=applied,
        )

    def reconcile_stale(self, older_than: timedelta, limit: int = 100) -> dict[str, int]:
        """Query every PENDING payment older than ``older_than``.

        Gateway failures on one payment do not stop the sweep.
        """
        cutoff = utc_now() - older_than
        counts = {"checked": 0, "settled": 0, "errors": 0}
        for payment in self.ledger.list_stale_pending(cutoff, limit=limit):
            counts["checked"] += 1
            try:
                report = self.reconcile(payment)
            except (PaymentServiceError, SQLAlchemyError):
                logger.exception("Reconciliation of payment %s failed", payment.id)
                counts["errors"] += 1
                continue
            if report.transition_applied:
                counts["settled"] += 1
        return counts


def refund_payment(ledger: PaymentLedger, payment_id: UUID) -> Payment:
    """Mark a COMPLETED payment as REFUNDED.

    Raises:
        NotFoundError: the payment does not exist.
        ValueError: the payment is not COMPLETED.
    """
    payment = ledger.get_by_id(payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    if not ledger.refund_if_completed(payment_id):
        raise ValueError(f"Only completed payments can be refunded (status is {payment.status})")
    logger.info("Payment %s marked as refunded", payment_id)
    refreshed = ledger.get_by_id(payment_id)
    assert refreshed is not None
    return refreshed


SUMMARY_PERIODS = ("all", "today", "week", "month")


def period_start(period: str, now: datetime | None = None) -> datetime | None:
    """Start of a reporting period in UTC; days and months follow East Africa Time."""
    if period not in SUMMARY_PERIODS:
        raise ValueError(f"Unknown period '{period}'")
    local_now = (now or utc_now()).astimezone(EAT)
    if period == "all":
        return None
    if period == "today":
        start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    elif period == "week":
        start = local_now - timedelta(days=7)
    else:
        start = local_now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start.astimezone(UTC)


def summarize_payments(
    ledger: PaymentLedger, period: str = "all", now: datetime | None = None
) -> dict[str, Any]:
    """Revenue and status counts for a period, plus today's and this month's revenue."""
    now = now or utc_now()
    summary = ledger.summarize(period_start(period, now))
    summary["period"] = period
    summary["today_revenue"] = ledger.summarize(period_start("today", now))["total_revenue"]
    summary["month_revenue"] = ledger.summarize(period_start("month", now))["total_revenue"]
    return summary
