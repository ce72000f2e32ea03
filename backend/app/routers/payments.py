"""Payment API endpoints."""

import logging
from typing import Any, Literal
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, get_current_user, require_admin
from app.core.database import get_db
from app.core.errors import AuthorizationError, NotFoundError
from app.models.payment import Payment
from app.repositories.payment_repository import PaymentRepository
from app.repositories.property_repository import PropertyRepository
from app.schemas.payment import (
    CallbackAck,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentResponse,
    PaymentStatusResponse,
    PaymentSummaryResponse,
)
from app.services.mpesa.client import DarajaClient, get_daraja_client
from app.services.notification_service import BackgroundPaymentNotifier
from app.services.payment_service import (
    CallbackReconciler,
    PushPaymentInitiator,
    StatusReconciler,
    ensure_can_view,
    refund_payment,
    summarize_payments,
)
from app.tasks import enqueue_reconcile_stale_payments

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/initiate", response_model=InitiatePaymentResponse, status_code=201)
def initiate_payment(
    data: InitiatePaymentRequest,
    db: Session = Depends(get_db),
    client: DarajaClient = Depends(get_daraja_client),
    user: CurrentUser = Depends(get_current_user),
) -> dict[str, Any]:
    """Send an STK push to the payer's phone and record the pending payment."""
    initiator = PushPaymentInitiator(PaymentRepository(db), PropertyRepository(db), client)
    try:
        result = initiator.initiate(
            user_id=user.id,
            property_id=data.property_id,
            amount=data.amount,
            phone_number=data.phone_number,
            payment_type=data.payment_type,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None

    return {
        "checkout_request_id": result.push.checkout_request_id,
        "merchant_request_id": result.push.merchant_request_id,
        "response_code": result.push.response_code,
        "response_description": result.push.response_description,
        "customer_message": result.push.customer_message,
        "payment": result.payment,
    }


@router.post("/mpesa/callback", response_model=CallbackAck)
async def mpesa_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> CallbackAck:
    """Receive the asynchronous STK result from Daraja.

    Always acknowledged; outcomes are logged.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("M-Pesa callback body is not valid JSON")
        return CallbackAck()

    reconciler = CallbackReconciler(PaymentRepository(db), BackgroundPaymentNotifier(background_tasks))
    outcome = reconciler.handle(payload)
    logger.debug("M-Pesa callback handled: %s", outcome.value)
    return CallbackAck()


@router.get("/history", response_model=list[PaymentResponse])
async def payment_history(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> list[Payment]:
    """List the caller's payments, newest first."""
    return PaymentRepository(db).list_for_user(user.id, skip=skip, limit=limit)


@router.get("/admin/summary", response_model=PaymentSummaryResponse)
async def payment_summary(
    period: Literal["all", "today", "week", "month"] = Query(default="all"),
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
) -> dict[str, Any]:
    """Revenue and status counts across all payments."""
    return summarize_payments(PaymentRepository(db), period)


@router.post("/admin/reconcile", status_code=202)
async def enqueue_reconciliation(
    admin: CurrentUser = Depends(require_admin),
) -> dict[str, str]:
    """Enqueue an immediate sweep of stale pending payments."""
    job = await enqueue_reconcile_stale_payments()
    logger.info("Admin %s enqueued payment reconciliation job %s", admin.id, job.job_id)
    return {"job_id": job.job_id}


@router.get("/property/{property_id}", response_model=list[PaymentResponse])
async def property_payments(
    property_id: int,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> list[Payment]:
    """List payments for a property. Owner or admin only."""
    owner_id = PropertyRepository(db).get_owner_id(property_id)
    if owner_id is None:
        raise NotFoundError("Property not found")
    if not user.is_admin and owner_id != user.id:
        raise AuthorizationError(f"User {user.id} does not own property {property_id}")
    return PaymentRepository(db).list_for_property(property_id, skip=skip, limit=limit)


@router.get("/{checkout_request_id}/status", response_model=PaymentStatusResponse)
def payment_status(
    checkout_request_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    client: DarajaClient = Depends(get_daraja_client),
    user: CurrentUser = Depends(get_current_user),
) -> dict[str, Any]:
    """Query M-Pesa for a payment's state and settle it if the answer is final."""
    reconciler = StatusReconciler(
        PaymentRepository(db),
        PropertyRepository(db),
        client,
        notifier=BackgroundPaymentNotifier(background_tasks),
    )
    report = reconciler.query_status(checkout_request_id, user)
    return {
        "checkout_request_id": checkout_request_id,
        "status": report.status.value,
        "gateway_status": report.gateway_status.value if report.gateway_status else None,
        "result_code": report.result_code,
        "result_description": report.result_description,
        "transition_applied": report.transition_applied,
        "payment": report.payment,
    }


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: UUID,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> Payment:
    """Get a payment. Visible to the payer, the property owner and admins."""
    payment = PaymentRepository(db).get_by_id(payment_id)
    if not payment:
        raise NotFoundError("Payment not found")
    ensure_can_view(payment, user, PropertyRepository(db))
    return payment


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
async def refund(
    payment_id: UUID,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
) -> Payment:
    """Mark a completed payment as refunded."""
    try:
        return refund_payment(PaymentRepository(db), payment_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
