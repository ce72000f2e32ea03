"""Payment schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

PHONE_NUMBER_PATTERN = r"^\+?254\d{9}$"


class InitiatePaymentRequest(BaseModel):
    """Schema for starting an M-Pesa push payment."""

    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    phone_number: str = Field(
        ..., pattern=PHONE_NUMBER_PATTERN, description="Payer MSISDN, e.g. +254712345678"
    )
    property_id: int = Field(..., ge=1)
    payment_type: str = Field(..., min_length=1, max_length=50)


class PaymentResponse(BaseModel):
    """Schema for payment response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: int
    property_id: int
    amount: Decimal
    phone_number: str
    payment_type: str
    status: str
    checkout_request_id: str
    merchant_request_id: str
    mpesa_receipt_number: str | None = None
    result_code: str | None = None
    result_description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class InitiatePaymentResponse(BaseModel):
    """Gateway acknowledgement returned to the client; completion arrives later."""

    checkout_request_id: str
    merchant_request_id: str
    response_code: str
    response_description: str
    customer_message: str
    payment: PaymentResponse


class PaymentStatusResponse(BaseModel):
    checkout_request_id: str
    status: str
    gateway_status: str | None = None
    result_code: str | None = None
    result_description: str | None = None
    transition_applied: bool = False
    payment: PaymentResponse


class CallbackAck(BaseModel):
    """Acknowledgement body Daraja expects from the callback URL."""

    ResultCode: int = 0
    ResultDesc: str = "Accepted"


class PaymentSummaryResponse(BaseModel):
    period: Literal["all", "today", "week", "month"]
    total_revenue: Decimal
    today_revenue: Decimal
    month_revenue: Decimal
    completed_payments: int
    failed_payments: int
    pending_payments: int
    refunded_payments: int
