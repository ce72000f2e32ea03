from app.schemas.payment import (
    CallbackAck,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentResponse,
    PaymentStatusResponse,
    PaymentSummaryResponse,
)

__all__ = [
    "CallbackAck",
    "InitiatePaymentRequest",
    "InitiatePaymentResponse",
    "PaymentResponse",
    "PaymentStatusResponse",
    "PaymentSummaryResponse",
]
