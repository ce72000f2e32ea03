"""Payment model - the ledger of M-Pesa push payments."""

from enum import Enum

from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class PaymentStatus(str, Enum):
    """Payment status enum.

    PENDING moves to COMPLETED or FAILED exactly once. REFUNDED is only
    reachable from COMPLETED through an administrative action.
    """

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Payment(Base):
    """Payment model - one row per STK push initiation, never deleted."""

    __tablename__ = "payments"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    user_id = Column(Integer, nullable=False, index=True)
    property_id = Column(Integer, nullable=False, index=True)

    # Payment details
    amount = Column(Numeric(12, 2), nullable=False)
    phone_number = Column(String(20), nullable=False)
    payment_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    # Gateway correlation
    checkout_request_id = Column(String(100), nullable=False, unique=True, index=True)
    merchant_request_id = Column(String(100), nullable=False)

    # Gateway outcome
    mpesa_receipt_number = Column(String(50), nullable=True)
    result_code = Column(String(20), nullable=True)
    result_description = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
