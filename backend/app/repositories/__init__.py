from app.repositories.notification_repository import NotificationRepository
from app.repositories.payment_repository import PaymentLedger, PaymentRepository
from app.repositories.property_repository import PropertyDirectory, PropertyRepository

__all__ = [
    "NotificationRepository",
    "PaymentLedger",
    "PaymentRepository",
    "PropertyDirectory",
    "PropertyRepository",
]
