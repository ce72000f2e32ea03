from app.models.notification import Notification
from app.models.payment import Payment, PaymentStatus
from app.models.property import Property

__all__ = [
    "Notification",
    "Payment",
    "PaymentStatus",
    "Property",
]
