"""Notification model for in-app notification system."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class Notification(Base):
    """Notification model - stores in-app notifications for marketplace users."""

    __tablename__ = "notifications"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    user_id = Column(Integer, nullable=False, index=True)
    category = Column(String(50), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(String(1000), nullable=False)
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(UUIDType, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
