"""Property model - the slice of the listing catalogue that payments depend on."""

from sqlalchemy import Column, DateTime, Integer, String, func

from app.core.database import Base


class Property(Base):
    """Property ownership record. Listings are managed by the catalogue service."""

    __tablename__ = "properties"

    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, nullable=False, index=True)
    property_name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
