"""Property repository: ownership lookups for payment validation and scoping."""

from abc import ABC, abstractmethod

from sqlalchemy.orm import Session

from app.models.property import Property


class PropertyDirectory(ABC):
    """Read-only view of the property registry used by the payment services."""

    @abstractmethod
    def get_owner_id(self, property_id: int) -> int | None:
        """Return the owner of a property, or None if it does not exist."""
        ...  # pragma: no cover


class PropertyRepository(PropertyDirectory):
    """Repository for Property model."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, property_id: int) -> Property | None:
        return self.db.query(Property).filter(Property.id == property_id).first()

    def get_owner_id(self, property_id: int) -> int | None:
        row = self.db.query(Property.owner_id).filter(Property.id == property_id).first()
        return int(row[0]) if row is not None else None

    def create(
        self,
        *,
        property_id: int,
        owner_id: int,
        property_name: str,
        address: str | None = None,
    ) -> Property:
        prop = Property(
            id=property_id,
            owner_id=owner_id,
            property_name=property_name,
            address=address,
        )
        self.db.add(prop)
        self.db.commit()
        self.db.refresh(prop)
        return prop
