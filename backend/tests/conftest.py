"""Shared test fixtures for all test modules."""

import contextlib
import threading
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core import database as db_module
from app.core.auth import UserRole, issue_access_token
from app.core.database import Base, get_db
from app.main import app
from app.models.payment import Payment, PaymentStatus
from app.repositories.payment_repository import PaymentLedger
from app.repositories.property_repository import PropertyDirectory, PropertyRepository
from app.services.mpesa.base import MpesaConfig
from app.services.mpesa.client import DarajaClient, get_daraja_client

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

PAYER_ID = 1
OWNER_ID = 2
OTHER_USER_ID = 3
ADMIN_ID = 99
PROPERTY_ID = 10


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def db_session():
    """Create a database session for direct repository testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def mpesa_config():
    """Complete sandbox configuration with retries that do not sleep."""
    return MpesaConfig(
        environment="sandbox",
        consumer_key="test-key",
        consumer_secret="test-secret",
        short_code="174379",
        passkey="test-passkey",
        callback_url="https://payments.spacehub.test/payments/mpesa/callback",
        timeout_seconds=5.0,
        max_attempts=3,
        retry_backoff_seconds=0,
        token_refresh_margin_seconds=60,
    )


@pytest.fixture
def daraja_client(mpesa_config):
    return DarajaClient(mpesa_config)


@pytest.fixture
def client(daraja_client):
    """Create test client wired to the test gateway configuration."""
    app.dependency_overrides[get_daraja_client] = lambda: daraja_client
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_daraja_client, None)


@pytest.fixture
def property_record(db_session):
    """A property owned by OWNER_ID."""
    return PropertyRepository(db_session).create(
        property_id=PROPERTY_ID,
        owner_id=OWNER_ID,
        property_name="Westlands Office Suite",
        address="Waiyaki Way, Nairobi",
    )


def _headers(user_id: int, role: UserRole = UserRole.USER) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_access_token(user_id, role)}"}


@pytest.fixture
def payer_headers():
    return _headers(PAYER_ID)


@pytest.fixture
def owner_headers():
    return _headers(OWNER_ID, UserRole.OWNER)


@pytest.fixture
def other_headers():
    return _headers(OTHER_USER_ID)


@pytest.fixture
def admin_headers():
    return _headers(ADMIN_ID, UserRole.ADMIN)


class InMemoryPaymentLedger(PaymentLedger):
    """Dict-backed ledger; the lock gives the conditional updates the same
    single-winner semantics as the SQL UPDATE ... WHERE status = ..."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.payments: dict[uuid.UUID, Payment] = {}

    def create(
        self,
        *,
        user_id: int,
        property_id: int,
        amount: Decimal,
        phone_number: str,
        payment_type: str,
        checkout_request_id: str,
        merchant_request_id: str,
    ) -> Payment:
        with self._lock:
            if any(p.checkout_request_id == checkout_request_id for p in self.payments.values()):
                raise ValueError(f"Duplicate checkout request id {checkout_request_id}")
            now = datetime.now(UTC)
            payment = Payment(
                id=uuid.uuid4(),
                user_id=user_id,
                property_id=property_id,
                amount=amount,
                phone_number=phone_number,
                payment_type=payment_type,
                checkout_request_id=checkout_request_id,
                merchant_request_id=merchant_request_id,
                status=PaymentStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            self.payments[payment.id] = payment  # type: ignore[index]
            return payment

    def get_by_id(self, payment_id: uuid.UUID) -> Payment | None:
        return self.payments.get(payment_id)

    def get_by_checkout_request_id(self, checkout_request_id: str) -> Payment | None:
        for payment in self.payments.values():
            if payment.checkout_request_id == checkout_request_id:
                return payment
        return None

    def _newest_first(self, payments: list[Payment], skip: int, limit: int) -> list[Payment]:
        payments.sort(key=lambda p: p.created_at, reverse=True)
        return payments[skip : skip + limit]

    def list_for_user(self, user_id: int, skip: int = 0, limit: int = 100) -> list[Payment]:
        return self._newest_first(
            [p for p in self.payments.values() if p.user_id == user_id], skip, limit
        )

    def list_for_property(self, property_id: int, skip: int = 0, limit: int = 100) -> list[Payment]:
        return self._newest_first(
            [p for p in self.payments.values() if p.property_id == property_id], skip, limit
        )

    def list_stale_pending(self, created_before: datetime, limit: int = 100) -> list[Payment]:
        stale = [
            p
            for p in self.payments.values()
            if p.status == PaymentStatus.PENDING.value and p.created_at < created_before
        ]
        stale.sort(key=lambda p: p.created_at)
        return stale[:limit]

    def _transition(
        self, payment: Payment | None, expected: PaymentStatus, values: dict[str, Any]
    ) -> bool:
        with self._lock:
            if payment is None or payment.status != expected.value:
                return False
            for key, value in values.items():
                setattr(payment, key, value)
            payment.updated_at = datetime.now(UTC)  # type: ignore[assignment]
            return True

    def complete_if_pending(
        self,
        checkout_request_id: str,
        *,
        receipt_number: str | None,
        completed_at: datetime,
        result_code: str = "0",
        result_description: str | None = None,
    ) -> bool:
        return self._transition(
            self.get_by_checkout_request_id(checkout_request_id),
            PaymentStatus.PENDING,
            {
                "status": PaymentStatus.COMPLETED.value,
                "mpesa_receipt_number": receipt_number,
                "completed_at": completed_at,
                "result_code": result_code,
                "result_description": result_description,
            },
        )

    def fail_if_pending(
        self,
        checkout_request_id: str,
        *,
        result_code: str | None = None,
        result_description: str | None = None,
    ) -> bool:
        return self._transition(
            self.get_by_checkout_request_id(checkout_request_id),
            PaymentStatus.PENDING,
            {
                "status": PaymentStatus.FAILED.value,
                "result_code": result_code,
                "result_description": result_description,
            },
        )

    def refund_if_completed(self, payment_id: uuid.UUID) -> bool:
        return self._transition(
            self.get_by_id(payment_id),
            PaymentStatus.COMPLETED,
            {"status": PaymentStatus.REFUNDED.value},
        )

    def summarize(self, since: datetime | None = None) -> dict[str, Any]:
        rows = [p for p in self.payments.values() if since is None or p.created_at >= since]
        count = lambda status: sum(1 for p in rows if p.status == status.value)  # noqa: E731
        return {
            "total_revenue": sum(
                (Decimal(p.amount) for p in rows if p.status == PaymentStatus.COMPLETED.value),
                Decimal("0"),
            ),
            "completed_payments": count(PaymentStatus.COMPLETED),
            "failed_payments": count(PaymentStatus.FAILED),
            "pending_payments": count(PaymentStatus.PENDING),
            "refunded_payments": count(PaymentStatus.REFUNDED),
        }


class InMemoryPropertyDirectory(PropertyDirectory):
    def __init__(self, owners: dict[int, int] | None = None) -> None:
        self.owners = owners if owners is not None else {PROPERTY_ID: OWNER_ID}

    def get_owner_id(self, property_id: int) -> int | None:
        return self.owners.get(property_id)


@pytest.fixture
def ledger():
    return InMemoryPaymentLedger()


@pytest.fixture
def properties():
    return InMemoryPropertyDirectory()
