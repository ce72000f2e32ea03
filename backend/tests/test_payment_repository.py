"""Tests for the SQL payment ledger."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from app.core import database as db_module
from app.models.payment import Payment, PaymentStatus
from app.repositories.payment_repository import PaymentRepository
from tests.conftest import PAYER_ID, PROPERTY_ID


def _create(repo, checkout_request_id="ws_CO_1", amount="1500.75", user_id=PAYER_ID):
    return repo.create(
        user_id=user_id,
        property_id=PROPERTY_ID,
        amount=Decimal(amount),
        phone_number="+254712345678",
        payment_type="deposit",
        checkout_request_id=checkout_request_id,
        merchant_request_id="29115-1",
    )


def _set_created_at(db, payment_id, created_at):
    db.query(Payment).filter(Payment.id == payment_id).update({"created_at": created_at})
    db.commit()


@pytest.fixture
def repo(db_session):
    return PaymentRepository(db_session)


class TestCreate:
    def test_creates_pending_payment(self, repo):
        payment = _create(repo)

        assert payment.id is not None
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.amount == Decimal("1500.75")
        assert payment.mpesa_receipt_number is None
        assert payment.completed_at is None

    def test_lookup_by_id_and_checkout_request_id(self, repo):
        payment = _create(repo)

        assert repo.get_by_id(payment.id).checkout_request_id == "ws_CO_1"
        assert repo.get_by_checkout_request_id("ws_CO_1").id == payment.id
        assert repo.get_by_checkout_request_id("ws_CO_missing") is None

    def test_checkout_request_id_is_unique(self, repo, db_session):
        _create(repo)

        with pytest.raises(IntegrityError):
            _create(repo)

        # The failed insert was rolled back, so the session is still usable
        assert repo.get_by_checkout_request_id("ws_CO_1").status == PaymentStatus.PENDING.value
        assert _create(repo, "ws_CO_2").status == PaymentStatus.PENDING.value


class TestTransitions:
    def test_complete_applies_once(self, repo):
        _create(repo)
        completed_at = datetime(2024, 1, 15, 7, 30, tzinfo=UTC)

        assert repo.complete_if_pending(
            "ws_CO_1", receipt_number="NLJ7RT61SV", completed_at=completed_at
        )
        assert not repo.complete_if_pending(
            "ws_CO_1", receipt_number="OTHER", completed_at=datetime.now(UTC)
        )

        payment = repo.get_by_checkout_request_id("ws_CO_1")
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.mpesa_receipt_number == "NLJ7RT61SV"
        assert payment.completed_at.replace(tzinfo=None) == completed_at.replace(tzinfo=None)
        assert payment.result_code == "0"

    def test_failed_is_terminal(self, repo):
        _create(repo)

        assert repo.fail_if_pending(
            "ws_CO_1", result_code="1032", result_description="Request cancelled by user"
        )
        assert not repo.complete_if_pending(
            "ws_CO_1", receipt_number="NLJ7RT61SV", completed_at=datetime.now(UTC)
        )

        payment = repo.get_by_checkout_request_id("ws_CO_1")
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.result_code == "1032"
        assert payment.mpesa_receipt_number is None

    def test_only_target_row_changes(self, repo):
        _create(repo, "ws_CO_1")
        _create(repo, "ws_CO_2")

        repo.complete_if_pending("ws_CO_1", receipt_number="R1", completed_at=datetime.now(UTC))

        assert repo.get_by_checkout_request_id("ws_CO_2").status == PaymentStatus.PENDING.value

    def test_unknown_checkout_request_id_changes_nothing(self, repo):
        assert not repo.fail_if_pending("ws_CO_missing")

    def test_stale_reader_cannot_overwrite(self, repo):
        """A second session holding an old PENDING view loses the compare-and-set."""
        _create(repo)
        other = PaymentRepository(db_module.SessionLocal())
        try:
            assert other.get_by_checkout_request_id("ws_CO_1").status == "PENDING"

            assert repo.complete_if_pending(
                "ws_CO_1", receipt_number="R1", completed_at=datetime.now(UTC)
            )
            assert not other.fail_if_pending("ws_CO_1", result_code="1")
            assert other.get_by_checkout_request_id("ws_CO_1").status == "COMPLETED"
        finally:
            other.db.close()

    def test_refund_requires_completed(self, repo):
        payment = _create(repo)

        assert not repo.refund_if_completed(payment.id)

        repo.complete_if_pending("ws_CO_1", receipt_number="R1", completed_at=datetime.now(UTC))
        assert repo.refund_if_completed(payment.id)
        assert not repo.refund_if_completed(payment.id)
        assert repo.get_by_id(payment.id).status == PaymentStatus.REFUNDED.value

    def test_failed_commit_rolls_back_and_keeps_session_usable(self, repo, db_session):
        _create(repo)
        _create(repo, "ws_CO_2")
        lost_connection = OperationalError("COMMIT", {}, Exception("server closed the connection"))

        with patch.object(db_session, "commit", side_effect=lost_connection):
            with pytest.raises(OperationalError):
                repo.complete_if_pending(
                    "ws_CO_1", receipt_number="R1", completed_at=datetime.now(UTC)
                )

        assert repo.get_by_checkout_request_id("ws_CO_1").status == PaymentStatus.PENDING.value
        assert repo.complete_if_pending(
            "ws_CO_2", receipt_number="R2", completed_at=datetime.now(UTC)
        )
        assert repo.get_by_checkout_request_id("ws_CO_2").status == PaymentStatus.COMPLETED.value


class TestListing:
    def test_list_for_user_newest_first(self, repo, db_session):
        older = _create(repo, "ws_CO_1")
        newer = _create(repo, "ws_CO_2")
        _create(repo, "ws_CO_3", user_id=7)
        now = datetime.now(UTC)
        _set_created_at(db_session, older.id, now - timedelta(hours=2))
        _set_created_at(db_session, newer.id, now - timedelta(hours=1))

        payments = repo.list_for_user(PAYER_ID)

        assert [p.checkout_request_id for p in payments] == ["ws_CO_2", "ws_CO_1"]
        assert len(repo.list_for_user(PAYER_ID, skip=1)) == 1

    def test_list_for_property(self, repo):
        _create(repo, "ws_CO_1")
        _create(repo, "ws_CO_2", user_id=7)

        assert len(repo.list_for_property(PROPERTY_ID)) == 2
        assert repo.list_for_property(999) == []

    def test_list_stale_pending(self, repo, db_session):
        stale = _create(repo, "ws_CO_1")
        settled = _create(repo, "ws_CO_2")
        _create(repo, "ws_CO_3")
        now = datetime.now(UTC)
        _set_created_at(db_session, stale.id, now - timedelta(minutes=30))
        _set_created_at(db_session, settled.id, now - timedelta(minutes=30))
        repo.fail_if_pending("ws_CO_2")

        payments = repo.list_stale_pending(now - timedelta(minutes=5))

        assert [p.checkout_request_id for p in payments] == ["ws_CO_1"]


class TestSummarize:
    def test_counts_and_revenue(self, repo):
        _create(repo, "ws_CO_1", amount="1500.75")
        _create(repo, "ws_CO_2", amount="200.00")
        _create(repo, "ws_CO_3", amount="50.00")
        _create(repo, "ws_CO_4", amount="10.00")
        repo.complete_if_pending("ws_CO_1", receipt_number="R1", completed_at=datetime.now(UTC))
        repo.complete_if_pending("ws_CO_2", receipt_number="R2", completed_at=datetime.now(UTC))
        repo.fail_if_pending("ws_CO_3")

        summary = repo.summarize()

        assert summary["total_revenue"] == Decimal("1700.75")
        assert summary["completed_payments"] == 2
        assert summary["failed_payments"] == 1
        assert summary["pending_payments"] == 1
        assert summary["refunded_payments"] == 0

    def test_since_filters_by_creation(self, repo, db_session):
        old = _create(repo, "ws_CO_1", amount="100.00")
        _create(repo, "ws_CO_2", amount="40.00")
        now = datetime.now(UTC)
        _set_created_at(db_session, old.id, now - timedelta(days=40))
        repo.complete_if_pending("ws_CO_1", receipt_number="R1", completed_at=now)
        repo.complete_if_pending("ws_CO_2", receipt_number="R2", completed_at=now)

        summary = repo.summarize(now - timedelta(days=7))

        assert summary["total_revenue"] == Decimal("40.00")
        assert summary["completed_payments"] == 1

    def test_empty(self, repo):
        summary = repo.summarize()

        assert summary["total_revenue"] == Decimal("0")
        assert summary["pending_payments"] == 0
