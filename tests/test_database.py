"""
Tests for PaymentStore (asyncpg mocked)

Covers:
- Schema creation
- Pending uniqueness mapped to PendingPaymentExistsError
- Row locking and savepoint-wrapped enrollment insert
- Outcome persistence with audit log
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from coursepay.exceptions import (
    EnrollmentInsertError,
    InvalidTransitionError,
    PendingPaymentExistsError,
    ValidationError,
)
from coursepay.models import Payment, PaymentOutcome, PaymentStatus
from coursepay.services.database import PENDING_INDEX, PaymentStore, PaymentTransaction

from tests.conftest import COURSE_ID, USER_ID

NOW = datetime(2024, 1, 15, 3, 30, tzinfo=timezone.utc)


def payment_row(**overrides):
    row = {
        "id": uuid.UUID("11111111-2222-4333-8444-555555555555"),
        "user_id": uuid.UUID(USER_ID),
        "course_id": uuid.UUID(COURSE_ID),
        "order_reference": "ORDER_1705289400000_3d4e5f60_ab12cd",
        "amount": Decimal("49.99"),
        "currency": "VND",
        "payment_method": "vnpay",
        "status": "pending",
        "created_at": NOW,
        "updated_at": NOW,
        "transaction_id": None,
        "response_code": None,
        "bank_code": None,
        "card_type": None,
        "paid_at": None,
        "refund_amount": Decimal("0"),
        "refunded_at": None,
    }
    row.update(overrides)
    return row


@pytest.fixture
def conn():
    connection = AsyncMock()
    connection.transaction = MagicMock(return_value=MagicMock())
    return connection


@pytest.fixture
def pool(conn):
    mock_pool = MagicMock()
    mock_pool.acquire.return_value.__aenter__.return_value = conn
    mock_pool.close = AsyncMock()
    return mock_pool


@pytest.fixture
def store(pool):
    return PaymentStore(pool=pool)


def unique_violation(constraint):
    error = asyncpg.UniqueViolationError("duplicate key value violates unique constraint")
    error.constraint_name = constraint
    return error


# ============== Connection ==============

class TestConnection:
    """Test pool lifecycle and schema"""

    @pytest.mark.asyncio
    async def test_connect_requires_url(self):
        with pytest.raises(ValueError, match="DATABASE_URL"):
            await PaymentStore().connect()

    def test_pool_required(self):
        with pytest.raises(RuntimeError):
            PaymentStore().pool

    @pytest.mark.asyncio
    async def test_create_tables(self, store, conn):
        await store._create_tables()

        statements = " ".join(call.args[0] for call in conn.execute.await_args_list)
        assert "CREATE TABLE IF NOT EXISTS payments" in statements
        assert "CREATE TABLE IF NOT EXISTS payment_logs" in statements
        assert f"CREATE UNIQUE INDEX IF NOT EXISTS {PENDING_INDEX}" in statements
        assert "WHERE status = 'pending'" in statements
        assert "'completed_enrollment_failed'" in statements

    @pytest.mark.asyncio
    async def test_close(self, store, pool):
        await store.close()
        pool.close.assert_awaited_once()


# ============== Payment Operations ==============

class TestPayments:
    """Test payment queries"""

    @pytest.mark.asyncio
    async def test_create_payment(self, store, conn):
        conn.fetchrow.return_value = payment_row()

        payment = await store.create_payment(
            user_id=USER_ID,
            course_id=COURSE_ID,
            order_reference="ORDER_1705289400000_3d4e5f60_ab12cd",
            amount=Decimal("49.99"),
            currency="VND",
        )

        assert payment.status == PaymentStatus.PENDING
        assert payment.user_id == USER_ID
        args = conn.fetchrow.await_args.args
        assert "INSERT INTO payments" in args[0]
        assert args[2] == uuid.UUID(USER_ID)
        assert args[5] == Decimal("49.99")

    @pytest.mark.asyncio
    async def test_pending_conflict(self, store, conn):
        conn.fetchrow.side_effect = unique_violation(PENDING_INDEX)

        with pytest.raises(PendingPaymentExistsError):
            await store.create_payment(USER_ID, COURSE_ID, "ORDER_1", Decimal("1"), "VND")

    @pytest.mark.asyncio
    async def test_other_unique_violation_propagates(self, store, conn):
        conn.fetchrow.side_effect = unique_violation("payments_order_reference_key")

        with pytest.raises(asyncpg.UniqueViolationError):
            await store.create_payment(USER_ID, COURSE_ID, "ORDER_1", Decimal("1"), "VND")

    @pytest.mark.asyncio
    async def test_get_payment_invalid_id(self, store, conn):
        assert await store.get_payment("not-a-uuid") is None
        conn.fetchrow.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_payment_by_order_reference(self, store, conn):
        conn.fetchrow.return_value = payment_row(status="completed", transaction_id="14226112")

        payment = await store.get_payment_by_order_reference("ORDER_1705289400000_3d4e5f60_ab12cd")

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.transaction_id == "14226112"

    @pytest.mark.asyncio
    async def test_get_course(self, store, conn):
        conn.fetchrow.return_value = {
            "id": uuid.UUID(COURSE_ID),
            "title": "Python cơ bản",
            "price": Decimal("49.99"),
            "status": "published",
        }

        course = await store.get_course(COURSE_ID)

        assert course.id == COURSE_ID
        assert course.price == Decimal("49.99")
        assert course.is_published is True

    @pytest.mark.asyncio
    async def test_list_payments(self, store, conn):
        conn.fetch.return_value = [payment_row()]
        conn.fetchval.return_value = 7

        payments, total = await store.list_payments(USER_ID, limit=1, offset=2, status=PaymentStatus.PENDING)

        assert total == 7
        assert len(payments) == 1
        assert conn.fetch.await_args.args[1:] == (uuid.UUID(USER_ID), "pending", 1, 2)


# ============== Unit of Work ==============

class TestPaymentTransaction:
    """Test transactional operations"""

    @pytest.mark.asyncio
    async def test_transaction_yields_unit_of_work(self, store, conn):
        async with store.transaction() as tx:
            assert isinstance(tx, PaymentTransaction)
        conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_lock_payment_for_update(self, conn):
        conn.fetchrow.return_value = payment_row()
        tx = PaymentTransaction(conn)

        payment = await tx.lock_payment("ORDER_1705289400000_3d4e5f60_ab12cd")

        assert payment.status == PaymentStatus.PENDING
        assert "FOR UPDATE" in conn.fetchrow.await_args.args[0]

    @pytest.mark.asyncio
    async def test_insert_enrollment_in_savepoint(self, conn):
        tx = PaymentTransaction(conn)

        await tx.insert_enrollment(USER_ID, COURSE_ID)

        conn.transaction.assert_called_once()
        sql, user_id, course_id = conn.execute.await_args.args
        assert "INSERT INTO enrollments" in sql
        assert user_id == uuid.UUID(USER_ID)
        assert course_id == uuid.UUID(COURSE_ID)

    @pytest.mark.asyncio
    async def test_insert_enrollment_failure_wrapped(self, conn):
        conn.execute.side_effect = asyncpg.ForeignKeyViolationError("violates foreign key constraint")
        tx = PaymentTransaction(conn)

        with pytest.raises(EnrollmentInsertError) as exc_info:
            await tx.insert_enrollment(USER_ID, COURSE_ID)

        assert isinstance(exc_info.value.original_error, asyncpg.ForeignKeyViolationError)

    @pytest.mark.asyncio
    async def test_record_outcome_logs_transition(self, conn):
        conn.fetchrow.return_value = payment_row(status="completed", transaction_id="14226112", response_code="00")
        tx = PaymentTransaction(conn)
        pending = Payment.from_row(payment_row())

        updated = await tx.record_outcome(
            pending,
            PaymentOutcome(status=PaymentStatus.COMPLETED, transaction_id="14226112", response_code="00", paid_at=NOW),
        )

        assert updated.status == PaymentStatus.COMPLETED
        update_args = conn.fetchrow.await_args.args
        assert "UPDATE payments" in update_args[0]
        assert update_args[2:5] == ("completed", "14226112", "00")

        log_args = conn.execute.await_args.args
        assert "INSERT INTO payment_logs" in log_args[0]
        assert log_args[2:5] == ("callback", "pending", "completed")

    @pytest.mark.asyncio
    async def test_mark_refunded(self, conn):
        conn.fetchrow.return_value = payment_row(status="refunded", refund_amount=Decimal("49.99"))
        tx = PaymentTransaction(conn)
        completed = Payment.from_row(payment_row(status="completed", transaction_id="14226112"))

        updated = await tx.mark_refunded(completed, Decimal("49.99"), created_by="admin-1")

        assert updated.status == PaymentStatus.REFUNDED
        assert updated.refund_amount == Decimal("49.99")
        assert conn.execute.await_args.args[-1] == "admin-1"

    @pytest.mark.asyncio
    async def test_record_outcome_rejects_backward_transition(self, conn):
        tx = PaymentTransaction(conn)
        completed = Payment.from_row(payment_row(status="completed", transaction_id="14226112"))

        with pytest.raises(InvalidTransitionError):
            await tx.record_outcome(completed, PaymentOutcome(status=PaymentStatus.FAILED, response_code="24"))

        conn.fetchrow.assert_not_called()
        conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_record_outcome_same_status_annotates(self, conn):
        conn.fetchrow.return_value = payment_row(status="cancelled", transaction_id="14226112")
        tx = PaymentTransaction(conn)
        cancelled = Payment.from_row(payment_row(status="cancelled"))

        updated = await tx.record_outcome(
            cancelled,
            PaymentOutcome(status=PaymentStatus.CANCELLED, transaction_id="14226112", response_code="00"),
            action="late_success",
        )

        assert updated.transaction_id == "14226112"
        assert conn.execute.await_args.args[2:5] == ("late_success", "cancelled", "cancelled")

    @pytest.mark.asyncio
    async def test_mark_refunded_requires_paid(self, conn):
        tx = PaymentTransaction(conn)
        pending = Payment.from_row(payment_row())

        with pytest.raises(InvalidTransitionError):
            await tx.mark_refunded(pending, Decimal("49.99"))

        conn.fetchrow.assert_not_called()


class TestUserIdValidation:
    """Test ids that are not UUIDs"""

    @pytest.mark.asyncio
    async def test_create_payment_rejects_invalid_user_id(self, store, conn):
        with pytest.raises(ValidationError):
            await store.create_payment("admin-1", COURSE_ID, "ORDER_1", Decimal("1"), "VND")

        conn.fetchrow.assert_not_called()
