"""
CoursePay - PostgreSQL Payment Store
Async database operations with asyncpg
"""
from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, List, Optional, Tuple

import asyncpg
import structlog

from coursepay.exceptions import (
    EnrollmentInsertError,
    InvalidTransitionError,
    PendingPaymentExistsError,
    ValidationError,
)
from coursepay.models import Course, Payment, PaymentOutcome, PaymentStatus, can_transition

logger = structlog.get_logger(__name__)

PENDING_INDEX = "uq_payments_pending_user_course"

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in PaymentStatus)


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def check_transition(old: PaymentStatus, new: PaymentStatus) -> None:
    """Same-status writes only annotate the row; anything else must be allowed"""
    if old is not new and not can_transition(old, new):
        raise InvalidTransitionError(f"Payment cannot move from '{old.value}' to '{new.value}'")


class PaymentTransaction:
    """
    Unit of work bound to one connection inside an open transaction.

    Obtained from ``PaymentStore.transaction()``; everything done through it
    commits or rolls back together.
    """

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def lock_payment(self, order_reference: str) -> Optional[Payment]:
        """Load a payment by order reference holding a row lock until commit"""
        row = await self._conn.fetchrow(
            "SELECT * FROM payments WHERE order_reference = $1 FOR UPDATE",
            order_reference,
        )
        return Payment.from_row(row) if row else None

    async def lock_payment_by_id(self, payment_id: str) -> Optional[Payment]:
        pid = _as_uuid(payment_id)
        if pid is None:
            return None
        row = await self._conn.fetchrow("SELECT * FROM payments WHERE id = $1 FOR UPDATE", pid)
        return Payment.from_row(row) if row else None

    async def insert_enrollment(self, user_id: str, course_id: str) -> None:
        """
        Insert the enrollment inside a savepoint.

        A failure rolls back only the savepoint, so the payment update in the
        enclosing transaction can still commit.
        """
        try:
            async with self._conn.transaction():
                await self._conn.execute(
                    "INSERT INTO enrollments (user_id, course_id) VALUES ($1, $2)",
                    _as_uuid(user_id) or user_id,
                    _as_uuid(course_id) or course_id,
                )
        except asyncpg.PostgresError as e:
            raise EnrollmentInsertError(f"Enrollment insert failed: {e}", original_error=e) from e

    async def record_outcome(
        self,
        payment: Payment,
        outcome: PaymentOutcome,
        action: str = "callback",
        created_by: Optional[str] = None,
    ) -> Payment:
        """Persist a status change with processor details and log the transition"""
        check_transition(payment.status, outcome.status)
        row = await self._conn.fetchrow("""
            UPDATE payments
            SET status = $2,
                transaction_id = COALESCE($3, transaction_id),
                response_code = COALESCE($4, response_code),
                paid_at = COALESCE($5, paid_at),
                bank_code = COALESCE($6, bank_code),
                card_type = COALESCE($7, card_type),
                updated_at = NOW()
            WHERE id = $1
            RETURNING *
        """,
            _as_uuid(payment.id),
            outcome.status.value,
            outcome.transaction_id,
            outcome.response_code,
            outcome.paid_at,
            outcome.bank_code,
            outcome.card_type,
        )
        await self.log_transition(
            payment.id,
            action,
            payment.status,
            outcome.status,
            {
                "transaction_id": outcome.transaction_id,
                "response_code": outcome.response_code,
            },
            created_by=created_by,
        )
        return Payment.from_row(row)

    async def mark_refunded(self, payment: Payment, amount: Decimal, created_by: Optional[str] = None) -> Payment:
        check_transition(payment.status, PaymentStatus.REFUNDED)
        row = await self._conn.fetchrow("""
            UPDATE payments
            SET status = $2, refund_amount = $3, refunded_at = NOW(), updated_at = NOW()
            WHERE id = $1
            RETURNING *
        """, _as_uuid(payment.id), PaymentStatus.REFUNDED.value, amount)
        await self.log_transition(
            payment.id,
            "refund",
            payment.status,
            PaymentStatus.REFUNDED,
            {"refund_amount": str(amount), "transaction_id": payment.transaction_id},
            created_by=created_by,
        )
        return Payment.from_row(row)

    async def cancel_pending_before(self, created_before: datetime) -> List[Payment]:
        rows = await self._conn.fetch("""
            UPDATE payments
            SET status = 'cancelled', updated_at = NOW()
            WHERE status = 'pending' AND created_at < $1
            RETURNING *
        """, created_before)
        return [Payment.from_row(row) for row in rows]

    async def log_transition(
        self,
        payment_id: str,
        action: str,
        old_status: Optional[PaymentStatus],
        new_status: PaymentStatus,
        details: Optional[dict] = None,
        created_by: Optional[str] = None,
    ) -> None:
        """Append an audit row for a status change"""
        await self._conn.execute("""
            INSERT INTO payment_logs (payment_id, action, old_status, new_status, details, created_by)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6)
        """,
            _as_uuid(payment_id),
            action,
            old_status.value if old_status else None,
            new_status.value,
            json.dumps(details or {}, ensure_ascii=False),
            created_by,
        )


class PaymentStore:
    """PostgreSQL persistence for payments"""

    def __init__(self, database_url: Optional[str] = None, pool: Optional[asyncpg.Pool] = None) -> None:
        self._database_url = database_url
        self._pool: Optional[asyncpg.Pool] = pool

    async def connect(self) -> None:
        """Initialize connection pool"""
        if not self._database_url:
            raise ValueError("DATABASE_URL not configured")

        self._pool = await asyncpg.create_pool(
            self._database_url,
            min_size=2,
            max_size=10,
        )
        logger.info("database_pool_created")

        await self._create_tables()

    async def close(self) -> None:
        """Close connection pool"""
        if self._pool:
            await self._pool.close()
            logger.info("database_pool_closed")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PaymentStore is not connected")
        return self._pool

    async def _create_tables(self) -> None:
        """Create payment tables if not exist (courses/enrollments are owned elsewhere)"""
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS payments (
                    id UUID PRIMARY KEY,
                    user_id UUID NOT NULL,
                    course_id UUID NOT NULL,
                    order_reference VARCHAR(100) UNIQUE NOT NULL,
                    amount NUMERIC(12,2) NOT NULL CHECK (amount >= 0),
                    currency VARCHAR(3) NOT NULL DEFAULT 'VND',
                    payment_method VARCHAR(50) NOT NULL DEFAULT 'vnpay',
                    status VARCHAR(50) NOT NULL DEFAULT 'pending'
                        CHECK (status IN ({_STATUS_VALUES})),
                    transaction_id VARCHAR(100),
                    response_code VARCHAR(10),
                    bank_code VARCHAR(20),
                    card_type VARCHAR(20),
                    paid_at TIMESTAMPTZ,
                    refund_amount NUMERIC(12,2) NOT NULL DEFAULT 0 CHECK (refund_amount >= 0),
                    refunded_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

            # One pending attempt per (user, course)
            await conn.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS {PENDING_INDEX}
                ON payments(user_id, course_id) WHERE status = 'pending'
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_payments_user_id ON payments(user_id)
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_payments_status ON payments(status)
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_payments_transaction_id ON payments(transaction_id)
            """)

            # Audit trail of status changes
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS payment_logs (
                    id BIGSERIAL PRIMARY KEY,
                    payment_id UUID NOT NULL REFERENCES payments(id),
                    action VARCHAR(50) NOT NULL,
                    old_status VARCHAR(50),
                    new_status VARCHAR(50),
                    details JSONB,
                    created_by VARCHAR(100),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_payment_logs_payment_id ON payment_logs(payment_id)
            """)

            logger.info("database_tables_verified")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PaymentTransaction]:
        """Run a unit of work atomically"""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield PaymentTransaction(conn)

    # ============== Collaborator lookups ==============

    async def get_course(self, course_id: str) -> Optional[Course]:
        cid = _as_uuid(course_id)
        if cid is None:
            return None
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, title, price, status FROM courses WHERE id = $1", cid
            )
        if not row:
            return None
        return Course(
            id=str(row["id"]),
            title=row["title"],
            price=Decimal(row["price"]),
            status=row["status"],
        )

    async def has_enrollment(self, user_id: str, course_id: str) -> bool:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT EXISTS (SELECT 1 FROM enrollments WHERE user_id = $1 AND course_id = $2)",
                _as_uuid(user_id), _as_uuid(course_id),
            )

    # ============== Payment Operations ==============

    async def has_pending_payment(self, user_id: str, course_id: str) -> bool:
        async with self.pool.acquire() as conn:
            return await conn.fetchval("""
                SELECT EXISTS (
                    SELECT 1 FROM payments
                    WHERE user_id = $1 AND course_id = $2 AND status = 'pending'
                )
            """, _as_uuid(user_id), _as_uuid(course_id))

    async def create_payment(
        self,
        user_id: str,
        course_id: str,
        order_reference: str,
        amount: Decimal,
        currency: str,
        payment_method: str = "vnpay",
    ) -> Payment:
        """Insert a pending payment"""
        uid = _as_uuid(user_id)
        if uid is None:
            raise ValidationError(f"Invalid user id: {user_id!r}")
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO payments (id, user_id, course_id, order_reference, amount, currency, payment_method, status)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, 'pending')
                    RETURNING *
                """,
                    uuid.uuid4(),
                    uid,
                    _as_uuid(course_id),
                    order_reference,
                    amount,
                    currency,
                    payment_method,
                )
        except asyncpg.UniqueViolationError as e:
            if e.constraint_name == PENDING_INDEX:
                raise PendingPaymentExistsError() from e
            raise
        return Payment.from_row(row)

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        pid = _as_uuid(payment_id)
        if pid is None:
            return None
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM payments WHERE id = $1", pid)
            return Payment.from_row(row) if row else None

    async def get_payment_by_order_reference(self, order_reference: str) -> Optional[Payment]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM payments WHERE order_reference = $1", order_reference
            )
            return Payment.from_row(row) if row else None

    async def list_payments(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0,
        status: Optional[PaymentStatus] = None,
    ) -> Tuple[List[Payment], int]:
        """Page through a user's payments, newest first; returns (page, total)"""
        uid = _as_uuid(user_id)
        if uid is None:
            return [], 0
        async with self.pool.acquire() as conn:
            if status:
                rows = await conn.fetch("""
                    SELECT * FROM payments
                    WHERE user_id = $1 AND status = $2
                    ORDER BY created_at DESC
                    LIMIT $3 OFFSET $4
                """, uid, status.value, limit, offset)
                total = await conn.fetchval(
                    "SELECT COUNT(*) FROM payments WHERE user_id = $1 AND status = $2",
                    uid, status.value,
                )
            else:
                rows = await conn.fetch("""
                    SELECT * FROM payments
                    WHERE user_id = $1
                    ORDER BY created_at DESC
                    LIMIT $2 OFFSET $3
                """, uid, limit, offset)
                total = await conn.fetchval(
                    "SELECT COUNT(*) FROM payments WHERE user_id = $1", uid
                )
            return [Payment.from_row(row) for row in rows], int(total or 0)

    async def cancel_expired(self, created_before: datetime) -> List[Payment]:
        """Move pending payments created before the cutoff to cancelled"""
        async with self.transaction() as tx:
            cancelled = await tx.cancel_pending_before(created_before)
            for payment in cancelled:
                await tx.log_transition(
                    payment.id, "expire", PaymentStatus.PENDING, PaymentStatus.CANCELLED
                )
        return cancelled

    # ============== Statistics ==============

    async def get_statistics(self) -> dict:
        """Totals, 30-day trend and top courses by revenue"""
        async with self.pool.acquire() as conn:
            summary = await conn.fetchrow("""
                SELECT
                    COUNT(*) AS total_payments,
                    COUNT(*) FILTER (WHERE status = 'completed') AS successful_payments,
                    COUNT(*) FILTER (WHERE status = 'failed') AS failed_payments,
                    COUNT(*) FILTER (WHERE status = 'pending') AS pending_payments,
                    COUNT(*) FILTER (WHERE status = 'completed_enrollment_failed') AS enrollment_failed_payments,
                    COALESCE(SUM(amount) FILTER (WHERE status = 'completed'), 0) AS total_revenue,
                    COALESCE(AVG(amount) FILTER (WHERE status = 'completed'), 0) AS average_payment
                FROM payments
            """)

            trend_rows = await conn.fetch("""
                SELECT
                    DATE(created_at) AS date,
                    COUNT(*) AS payment_count,
                    COALESCE(SUM(amount) FILTER (WHERE status = 'completed'), 0) AS revenue
                FROM payments
                WHERE created_at >= NOW() - INTERVAL '30 days'
                GROUP BY DATE(created_at)
                ORDER BY date
            """)

            top_rows = await conn.fetch("""
                SELECT p.course_id, c.title AS course_title,
                       COUNT(p.id) AS payment_count, SUM(p.amount) AS total_revenue
                FROM payments p
                JOIN courses c ON p.course_id = c.id
                WHERE p.status = 'completed'
                GROUP BY p.course_id, c.title
                ORDER BY total_revenue DESC
                LIMIT 10
            """)

        return {
            "summary": {
                "totalPayments": summary["total_payments"],
                "successfulPayments": summary["successful_payments"],
                "failedPayments": summary["failed_payments"],
                "pendingPayments": summary["pending_payments"],
                "enrollmentFailedPayments": summary["enrollment_failed_payments"],
                "totalRevenue": str(summary["total_revenue"]),
                "averagePayment": str(Decimal(summary["average_payment"]).quantize(Decimal("0.01"))),
            },
            "trends": [
                {
                    "date": row["date"].isoformat(),
                    "paymentCount": row["payment_count"],
                    "revenue": str(row["revenue"]),
                }
                for row in trend_rows
            ],
            "topCourses": [
                {
                    "courseId": str(row["course_id"]),
                    "courseTitle": row["course_title"],
                    "paymentCount": row["payment_count"],
                    "totalRevenue": str(row["total_revenue"]),
                }
                for row in top_rows
            ],
        }
