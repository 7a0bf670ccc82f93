"""
CoursePay - Payment Models
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class PaymentStatus(str, Enum):
    """Payment lifecycle states"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPLETED_ENROLLMENT_FAILED = "completed_enrollment_failed"  # Paid, access not granted
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        """No callback-driven transition leaves a terminal state"""
        return self is not PaymentStatus.PENDING

    @property
    def is_paid(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.COMPLETED_ENROLLMENT_FAILED)


# Allowed forward transitions; nothing ever returns to PENDING
TRANSITIONS: Dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.COMPLETED_ENROLLMENT_FAILED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.FAILED: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.COMPLETED_ENROLLMENT_FAILED,
    }),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.COMPLETED_ENROLLMENT_FAILED: frozenset({PaymentStatus.REFUNDED}),
    # Paid after the expiry sweep cancelled it, settled by reconciliation
    PaymentStatus.CANCELLED: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.COMPLETED_ENROLLMENT_FAILED,
    }),
    PaymentStatus.REFUNDED: frozenset(),
}


def can_transition(old: PaymentStatus, new: PaymentStatus) -> bool:
    return new in TRANSITIONS[old]


@dataclass
class Course:
    """Course as seen by the purchase flow"""
    id: str
    title: str
    price: Decimal
    status: str

    @property
    def is_published(self) -> bool:
        return self.status == "published"


@dataclass
class Payment:
    """One purchase attempt, mirrors a row of the payments table"""
    id: str
    user_id: str
    course_id: str
    order_reference: str
    amount: Decimal
    currency: str
    payment_method: str
    status: PaymentStatus
    created_at: datetime
    updated_at: datetime
    transaction_id: Optional[str] = None
    response_code: Optional[str] = None
    bank_code: Optional[str] = None
    card_type: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_amount: Decimal = Decimal("0")
    refunded_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "Payment":
        """Create Payment from a database record"""
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            course_id=str(row["course_id"]),
            order_reference=row["order_reference"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            payment_method=row["payment_method"],
            status=PaymentStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            transaction_id=row["transaction_id"],
            response_code=row["response_code"],
            bank_code=row["bank_code"],
            card_type=row["card_type"],
            paid_at=row["paid_at"],
            refund_amount=Decimal(row["refund_amount"] or 0),
            refunded_at=row["refunded_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation"""
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "userId": self.user_id,
            "courseId": self.course_id,
            "orderReference": self.order_reference,
            "amount": str(self.amount),
            "currency": self.currency,
            "paymentMethod": self.payment_method,
            "status": self.status.value,
            "transactionId": self.transaction_id,
            "responseCode": self.response_code,
            "bankCode": self.bank_code,
            "cardType": self.card_type,
            "paidAt": iso(self.paid_at),
            "refundAmount": str(self.refund_amount),
            "refundedAt": iso(self.refunded_at),
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


@dataclass
class PaymentOutcome:
    """Terminal state to persist for a payment"""
    status: PaymentStatus
    transaction_id: Optional[str] = None
    response_code: Optional[str] = None
    paid_at: Optional[datetime] = None
    bank_code: Optional[str] = None
    card_type: Optional[str] = None


@dataclass
class ReconciliationResult:
    """What the return callback (or an admin reconciliation) ended with"""
    payment_id: str
    order_reference: str
    status: PaymentStatus
    enrollment_created: bool
    message: str
    response_code: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    already_processed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.payment_id,
            "orderReference": self.order_reference,
            "status": self.status.value,
            "enrollmentCreated": self.enrollment_created,
            "message": self.message,
            "responseCode": self.response_code,
            "transactionId": self.transaction_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "alreadyProcessed": self.already_processed,
        }


@dataclass
class PaymentRequestResult:
    """Returned to the caller that starts a purchase"""
    payment_id: str
    order_reference: str
    redirect_url: str
    amount: Decimal
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.payment_id,
            "orderReference": self.order_reference,
            "amount": str(self.amount),
            "currency": self.currency,
            "paymentUrl": self.redirect_url,
        }
