"""
CoursePay - Payment Service
Course purchase flow on top of the VNPay client, the payment store and the
reconciliation coordinator.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from coursepay.exceptions import (
    AlreadyEnrolledError,
    ConfigurationError,
    CourseNotFoundError,
    InvalidAmountError,
    InvalidTransitionError,
    PaymentNotFoundError,
    PaymentsDisabledError,
    PendingPaymentExistsError,
    ValidationError,
)
from coursepay.models import (
    GatewayResponse,
    Payment,
    PaymentRequestResult,
    PaymentStatus,
    ReconciliationResult,
)
from coursepay.services.database import PaymentStore
from coursepay.services.reconciliation import ReconciliationCoordinator
from coursepay.services.response_codes import PAYMENT_METHODS
from coursepay.services.vnpay import Amount, VNPayClient, to_minor_units

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100


@dataclass
class PaymentStatusReport:
    """Stored payment next to the processor's live answer"""
    payment: Payment
    gateway: GatewayResponse

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment": self.payment.to_dict(),
            "currentStatus": self.payment.status.value,
            "queryResult": self.gateway.to_dict(),
        }


@dataclass
class ReconciliationReport:
    result: ReconciliationResult
    gateway: GatewayResponse

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reconciliation": self.result.to_dict(),
            "queryResult": self.gateway.to_dict(),
        }


def generate_order_reference(user_id: str, now: datetime) -> str:
    """ORDER_<epoch ms>_<last 8 of user id>_<random suffix>"""
    millis = int(now.timestamp() * 1000)
    return f"ORDER_{millis}_{user_id.replace('-', '')[-8:]}_{uuid.uuid4().hex[:6]}"


class PaymentService:
    """Operations exposed to the surrounding application"""

    def __init__(
        self,
        store: PaymentStore,
        client: VNPayClient,
        coordinator: Optional[ReconciliationCoordinator] = None,
        enabled: bool = True,
        currency: str = "VND",
        payment_method: str = "vnpay",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.coordinator = coordinator or ReconciliationCoordinator(client, store)
        self.enabled = enabled
        self.currency = currency
        self.payment_method = payment_method
        self._clock = clock or (lambda: datetime.now().astimezone())

    # ============== Purchase ==============

    async def create_payment_request(
        self,
        course_id: str,
        user_id: str,
        client_ip: str,
        bank_code: Optional[str] = None,
    ) -> PaymentRequestResult:
        """
        Start a purchase: record a pending payment and build the redirect URL.

        Every check runs before the processor is involved.

        Raises:
            PaymentsDisabledError: purchasing is switched off
            CourseNotFoundError: course missing or not published
            AlreadyEnrolledError: user already has access
            PendingPaymentExistsError: an attempt for this course is in flight
        """
        if not self.enabled:
            raise PaymentsDisabledError()
        if not self.client.is_configured():
            raise ConfigurationError("Payment processor is not configured")

        course = await self.store.get_course(course_id)
        if course is None or not course.is_published:
            raise CourseNotFoundError()

        if await self.store.has_enrollment(user_id, course.id):
            raise AlreadyEnrolledError()

        if await self.store.has_pending_payment(user_id, course.id):
            raise PendingPaymentExistsError()

        # No row is written unless the redirect URL could be built
        order_reference = generate_order_reference(user_id, self._clock())
        redirect_url = self.client.build_payment_url(
            order_reference=order_reference,
            amount=course.price,
            description=f"Thanh toan khoa hoc: {course.title}",
            client_ip=client_ip,
            bank_code=bank_code,
        )

        payment = await self.store.create_payment(
            user_id=user_id,
            course_id=course.id,
            order_reference=order_reference,
            amount=course.price,
            currency=self.currency,
            payment_method=self.payment_method,
        )

        logger.info(
            "payment_created",
            payment_id=payment.id,
            order_reference=order_reference,
            course_id=course.id,
            user_id=user_id,
            amount=str(course.price),
        )

        return PaymentRequestResult(
            payment_id=payment.id,
            order_reference=order_reference,
            redirect_url=redirect_url,
            amount=course.price,
            currency=self.currency,
        )

    async def handle_return_callback(self, raw_query_params: Mapping[str, Any]) -> ReconciliationResult:
        return await self.coordinator.handle_return(raw_query_params)

    # ============== Lookups ==============

    async def get_payment(self, payment_id: str) -> Payment:
        payment = await self.store.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError()
        return payment

    async def list_payments(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Paged payment history of one user, newest first"""
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        status_filter = None
        if status:
            try:
                status_filter = PaymentStatus(status)
            except ValueError as e:
                raise ValidationError(f"Unknown payment status: {status}") from e

        payments, total = await self.store.list_payments(
            user_id,
            limit=limit,
            offset=(page - 1) * limit,
            status=status_filter,
        )
        return {
            "payments": payments,
            "total": total,
            "currentPage": page,
            "totalPages": (total + limit - 1) // limit,
        }

    async def get_statistics(self) -> dict:
        return await self.store.get_statistics()

    def get_payment_methods(self) -> Dict[str, Any]:
        return {
            "methods": list(PAYMENT_METHODS),
            "currency": self.currency,
            "enabled": self.enabled,
        }

    # ============== Processor reconciliation ==============

    async def query_payment_status(self, payment_id: str, client_ip: str) -> PaymentStatusReport:
        """
        Fetch the processor's live status next to the stored one.

        Read only: the payment is never modified here.
        """
        payment = await self.get_payment(payment_id)
        gateway = await self.client.query_status(
            order_reference=payment.order_reference,
            transaction_date=payment.created_at,
            client_ip=client_ip,
        )
        logger.info(
            "payment_status_queried",
            payment_id=payment.id,
            order_reference=payment.order_reference,
            transaction_id=gateway.transaction_id or payment.transaction_id,
            stored_status=payment.status.value,
            status_unknown=gateway.status_unknown,
            response_code=gateway.response_code,
        )
        return PaymentStatusReport(payment=payment, gateway=gateway)

    async def reconcile_payment(
        self,
        payment_id: str,
        client_ip: str,
        include_failed: bool = False,
        initiated_by: Optional[str] = None,
    ) -> ReconciliationReport:
        """Query the processor and apply a confirmed success to the payment"""
        report = await self.query_payment_status(payment_id, client_ip)
        result = await self.coordinator.reconcile(
            report.payment,
            report.gateway,
            include_failed=include_failed,
            initiated_by=initiated_by,
        )
        return ReconciliationReport(result=result, gateway=report.gateway)

    async def refund_payment(
        self,
        payment_id: str,
        initiated_by: str,
        client_ip: str,
        amount: Optional[Amount] = None,
    ) -> PaymentStatusReport:
        """
        Refund a paid payment, fully by default.

        The payment moves to refunded only when the processor accepts the
        request. A refund with an unknown outcome leaves it unchanged; settle
        it with ``query_payment_status``.
        """
        payment = await self.get_payment(payment_id)
        if not payment.status.is_paid or not payment.transaction_id:
            raise InvalidTransitionError(
                f"Payment in status '{payment.status.value}' cannot be refunded"
            )

        refund_amount = payment.amount if amount is None else Decimal(to_minor_units(amount)) / 100
        if refund_amount <= 0 or refund_amount > payment.amount:
            raise InvalidAmountError(f"Refund amount must be between 0 and {payment.amount}")

        gateway = await self.client.refund(
            order_reference=payment.order_reference,
            amount=refund_amount,
            transaction_id=payment.transaction_id,
            transaction_date=payment.created_at,
            initiated_by=initiated_by,
            client_ip=client_ip,
            full=refund_amount == payment.amount,
        )

        if gateway.status_unknown:
            logger.warning(
                "refund_status_unknown",
                payment_id=payment.id,
                order_reference=payment.order_reference,
                transaction_id=payment.transaction_id,
                error=gateway.error,
            )
            return PaymentStatusReport(payment=payment, gateway=gateway)

        if not gateway.is_accepted:
            logger.warning(
                "refund_rejected",
                payment_id=payment.id,
                order_reference=payment.order_reference,
                transaction_id=payment.transaction_id,
                response_code=gateway.response_code,
                message=gateway.message,
            )
            return PaymentStatusReport(payment=payment, gateway=gateway)

        async with self.store.transaction() as tx:
            locked = await tx.lock_payment_by_id(payment.id)
            if locked is None:
                raise PaymentNotFoundError()
            if locked.status.is_paid:
                payment = await tx.mark_refunded(locked, refund_amount, created_by=initiated_by)
            else:
                payment = locked

        logger.info(
            "payment_refunded",
            payment_id=payment.id,
            order_reference=payment.order_reference,
            transaction_id=payment.transaction_id,
            refund_amount=str(refund_amount),
        )
        return PaymentStatusReport(payment=payment, gateway=gateway)

    async def cancel_expired_payments(self, older_than: Optional[timedelta] = None) -> List[Payment]:
        """Cancel pending payments whose redirect window has long passed"""
        if older_than is None:
            older_than = timedelta(minutes=self.client.settings.expire_minutes)
        cutoff = self._clock() - older_than

        cancelled = await self.store.cancel_expired(cutoff)
        if cancelled:
            logger.info(
                "expired_payments_cancelled",
                count=len(cancelled),
                order_references=[p.order_reference for p in cancelled],
            )
        return cancelled
