"""
CoursePay - Payment reconciliation

Turns an authenticated processor outcome into a persisted payment state and,
on success, a course enrollment. Used by the return callback and by the
administrative reconcile flow.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Collection, Mapping, Optional, Set

import structlog

from coursepay.exceptions import (
    EnrollmentInsertError,
    PaymentAuthenticationError,
    PaymentNotFoundError,
)
from coursepay.models import (
    GatewayResponse,
    Payment,
    PaymentOutcome,
    PaymentStatus,
    ReconciliationResult,
    ReturnParams,
)
from coursepay.models.gateway import SUCCESS_CODE, parse_vnpay_date
from coursepay.services.database import PaymentStore
from coursepay.services.response_codes import is_success, response_message
from coursepay.services.vnpay import VNPayClient, from_minor_units, to_minor_units

logger = structlog.get_logger(__name__)

LATE_PAYMENT_MESSAGE = (
    "Thanh toán đã được ghi nhận sau khi đơn hàng hết hạn. "
    "Bộ phận hỗ trợ sẽ kích hoạt khóa học cho bạn."
)


class ReconciliationCoordinator:
    """
    Applies processor outcomes to payments.

    Args:
        client: VNPay client, used for signature verification
        store: Payment store providing the transactional unit of work
        notifier: Optional operator alert sink with
            ``notify_enrollment_failed(payment, error)`` and
            ``notify_paid_after_cancel(payment)``

    Alerts are sent as background tasks; ``wait_for_alerts`` drains them.
    """

    def __init__(self, client: VNPayClient, store: PaymentStore, notifier: Any = None) -> None:
        self.client = client
        self.store = store
        self.notifier = notifier
        self._alert_tasks: Set[asyncio.Task] = set()

    async def handle_return(self, params: Mapping[str, Any]) -> ReconciliationResult:
        """
        Process a return callback.

        Raises:
            PaymentAuthenticationError: signature mismatch, nothing is written
            PaymentNotFoundError: order reference is unknown
        """
        callback = ReturnParams.from_query(params)

        with structlog.contextvars.bound_contextvars(
            order_reference=callback.order_reference,
            transaction_id=callback.transaction_id,
        ):
            if not self.client.verify_return(callback.raw):
                logger.warning("return_signature_mismatch", params=callback.raw)
                raise PaymentAuthenticationError()

            payment = await self.store.get_payment_by_order_reference(callback.order_reference)
            if payment is None:
                logger.warning("return_unknown_order_reference")
                raise PaymentNotFoundError()

            if payment.status is PaymentStatus.CANCELLED and is_success(callback.response_code):
                return await self._record_late_success(callback)

            if payment.status.is_terminal:
                logger.info("return_already_processed", status=payment.status.value)
                return self._recorded(payment)

            if callback.amount_minor is not None and callback.amount_minor != to_minor_units(payment.amount):
                logger.warning(
                    "return_amount_mismatch",
                    expected_minor=to_minor_units(payment.amount),
                    received_minor=callback.amount_minor,
                )

            amount = from_minor_units(callback.amount_minor) if callback.amount_minor is not None else payment.amount
            paid_at = parse_vnpay_date(callback.pay_date, self.client.settings.timezone)

            if is_success(callback.response_code):
                result = await self._apply_success(
                    payment.order_reference,
                    allowed_from=(PaymentStatus.PENDING,),
                    transaction_id=callback.transaction_id,
                    response_code=callback.response_code,
                    paid_at=paid_at,
                    bank_code=callback.bank_code,
                    card_type=callback.card_type,
                    amount=amount,
                    action="callback",
                )
                if result.status is PaymentStatus.CANCELLED and not result.transaction_id:
                    # Swept between the lookup and the row lock
                    return await self._record_late_success(callback)
                return result

            return await self._apply_failure(
                payment.order_reference,
                transaction_id=callback.transaction_id,
                response_code=callback.response_code,
                paid_at=paid_at,
                bank_code=callback.bank_code,
                card_type=callback.card_type,
                amount=amount,
            )

    async def reconcile(
        self,
        payment: Payment,
        gateway_response: GatewayResponse,
        include_failed: bool = False,
        initiated_by: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Apply a processor-confirmed success found by a status query.

        Moves pending (and, with ``include_failed``, failed or cancelled)
        payments to completed through the same path as the callback. Any
        other answer, including an unknown status, leaves the payment
        untouched.
        """
        with structlog.contextvars.bound_contextvars(
            order_reference=payment.order_reference,
            transaction_id=gateway_response.transaction_id,
        ):
            allowed_from = [PaymentStatus.PENDING]
            if include_failed:
                allowed_from.extend((PaymentStatus.FAILED, PaymentStatus.CANCELLED))

            if payment.status not in allowed_from:
                logger.info("reconcile_skipped_status", status=payment.status.value)
                return self._recorded(payment)

            if not gateway_response.is_paid:
                logger.info(
                    "reconcile_not_confirmed",
                    status_unknown=gateway_response.status_unknown,
                    response_code=gateway_response.response_code,
                    transaction_status=gateway_response.transaction_status,
                )
                return self._recorded(
                    payment,
                    already_processed=False,
                    message=gateway_response.message or response_message(gateway_response.response_code),
                )

            return await self._apply_success(
                payment.order_reference,
                allowed_from=tuple(allowed_from),
                transaction_id=gateway_response.transaction_id,
                response_code=SUCCESS_CODE,
                paid_at=parse_vnpay_date(gateway_response.pay_date, self.client.settings.timezone),
                bank_code=None,
                card_type=None,
                amount=payment.amount,
                action="reconcile",
                created_by=initiated_by,
            )

    # ============== Transactional paths ==============

    async def _apply_success(
        self,
        order_reference: str,
        allowed_from: Collection[PaymentStatus],
        transaction_id: Optional[str],
        response_code: Optional[str],
        paid_at: Optional[datetime],
        bank_code: Optional[str],
        card_type: Optional[str],
        amount: Decimal,
        action: str,
        created_by: Optional[str] = None,
    ) -> ReconciliationResult:
        enrollment_error: Optional[EnrollmentInsertError] = None

        async with self.store.transaction() as tx:
            locked = await tx.lock_payment(order_reference)
            if locked is None:
                raise PaymentNotFoundError()
            if locked.status not in allowed_from:
                # Lost the race to a concurrent delivery
                logger.info("return_already_processed", status=locked.status.value)
                return self._recorded(locked)

            status = PaymentStatus.COMPLETED
            try:
                await tx.insert_enrollment(locked.user_id, locked.course_id)
            except EnrollmentInsertError as e:
                status = PaymentStatus.COMPLETED_ENROLLMENT_FAILED
                enrollment_error = e

            updated = await tx.record_outcome(
                locked,
                PaymentOutcome(
                    status=status,
                    transaction_id=transaction_id,
                    response_code=response_code,
                    paid_at=paid_at or datetime.now().astimezone(),
                    bank_code=bank_code,
                    card_type=card_type,
                ),
                action=action,
                created_by=created_by,
            )

        if enrollment_error is not None:
            logger.critical(
                "enrollment_failed_after_payment",
                payment_id=updated.id,
                user_id=updated.user_id,
                course_id=updated.course_id,
                error=str(enrollment_error),
            )
            if self.notifier is not None:
                self._spawn_alert(self.notifier.notify_enrollment_failed(updated, enrollment_error))
        else:
            logger.info(
                "payment_completed",
                payment_id=updated.id,
                user_id=updated.user_id,
                course_id=updated.course_id,
            )

        return ReconciliationResult(
            payment_id=updated.id,
            order_reference=updated.order_reference,
            status=updated.status,
            enrollment_created=enrollment_error is None,
            message=response_message(SUCCESS_CODE),
            response_code=updated.response_code,
            transaction_id=updated.transaction_id,
            amount=amount,
        )

    async def _apply_failure(
        self,
        order_reference: str,
        transaction_id: Optional[str],
        response_code: Optional[str],
        paid_at: Optional[datetime],
        bank_code: Optional[str],
        card_type: Optional[str],
        amount: Decimal,
    ) -> ReconciliationResult:
        async with self.store.transaction() as tx:
            locked = await tx.lock_payment(order_reference)
            if locked is None:
                raise PaymentNotFoundError()
            if locked.status is not PaymentStatus.PENDING:
                logger.info("return_already_processed", status=locked.status.value)
                return self._recorded(locked)

            updated = await tx.record_outcome(
                locked,
                PaymentOutcome(
                    status=PaymentStatus.FAILED,
                    transaction_id=transaction_id,
                    response_code=response_code,
                    paid_at=paid_at,
                    bank_code=bank_code,
                    card_type=card_type,
                ),
            )

        message = response_message(response_code)
        logger.info("payment_failed", payment_id=updated.id, response_code=response_code, message=message)

        return ReconciliationResult(
            payment_id=updated.id,
            order_reference=updated.order_reference,
            status=updated.status,
            enrollment_created=False,
            message=message,
            response_code=response_code,
            transaction_id=updated.transaction_id,
            amount=amount,
        )

    async def _record_late_success(self, callback: ReturnParams) -> ReconciliationResult:
        """
        Success callback for a payment the expiry sweep already cancelled.

        The money was taken, so the processor details are stored on the
        cancelled row and operators are alerted; no enrollment is created
        here. ``reconcile(..., include_failed=True)`` completes it.
        """
        async with self.store.transaction() as tx:
            locked = await tx.lock_payment(callback.order_reference)
            if locked is None:
                raise PaymentNotFoundError()
            if locked.status is not PaymentStatus.CANCELLED or locked.transaction_id:
                logger.info("return_already_processed", status=locked.status.value)
                return self._recorded(locked)

            updated = await tx.record_outcome(
                locked,
                PaymentOutcome(
                    status=PaymentStatus.CANCELLED,
                    transaction_id=callback.transaction_id,
                    response_code=callback.response_code,
                    paid_at=parse_vnpay_date(callback.pay_date, self.client.settings.timezone)
                    or datetime.now().astimezone(),
                    bank_code=callback.bank_code,
                    card_type=callback.card_type,
                ),
                action="late_success",
            )

        logger.critical(
            "payment_succeeded_after_cancel",
            payment_id=updated.id,
            user_id=updated.user_id,
            course_id=updated.course_id,
            amount_minor=callback.amount_minor,
        )
        if self.notifier is not None:
            self._spawn_alert(self.notifier.notify_paid_after_cancel(updated))

        return ReconciliationResult(
            payment_id=updated.id,
            order_reference=updated.order_reference,
            status=updated.status,
            enrollment_created=False,
            message=LATE_PAYMENT_MESSAGE,
            response_code=updated.response_code,
            transaction_id=updated.transaction_id,
            amount=from_minor_units(callback.amount_minor) if callback.amount_minor is not None else updated.amount,
        )

    # ============== Operator alerts ==============

    def _spawn_alert(self, alert: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(alert)
        self._alert_tasks.add(task)
        task.add_done_callback(self._alert_done)

    def _alert_done(self, task: asyncio.Task) -> None:
        self._alert_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("operator_alert_failed", error=str(error), exc_info=error)

    async def wait_for_alerts(self) -> None:
        """Wait until every alert sent so far has finished"""
        if self._alert_tasks:
            await asyncio.gather(*self._alert_tasks, return_exceptions=True)

    @staticmethod
    def _recorded(
        payment: Payment,
        already_processed: bool = True,
        message: Optional[str] = None,
    ) -> ReconciliationResult:
        """Result describing the state already stored, nothing was written"""
        return ReconciliationResult(
            payment_id=payment.id,
            order_reference=payment.order_reference,
            status=payment.status,
            enrollment_created=False,
            message=message or response_message(payment.response_code),
            response_code=payment.response_code,
            transaction_id=payment.transaction_id,
            amount=payment.amount,
            already_processed=already_processed,
        )
