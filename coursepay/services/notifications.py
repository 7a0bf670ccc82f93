"""
CoursePay - Operator alerts
Telegram notifications for payments that need manual repair
"""
from __future__ import annotations

from typing import List

import structlog
from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from coursepay.models import Payment

logger = structlog.get_logger(__name__)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(TelegramAPIError),
    reraise=True,
)
async def send_notification(
    bot: Bot,
    chat_id: int,
    message_text: str,
    parse_mode: str = "HTML",
) -> bool:
    """Send one message, retrying Telegram API errors"""
    await bot.send_message(
        chat_id=chat_id,
        text=message_text,
        parse_mode=parse_mode,
    )
    return True


def format_enrollment_alert(payment: Payment, error: Exception) -> str:
    return (
        f"🚨 <b>Enrollment failed after payment</b>\n\n"
        f"Payment: <code>{payment.id}</code>\n"
        f"Order: <code>{payment.order_reference}</code>\n"
        f"Transaction: <code>{payment.transaction_id or '-'}</code>\n"
        f"User: <code>{payment.user_id}</code>\n"
        f"Course: <code>{payment.course_id}</code>\n"
        f"Amount: {payment.amount} {payment.currency}\n\n"
        f"Error: {error}\n\n"
        f"Money has been received but access was not granted. Enroll the user manually."
    )


def format_late_payment_alert(payment: Payment) -> str:
    return (
        f"⚠️ <b>Payment received for a cancelled order</b>\n\n"
        f"Payment: <code>{payment.id}</code>\n"
        f"Order: <code>{payment.order_reference}</code>\n"
        f"Transaction: <code>{payment.transaction_id or '-'}</code>\n"
        f"User: <code>{payment.user_id}</code>\n"
        f"Course: <code>{payment.course_id}</code>\n"
        f"Amount: {payment.amount} {payment.currency}\n\n"
        f"The order expired before VNPay confirmed it. Reconcile it with includeFailed to enroll the user."
    )


class EnrollmentAlertNotifier:
    """Pushes payments that need manual repair to admin chats"""

    def __init__(self, bot: Bot, admin_chat_ids: List[int]) -> None:
        self.bot = bot
        self.admin_chat_ids = admin_chat_ids

    async def notify_enrollment_failed(self, payment: Payment, error: Exception) -> int:
        """
        Notify every admin chat.

        Returns:
            Number of chats notified; delivery errors are logged, never raised
        """
        return await self._broadcast(format_enrollment_alert(payment, error), payment, "enrollment_failed")

    async def notify_paid_after_cancel(self, payment: Payment) -> int:
        """Notify every admin chat about money received for a cancelled payment"""
        return await self._broadcast(format_late_payment_alert(payment), payment, "paid_after_cancel")

    async def _broadcast(self, message: str, payment: Payment, kind: str) -> int:
        sent = 0

        for admin_id in self.admin_chat_ids:
            try:
                await send_notification(self.bot, admin_id, message)
                sent += 1
            except TelegramAPIError as e:
                logger.error(
                    "operator_alert_failed",
                    kind=kind,
                    chat_id=admin_id,
                    payment_id=payment.id,
                    error=str(e),
                )

        logger.info("operator_alert_sent", kind=kind, payment_id=payment.id, sent=sent)
        return sent

    async def close(self) -> None:
        await self.bot.session.close()
