"""
Admin Notification Service - payment incidents that need a human

Every incident is logged at CRITICAL (the log pipeline pages on it) and, when
a Telegram admin chat is configured, posted there too. Delivery problems are
logged and never propagate into the payment flow.
"""
import html
from decimal import Decimal
from typing import Optional

import httpx

from lms.core.circuit_breaker import get_telegram_circuit_breaker
from lms.core.config import settings
from lms.core.exceptions import TelegramError
from lms.core.logging import get_logger

logger = get_logger(__name__)


def _fmt(value: Optional[object]) -> str:
    return html.escape(str(value)) if value not in (None, "") else "-"


class AdminNotificationService:

    @staticmethod
    async def notify_enrollment_incomplete(
        *,
        reason: str,
        gateway_payment_id: Optional[str],
        transaction_ref: Optional[str],
        user_id: Optional[str],
        course_slug: Optional[str],
        amount: Optional[Decimal],
    ) -> bool:
        """A confirmed payment could not be turned into course access"""
        logger.critical(
            "Paid customer without course access",
            extra_data={
                "reason": reason,
                "gateway_payment_id": gateway_payment_id,
                "transaction_ref": transaction_ref,
                "user_id": user_id,
                "course_slug": course_slug,
                "amount": str(amount) if amount is not None else None,
            },
        )
        text = (
            "<b>Payment confirmed but enrollment incomplete</b>\n"
            f"Reason: {_fmt(reason)}\n"
            f"Gateway payment: {_fmt(gateway_payment_id)}\n"
            f"Reference: {_fmt(transaction_ref)}\n"
            f"User: {_fmt(user_id)}\n"
            f"Course: {_fmt(course_slug)}\n"
            f"Amount: {_fmt(amount)}"
        )
        return await AdminNotificationService._send_admin_message(text)

    @staticmethod
    async def notify_refund(
        *,
        transaction_ref: str,
        gateway_payment_id: Optional[str],
        user_id: Optional[str],
        course_slug: Optional[str],
    ) -> bool:
        """Refunds leave access in place until an admin decides"""
        logger.warning(
            "Payment refunded at gateway",
            extra_data={
                "transaction_ref": transaction_ref,
                "gateway_payment_id": gateway_payment_id,
                "user_id": user_id,
                "course_slug": course_slug,
            },
        )
        text = (
            "<b>Payment refunded</b>\n"
            f"Reference: {_fmt(transaction_ref)}\n"
            f"Gateway payment: {_fmt(gateway_payment_id)}\n"
            f"User: {_fmt(user_id)}\n"
            f"Course: {_fmt(course_slug)}\n"
            "Course access was not revoked automatically."
        )
        return await AdminNotificationService._send_admin_message(text)

    @staticmethod
    async def notify_bank_transfer_submitted(
        *,
        transaction_ref: str,
        user_id: str,
        course_slug: str,
        amount: Decimal,
    ) -> bool:
        logger.info(
            "Bank transfer submitted for review",
            extra_data={
                "transaction_ref": transaction_ref,
                "user_id": user_id,
                "course_slug": course_slug,
                "amount": str(amount),
            },
        )
        text = (
            "<b>New bank transfer awaiting approval</b>\n"
            f"Reference: {_fmt(transaction_ref)}\n"
            f"User: {_fmt(user_id)}\n"
            f"Course: {_fmt(course_slug)}\n"
            f"Amount: {_fmt(amount)}"
        )
        return await AdminNotificationService._send_admin_message(text)

    @staticmethod
    async def _send_admin_message(text: str) -> bool:
        if not settings.TELEGRAM_BOT_TOKEN or not settings.TELEGRAM_ADMIN_CHAT_ID:
            return False

        url = f"https://api.telegram.org/bot{settings.TELEGRAM_BOT_TOKEN}/sendMessage"
        payload = {
            "chat_id": settings.TELEGRAM_ADMIN_CHAT_ID,
            "text": text,
            "parse_mode": "HTML",
        }

        async def _send() -> bool:
            async with httpx.AsyncClient() as client:
                response = await client.post(url, json=payload, timeout=10.0)
            if response.status_code != 200:
                raise TelegramError(
                    f"sendMessage returned status {response.status_code}",
                    details={"status_code": response.status_code, "response_text": response.text[:500]},
                )
            return True

        try:
            return await get_telegram_circuit_breaker().execute(_send)
        except Exception as e:
            logger.error(
                "Error sending admin Telegram message",
                extra_data={"chat_id": settings.TELEGRAM_ADMIN_CHAT_ID, "error": str(e)},
                exc_info=True,
            )
            return False
