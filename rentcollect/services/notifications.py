"""
Fire-and-forget payment notifications.

Реальная доставка (SMS / email) живёт во внешнем сервисе; здесь только хук,
который вызывается после commit и не влияет на результат операции.
"""

from __future__ import annotations

from typing import Optional

from rentcollect.core.logging import get_logger
from rentcollect.models.payment import Payment

logger = get_logger(__name__)


class PaymentNotifier:
    """Default notifier: пишет событие в лог."""

    async def payment_recorded(self, payment: Payment, *, source: str = "mpesa") -> None:
        logger.info(
            "payment_recorded",
            payment_id=payment.id,
            tenant_id=payment.tenant_id,
            amount=str(payment.amount),
            reference=payment.external_transaction_reference,
            source=source,
        )


_notifier: Optional[PaymentNotifier] = None


def get_payment_notifier() -> PaymentNotifier:
    global _notifier
    if _notifier is None:
        _notifier = PaymentNotifier()
    return _notifier


def set_payment_notifier(notifier: Optional[PaymentNotifier]) -> None:
    global _notifier
    _notifier = notifier


async def notify_payment_recorded(payment: Payment, *, source: str = "mpesa") -> None:
    """Ошибки уведомителя логируются и не поднимаются: платёж уже зафиксирован."""
    try:
        await get_payment_notifier().payment_recorded(payment, source=source)
    except Exception as e:
        logger.warning("Payment notifier failed", payment_id=payment.id, error=str(e))


__all__ = ["PaymentNotifier", "get_payment_notifier", "set_payment_notifier", "notify_payment_recorded"]
