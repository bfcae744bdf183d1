"""
Models package. Импорт всех моделей регистрирует таблицы в Base.metadata
(нужно для create_all в тестах и autogenerate в alembic).
"""

from rentcollect.models.base import Base, BaseModel
from rentcollect.models.invoice import ALLOCATABLE_INVOICE_STATUSES, Invoice, InvoiceStatus
from rentcollect.models.mpesa import (
    TERMINAL_MPESA_STATUSES,
    MpesaTransaction,
    MpesaTransactionStatus,
    MpesaTransactionType,
)
from rentcollect.models.payment import Payment, PaymentAllocation, PaymentMethod, PaymentStatus
from rentcollect.models.property import LandlordPaymentAccount, PaymentAccountType, Property, Tenant, Unit
from rentcollect.models.unmatched import UnmatchedPayment, UnmatchedPaymentStatus

__all__ = [
    "Base",
    "BaseModel",
    "Property",
    "Unit",
    "Tenant",
    "LandlordPaymentAccount",
    "PaymentAccountType",
    "Invoice",
    "InvoiceStatus",
    "ALLOCATABLE_INVOICE_STATUSES",
    "Payment",
    "PaymentAllocation",
    "PaymentMethod",
    "PaymentStatus",
    "UnmatchedPayment",
    "UnmatchedPaymentStatus",
    "MpesaTransaction",
    "MpesaTransactionType",
    "MpesaTransactionStatus",
    "TERMINAL_MPESA_STATUSES",
]
