"""SQLAlchemy ORM models for the pharmacy settlement kernel."""

from pharmacy_kernel.models.audit_event import AuditAction, AuditEvent
from pharmacy_kernel.models.customer import (
    CreditTransaction,
    CreditTransactionType,
    Customer,
    CustomerStatus,
    LoyaltyTransaction,
    LoyaltyTransactionType,
)
from pharmacy_kernel.models.prescription import (
    DispensingEvent,
    DispensingLine,
    Prescription,
    PrescriptionItem,
    PrescriptionStatus,
)
from pharmacy_kernel.models.register import RegisterEntry, RegisterTransactionType
from pharmacy_kernel.models.sale import (
    PaymentMethod,
    PaymentStatus,
    SaleLine,
    SaleTransaction,
    SaleVoid,
)
from pharmacy_kernel.models.sequence import SequenceCounter
from pharmacy_kernel.models.stock_unit import StockReceipt, StockUnit, StockUnitStatus

__all__ = [
    "AuditAction",
    "AuditEvent",
    "CreditTransaction",
    "CreditTransactionType",
    "Customer",
    "CustomerStatus",
    "DispensingEvent",
    "DispensingLine",
    "LoyaltyTransaction",
    "LoyaltyTransactionType",
    "PaymentMethod",
    "PaymentStatus",
    "Prescription",
    "PrescriptionItem",
    "PrescriptionStatus",
    "RegisterEntry",
    "RegisterTransactionType",
    "SaleLine",
    "SaleTransaction",
    "SaleVoid",
    "SequenceCounter",
    "StockReceipt",
    "StockUnit",
    "StockUnitStatus",
]
