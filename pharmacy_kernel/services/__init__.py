"""Services for the pharmacy kernel (write side)."""

from pharmacy_kernel.services.auditor_service import AuditorService, AuditTraceEntry
from pharmacy_kernel.services.controlled_register import ControlledRegisterService
from pharmacy_kernel.services.customer_ledger import CustomerLedgerService
from pharmacy_kernel.services.customer_service import CustomerService
from pharmacy_kernel.services.prescription_service import PrescriptionService, ResolvedDispenseLine
from pharmacy_kernel.services.sequence_service import SequenceService
from pharmacy_kernel.services.settlement_engine import SettlementEngine, translate_db_error
from pharmacy_kernel.services.stock_ledger import ReceiveOutcome, StockLedgerService

__all__ = [
    "AuditTraceEntry",
    "AuditorService",
    "ControlledRegisterService",
    "CustomerLedgerService",
    "CustomerService",
    "PrescriptionService",
    "ReceiveOutcome",
    "ResolvedDispenseLine",
    "SequenceService",
    "SettlementEngine",
    "StockLedgerService",
    "translate_db_error",
]
