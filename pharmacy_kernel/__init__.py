"""
Pharmacy Settlement Kernel

Transactional settlement for a pharmacy point of sale:
- Atomic multi-ledger sales (stock, loyalty points, store credit)
- Balance-chained controlled-substance register
- Prescription dispensing with partial fulfilment
- Compensating voids instead of edits
- Tamper-evident audit trail
"""

__version__ = "0.1.0"
