"""Selectors for the pharmacy kernel (read side)."""

from pharmacy_kernel.selectors.customer_selector import (
    CreditHistoryRow,
    CustomerSelector,
    LoyaltyHistoryRow,
)
from pharmacy_kernel.selectors.prescription_selector import PrescriptionSelector
from pharmacy_kernel.selectors.register_selector import RegisterSelector
from pharmacy_kernel.selectors.sale_selector import SaleSelector
from pharmacy_kernel.selectors.stock_selector import StockSelector

__all__ = [
    "CreditHistoryRow",
    "CustomerSelector",
    "LoyaltyHistoryRow",
    "PrescriptionSelector",
    "RegisterSelector",
    "SaleSelector",
    "StockSelector",
]
