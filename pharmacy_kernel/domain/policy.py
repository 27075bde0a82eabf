"""
SettlementPolicy -- the tunable constants a settlement runs under.

Responsibility:
    Carries branch identity, loyalty conversion rates and numbering
    prefixes into the kernel as one frozen value.  The kernel never reads
    configuration files itself; ``pharmacy_config`` builds this object
    (``build_settlement_policy``) and the caller injects it.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
"""

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class SettlementPolicy:
    """
    Guarantees:
        - points_value > 0 and points_earn_rate > 0.
        - default_markup >= 1 (new stock is never priced below cost).
    """

    branch_code: str = "MAIN"
    # Currency value of one redeemed loyalty point
    points_value: Decimal = Decimal("1")
    # Currency spent per loyalty point earned
    points_earn_rate: Decimal = Decimal("100")
    default_markup: Decimal = Decimal("1.30")
    invoice_prefix: str = "INV"
    register_prefix: str = "CSR"
    default_schedule_class: str = "SCHEDULE_II"
    # Default prescription validity when no expiry date is given
    prescription_validity_days: int = 30
    controlled_prescription_validity_days: int = 7

    def __post_init__(self) -> None:
        if not self.branch_code:
            raise ValueError("branch_code is required")
        if self.points_value <= 0:
            raise ValueError("points_value must be positive")
        if self.points_earn_rate <= 0:
            raise ValueError("points_earn_rate must be positive")
        if self.default_markup < 1:
            raise ValueError("default_markup must be at least 1")
        if self.prescription_validity_days <= 0 or self.controlled_prescription_validity_days <= 0:
            raise ValueError("prescription validity must be positive")
