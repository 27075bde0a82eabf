"""
Settlement configuration schema.

Frozen dataclasses parsed from a YAML settings file by
``pharmacy_config.loader``.  Each validates itself in ``__post_init__`` so an
invalid file fails at load time, not in the middle of a settlement.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings forwarded to ``init_engine_from_url``."""

    url: str = "sqlite:///pharmacy.db"
    pool_size: int = 10
    max_overflow: int = 10
    # Upper bound for a row or database lock wait
    lock_timeout_ms: int = 5000
    echo: bool = False

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("database.url is required")
        if self.pool_size < 1:
            raise ValueError(f"database.pool_size must be >= 1, got {self.pool_size}")
        if self.max_overflow < 0:
            raise ValueError(f"database.max_overflow must be >= 0, got {self.max_overflow}")
        if self.lock_timeout_ms <= 0:
            raise ValueError(
                f"database.lock_timeout_ms must be positive, got {self.lock_timeout_ms}"
            )


@dataclass(frozen=True)
class SettlementConfig:
    """
    Settlement settings for one branch.

    ``points_value`` is the currency value of one redeemed point;
    ``points_earn_rate`` the amount spent per point earned.
    """

    config_id: str = "default"
    version: int = 1
    branch_code: str = "MAIN"
    points_value: Decimal = Decimal("1")
    points_earn_rate: Decimal = Decimal("100")
    default_markup: Decimal = Decimal("1.30")
    invoice_prefix: str = "INV"
    register_prefix: str = "CSR"
    default_schedule_class: str = "SCHEDULE_II"
    prescription_validity_days: int = 30
    controlled_prescription_validity_days: int = 7
    allow_points_without_customer: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    checksum: str = ""

    def __post_init__(self) -> None:
        if not self.branch_code or not self.branch_code.strip():
            raise ValueError("branch_code is required")
        if self.points_value <= 0:
            raise ValueError(f"points_value must be positive, got {self.points_value}")
        if self.points_earn_rate <= 0:
            raise ValueError(f"points_earn_rate must be positive, got {self.points_earn_rate}")
        if self.default_markup < 1:
            raise ValueError(f"default_markup must be >= 1, got {self.default_markup}")
        if not self.invoice_prefix or not self.register_prefix:
            raise ValueError("invoice_prefix and register_prefix are required")
        if self.prescription_validity_days <= 0 or self.controlled_prescription_validity_days <= 0:
            raise ValueError("prescription validity days must be positive")
        if self.allow_points_without_customer:
            # Points always live on a customer ledger
            raise ValueError("allow_points_without_customer is not supported")
