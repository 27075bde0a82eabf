"""
Config -> Kernel Bridges.

Convert a SettlementConfig into kernel inputs.  These live in
pharmacy_config because the kernel must never import pharmacy_config.

Usage:
    config = get_active_config()
    init_engine_from_url(**engine_kwargs(config))
    engine = SettlementEngine(session, policy=build_settlement_policy(config))
"""

from __future__ import annotations

from typing import Any

from pharmacy_config.schema import SettlementConfig
from pharmacy_kernel.domain.policy import SettlementPolicy


def build_settlement_policy(config: SettlementConfig) -> SettlementPolicy:
    return SettlementPolicy(
        branch_code=config.branch_code,
        points_value=config.points_value,
        points_earn_rate=config.points_earn_rate,
        default_markup=config.default_markup,
        invoice_prefix=config.invoice_prefix,
        register_prefix=config.register_prefix,
        default_schedule_class=config.default_schedule_class,
        prescription_validity_days=config.prescription_validity_days,
        controlled_prescription_validity_days=config.controlled_prescription_validity_days,
    )


def engine_kwargs(config: SettlementConfig) -> dict[str, Any]:
    """Keyword arguments for ``pharmacy_kernel.db.engine.init_engine_from_url``."""
    db = config.database
    return {
        "database_url": db.url,
        "echo": db.echo,
        "pool_size": db.pool_size,
        "max_overflow": db.max_overflow,
        "lock_timeout_ms": db.lock_timeout_ms,
    }
