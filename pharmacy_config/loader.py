"""
Configuration Loader (``pharmacy_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into the frozen
``pharmacy_config.schema`` dataclasses.  The single public entry point for
runtime configuration is ``pharmacy_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown keys or invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from pharmacy_config.schema import DatabaseConfig, SettlementConfig

_SETTLEMENT_KEYS = frozenset(
    {
        "config_id",
        "version",
        "branch_code",
        "points_value",
        "points_earn_rate",
        "default_markup",
        "invoice_prefix",
        "register_prefix",
        "default_schedule_class",
        "allow_points_without_customer",
        "prescription_validity_days",
        "controlled_prescription_validity_days",
        "database",
    }
)
_DATABASE_KEYS = frozenset({"url", "pool_size", "max_overflow", "lock_timeout_ms", "echo"})
_DECIMAL_KEYS = ("points_value", "points_earn_rate", "default_markup")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, name: str) -> Decimal:
    """
    Parse a Decimal from YAML.

    YAML floats are converted through ``str`` so 1.3 becomes Decimal("1.3"),
    not its binary approximation.
    """
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _reject_unknown(data: dict[str, Any], allowed: frozenset[str], section: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValueError(f"Unknown keys in {section}: {', '.join(unknown)}")


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    _reject_unknown(data, _DATABASE_KEYS, "database")
    return DatabaseConfig(**data)


def parse_settlement_config(data: dict[str, Any]) -> SettlementConfig:
    """Parse a SettlementConfig from the top-level ``settlement`` mapping."""
    _reject_unknown(data, _SETTLEMENT_KEYS, "settlement")
    values = dict(data)
    for key in _DECIMAL_KEYS:
        if key in values:
            values[key] = parse_decimal(values[key], key)
    if "database" in values:
        values["database"] = parse_database(values["database"] or {})
    return SettlementConfig(checksum=compute_checksum(data), **values)


def load_settlement_config(path: Path) -> SettlementConfig:
    raw = load_yaml_file(path)
    if "settlement" not in raw:
        raise ValueError(f"{path}: missing top-level 'settlement' section")
    return parse_settlement_config(raw["settlement"] or {})


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form; identical data, identical checksum."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
