"""
pharmacy_config -- single public entrypoint for settlement configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files.
    The kernel MUST NEVER import from ``pharmacy_config``; ``bridges``
    translates a SettlementConfig into kernel inputs.

Failure modes:
    - ``FileNotFoundError`` -- the settings file does not exist.
    - ``ValueError`` -- unknown keys or invalid values.

Audit relevance:
    Every successful call emits a ``PHARMACY_CONFIG_TRACE`` log entry with
    the config id, version and checksum, tying settlements back to the
    settings they ran under.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pharmacy_config.loader import load_settlement_config
from pharmacy_config.schema import DatabaseConfig, SettlementConfig

_logger = logging.getLogger("pharmacy_kernel.config")

_DEFAULT_CONFIG_FILE = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> SettlementConfig:
    """
    Load and validate the settlement configuration.

    Args:
        path: Settings file to load.  Defaults to pharmacy_config/sets/default.yaml.

    Returns:
        A frozen, validated SettlementConfig.
    """
    config_path = Path(path) if path is not None else _DEFAULT_CONFIG_FILE
    config = load_settlement_config(config_path)

    _logger.info(
        "PHARMACY_CONFIG_TRACE",
        extra={
            "trace_type": "PHARMACY_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "branch_code": config.branch_code,
            "config_path": str(config_path),
        },
    )
    return config


__all__ = [
    "DatabaseConfig",
    "SettlementConfig",
    "get_active_config",
]
