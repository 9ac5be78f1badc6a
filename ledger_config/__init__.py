"""
ledger_config -- single public entrypoint for ledger configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a frozen ``LedgerConfig``.

Architecture position:
    Configuration -- YAML-driven settings.  This package sits beside
    ``ledger_kernel`` and below ``ledger_services``.  The kernel MUST NEVER
    import from ``ledger_config``; the command layer passes the values it
    needs (low balance ratio, precision, split mode) into kernel services.

Invariants enforced:
    - Single entrypoint: runtime config flows through ``get_active_config()``.
    - Validation: every setting is range-checked before a config is returned.
    - Deterministic checksum: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the configured file does not exist.
    - ``ValueError`` -- a setting is missing its type or out of range.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``LEDGER_CONFIG_TRACE`` log entry with the config id, version, checksum
    and source path.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ledger_config.loader import load_yaml_file, parse_config
from ledger_config.schema import LedgerConfig

_logger = logging.getLogger("ledger_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"

CONFIG_PATH_ENV = "LEDGER_CONFIG_PATH"


def get_active_config(config_path: Path | str | None = None) -> LedgerConfig:
    """The ONLY public configuration entrypoint.

    Resolution order: ``config_path`` argument, then the file named by the
    ``LEDGER_CONFIG_PATH`` environment variable, then ``sets/default.yaml``.

    Non-goals:
        - Does NOT cache across calls; callers hold the returned config.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ValueError: If configuration validation fails.
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_PATH_ENV) or _DEFAULT_CONFIG_PATH
    path = Path(config_path)

    config = parse_config(load_yaml_file(path))

    _logger.info(
        "LEDGER_CONFIG_TRACE",
        extra={
            "trace_type": "LEDGER_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source_path": str(path),
            "low_balance_ratio": str(config.low_balance_ratio),
            "default_split_mode": config.default_split_mode,
        },
    )
    return config


__all__ = [
    "CONFIG_PATH_ENV",
    "LedgerConfig",
    "get_active_config",
]
