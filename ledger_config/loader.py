"""
Configuration Loader (``ledger_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into a frozen
``LedgerConfig``.  Runtime callers go through
``ledger_config.get_active_config()`` instead of calling this directly.

Invariants enforced
-------------------
* Every numeric setting is validated; bad values raise ``ValueError``
  naming the offending key.
* Quantities are parsed with ``Decimal(str(value))`` so a YAML float
  never leaks binary rounding into the ledger.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  parsed document.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range or unparseable values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from ledger_config.schema import LedgerConfig

VALID_SPLIT_MODES = frozenset({"priority", "proportional"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, key: str) -> Decimal:
    """Parse a Decimal setting from a YAML scalar."""
    if isinstance(value, bool):
        raise ValueError(f"{key}: expected a number, got {value!r}")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{key}: expected a number, got {value!r}") from None
    if not result.is_finite():
        raise ValueError(f"{key}: expected a finite number, got {value!r}")
    return result


def parse_int(value: Any, key: str, minimum: int) -> int:
    """Parse an integer setting and check its lower bound."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key}: expected an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"{key}: must be >= {minimum}, got {value}")
    return value


def parse_config(data: dict[str, Any]) -> LedgerConfig:
    """
    Build a validated ``LedgerConfig`` from a parsed YAML document.

    Missing sections fall back to the dataclass defaults.

    Raises:
        ValueError: on any invalid setting.
    """
    defaults = LedgerConfig()
    balances = data.get("balances") or {}
    splitting = data.get("splitting") or {}
    paging = data.get("paging") or {}
    concurrency = data.get("concurrency") or {}
    billing = data.get("billing") or {}

    low_ratio = parse_decimal(
        balances.get("low_balance_ratio", defaults.low_balance_ratio),
        "balances.low_balance_ratio",
    )
    if not (Decimal("0") <= low_ratio < Decimal("1")):
        raise ValueError(
            f"balances.low_balance_ratio: must be in [0, 1), got {low_ratio}"
        )

    places = parse_int(
        balances.get("quantity_decimal_places", defaults.quantity_decimal_places),
        "balances.quantity_decimal_places",
        minimum=0,
    )
    if places > 9:
        raise ValueError(
            f"balances.quantity_decimal_places: storage keeps 9 places, got {places}"
        )

    mode = str(splitting.get("default_mode", defaults.default_split_mode)).lower()
    if mode not in VALID_SPLIT_MODES:
        raise ValueError(
            f"splitting.default_mode: expected one of {sorted(VALID_SPLIT_MODES)}, "
            f"got {mode!r}"
        )

    quantum = parse_decimal(
        splitting.get("split_quantum", defaults.split_quantum),
        "splitting.split_quantum",
    )
    if quantum <= 0:
        raise ValueError(f"splitting.split_quantum: must be positive, got {quantum}")

    page_size = parse_int(
        paging.get("default_page_size", defaults.default_page_size),
        "paging.default_page_size",
        minimum=1,
    )
    max_page_size = parse_int(
        paging.get("max_page_size", defaults.max_page_size),
        "paging.max_page_size",
        minimum=1,
    )
    if page_size > max_page_size:
        raise ValueError(
            f"paging.default_page_size ({page_size}) exceeds "
            f"paging.max_page_size ({max_page_size})"
        )

    retries = parse_int(
        concurrency.get("max_lock_retries", defaults.max_lock_retries),
        "concurrency.max_lock_retries",
        minimum=1,
    )

    prefix = str(billing.get("bill_number_prefix", defaults.bill_number_prefix))
    if not prefix or len(prefix) > 10:
        raise ValueError(
            f"billing.bill_number_prefix: must be 1-10 characters, got {prefix!r}"
        )

    return LedgerConfig(
        config_id=str(data.get("config_id", defaults.config_id)),
        version=parse_int(data.get("version", defaults.version), "version", minimum=1),
        low_balance_ratio=low_ratio,
        quantity_decimal_places=places,
        split_quantum=quantum,
        default_split_mode=mode,
        default_page_size=page_size,
        max_page_size=max_page_size,
        max_lock_retries=retries,
        bill_number_prefix=prefix,
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
