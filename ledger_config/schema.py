"""
Configuration Schema (``ledger_config.schema``).

Responsibility
--------------
Frozen dataclass describing every tunable of the ledger: the LOW status
threshold, quantity precision, split behaviour, paging limits, the
optimistic-lock retry budget and bill numbering.

Architecture position
---------------------
**Config layer** -- pure data definitions.  Imported by the loader and by
``ledger_services``.  Has no dependency on the kernel.

Invariants enforced
-------------------
* ``LedgerConfig`` is frozen; a loaded configuration never changes.
* Numeric settings are ``Decimal`` or ``int``, never float.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class LedgerConfig:
    """Active ledger configuration.

    ``default_split_mode`` holds the string value of
    ``ledger_engines.splitter.SplitMode`` so this module stays free of
    engine imports.
    """

    config_id: str = "default"
    version: int = 1
    low_balance_ratio: Decimal = Decimal("0.10")
    quantity_decimal_places: int = 3
    split_quantum: Decimal = Decimal("0.001")
    default_split_mode: str = "priority"
    default_page_size: int = 50
    max_page_size: int = 500
    max_lock_retries: int = 3
    bill_number_prefix: str = "FAT"
    checksum: str = field(default="", compare=False)
