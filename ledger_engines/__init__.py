"""
Module: ledger_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    calculation engines.  This is the canonical import surface for the
    kernel services and the command layer.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May import ledger_kernel domain values, precision helpers and logging.
    MUST NOT import ledger_kernel services or selectors, nor ledger_services.

Invariants enforced:
    - Purity: engines NEVER read the clock or the database.
    - Decimal-only arithmetic: quantities and prices are ``Decimal``.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Every engine invocation is traced via the ``@traced_engine`` decorator
    (see ``ledger_engines.tracer``), emitting LEDGER_ENGINE_TRACE records.
"""

from ledger_engines.splitter import (
    DEFAULT_SPLIT_QUANTUM,
    BillingSplitter,
    SplitCandidateAllocation,
    SplitCandidateLine,
    SplitDraft,
    SplitMode,
    SplitResult,
    divide_proportionally,
)
from ledger_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "DEFAULT_SPLIT_QUANTUM",
    "BillingSplitter",
    "SplitCandidateAllocation",
    "SplitCandidateLine",
    "SplitDraft",
    "SplitMode",
    "SplitResult",
    "compute_input_fingerprint",
    "divide_proportionally",
    "traced_engine",
]
