"""
Ledger Kernel - Contract Balance & Modality Allocation Ledger

A quantity ledger for contracted product lines with:
- Per-modality allocation of contracted quantity
- Append-only, reversible consumption events
- Per-line write serialization (row locks + optimistic versions)
- Billing splits kept in lockstep with consumption events
- Explicit tenant scoping on every operation
"""

__version__ = "0.1.0"
