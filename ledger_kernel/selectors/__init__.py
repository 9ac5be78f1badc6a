"""Selectors for the ledger kernel (read side)."""

from ledger_kernel.selectors.balance_selector import (
    BalancePage,
    BalanceSelector,
    BalanceStatistics,
    HistoryEntry,
    LineBalanceRow,
    ModalityBalancePage,
    ModalityBalanceRow,
    Pagination,
)

__all__ = [
    "BalancePage",
    "BalanceSelector",
    "BalanceStatistics",
    "HistoryEntry",
    "LineBalanceRow",
    "ModalityBalancePage",
    "ModalityBalanceRow",
    "Pagination",
]
