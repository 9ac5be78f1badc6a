"""
LedgerOrchestrator -- wires kernel services for one session.

Responsibility:
    Constructs every kernel service exactly once for a session, in
    dependency order, sharing one BalanceStore and one Clock, and applies
    the active LedgerConfig (LOW ratio, split mode and quantum, bill
    prefix, paging limits).

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Used by LedgerCommands; never imported by the kernel.

Invariants enforced:
    - Single-instance lifecycle: one instance of each service per session.
    - All services see the same BalanceStore, so a snapshot taken by one
      reflects writes made by another in the same transaction.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from ledger_config import LedgerConfig
from ledger_engines.splitter import BillingSplitter, SplitMode
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.selectors.balance_selector import BalanceSelector
from ledger_kernel.services.allocation_service import AllocationService
from ledger_kernel.services.balance_store import BalanceStore
from ledger_kernel.services.billing_service import BillingService
from ledger_kernel.services.catalog_service import ContractCatalogService
from ledger_kernel.services.consumption_ledger import ConsumptionLedger


class LedgerOrchestrator:
    """Central factory for kernel services.

    Non-goals:
        - Does NOT manage transaction boundaries (caller's responsibility).
        - Does NOT own the Session lifecycle (no commit/rollback).
    """

    def __init__(
        self,
        session: Session,
        config: LedgerConfig,
        clock: Clock | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self._clock = clock or SystemClock()

        self.balance_store = BalanceStore(session, low_ratio=config.low_balance_ratio)
        self.catalog = ContractCatalogService(session)
        self.allocations = AllocationService(session, self.balance_store)
        self.ledger = ConsumptionLedger(session, self.balance_store, self._clock)
        self.billing = BillingService(
            session,
            balance_store=self.balance_store,
            ledger=self.ledger,
            clock=self._clock,
            splitter=BillingSplitter(),
            default_mode=SplitMode(config.default_split_mode),
            split_quantum=config.split_quantum,
            bill_number_prefix=config.bill_number_prefix,
        )
        self.balances = BalanceSelector(
            session,
            low_ratio=config.low_balance_ratio,
            default_page_size=config.default_page_size,
            max_page_size=config.max_page_size,
        )
