"""
BalanceStore -- locked access to line balances and modality allocations.

Responsibility:
    Single read/write gateway to ``ContractLineBalance`` and
    ``ModalityAllocation`` rows for the services that mutate them.
    Serializes writers per contract line, creates missing balance rows
    lazily, and derives line-level consumption from the stored counters.

Architecture position:
    Kernel > Services -- imperative shell.
    Used by AllocationService, ConsumptionLedger and BillingService.
    Never commits.

Invariants enforced:
    - Per-line serialization: every write that touches a line or one of
      its allocations first calls ``lock_line``, which takes
      ``SELECT ... FOR UPDATE`` on the line's balance row (PostgreSQL) and
      bumps that row's version on write (``touch``), so two writers on the
      same line conflict even on backends without row locks.
    - No double counting: a line's consumed quantity is DERIVED as
      direct_consumed_quantity + sum of its allocations' consumed_quantity.
    - Lazy balance rows: a line without a balance row behaves exactly like
      one with zero direct consumption.

Failure modes:
    - ContractLineNotFoundError / AllocationNotFoundError: unknown id for
      the tenant.
    - StaleDataError: a concurrent writer won the race for the same line
      (version mismatch, or a concurrent lazy creation of the balance row).
      The command layer retries.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from ledger_kernel.db.types import ZERO
from ledger_kernel.domain.dtos import BalanceSnapshot
from ledger_kernel.domain.status import DEFAULT_LOW_RATIO
from ledger_kernel.exceptions import AllocationNotFoundError, ContractLineNotFoundError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.contract_line import ContractLine, ContractLineBalance
from ledger_kernel.models.modality import ModalityAllocation
from ledger_kernel.services.base import BaseService

logger = get_logger("services.balance_store")

SYSTEM_ACTOR = "system"


class BalanceStore(BaseService):
    """
    Gateway to line balances and allocations.

    Contract:
        ``lock_line`` must be called before any mutation of a line's
        balance or allocations within the current transaction.

    Guarantees:
        - Snapshots are computed from the same rows the caller mutates, so
          a snapshot taken after a write reflects that write.
        - ``low_ratio`` is applied identically to lines and allocations.

    Non-goals:
        - Does NOT validate business rules (availability, allocation sums);
          the calling service does.
    """

    def __init__(self, session: Session, low_ratio: Decimal = DEFAULT_LOW_RATIO):
        super().__init__(session)
        self.low_ratio = low_ratio

    # -- Lookups -----------------------------------------------------------

    def get_line(self, tenant_id: str, contract_line_id: UUID) -> ContractLine:
        """Load a contract line.

        Raises:
            ContractLineNotFoundError: unknown id for the tenant.
        """
        line = self.session.execute(
            select(ContractLine).where(
                ContractLine.id == contract_line_id,
                ContractLine.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if line is None:
            raise ContractLineNotFoundError(str(contract_line_id))
        return line

    def get_allocation(
        self,
        tenant_id: str,
        modality_allocation_id: UUID,
        for_update: bool = False,
    ) -> ModalityAllocation:
        """Load an allocation, optionally re-reading it under a row lock.

        Raises:
            AllocationNotFoundError: unknown id for the tenant.
        """
        stmt = select(ModalityAllocation).where(
            ModalityAllocation.id == modality_allocation_id,
            ModalityAllocation.tenant_id == tenant_id,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        allocation = self.session.execute(stmt).scalar_one_or_none()
        if allocation is None:
            raise AllocationNotFoundError(str(modality_allocation_id))
        return allocation

    def allocations_for_line(
        self,
        tenant_id: str,
        contract_line_id: UUID,
        for_update: bool = False,
    ) -> list[ModalityAllocation]:
        """All allocations of a line, in a stable order."""
        stmt = (
            select(ModalityAllocation)
            .where(
                ModalityAllocation.tenant_id == tenant_id,
                ModalityAllocation.contract_line_id == contract_line_id,
            )
            .order_by(ModalityAllocation.id)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return list(self.session.execute(stmt).scalars().all())

    def get_balance(self, contract_line_id: UUID) -> ContractLineBalance | None:
        """Unlocked read of a line's balance row, or None if not created yet."""
        return self.session.execute(
            select(ContractLineBalance).where(
                ContractLineBalance.contract_line_id == contract_line_id
            )
        ).scalar_one_or_none()

    # -- Locking -----------------------------------------------------------

    def lock_line(
        self,
        tenant_id: str,
        contract_line_id: UUID,
        actor: str = SYSTEM_ACTOR,
    ) -> tuple[ContractLine, ContractLineBalance]:
        """
        Lock a line for writing and return it with its balance row.

        Postconditions:
            - The balance row exists (created with zero direct consumption
              if it was missing) and is locked until the transaction ends.

        Raises:
            ContractLineNotFoundError: unknown id for the tenant.
            StaleDataError: another transaction created the balance row
                concurrently.
        """
        line = self.get_line(tenant_id, contract_line_id)

        # Row-level lock; populate_existing discards a stale identity-map copy.
        balance = self.session.execute(
            select(ContractLineBalance)
            .where(ContractLineBalance.contract_line_id == contract_line_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if balance is None:
            balance = ContractLineBalance(
                tenant_id=tenant_id,
                contract_line_id=contract_line_id,
                direct_consumed_quantity=ZERO,
                created_by=actor,
            )
            self.session.add(balance)
            try:
                self.session.flush()
            except IntegrityError as exc:
                logger.warning(
                    "balance_row_creation_race",
                    extra={"contract_line_id": str(contract_line_id)},
                )
                raise StaleDataError(
                    f"Balance row for line {contract_line_id} was created concurrently"
                ) from exc
            logger.debug(
                "balance_row_created",
                extra={"contract_line_id": str(contract_line_id)},
            )

        return line, balance

    def touch(self, balance: ContractLineBalance, actor: str) -> None:
        """Force an UPDATE of the balance row so its version advances.

        Called by every write on the line, including writes that only
        change an allocation, so concurrent writers on the same line
        always collide on this row's version.
        """
        balance.updated_by = actor
        flag_modified(balance, "updated_by")

    # -- Derived quantities ------------------------------------------------

    @staticmethod
    def line_consumed(
        balance: ContractLineBalance | None,
        allocations: list[ModalityAllocation],
    ) -> Decimal:
        """Direct consumption plus every allocation's consumption."""
        direct = balance.direct_consumed_quantity if balance is not None else ZERO
        return direct + sum((a.consumed_quantity for a in allocations), ZERO)

    @staticmethod
    def unallocated_headroom(
        line: ContractLine,
        balance: ContractLineBalance | None,
        allocations: list[ModalityAllocation],
    ) -> Decimal:
        """Quantity of the line that is neither allocated nor consumed directly.

        This is the most that can still be consumed on the line without
        going through a modality allocation.
        """
        direct = balance.direct_consumed_quantity if balance is not None else ZERO
        allocated = sum((a.initial_quantity for a in allocations), ZERO)
        return line.contracted_quantity - allocated - direct

    # -- Snapshots ---------------------------------------------------------

    def line_snapshot(
        self,
        line: ContractLine,
        balance: ContractLineBalance | None,
        allocations: list[ModalityAllocation],
    ) -> BalanceSnapshot:
        return BalanceSnapshot.of(
            line.contracted_quantity,
            self.line_consumed(balance, allocations),
            self.low_ratio,
        )

    def allocation_snapshot(self, allocation: ModalityAllocation) -> BalanceSnapshot:
        return BalanceSnapshot.of(
            allocation.initial_quantity,
            allocation.consumed_quantity,
            self.low_ratio,
        )

    def snapshot_line(self, tenant_id: str, contract_line_id: UUID) -> BalanceSnapshot:
        """Current capacity, consumption, availability and status of a line."""
        line = self.get_line(tenant_id, contract_line_id)
        return self.line_snapshot(
            line,
            self.get_balance(contract_line_id),
            self.allocations_for_line(tenant_id, contract_line_id),
        )

    def snapshot_allocation(
        self,
        tenant_id: str,
        modality_allocation_id: UUID,
    ) -> BalanceSnapshot:
        """Current capacity, consumption, availability and status of an allocation."""
        return self.allocation_snapshot(
            self.get_allocation(tenant_id, modality_allocation_id)
        )
