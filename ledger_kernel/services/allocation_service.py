"""
AllocationService -- edits of modality allocations on a contract line.

Responsibility:
    Creates, resizes and removes the per-modality sub-quantities of a
    contract line while keeping the sum of allocations within the
    contracted quantity.

Architecture position:
    Kernel > Services -- imperative shell.
    Uses BalanceStore for locking and derived quantities.

Invariants enforced:
    - Invariant A: an allocation's initial quantity never drops below its
      consumed quantity.
    - Invariant B: sum of initial quantities + quantity consumed directly
      on the line <= contracted quantity.  Checked under the line lock,
      substituting the candidate value for the edited modality.
    - An edit never changes consumed quantities.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - InvalidQuantityError: negative quantity, or shrinking below consumed.
    - AllocationExceedsContractError: the new sum would exceed the
      contracted quantity (carries both figures).
    - ModalityNotFoundError / ContractLineNotFoundError /
      AllocationNotFoundError: unknown ids.
    - AllocationInUseError: removing an allocation that has consumption.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import exists, select

from ledger_kernel.db.types import ZERO, to_quantity
from ledger_kernel.domain.dtos import AllocationInfo, AllocationPresence, BalanceSnapshot
from ledger_kernel.exceptions import (
    AllocationExceedsContractError,
    AllocationInUseError,
    InvalidQuantityError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.billing import BillingSplit
from ledger_kernel.models.consumption import ConsumptionEvent
from ledger_kernel.models.modality import Modality, ModalityAllocation
from ledger_kernel.services.balance_store import BalanceStore
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.catalog_service import get_modality

logger = get_logger("services.allocation")


class AllocationService(BaseService):
    """
    Upsert and removal of modality allocations.

    Contract:
        Every edit locks the parent line first, so two concurrent edits on
        the same line cannot both pass the sum check.

    Guarantees:
        - After any sequence of accepted edits, the allocation invariant
          holds for every line.
    """

    def __init__(self, session, balance_store: BalanceStore | None = None):
        super().__init__(session)
        self._store = balance_store or BalanceStore(session)

    def set_modality_allocation(
        self,
        tenant_id: str,
        contract_line_id: UUID,
        modality_id: UUID,
        new_initial_quantity: Decimal | int | str,
        actor: str,
    ) -> AllocationInfo:
        """
        Create or resize the allocation of ``modality_id`` on a line.

        Preconditions:
            - new_initial_quantity >= 0 and >= the allocation's consumed
              quantity.

        Postconditions:
            - The allocation has the new initial quantity; its consumed
              quantity is unchanged.
            - Assigning zero to an absent pair creates nothing and reports
              the pair as ABSENT.

        Raises:
            InvalidQuantityError: negative or below consumed.
            AllocationExceedsContractError: sum would exceed the contract.
        """
        quantity = to_quantity(new_initial_quantity)
        if quantity < ZERO:
            raise InvalidQuantityError(quantity, "initial quantity cannot be negative")

        modality = get_modality(self.session, tenant_id, modality_id)
        line, balance = self._store.lock_line(tenant_id, contract_line_id, actor)
        allocations = self._store.allocations_for_line(
            tenant_id, contract_line_id, for_update=True
        )
        existing = next((a for a in allocations if a.modality_id == modality_id), None)

        if existing is None and quantity == ZERO:
            return self._absent_info(contract_line_id, modality)

        if existing is not None and quantity < existing.consumed_quantity:
            raise InvalidQuantityError(
                quantity,
                "initial quantity cannot shrink below the consumed quantity",
                consumed_quantity=existing.consumed_quantity,
            )

        others = sum(
            (a.initial_quantity for a in allocations if a is not existing), ZERO
        )
        attempted_total = others + quantity
        directly_consumed = balance.direct_consumed_quantity

        if attempted_total + directly_consumed > line.contracted_quantity:
            logger.warning(
                "allocation_rejected",
                extra={
                    "contract_line_id": str(contract_line_id),
                    "modality_id": str(modality_id),
                    "contracted_quantity": str(line.contracted_quantity),
                    "attempted_total": str(attempted_total),
                    "directly_consumed": str(directly_consumed),
                },
            )
            raise AllocationExceedsContractError(
                str(contract_line_id),
                line.contracted_quantity,
                attempted_total,
                directly_consumed,
            )

        created = existing is None
        if created:
            allocation = ModalityAllocation(
                tenant_id=tenant_id,
                contract_line_id=contract_line_id,
                modality_id=modality_id,
                initial_quantity=quantity,
                consumed_quantity=ZERO,
                created_by=actor,
            )
            allocation.modality = modality
            self.session.add(allocation)
        else:
            allocation = existing
            allocation.initial_quantity = quantity
            allocation.updated_by = actor

        self._store.touch(balance, actor)
        self.session.flush()

        logger.info(
            "allocation_created" if created else "allocation_updated",
            extra={
                "contract_line_id": str(contract_line_id),
                "modality_id": str(modality_id),
                "allocation_id": str(allocation.id),
                "initial_quantity": str(quantity),
                "allocated_total": str(attempted_total),
            },
        )

        return AllocationInfo(
            allocation_id=allocation.id,
            contract_line_id=contract_line_id,
            modality_id=modality_id,
            modality_name=modality.name,
            financial_code=modality.financial_code,
            presence=AllocationPresence.PRESENT,
            snapshot=self._store.allocation_snapshot(allocation),
            created=created,
        )

    def remove_modality_allocation(
        self,
        tenant_id: str,
        modality_allocation_id: UUID,
        actor: str,
    ) -> AllocationInfo:
        """
        Delete an allocation that was never consumed.

        The pair becomes ABSENT again and its quantity returns to the
        line's unallocated headroom.

        Raises:
            AllocationNotFoundError: unknown id.
            AllocationInUseError: the allocation has consumption, consumption
                history, or billing splits pointing at it.
        """
        allocation = self._store.get_allocation(tenant_id, modality_allocation_id)
        _, balance = self._store.lock_line(tenant_id, allocation.contract_line_id, actor)
        allocation = self._store.get_allocation(
            tenant_id, modality_allocation_id, for_update=True
        )

        if allocation.consumed_quantity > ZERO:
            raise AllocationInUseError(
                str(modality_allocation_id), allocation.consumed_quantity
            )
        has_history = self.session.execute(
            select(
                exists().where(
                    ConsumptionEvent.modality_allocation_id == modality_allocation_id
                )
            )
        ).scalar()
        if has_history:
            raise AllocationInUseError(
                str(modality_allocation_id),
                allocation.consumed_quantity,
                reason="it has consumption history",
            )
        has_splits = self.session.execute(
            select(
                exists().where(BillingSplit.modality_allocation_id == modality_allocation_id)
            )
        ).scalar()
        if has_splits:
            raise AllocationInUseError(
                str(modality_allocation_id),
                allocation.consumed_quantity,
                reason="billing splits reference it",
            )

        modality = allocation.modality
        contract_line_id = allocation.contract_line_id
        self.session.delete(allocation)
        self._store.touch(balance, actor)
        self.session.flush()

        logger.info(
            "allocation_removed",
            extra={
                "contract_line_id": str(contract_line_id),
                "allocation_id": str(modality_allocation_id),
                "modality_id": str(modality.id),
            },
        )
        return self._absent_info(contract_line_id, modality)

    def _absent_info(self, contract_line_id: UUID, modality: Modality) -> AllocationInfo:
        return AllocationInfo(
            allocation_id=None,
            contract_line_id=contract_line_id,
            modality_id=modality.id,
            modality_name=modality.name,
            financial_code=modality.financial_code,
            presence=AllocationPresence.ABSENT,
            snapshot=BalanceSnapshot.of(ZERO, ZERO, self._store.low_ratio),
        )
