"""
ConsumptionLedger -- records and reverses consumption events.

Responsibility:
    Posts debits against a contract line or one of its modality
    allocations, appends the matching ConsumptionEvent, and undoes a
    specific event on reversal.  Maintains the running consumed counters
    the Balance Store derives availability from.

Architecture position:
    Kernel > Services -- imperative shell.
    Uses BalanceStore for locking and snapshots; called directly by the
    command layer and by BillingService when a split is confirmed.

Invariants enforced:
    - Consumption bound: quantity <= available of the target, checked under
      the line lock.
    - Ledger consistency: a target's consumed counter always equals the sum
      of its non-reversed events.  Both are written in the same flush.
    - Reversal restores the exact prior balance and never writes a
      negative event; a reversed event is inert.
    - Direct consumption on a line that has allocations is limited to the
      line's unallocated headroom, so the line total never counts the
      same unit twice.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - InvalidQuantityError: quantity <= 0 or not a Decimal-compatible value.
    - InsufficientBalanceError: quantity > available (message carries the
      available quantity).
    - LineConsumptionRestrictedError: direct line consumption beyond the
      unallocated headroom.
    - ConsumptionEventNotFoundError / EventAlreadyReversedError on reversal.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from ledger_kernel.db.types import ZERO, to_quantity
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import (
    AllocationTarget,
    BalanceSnapshot,
    ConsumptionTarget,
    LineTarget,
    TargetKind,
)
from ledger_kernel.exceptions import (
    ConsumptionEventNotFoundError,
    EventAlreadyReversedError,
    InsufficientBalanceError,
    InvalidQuantityError,
    LineConsumptionRestrictedError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.billing import BillingSplit
from ledger_kernel.models.consumption import ConsumptionEvent
from ledger_kernel.models.contract_line import ContractLine
from ledger_kernel.services.balance_store import BalanceStore
from ledger_kernel.services.base import BaseService

logger = get_logger("services.consumption")


@dataclass(frozen=True)
class ConsumptionResult:
    """Outcome of an accepted consumption."""

    event_id: UUID
    target: ConsumptionTarget
    quantity: Decimal
    previous_available: Decimal
    snapshot: BalanceSnapshot


@dataclass(frozen=True)
class ReversalResult:
    """Outcome of a reversal (or deletion) of a consumption event."""

    event_id: UUID
    target: ConsumptionTarget
    quantity: Decimal
    snapshot: BalanceSnapshot
    deleted: bool = False


def default_note(quantity: Decimal, product_name: str, modality_name: str | None) -> str:
    """Note written when the caller supplies none."""
    note = f"Consumo de {quantity.normalize():f} {product_name}"
    if modality_name:
        note += f" - {modality_name}"
    return note


class ConsumptionLedger(BaseService):
    """
    Append-only consumption ledger.

    Contract:
        Every operation locks the affected line before reading the balance
        it validates against, so check-then-act races cannot over-draw.

    Guarantees:
        - record followed by reverse leaves consumed and available exactly
          at their prior values.
        - Reversing the same event twice fails and changes nothing.
    """

    def __init__(
        self,
        session,
        balance_store: BalanceStore | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        self._store = balance_store or BalanceStore(session)
        self._clock = clock or SystemClock()

    def record_consumption(
        self,
        tenant_id: str,
        target: ConsumptionTarget,
        quantity: Decimal | int | str,
        responsible: str,
        note: str | None = None,
    ) -> ConsumptionResult:
        """
        Debit ``quantity`` from a line or allocation.

        Preconditions:
            - quantity > 0 and quantity <= available(target).

        Postconditions:
            - One non-reversed ConsumptionEvent exists for the debit and the
              target's consumed counter grew by exactly ``quantity``.

        Returns:
            ConsumptionResult with the new event id, the availability before
            the debit and the target's snapshot after it.

        Raises:
            InvalidQuantityError, InsufficientBalanceError,
            LineConsumptionRestrictedError, ContractLineNotFoundError,
            AllocationNotFoundError.
        """
        qty = to_quantity(quantity)
        if qty <= ZERO:
            raise InvalidQuantityError(qty, "consumption quantity must be positive")

        match target:
            case LineTarget(contract_line_id=line_id):
                line, previous_available, snapshot, modality_name = self._debit_line(
                    tenant_id, line_id, qty, responsible
                )
                event = ConsumptionEvent(
                    tenant_id=tenant_id,
                    target_kind=TargetKind.LINE.value,
                    contract_line_id=line_id,
                )
            case AllocationTarget(modality_allocation_id=allocation_id):
                line, previous_available, snapshot, modality_name = self._debit_allocation(
                    tenant_id, allocation_id, qty, responsible
                )
                event = ConsumptionEvent(
                    tenant_id=tenant_id,
                    target_kind=TargetKind.ALLOCATION.value,
                    modality_allocation_id=allocation_id,
                )
            case _:
                raise TypeError(f"Unsupported consumption target: {target!r}")

        event.quantity = qty
        event.occurred_at = self._clock.now()
        event.responsible = responsible
        event.note = note or default_note(qty, line.product_name, modality_name)
        event.reversed = False
        self.session.add(event)
        self.session.flush()

        with LogContext.bind(contract_line_id=str(line.id), event_id=str(event.id)):
            logger.info(
                "consumption_recorded",
                extra={
                    "target_kind": target.kind.value,
                    "target_id": str(target.target_id),
                    "quantity": str(qty),
                    "previous_available": str(previous_available),
                    "available": str(snapshot.available),
                    "status": snapshot.status.value,
                },
            )

        return ConsumptionResult(
            event_id=event.id,
            target=target,
            quantity=qty,
            previous_available=previous_available,
            snapshot=snapshot,
        )

    def reverse_consumption(
        self,
        tenant_id: str,
        event_id: UUID,
        responsible: str,
    ) -> ReversalResult:
        """
        Undo one consumption event.

        Postconditions:
            - The event is flagged reversed (with who and when) and the
              target's consumed counter dropped by the event quantity.
            - Billing splits confirmed through this event are no longer
              confirmed.

        Raises:
            ConsumptionEventNotFoundError: unknown id for the tenant.
            EventAlreadyReversedError: the event was already reversed.
        """
        event = self._lock_event(tenant_id, event_id, responsible)
        if event.reversed:
            raise EventAlreadyReversedError(str(event_id))
        return self._reverse_locked(tenant_id, event, responsible)

    def delete_consumption(
        self,
        tenant_id: str,
        event_id: UUID,
        responsible: str,
    ) -> ReversalResult:
        """
        Remove an event from the ledger, restoring its quantity first.

        Reversal and deletion happen in the same flush; deleting an
        already reversed event only removes the row.

        Raises:
            ConsumptionEventNotFoundError: unknown id for the tenant.
        """
        event = self._lock_event(tenant_id, event_id, responsible)
        target = self._target_of(event)
        quantity = event.quantity

        if event.reversed:
            self._release_billing_splits(event.id, responsible)
            snapshot = self._snapshot_target(tenant_id, target)
        else:
            snapshot = self._reverse_locked(tenant_id, event, responsible).snapshot

        self.session.delete(event)
        self.session.flush()
        logger.info(
            "consumption_deleted",
            extra={
                "event_id": str(event_id),
                "target_kind": target.kind.value,
                "target_id": str(target.target_id),
                "quantity": str(quantity),
            },
        )
        return ReversalResult(
            event_id=event_id,
            target=target,
            quantity=quantity,
            snapshot=snapshot,
            deleted=True,
        )

    # -- Internals ---------------------------------------------------------

    def _debit_line(
        self,
        tenant_id: str,
        contract_line_id: UUID,
        qty: Decimal,
        responsible: str,
    ) -> tuple[ContractLine, Decimal, BalanceSnapshot, None]:
        line, balance = self._store.lock_line(tenant_id, contract_line_id, responsible)
        allocations = self._store.allocations_for_line(
            tenant_id, contract_line_id, for_update=True
        )
        available = line.contracted_quantity - self._store.line_consumed(balance, allocations)

        if allocations:
            headroom = max(
                self._store.unallocated_headroom(line, balance, allocations), ZERO
            )
            if qty > headroom:
                self._log_rejection("line", contract_line_id, qty, headroom)
                raise LineConsumptionRestrictedError(
                    str(contract_line_id), qty, headroom, available
                )
        if qty > available:
            self._log_rejection("line", contract_line_id, qty, available)
            raise InsufficientBalanceError("line", str(contract_line_id), qty, available)

        balance.direct_consumed_quantity = balance.direct_consumed_quantity + qty
        self._store.touch(balance, responsible)
        return line, available, self._store.line_snapshot(line, balance, allocations), None

    def _debit_allocation(
        self,
        tenant_id: str,
        allocation_id: UUID,
        qty: Decimal,
        responsible: str,
    ) -> tuple[ContractLine, Decimal, BalanceSnapshot, str]:
        unlocked = self._store.get_allocation(tenant_id, allocation_id)
        line, balance = self._store.lock_line(
            tenant_id, unlocked.contract_line_id, responsible
        )
        allocation = self._store.get_allocation(tenant_id, allocation_id, for_update=True)
        available = allocation.available_quantity

        if qty > available:
            self._log_rejection("allocation", allocation_id, qty, available)
            raise InsufficientBalanceError(
                "allocation", str(allocation_id), qty, available
            )

        allocation.consumed_quantity = allocation.consumed_quantity + qty
        allocation.updated_by = responsible
        self._store.touch(balance, responsible)
        return (
            line,
            available,
            self._store.allocation_snapshot(allocation),
            allocation.modality.name,
        )

    def _lock_event(
        self,
        tenant_id: str,
        event_id: UUID,
        responsible: str,
    ) -> ConsumptionEvent:
        event = self.session.execute(
            select(ConsumptionEvent).where(
                ConsumptionEvent.id == event_id,
                ConsumptionEvent.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if event is None:
            raise ConsumptionEventNotFoundError(str(event_id))

        line_id = event.contract_line_id
        if line_id is None:
            line_id = self._store.get_allocation(
                tenant_id, event.modality_allocation_id
            ).contract_line_id
        self._store.lock_line(tenant_id, line_id, responsible)

        # Re-read under the line lock: a concurrent reversal may have won.
        return self.session.execute(
            select(ConsumptionEvent)
            .where(ConsumptionEvent.id == event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

    def _reverse_locked(
        self,
        tenant_id: str,
        event: ConsumptionEvent,
        responsible: str,
    ) -> ReversalResult:
        target = self._target_of(event)

        match target:
            case LineTarget(contract_line_id=line_id):
                line, balance = self._store.lock_line(tenant_id, line_id, responsible)
                new_direct = balance.direct_consumed_quantity - event.quantity
                # INVARIANT: ledger consistency -- counter covers every live event.
                assert new_direct >= ZERO, (
                    f"Ledger inconsistency: direct consumption of line {line_id} "
                    f"would become {new_direct}"
                )
                balance.direct_consumed_quantity = new_direct
                self._store.touch(balance, responsible)
                allocations = self._store.allocations_for_line(tenant_id, line_id)
                snapshot = self._store.line_snapshot(line, balance, allocations)
            case AllocationTarget(modality_allocation_id=allocation_id):
                allocation = self._store.get_allocation(
                    tenant_id, allocation_id, for_update=True
                )
                _, balance = self._store.lock_line(
                    tenant_id, allocation.contract_line_id, responsible
                )
                new_consumed = allocation.consumed_quantity - event.quantity
                assert new_consumed >= ZERO, (
                    f"Ledger inconsistency: consumption of allocation {allocation_id} "
                    f"would become {new_consumed}"
                )
                allocation.consumed_quantity = new_consumed
                allocation.updated_by = responsible
                self._store.touch(balance, responsible)
                snapshot = self._store.allocation_snapshot(allocation)

        event.reversed = True
        event.reversed_at = self._clock.now()
        event.reversed_by = responsible
        self._release_billing_splits(event.id, responsible)
        self.session.flush()

        logger.info(
            "consumption_reversed",
            extra={
                "event_id": str(event.id),
                "target_kind": target.kind.value,
                "target_id": str(target.target_id),
                "quantity": str(event.quantity),
                "available": str(snapshot.available),
            },
        )
        return ReversalResult(
            event_id=event.id,
            target=target,
            quantity=event.quantity,
            snapshot=snapshot,
        )

    def _release_billing_splits(self, event_id: UUID, responsible: str) -> None:
        """Unconfirm any billing split whose confirmation wrote this event.

        The owning bill drops back to GENERATED unless it was cancelled.
        """
        splits = self.session.execute(
            select(BillingSplit).where(BillingSplit.consumption_event_id == event_id)
        ).scalars().all()
        for split in splits:
            split.consumption_confirmed = False
            split.confirmation_date = None
            split.consumption_event_id = None
            split.updated_by = responsible
            split.bill.refresh_status(responsible)
            logger.info(
                "billing_split_released",
                extra={"split_id": str(split.id), "event_id": str(event_id)},
            )
        if splits:
            self.session.flush()

    def _snapshot_target(self, tenant_id: str, target: ConsumptionTarget) -> BalanceSnapshot:
        if isinstance(target, LineTarget):
            return self._store.snapshot_line(tenant_id, target.contract_line_id)
        return self._store.snapshot_allocation(tenant_id, target.modality_allocation_id)

    @staticmethod
    def _target_of(event: ConsumptionEvent) -> ConsumptionTarget:
        if event.modality_allocation_id is not None:
            return AllocationTarget(event.modality_allocation_id)
        return LineTarget(event.contract_line_id)

    @staticmethod
    def _log_rejection(kind: str, target_id: UUID, requested: Decimal, available: Decimal) -> None:
        logger.warning(
            "consumption_rejected",
            extra={
                "target_kind": kind,
                "target_id": str(target_id),
                "requested": str(requested),
                "available": str(available),
            },
        )
