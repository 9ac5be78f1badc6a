"""
BillingService -- bills, billing splits and their consumption lifecycle.

Responsibility:
    Turns ordered quantities into billing splits (through the pure
    BillingSplitter), persists bills and splits, and keeps each split's
    "consumption confirmed" flag in lockstep with the consumption event
    that confirming it wrote.

Architecture position:
    Kernel > Services -- imperative shell.
    Loads split candidates from BalanceStore, delegates the split itself to
    ``ledger_engines.splitter`` and posts/reverses consumption through
    ConsumptionLedger.

Invariants enforced:
    - A split is confirmed iff it holds the id of a live (non-reversed)
      consumption event for exactly its quantity and target.
    - The confirmed flag is checked only after the split's line is locked
      and the split re-read, so concurrent confirmations post one event.
    - Removing splits reverses every confirmed split before deleting it,
      all in the caller's transaction, so a failure leaves nothing
      half-removed.
    - Bill total == sum of its splits' line totals after every change.
    - One bill per order per tenant.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - BillAlreadyExistsError: the order already has a bill.
    - PartialFulfillmentError: caller refused a partial split.
    - BillNotFoundError / BillingSplitNotFoundError: unknown ids.
    - BillCancelledError: changing a cancelled bill.
    - SplitAlreadyConfirmedError / SplitNotConfirmedError: wrong state.
    - InsufficientBalanceError (propagated from the ledger) when balances
      moved between bill generation and confirmation; the split stays
      unconfirmed.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from ledger_engines.splitter import (
    DEFAULT_SPLIT_QUANTUM,
    BillingSplitter,
    SplitCandidateAllocation,
    SplitCandidateLine,
    SplitMode,
    SplitResult,
)
from ledger_kernel.db.types import ZERO, round_value, to_quantity
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import AllocationTarget, LineTarget
from ledger_kernel.exceptions import (
    BillAlreadyExistsError,
    BillCancelledError,
    BillingSplitNotFoundError,
    BillNotFoundError,
    InvalidQuantityError,
    PartialFulfillmentError,
    SplitAlreadyConfirmedError,
    SplitNotConfirmedError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.billing import Bill, BillingSplit, BillStatus
from ledger_kernel.models.contract_line import ContractLine
from ledger_kernel.models.modality import ModalityAllocation
from ledger_kernel.services.balance_store import BalanceStore
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.consumption_ledger import ConsumptionLedger
from ledger_kernel.services.sequence_service import DEFAULT_BILL_PREFIX, SequenceService

logger = get_logger("services.billing")


@dataclass(frozen=True)
class OrderItem:
    """
    One product of an order.

    ``contract_line_ids`` lists the contracts attached to the order for
    this product, in attachment order; that order is the split priority.
    None means every active line supplying the product.
    """

    product_id: str
    quantity: Decimal
    contract_line_ids: tuple[UUID, ...] | None = None


@dataclass(frozen=True)
class BillingSplitInfo:
    id: UUID
    bill_id: UUID
    product_id: str
    contract_line_id: UUID
    modality_allocation_id: UUID | None
    ordered_quantity: Decimal
    quantity: Decimal
    unit_price: Decimal
    percentage_of_ordered_quantity: Decimal
    line_total: Decimal
    consumption_confirmed: bool
    confirmation_date: datetime | None
    consumption_event_id: UUID | None


@dataclass(frozen=True)
class BillInfo:
    """Immutable view of a bill and its splits."""

    id: UUID
    order_id: str
    number: str
    status: BillStatus
    total_value: Decimal
    notes: str | None
    billed_at: datetime
    splits: tuple[BillingSplitInfo, ...]
    unsatisfied: dict[str, Decimal] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return bool(self.unsatisfied)


@dataclass(frozen=True)
class SplitRemovalResult:
    bill_id: UUID
    removed_count: int
    reversed_count: int
    total_value: Decimal


@dataclass(frozen=True)
class ModalitySummary:
    modality_allocation_id: UUID | None
    modality_name: str | None
    financial_code: str | None
    quantity: Decimal
    value: Decimal


@dataclass(frozen=True)
class ContractSummary:
    contract_id: str
    contract_number: str
    supplier_name: str
    quantity: Decimal
    value: Decimal
    modalities: tuple[ModalitySummary, ...]


@dataclass(frozen=True)
class BillSummary:
    """Bill totals grouped by contract, then by modality."""

    bill_id: UUID
    number: str
    status: BillStatus
    total_quantity: Decimal
    total_value: Decimal
    contracts: tuple[ContractSummary, ...]


def _split_info(split: BillingSplit) -> BillingSplitInfo:
    return BillingSplitInfo(
        id=split.id,
        bill_id=split.bill_id,
        product_id=split.product_id,
        contract_line_id=split.contract_line_id,
        modality_allocation_id=split.modality_allocation_id,
        ordered_quantity=split.ordered_quantity,
        quantity=split.quantity,
        unit_price=split.unit_price,
        percentage_of_ordered_quantity=split.percentage_of_ordered_quantity,
        line_total=split.line_total,
        consumption_confirmed=split.consumption_confirmed,
        confirmation_date=split.confirmation_date,
        consumption_event_id=split.consumption_event_id,
    )


def _bill_info(bill: Bill, unsatisfied: dict[str, Decimal] | None = None) -> BillInfo:
    return BillInfo(
        id=bill.id,
        order_id=bill.order_id,
        number=bill.number,
        status=BillStatus(bill.status),
        total_value=bill.total_value,
        notes=bill.notes,
        billed_at=bill.billed_at,
        splits=tuple(_split_info(s) for s in bill.splits),
        unsatisfied=dict(unsatisfied or {}),
    )


class BillingService(BaseService):
    """
    Persistent side of the billing splitter.

    Contract:
        Split previews never write.  Every other method mutates within the
        caller's transaction and returns frozen DTOs.

    Non-goals:
        - Does NOT load orders; callers pass the ordered items.
        - Does NOT render bill documents.
    """

    def __init__(
        self,
        session,
        balance_store: BalanceStore | None = None,
        ledger: ConsumptionLedger | None = None,
        clock: Clock | None = None,
        splitter: BillingSplitter | None = None,
        default_mode: SplitMode = SplitMode.PRIORITY,
        split_quantum: Decimal = DEFAULT_SPLIT_QUANTUM,
        bill_number_prefix: str = DEFAULT_BILL_PREFIX,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._store = balance_store or BalanceStore(session)
        self._ledger = ledger or ConsumptionLedger(session, self._store, self._clock)
        self._splitter = splitter or BillingSplitter()
        self._sequence = SequenceService(session)
        self._default_mode = default_mode
        self._quantum = split_quantum
        self._prefix = bill_number_prefix

    # -- Splitting ---------------------------------------------------------

    def load_candidates(
        self,
        tenant_id: str,
        product_id: str,
        contract_line_ids: Sequence[UUID] | None = None,
    ) -> list[SplitCandidateLine]:
        """
        Active lines supplying ``product_id`` with positive availability.

        When ``contract_line_ids`` is given only those lines are considered
        and their position in the sequence becomes their priority.
        Allocations of inactive modalities are left out.
        """
        stmt = select(ContractLine).where(
            ContractLine.tenant_id == tenant_id,
            ContractLine.product_id == product_id,
            ContractLine.is_active.is_(True),
        )
        priority: dict[UUID, int] = {}
        if contract_line_ids is not None:
            stmt = stmt.where(ContractLine.id.in_(list(contract_line_ids)))
            priority = {line_id: i for i, line_id in enumerate(contract_line_ids)}

        candidates: list[SplitCandidateLine] = []
        for line in self.session.execute(stmt).scalars():
            balance = self._store.get_balance(line.id)
            allocations = self._store.allocations_for_line(tenant_id, line.id)
            available = line.contracted_quantity - self._store.line_consumed(
                balance, allocations
            )
            if available <= ZERO:
                continue
            candidates.append(
                SplitCandidateLine(
                    contract_line_id=line.id,
                    contract_number=line.contract_number,
                    contract_id=line.contract_id,
                    unit_price=line.unit_price,
                    available=available,
                    unallocated_available=max(
                        self._store.unallocated_headroom(line, balance, allocations),
                        ZERO,
                    ),
                    allocations=tuple(
                        SplitCandidateAllocation(
                            modality_allocation_id=a.id,
                            modality_id=a.modality_id,
                            modality_name=a.modality.name,
                            available=a.available_quantity,
                            weight=a.modality.transfer_amount,
                        )
                        for a in allocations
                        if a.modality.is_active and a.available_quantity > ZERO
                    ),
                    priority=priority.get(line.id, 0),
                )
            )
        return candidates

    def preview_split(
        self,
        tenant_id: str,
        product_id: str,
        ordered_quantity: Decimal | int | str,
        contract_line_ids: Sequence[UUID] | None = None,
        mode: SplitMode | None = None,
    ) -> SplitResult:
        """
        Non-committing split of an ordered quantity.

        Raises:
            InvalidQuantityError: ordered quantity not positive.
        """
        quantity = to_quantity(ordered_quantity)
        if quantity <= ZERO:
            raise InvalidQuantityError(quantity, "ordered quantity must be positive")
        return self._splitter.split_order_quantity(
            product_id=product_id,
            ordered_quantity=quantity,
            candidates=self.load_candidates(tenant_id, product_id, contract_line_ids),
            mode=mode or self._default_mode,
            quantum=self._quantum,
        )

    # -- Bills -------------------------------------------------------------

    def generate_bill(
        self,
        tenant_id: str,
        order_id: str,
        items: Sequence[OrderItem],
        actor: str,
        notes: str | None = None,
        allow_partial: bool = True,
        mode: SplitMode | None = None,
    ) -> BillInfo:
        """
        Split every ordered item and persist the bill with its splits.

        Items of the same product are summed before splitting.  No
        consumption is recorded; splits start unconfirmed.

        Raises:
            BillAlreadyExistsError: the order already has a bill.
            PartialFulfillmentError: a product came up short and
                ``allow_partial`` is False.
            InvalidQuantityError: no items, or a non-positive quantity.
        """
        existing = self.session.execute(
            select(Bill).where(Bill.tenant_id == tenant_id, Bill.order_id == order_id)
        ).scalar_one_or_none()
        if existing is not None:
            raise BillAlreadyExistsError(order_id, str(existing.id))
        if not items:
            raise InvalidQuantityError(ZERO, f"order {order_id} has no items")

        merged: dict[str, OrderItem] = {}
        for item in items:
            quantity = to_quantity(item.quantity)
            if item.product_id in merged:
                prior = merged[item.product_id]
                merged[item.product_id] = OrderItem(
                    item.product_id, prior.quantity + quantity, prior.contract_line_ids
                )
            else:
                merged[item.product_id] = OrderItem(
                    item.product_id, quantity, item.contract_line_ids
                )

        results = [
            self.preview_split(
                tenant_id,
                item.product_id,
                item.quantity,
                item.contract_line_ids,
                mode,
            )
            for item in merged.values()
        ]
        unsatisfied = {
            r.product_id: r.unsatisfied_remainder for r in results if r.is_partial
        }
        if unsatisfied and not allow_partial:
            logger.warning(
                "bill_rejected_partial",
                extra={"order_id": order_id, "unsatisfied": unsatisfied},
            )
            raise PartialFulfillmentError(order_id, unsatisfied)

        billed_at = self._clock.now()
        bill = Bill(
            tenant_id=tenant_id,
            order_id=order_id,
            number=self._sequence.next_bill_number(tenant_id, billed_at.year, self._prefix),
            status=BillStatus.GENERATED,
            total_value=ZERO,
            notes=notes,
            billed_at=billed_at,
            created_by=actor,
        )
        self.session.add(bill)

        sequence = 0
        for result in results:
            for draft in result.drafts:
                sequence += 1
                bill.splits.append(
                    BillingSplit(
                        tenant_id=tenant_id,
                        sequence=sequence,
                        order_id=order_id,
                        product_id=draft.product_id,
                        contract_line_id=draft.contract_line_id,
                        modality_allocation_id=draft.modality_allocation_id,
                        ordered_quantity=result.ordered_quantity,
                        quantity=draft.quantity,
                        unit_price=draft.unit_price,
                        percentage_of_ordered_quantity=draft.percentage_of_ordered_quantity,
                        line_total=draft.line_total,
                        consumption_confirmed=False,
                        created_by=actor,
                    )
                )
        bill.total_value = self._total(bill)
        self.session.flush()

        with LogContext.bind(bill_id=str(bill.id)):
            logger.info(
                "bill_generated",
                extra={
                    "order_id": order_id,
                    "bill_number": bill.number,
                    "split_count": len(bill.splits),
                    "total_value": str(bill.total_value),
                    "partial": bool(unsatisfied),
                },
            )
        return _bill_info(bill, unsatisfied)

    def get_bill(self, tenant_id: str, bill_id: UUID) -> BillInfo:
        return _bill_info(self._get_bill(tenant_id, bill_id))

    def cancel_bill(self, tenant_id: str, bill_id: UUID, responsible: str) -> BillInfo:
        """
        Reverse every confirmed split and mark the bill CANCELLED.

        The bill and its splits are kept for history.
        """
        bill = self._get_bill(tenant_id, bill_id)
        self._ensure_open(bill)
        reversed_count = 0
        for split in bill.splits:
            if split.consumption_confirmed:
                self._reverse(tenant_id, split, responsible)
                reversed_count += 1
        bill.status = BillStatus.CANCELLED
        bill.updated_by = responsible
        self.session.flush()
        logger.info(
            "bill_cancelled",
            extra={"bill_id": str(bill.id), "reversed_count": reversed_count},
        )
        return _bill_info(bill)

    def delete_bill(
        self,
        tenant_id: str,
        bill_id: UUID,
        responsible: str,
    ) -> SplitRemovalResult:
        """Reverse every confirmed split, then delete the splits and the bill."""
        bill = self._get_bill(tenant_id, bill_id)
        reversed_count = 0
        for split in bill.splits:
            if split.consumption_confirmed:
                self._reverse(tenant_id, split, responsible)
                reversed_count += 1
        removed = len(bill.splits)
        self.session.delete(bill)
        self.session.flush()
        logger.info(
            "bill_deleted",
            extra={
                "bill_id": str(bill_id),
                "removed_count": removed,
                "reversed_count": reversed_count,
            },
        )
        return SplitRemovalResult(
            bill_id=bill_id,
            removed_count=removed,
            reversed_count=reversed_count,
            total_value=ZERO,
        )

    # -- Split consumption -------------------------------------------------

    def confirm_split_consumption(
        self,
        tenant_id: str,
        split_id: UUID,
        responsible: str,
    ) -> BillingSplitInfo:
        """
        Record the split's consumption and mark it confirmed.

        Consumption goes to the split's allocation when it has one, else to
        its contract line.  If the ledger rejects the debit the error
        propagates and the split stays unconfirmed.

        Raises:
            SplitAlreadyConfirmedError, BillCancelledError,
            InsufficientBalanceError.
        """
        split = self._get_split(tenant_id, split_id)
        self._ensure_open(split.bill)
        split = self._lock_split(tenant_id, split, responsible)
        self._confirm(tenant_id, split, responsible)
        split.bill.refresh_status(responsible)
        self.session.flush()
        return _split_info(split)

    def reverse_split_consumption(
        self,
        tenant_id: str,
        split_id: UUID,
        responsible: str,
    ) -> BillingSplitInfo:
        """
        Reverse the event written by the split's confirmation.

        Raises:
            SplitNotConfirmedError, BillCancelledError.
        """
        split = self._get_split(tenant_id, split_id)
        self._ensure_open(split.bill)
        self._reverse(tenant_id, split, responsible)
        split.bill.refresh_status(responsible)
        self.session.flush()
        return _split_info(split)

    def confirm_bill_consumption(
        self,
        tenant_id: str,
        bill_id: UUID,
        responsible: str,
    ) -> BillInfo:
        """Confirm every unconfirmed split of a bill; all or nothing."""
        bill = self._get_bill(tenant_id, bill_id)
        self._ensure_open(bill)
        for split in bill.splits:
            if not self._lock_split(tenant_id, split, responsible).consumption_confirmed:
                self._confirm(tenant_id, split, responsible)
        bill.refresh_status(responsible)
        self.session.flush()
        logger.info(
            "bill_consumption_confirmed",
            extra={"bill_id": str(bill.id), "split_count": len(bill.splits)},
        )
        return _bill_info(bill)

    def reverse_bill_consumption(
        self,
        tenant_id: str,
        bill_id: UUID,
        responsible: str,
    ) -> BillInfo:
        """Reverse every confirmed split of a bill; all or nothing."""
        bill = self._get_bill(tenant_id, bill_id)
        self._ensure_open(bill)
        for split in bill.splits:
            if split.consumption_confirmed:
                self._reverse(tenant_id, split, responsible)
        bill.refresh_status(responsible)
        self.session.flush()
        logger.info("bill_consumption_reversed", extra={"bill_id": str(bill.id)})
        return _bill_info(bill)

    def remove_modality_splits(
        self,
        tenant_id: str,
        bill_id: UUID,
        modality_id: UUID,
        responsible: str,
        contract_id: str | None = None,
    ) -> SplitRemovalResult:
        """
        Remove every split of one modality from a bill.

        Each confirmed split is reversed before it is deleted; the bill
        total is recomputed afterwards.  Restrict to one contract with
        ``contract_id``.
        """
        bill = self._get_bill(tenant_id, bill_id)
        self._ensure_open(bill)

        stmt = (
            select(BillingSplit)
            .join(
                ModalityAllocation,
                BillingSplit.modality_allocation_id == ModalityAllocation.id,
            )
            .where(
                BillingSplit.bill_id == bill.id,
                ModalityAllocation.modality_id == modality_id,
            )
        )
        if contract_id is not None:
            stmt = stmt.join(
                ContractLine, BillingSplit.contract_line_id == ContractLine.id
            ).where(ContractLine.contract_id == contract_id)
        affected = list(self.session.execute(stmt).scalars())

        reversed_count = 0
        for split in affected:
            if split.consumption_confirmed:
                self._reverse(tenant_id, split, responsible)
                reversed_count += 1
            bill.splits.remove(split)

        bill.total_value = self._total(bill)
        bill.refresh_status(responsible)
        self.session.flush()

        logger.info(
            "modality_splits_removed",
            extra={
                "bill_id": str(bill.id),
                "modality_id": str(modality_id),
                "contract_id": contract_id,
                "removed_count": len(affected),
                "reversed_count": reversed_count,
                "total_value": str(bill.total_value),
            },
        )
        return SplitRemovalResult(
            bill_id=bill.id,
            removed_count=len(affected),
            reversed_count=reversed_count,
            total_value=bill.total_value,
        )

    def bill_summary(self, tenant_id: str, bill_id: UUID) -> BillSummary:
        """Totals of a bill grouped by contract, then by modality."""
        bill = self._get_bill(tenant_id, bill_id)

        line_ids = {s.contract_line_id for s in bill.splits}
        allocation_ids = {
            s.modality_allocation_id for s in bill.splits if s.modality_allocation_id
        }
        lines = {
            line.id: line
            for line in self.session.execute(
                select(ContractLine).where(ContractLine.id.in_(line_ids))
            ).scalars()
        } if line_ids else {}
        allocations = {
            a.id: a
            for a in self.session.execute(
                select(ModalityAllocation).where(ModalityAllocation.id.in_(allocation_ids))
            ).scalars()
        } if allocation_ids else {}

        grouped: dict[str, dict[UUID | None, list[BillingSplit]]] = {}
        for split in bill.splits:
            contract_id = lines[split.contract_line_id].contract_id
            grouped.setdefault(contract_id, {}).setdefault(
                split.modality_allocation_id, []
            ).append(split)

        contracts: list[ContractSummary] = []
        for contract_id, by_allocation in grouped.items():
            first_line = next(
                lines[s.contract_line_id] for group in by_allocation.values() for s in group
            )
            modalities: list[ModalitySummary] = []
            for allocation_id, group in by_allocation.items():
                modality = allocations[allocation_id].modality if allocation_id else None
                modalities.append(
                    ModalitySummary(
                        modality_allocation_id=allocation_id,
                        modality_name=modality.name if modality else None,
                        financial_code=modality.financial_code if modality else None,
                        quantity=sum((s.quantity for s in group), ZERO),
                        value=round_value(sum((s.line_total for s in group), ZERO)),
                    )
                )
            modalities.sort(key=lambda m: (m.modality_name is None, m.modality_name or ""))
            contracts.append(
                ContractSummary(
                    contract_id=contract_id,
                    contract_number=first_line.contract_number,
                    supplier_name=first_line.supplier_name,
                    quantity=sum((m.quantity for m in modalities), ZERO),
                    value=round_value(sum((m.value for m in modalities), ZERO)),
                    modalities=tuple(modalities),
                )
            )
        contracts.sort(key=lambda c: c.contract_number)

        return BillSummary(
            bill_id=bill.id,
            number=bill.number,
            status=BillStatus(bill.status),
            total_quantity=sum((s.quantity for s in bill.splits), ZERO),
            total_value=bill.total_value,
            contracts=tuple(contracts),
        )

    # -- Internals ---------------------------------------------------------

    def _get_bill(self, tenant_id: str, bill_id: UUID) -> Bill:
        bill = self.session.execute(
            select(Bill).where(Bill.id == bill_id, Bill.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if bill is None:
            raise BillNotFoundError(str(bill_id))
        return bill

    def _get_split(self, tenant_id: str, split_id: UUID) -> BillingSplit:
        split = self.session.execute(
            select(BillingSplit).where(
                BillingSplit.id == split_id,
                BillingSplit.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if split is None:
            raise BillingSplitNotFoundError(str(split_id))
        return split

    @staticmethod
    def _ensure_open(bill: Bill) -> None:
        if bill.status == BillStatus.CANCELLED:
            raise BillCancelledError(str(bill.id))

    def _lock_split(
        self,
        tenant_id: str,
        split: BillingSplit,
        responsible: str,
    ) -> BillingSplit:
        self._store.lock_line(tenant_id, split.contract_line_id, responsible)

        # Re-read under the line lock: a concurrent confirmation may have won.
        return self.session.execute(
            select(BillingSplit)
            .where(BillingSplit.id == split.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

    def _confirm(self, tenant_id: str, split: BillingSplit, responsible: str) -> None:
        if split.consumption_confirmed:
            raise SplitAlreadyConfirmedError(str(split.id))

        if split.modality_allocation_id is not None:
            target = AllocationTarget(split.modality_allocation_id)
        else:
            target = LineTarget(split.contract_line_id)

        result = self._ledger.record_consumption(
            tenant_id,
            target,
            split.quantity,
            responsible,
            note=f"Faturamento {split.bill.number} - pedido {split.order_id}",
        )
        split.consumption_confirmed = True
        split.confirmation_date = self._clock.now()
        split.consumption_event_id = result.event_id
        split.updated_by = responsible
        logger.info(
            "split_consumption_confirmed",
            extra={
                "split_id": str(split.id),
                "event_id": str(result.event_id),
                "quantity": str(split.quantity),
            },
        )

    def _reverse(self, tenant_id: str, split: BillingSplit, responsible: str) -> None:
        if not split.consumption_confirmed or split.consumption_event_id is None:
            raise SplitNotConfirmedError(str(split.id))

        event_id = split.consumption_event_id
        self._ledger.reverse_consumption(tenant_id, event_id, responsible)
        split.consumption_confirmed = False
        split.confirmation_date = None
        split.consumption_event_id = None
        split.updated_by = responsible
        logger.info(
            "split_consumption_reversed",
            extra={"split_id": str(split.id), "event_id": str(event_id)},
        )

    @staticmethod
    def _total(bill: Bill) -> Decimal:
        return round_value(sum((s.line_total for s in bill.splits), ZERO))
