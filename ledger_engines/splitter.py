"""
Module: ledger_engines.splitter
Responsibility:
    Distribute an order's requested quantity of one product across the
    contract lines (and their modality allocations) that supply it, in a
    deterministic order, producing billing split drafts.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import ledger_kernel domain values, db precision helpers and
    logging.  Candidates are built by BillingService from persisted
    balances; drafts are persisted by BillingService.

Invariants enforced:
    - Conservation: sum of draft quantities + unsatisfied_remainder ==
      ordered_quantity, exactly.
    - Capacity: no draft exceeds the available quantity of its allocation;
      drafts attributed directly to a line never exceed the line's
      unallocated headroom; a line never gives more than its available
      quantity.
    - Determinism: candidates are ordered by (priority, contract_number,
      contract_line_id); allocations within a line by (priority,
      modality_name, modality_id).  Identical inputs yield identical drafts.

Failure modes:
    - ValueError on a non-positive ordered quantity or a non-positive
      split quantum.

Audit relevance:
    Every call emits LEDGER_ENGINE_TRACE through ``@traced_engine`` with a
    fingerprint of the product, ordered quantity and mode.

Usage:
    from ledger_engines.splitter import BillingSplitter, SplitCandidateLine

    result = BillingSplitter().split_order_quantity(
        product_id="arroz",
        ordered_quantity=Decimal("120"),
        candidates=[line_a, line_b],
    )
    result.unsatisfied_remainder   # Decimal("20") when both lines hold 50
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from uuid import UUID

from ledger_engines.tracer import traced_engine
from ledger_kernel.db.types import ZERO, round_value
from ledger_kernel.logging_config import get_logger

logger = get_logger("engines.splitter")

DEFAULT_SPLIT_QUANTUM = Decimal("0.001")

_HUNDRED = Decimal("100")


class SplitMode(str, Enum):
    """How a line's share is divided across its modality allocations."""

    PRIORITY = "priority"  # Allocations drained one after another
    PROPORTIONAL = "proportional"  # By modality transfer amount, largest remainder


@dataclass(frozen=True)
class SplitCandidateAllocation:
    """
    One modality allocation of a candidate line.

    ``weight`` is the modality's transfer amount, used only by
    PROPORTIONAL mode.
    """

    modality_allocation_id: UUID
    modality_id: UUID
    modality_name: str
    available: Decimal
    priority: int = 0
    weight: Decimal = ZERO


@dataclass(frozen=True)
class SplitCandidateLine:
    """
    A contract line able to supply the ordered product.

    Contract:
        ``available`` is the line's overall availability (contracted minus
        all consumption); ``unallocated_available`` is the part not claimed
        by any allocation, which is the most that can be attributed to the
        line directly.  For a line without allocations both are equal.
    """

    contract_line_id: UUID
    contract_number: str
    unit_price: Decimal
    available: Decimal
    unallocated_available: Decimal
    allocations: tuple[SplitCandidateAllocation, ...] = ()
    priority: int = 0
    contract_id: str = ""

    def sort_key(self) -> tuple[int, str, str]:
        return (self.priority, self.contract_number, str(self.contract_line_id))


@dataclass(frozen=True)
class SplitDraft:
    """A billing split not yet persisted or posted to the ledger."""

    product_id: str
    contract_line_id: UUID
    contract_number: str
    modality_allocation_id: UUID | None
    modality_id: UUID | None
    modality_name: str | None
    quantity: Decimal
    unit_price: Decimal
    percentage_of_ordered_quantity: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class SplitResult:
    """
    Outcome of splitting one ordered product.

    Guarantees:
        - ``total_quantity + unsatisfied_remainder == ordered_quantity``.
    """

    product_id: str
    ordered_quantity: Decimal
    mode: SplitMode
    drafts: tuple[SplitDraft, ...]
    unsatisfied_remainder: Decimal

    @property
    def is_partial(self) -> bool:
        """True if the candidates could not supply the whole order."""
        return self.unsatisfied_remainder > ZERO

    @property
    def total_quantity(self) -> Decimal:
        return sum((d.quantity for d in self.drafts), ZERO)

    @property
    def total_value(self) -> Decimal:
        return sum((d.line_total for d in self.drafts), ZERO)


def _allocation_key(alloc: SplitCandidateAllocation) -> tuple[int, str, str]:
    return (alloc.priority, alloc.modality_name, str(alloc.modality_id))


def divide_proportionally(
    quantity: Decimal,
    weights: Sequence[Decimal],
    quantum: Decimal = DEFAULT_SPLIT_QUANTUM,
) -> list[Decimal]:
    """
    Divide ``quantity`` by ``weights`` with the largest-remainder method.

    Each share is floored to a multiple of ``quantum``; the whole quanta
    lost to flooring go one by one to the shares with the largest
    fractional remainder (ties to the earlier index).  A residue smaller
    than one quantum is left undistributed.

    Postconditions:
        - sum(result) <= quantity and quantity - sum(result) < quantum.
        - len(result) == len(weights).

    Raises:
        ValueError: if quantum is not positive or any weight is negative.
    """
    if quantum <= ZERO:
        raise ValueError(f"Split quantum must be positive, got {quantum}")
    if any(w < ZERO for w in weights):
        raise ValueError("Weights cannot be negative")

    total_weight = sum(weights, ZERO)
    if not weights or total_weight == ZERO:
        return [ZERO for _ in weights]

    units_total = (quantity / quantum).to_integral_value(rounding=ROUND_FLOOR)
    raw_units = [units_total * w / total_weight for w in weights]
    floors = [u.to_integral_value(rounding=ROUND_FLOOR) for u in raw_units]
    leftover = int(units_total - sum(floors, ZERO))

    by_remainder = sorted(
        range(len(weights)),
        key=lambda i: (-(raw_units[i] - floors[i]), i),
    )
    for i in by_remainder[:leftover]:
        floors[i] += 1

    return [units * quantum for units in floors]


class BillingSplitter:
    """
    Split ordered quantities across candidate lines and allocations.

    Contract:
        Pure function of its inputs.  No I/O, no database access, no clock.
    Guarantees:
        - Conservation and capacity as described in the module docstring.
    Non-goals:
        - Does not load candidates, persist drafts or record consumption;
          BillingService does all three.
        - Does not treat partial fulfillment as an error; the remainder is
          reported and the caller decides.
    """

    @traced_engine(
        "billing_splitter",
        "1.0",
        fingerprint_fields=("product_id", "ordered_quantity", "mode"),
    )
    def split_order_quantity(
        self,
        product_id: str,
        ordered_quantity: Decimal,
        candidates: Sequence[SplitCandidateLine],
        mode: SplitMode = SplitMode.PRIORITY,
        quantum: Decimal = DEFAULT_SPLIT_QUANTUM,
    ) -> SplitResult:
        """
        Split ``ordered_quantity`` of ``product_id`` across ``candidates``.

        Each line, in priority order, takes ``min(remaining, available)``.
        The line's take goes to its allocations (drained in priority order,
        or divided by transfer amount in PROPORTIONAL mode) and whatever
        they cannot absorb is attributed to the line itself, capped at its
        unallocated headroom.

        Raises:
            ValueError: if ordered_quantity is not positive.
        """
        if ordered_quantity <= ZERO:
            raise ValueError(
                f"Ordered quantity must be positive, got {ordered_quantity}"
            )

        logger.info("split_started", extra={
            "product_id": product_id,
            "ordered_quantity": str(ordered_quantity),
            "mode": mode.value,
            "candidate_count": len(candidates),
        })

        remaining = ordered_quantity
        drafts: list[SplitDraft] = []

        for line in sorted(candidates, key=SplitCandidateLine.sort_key):
            if remaining <= ZERO:
                break
            take = min(remaining, line.available)
            if take <= ZERO:
                continue

            match mode:
                case SplitMode.PRIORITY:
                    portions = self._drain_in_priority(line, take)
                case SplitMode.PROPORTIONAL:
                    portions = self._divide_by_weight(line, take, quantum)
                case _:
                    raise ValueError(f"Unknown split mode: {mode}")

            for alloc, qty in portions:
                drafts.append(
                    self._draft(product_id, ordered_quantity, line, alloc, qty)
                )
                remaining -= qty

        # INVARIANT: conservation -- drafts plus remainder equal the order.
        assert sum((d.quantity for d in drafts), ZERO) + remaining == ordered_quantity, (
            "Split conservation violated"
        )

        result = SplitResult(
            product_id=product_id,
            ordered_quantity=ordered_quantity,
            mode=mode,
            drafts=tuple(drafts),
            unsatisfied_remainder=remaining,
        )

        if result.is_partial:
            logger.warning("split_partial", extra={
                "product_id": product_id,
                "ordered_quantity": str(ordered_quantity),
                "unsatisfied_remainder": str(remaining),
            })
        logger.info("split_completed", extra={
            "product_id": product_id,
            "draft_count": len(drafts),
            "total_quantity": str(result.total_quantity),
        })
        return result

    def _drain_in_priority(
        self,
        line: SplitCandidateLine,
        take: Decimal,
    ) -> list[tuple[SplitCandidateAllocation | None, Decimal]]:
        portions: list[tuple[SplitCandidateAllocation | None, Decimal]] = []
        left = take
        for alloc in sorted(line.allocations, key=_allocation_key):
            if left <= ZERO:
                break
            qty = min(left, alloc.available)
            if qty > ZERO:
                portions.append((alloc, qty))
                left -= qty
        direct = min(left, line.unallocated_available)
        if direct > ZERO:
            portions.append((None, direct))
        return portions

    def _divide_by_weight(
        self,
        line: SplitCandidateLine,
        take: Decimal,
        quantum: Decimal,
    ) -> list[tuple[SplitCandidateAllocation | None, Decimal]]:
        ordered = sorted(
            (a for a in line.allocations if a.available > ZERO),
            key=_allocation_key,
        )
        if not ordered or sum((a.weight for a in ordered), ZERO) == ZERO:
            return self._drain_in_priority(line, take)

        shares = divide_proportionally(take, [a.weight for a in ordered], quantum)
        given: dict[UUID, Decimal] = {}
        for alloc, share in zip(ordered, shares):
            given[alloc.modality_allocation_id] = min(share, alloc.available)

        # Capped shares and the sub-quantum residue cascade in priority order.
        left = take - sum(given.values(), ZERO)
        for alloc in ordered:
            if left <= ZERO:
                break
            room = alloc.available - given[alloc.modality_allocation_id]
            extra = min(left, room)
            if extra > ZERO:
                given[alloc.modality_allocation_id] += extra
                left -= extra

        portions: list[tuple[SplitCandidateAllocation | None, Decimal]] = [
            (alloc, given[alloc.modality_allocation_id])
            for alloc in ordered
            if given[alloc.modality_allocation_id] > ZERO
        ]
        direct = min(left, line.unallocated_available)
        if direct > ZERO:
            portions.append((None, direct))
        return portions

    @staticmethod
    def _draft(
        product_id: str,
        ordered_quantity: Decimal,
        line: SplitCandidateLine,
        alloc: SplitCandidateAllocation | None,
        quantity: Decimal,
    ) -> SplitDraft:
        return SplitDraft(
            product_id=product_id,
            contract_line_id=line.contract_line_id,
            contract_number=line.contract_number,
            modality_allocation_id=alloc.modality_allocation_id if alloc else None,
            modality_id=alloc.modality_id if alloc else None,
            modality_name=alloc.modality_name if alloc else None,
            quantity=quantity,
            unit_price=line.unit_price,
            percentage_of_ordered_quantity=round_value(
                quantity / ordered_quantity * _HUNDRED
            ),
            line_total=round_value(quantity * line.unit_price),
        )
