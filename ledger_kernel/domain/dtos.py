"""
Domain DTOs -- frozen values crossing the service boundary.

Responsibility:
    Consumption targets (a tagged union of line and allocation), balance
    snapshots, and the allocation presence marker.  Services return these
    instead of ORM entities so callers never hold live session state.

Architecture position:
    Kernel > Domain -- pure, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID

from ledger_kernel.domain.status import DEFAULT_LOW_RATIO, BalanceStatus, classify


class TargetKind(str, Enum):
    """What a consumption event debits."""

    LINE = "line"
    ALLOCATION = "allocation"


@dataclass(frozen=True)
class LineTarget:
    """Consumption posted directly against a contract line."""

    contract_line_id: UUID

    @property
    def kind(self) -> TargetKind:
        return TargetKind.LINE

    @property
    def target_id(self) -> UUID:
        return self.contract_line_id


@dataclass(frozen=True)
class AllocationTarget:
    """Consumption posted against one modality allocation of a line."""

    modality_allocation_id: UUID

    @property
    def kind(self) -> TargetKind:
        return TargetKind.ALLOCATION

    @property
    def target_id(self) -> UUID:
        return self.modality_allocation_id


ConsumptionTarget = LineTarget | AllocationTarget


class AllocationPresence(str, Enum):
    """
    Whether a (line, modality) pair has an allocation record.

    ABSENT ("não cadastrada") is displayable with zero quantities and is
    distinct from a PRESENT allocation whose initial quantity is zero.
    """

    PRESENT = "present"
    ABSENT = "absent"


@dataclass(frozen=True)
class BalanceSnapshot:
    """Capacity, consumption and status of a line or allocation at one instant."""

    capacity: Decimal
    consumed: Decimal
    available: Decimal
    status: BalanceStatus

    @classmethod
    def of(
        cls,
        capacity: Decimal,
        consumed: Decimal,
        low_ratio: Decimal = DEFAULT_LOW_RATIO,
    ) -> BalanceSnapshot:
        return cls(
            capacity=capacity,
            consumed=consumed,
            available=capacity - consumed,
            status=classify(capacity, consumed, low_ratio),
        )


@dataclass(frozen=True)
class ContractLineInfo:
    """Immutable view of a registered contract line."""

    id: UUID
    tenant_id: str
    contract_id: str
    contract_number: str
    supplier_id: str
    supplier_name: str
    product_id: str
    product_name: str
    unit: str
    unit_price: Decimal
    contracted_quantity: Decimal
    is_active: bool


@dataclass(frozen=True)
class ModalityInfo:
    """Immutable view of a funding modality."""

    id: UUID
    tenant_id: str
    name: str
    financial_code: str | None
    transfer_amount: Decimal
    is_active: bool


@dataclass(frozen=True)
class AllocationInfo:
    """
    A (line, modality) allocation as seen after an edit or a lookup.

    ``allocation_id`` is None exactly when ``presence`` is ABSENT; the
    quantities are then zero.
    """

    allocation_id: UUID | None
    contract_line_id: UUID
    modality_id: UUID
    modality_name: str
    financial_code: str | None
    presence: AllocationPresence
    snapshot: BalanceSnapshot
    created: bool = False

    @property
    def initial_quantity(self) -> Decimal:
        return self.snapshot.capacity

    @property
    def consumed_quantity(self) -> Decimal:
        return self.snapshot.consumed

    @property
    def available_quantity(self) -> Decimal:
        return self.snapshot.available
