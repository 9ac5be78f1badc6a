"""
Module: ledger_kernel.selectors.balance_selector
Responsibility: Read-only balance listings at line and (line, modality)
    granularity, with filtering, paging and per-status statistics, plus the
    consumption history of a line or allocation.
Architecture position: Kernel > Selectors.  May import from db/, domain/,
    models/ and selectors/base.py.

Invariants enforced:
    - Line consumed == direct consumed + sum of allocation consumed; the
      same derivation the write side uses, never a second stored figure.
    - Status is classified with the same ratio for lines and allocations.
    - History is ordered newest first; reversed events stay visible,
      flagged ``reversed``.

Failure modes:
    - ValueError on page < 1, limit < 1, or a history query that does not
      name exactly one target.
    - ContractLineNotFoundError / AllocationNotFoundError for unknown ids.

Reads may lag a concurrent writer; callers wanting a consistent view read
inside one transaction.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from math import ceil
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ledger_kernel.db.types import ZERO, round_value
from ledger_kernel.domain.dtos import (
    AllocationPresence,
    BalanceSnapshot,
    ModalityInfo,
    TargetKind,
)
from ledger_kernel.domain.status import DEFAULT_LOW_RATIO, BalanceStatus
from ledger_kernel.exceptions import AllocationNotFoundError, ContractLineNotFoundError
from ledger_kernel.models.consumption import ConsumptionEvent
from ledger_kernel.models.contract_line import ContractLine, ContractLineBalance
from ledger_kernel.models.modality import Modality, ModalityAllocation
from ledger_kernel.selectors.base import BaseSelector

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class Pagination:
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return ceil(self.total / self.limit) if self.total else 0


@dataclass(frozen=True)
class BalanceStatistics:
    """
    Counts per status and quantity/value totals over the filtered rows.

    Computed before the status filter and before paging, so the counts
    describe every registered row the other filters matched.  ABSENT
    modality rows are not counted.
    """

    total_items: int
    available_count: int
    low_count: int
    depleted_count: int
    contracted_quantity: Decimal
    consumed_quantity: Decimal
    available_quantity: Decimal
    available_value: Decimal


@dataclass(frozen=True)
class LineBalanceRow:
    """One contract line in the balance listing."""

    contract_line_id: UUID
    contract_id: str
    contract_number: str
    supplier_id: str
    supplier_name: str
    product_id: str
    product_name: str
    unit: str
    unit_price: Decimal
    contracted_quantity: Decimal
    consumed_quantity: Decimal
    available_quantity: Decimal
    available_value: Decimal
    status: BalanceStatus


@dataclass(frozen=True)
class ModalityBalanceRow:
    """
    One (line, modality) pair in the modality balance listing.

    ABSENT rows ("não cadastrada") carry no allocation id, zero quantities
    and no status; status filters and statistics skip them.
    """

    modality_allocation_id: UUID | None
    presence: AllocationPresence
    contract_line_id: UUID
    contract_id: str
    contract_number: str
    supplier_id: str
    supplier_name: str
    product_id: str
    product_name: str
    unit: str
    unit_price: Decimal
    modality_id: UUID
    modality_name: str
    financial_code: str | None
    initial_quantity: Decimal
    consumed_quantity: Decimal
    available_quantity: Decimal
    available_value: Decimal
    status: BalanceStatus | None


@dataclass(frozen=True)
class BalancePage:
    items: tuple[LineBalanceRow, ...]
    pagination: Pagination
    statistics: BalanceStatistics


@dataclass(frozen=True)
class ModalityBalancePage:
    items: tuple[ModalityBalanceRow, ...]
    pagination: Pagination
    statistics: BalanceStatistics


@dataclass(frozen=True)
class HistoryEntry:
    """One consumption event as shown in a history listing."""

    event_id: UUID
    date: datetime
    quantity: Decimal
    responsible: str
    note: str | None
    reversed: bool
    reversed_at: datetime | None
    reversed_by: str | None
    target_kind: TargetKind
    target_id: UUID


def _statistics(rows: Sequence[LineBalanceRow | ModalityBalanceRow]) -> BalanceStatistics:
    rows = [r for r in rows if r.status is not None]
    counts = {status: 0 for status in BalanceStatus}
    for row in rows:
        counts[row.status] += 1
    capacity = (
        row.contracted_quantity if isinstance(row, LineBalanceRow) else row.initial_quantity
        for row in rows
    )
    return BalanceStatistics(
        total_items=len(rows),
        available_count=counts[BalanceStatus.AVAILABLE],
        low_count=counts[BalanceStatus.LOW],
        depleted_count=counts[BalanceStatus.DEPLETED],
        contracted_quantity=sum(capacity, ZERO),
        consumed_quantity=sum((r.consumed_quantity for r in rows), ZERO),
        available_quantity=sum((r.available_quantity for r in rows), ZERO),
        available_value=round_value(sum((r.available_value for r in rows), ZERO)),
    )


class BalanceSelector(BaseSelector):
    """
    Balance listings and consumption history.

    Guarantees:
        - Filtering by text happens in SQL; status is derived, so status
          filtering and statistics happen after the rows are computed.
        - Page size defaults to ``default_page_size`` and is capped at
          ``max_page_size``.
    """

    def __init__(
        self,
        session: Session,
        low_ratio: Decimal = DEFAULT_LOW_RATIO,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ):
        super().__init__(session)
        self.low_ratio = low_ratio
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    # -- Listings ----------------------------------------------------------

    def list_balances(
        self,
        tenant_id: str,
        product_name: str | None = None,
        status: BalanceStatus | None = None,
        supplier_id: str | None = None,
        contract_number: str | None = None,
        page: int = 1,
        limit: int | None = None,
        include_inactive: bool = False,
    ) -> BalancePage:
        """
        Paged balance listing per contract line.

        ``product_name`` matches a case-insensitive substring.  Rows are
        sorted by contract number, then product name.
        """
        limit = self._check_paging(page, limit)
        lines = self._lines(
            tenant_id, product_name, supplier_id, contract_number, include_inactive
        )
        direct = self._direct_consumed(line.id for line in lines)
        allocations = self._allocations(tenant_id, [line.id for line in lines])

        rows: list[LineBalanceRow] = []
        for line in lines:
            consumed = direct.get(line.id, ZERO) + sum(
                (a.consumed_quantity for a in allocations.get(line.id, [])), ZERO
            )
            rows.append(self._line_row(line, consumed))

        return BalancePage(*self._page(rows, status, page, limit))

    def list_modality_balances(
        self,
        tenant_id: str,
        product_name: str | None = None,
        status: BalanceStatus | None = None,
        modality_id: UUID | None = None,
        contract_number: str | None = None,
        supplier_id: str | None = None,
        include_absent: bool = False,
        page: int = 1,
        limit: int | None = None,
        include_inactive: bool = False,
    ) -> ModalityBalancePage:
        """
        Paged balance listing per (line, modality) pair.

        With ``include_absent`` every active modality without an allocation
        on a listed line appears as an ABSENT row.  Rows are sorted by
        contract number, product name, then modality name.
        """
        limit = self._check_paging(page, limit)
        lines = self._lines(
            tenant_id, product_name, supplier_id, contract_number, include_inactive
        )
        allocations = self._allocations(tenant_id, [line.id for line in lines])

        modalities: list[Modality] = []
        if include_absent:
            stmt = select(Modality).where(
                Modality.tenant_id == tenant_id,
                Modality.is_active.is_(True),
            )
            if modality_id is not None:
                stmt = stmt.where(Modality.id == modality_id)
            modalities = list(self.session.execute(stmt).scalars())

        rows: list[ModalityBalanceRow] = []
        for line in lines:
            present = {
                a.modality_id: a
                for a in allocations.get(line.id, [])
                if modality_id is None or a.modality_id == modality_id
            }
            for allocation in present.values():
                rows.append(
                    self._modality_row(
                        line,
                        allocation.modality,
                        allocation.id,
                        BalanceSnapshot.of(
                            allocation.initial_quantity,
                            allocation.consumed_quantity,
                            self.low_ratio,
                        ),
                    )
                )
            for modality in modalities:
                if modality.id not in present:
                    rows.append(
                        self._modality_row(
                            line, modality, None, BalanceSnapshot.of(ZERO, ZERO, self.low_ratio)
                        )
                    )

        rows.sort(key=lambda r: (r.contract_number, r.product_name, r.modality_name))
        return ModalityBalancePage(*self._page(rows, status, page, limit))

    # -- Single balances ---------------------------------------------------

    def get_line_balance(self, tenant_id: str, contract_line_id: UUID) -> LineBalanceRow:
        line = self.session.execute(
            select(ContractLine).where(
                ContractLine.id == contract_line_id,
                ContractLine.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if line is None:
            raise ContractLineNotFoundError(str(contract_line_id))
        direct = self._direct_consumed([line.id]).get(line.id, ZERO)
        allocations = self._allocations(tenant_id, [line.id]).get(line.id, [])
        return self._line_row(
            line, direct + sum((a.consumed_quantity for a in allocations), ZERO)
        )

    def get_allocation_balance(
        self,
        tenant_id: str,
        modality_allocation_id: UUID,
    ) -> ModalityBalanceRow:
        allocation = self.session.execute(
            select(ModalityAllocation).where(
                ModalityAllocation.id == modality_allocation_id,
                ModalityAllocation.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if allocation is None:
            raise AllocationNotFoundError(str(modality_allocation_id))
        line = self.session.get(ContractLine, allocation.contract_line_id)
        return self._modality_row(
            line,
            allocation.modality,
            allocation.id,
            BalanceSnapshot.of(
                allocation.initial_quantity, allocation.consumed_quantity, self.low_ratio
            ),
        )

    def list_modalities(
        self,
        tenant_id: str,
        include_inactive: bool = False,
    ) -> list[ModalityInfo]:
        """Modalities of a tenant, sorted by name."""
        stmt = select(Modality).where(Modality.tenant_id == tenant_id)
        if not include_inactive:
            stmt = stmt.where(Modality.is_active.is_(True))
        return [
            ModalityInfo(
                id=m.id,
                tenant_id=m.tenant_id,
                name=m.name,
                financial_code=m.financial_code,
                transfer_amount=m.transfer_amount,
                is_active=m.is_active,
            )
            for m in self.session.execute(stmt.order_by(Modality.name)).scalars()
        ]

    # -- History -----------------------------------------------------------

    def get_consumption_history(
        self,
        tenant_id: str,
        contract_line_id: UUID | None = None,
        modality_allocation_id: UUID | None = None,
        include_allocations: bool = False,
    ) -> list[HistoryEntry]:
        """
        Consumption events of one line or one allocation, newest first.

        For a line, ``include_allocations`` adds the events posted against
        the line's allocations.

        Raises:
            ValueError: not exactly one of the two ids was given.
        """
        if (contract_line_id is None) == (modality_allocation_id is None):
            raise ValueError(
                "Exactly one of contract_line_id or modality_allocation_id is required"
            )

        stmt = select(ConsumptionEvent).where(ConsumptionEvent.tenant_id == tenant_id)
        if contract_line_id is not None:
            if include_allocations:
                allocation_ids = select(ModalityAllocation.id).where(
                    ModalityAllocation.contract_line_id == contract_line_id
                )
                stmt = stmt.where(
                    or_(
                        ConsumptionEvent.contract_line_id == contract_line_id,
                        ConsumptionEvent.modality_allocation_id.in_(allocation_ids),
                    )
                )
            else:
                stmt = stmt.where(ConsumptionEvent.contract_line_id == contract_line_id)
        else:
            stmt = stmt.where(
                ConsumptionEvent.modality_allocation_id == modality_allocation_id
            )

        stmt = stmt.order_by(
            ConsumptionEvent.occurred_at.desc(),
            ConsumptionEvent.id,
        )
        return [
            HistoryEntry(
                event_id=e.id,
                date=e.occurred_at,
                quantity=e.quantity,
                responsible=e.responsible,
                note=e.note,
                reversed=e.reversed,
                reversed_at=e.reversed_at,
                reversed_by=e.reversed_by,
                target_kind=e.kind,
                target_id=e.target_id,
            )
            for e in self.session.execute(stmt).scalars()
        ]

    # -- Internals ---------------------------------------------------------

    def _check_paging(self, page: int, limit: int | None) -> int:
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        if limit is None:
            return self.default_page_size
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        return min(limit, self.max_page_size)

    def _lines(
        self,
        tenant_id: str,
        product_name: str | None,
        supplier_id: str | None,
        contract_number: str | None,
        include_inactive: bool,
    ) -> list[ContractLine]:
        stmt = select(ContractLine).where(ContractLine.tenant_id == tenant_id)
        if not include_inactive:
            stmt = stmt.where(ContractLine.is_active.is_(True))
        if product_name:
            stmt = stmt.where(
                func.lower(ContractLine.product_name).contains(
                    product_name.lower(), autoescape=True
                )
            )
        if supplier_id is not None:
            stmt = stmt.where(ContractLine.supplier_id == supplier_id)
        if contract_number is not None:
            stmt = stmt.where(ContractLine.contract_number == contract_number)
        stmt = stmt.order_by(
            ContractLine.contract_number, ContractLine.product_name, ContractLine.id
        )
        return list(self.session.execute(stmt).scalars())

    def _direct_consumed(self, line_ids: Iterable[UUID]) -> dict[UUID, Decimal]:
        ids = list(line_ids)
        if not ids:
            return {}
        rows = self.session.execute(
            select(
                ContractLineBalance.contract_line_id,
                ContractLineBalance.direct_consumed_quantity,
            ).where(ContractLineBalance.contract_line_id.in_(ids))
        ).all()
        return {line_id: quantity for line_id, quantity in rows}

    def _allocations(
        self,
        tenant_id: str,
        line_ids: list[UUID],
    ) -> dict[UUID, list[ModalityAllocation]]:
        if not line_ids:
            return {}
        grouped: dict[UUID, list[ModalityAllocation]] = {}
        for allocation in self.session.execute(
            select(ModalityAllocation).where(
                ModalityAllocation.tenant_id == tenant_id,
                ModalityAllocation.contract_line_id.in_(line_ids),
            )
        ).scalars():
            grouped.setdefault(allocation.contract_line_id, []).append(allocation)
        return grouped

    def _line_row(self, line: ContractLine, consumed: Decimal) -> LineBalanceRow:
        snapshot = BalanceSnapshot.of(line.contracted_quantity, consumed, self.low_ratio)
        return LineBalanceRow(
            contract_line_id=line.id,
            contract_id=line.contract_id,
            contract_number=line.contract_number,
            supplier_id=line.supplier_id,
            supplier_name=line.supplier_name,
            product_id=line.product_id,
            product_name=line.product_name,
            unit=line.unit,
            unit_price=line.unit_price,
            contracted_quantity=snapshot.capacity,
            consumed_quantity=snapshot.consumed,
            available_quantity=snapshot.available,
            available_value=round_value(snapshot.available * line.unit_price),
            status=snapshot.status,
        )

    @staticmethod
    def _modality_row(
        line: ContractLine,
        modality: Modality,
        allocation_id: UUID | None,
        snapshot: BalanceSnapshot,
    ) -> ModalityBalanceRow:
        return ModalityBalanceRow(
            modality_allocation_id=allocation_id,
            presence=(
                AllocationPresence.PRESENT
                if allocation_id is not None
                else AllocationPresence.ABSENT
            ),
            contract_line_id=line.id,
            contract_id=line.contract_id,
            contract_number=line.contract_number,
            supplier_id=line.supplier_id,
            supplier_name=line.supplier_name,
            product_id=line.product_id,
            product_name=line.product_name,
            unit=line.unit,
            unit_price=line.unit_price,
            modality_id=modality.id,
            modality_name=modality.name,
            financial_code=modality.financial_code,
            initial_quantity=snapshot.capacity,
            consumed_quantity=snapshot.consumed,
            available_quantity=snapshot.available,
            available_value=round_value(snapshot.available * line.unit_price),
            status=snapshot.status if allocation_id is not None else None,
        )

    @staticmethod
    def _page(rows, status, page, limit):
        statistics = _statistics(rows)
        if status is not None:
            rows = [r for r in rows if r.status == BalanceStatus(status)]
        start = (page - 1) * limit
        items = tuple(rows[start:start + limit])
        return items, Pagination(page=page, limit=limit, total=len(rows)), statistics
