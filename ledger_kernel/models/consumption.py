"""
Module: ledger_kernel.models.consumption
Responsibility: ORM persistence for consumption events -- the append-only
    ledger of debits against a contract line or a modality allocation.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Exactly one target: contract_line_id XOR modality_allocation_id (CHECK).
    - quantity > 0 (CHECK).  Reversal never writes a negative event; it
      flips ``reversed`` on the original.
    - For every target, the sum of non-reversed event quantities equals the
      target's stored consumed quantity (maintained by ConsumptionLedger).

Failure modes:
    - IntegrityError when a row violates the XOR or positivity checks.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base, UUIDString
from ledger_kernel.domain.dtos import TargetKind


class ConsumptionEvent(Base):
    """
    A single debit against a line or allocation.

    Contract:
        Created once by ConsumptionLedger.record_consumption().  The only
        later mutation is reversal: ``reversed`` flips to True and the
        reversal stamp fields are filled.  A reversed event is inert.
    """

    __tablename__ = "consumption_events"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_consumption_quantity_positive"),
        CheckConstraint(
            "(contract_line_id IS NULL) <> (modality_allocation_id IS NULL)",
            name="ck_consumption_single_target",
        ),
        Index("idx_consumption_line", "contract_line_id", "occurred_at"),
        Index("idx_consumption_allocation", "modality_allocation_id", "occurred_at"),
        Index("idx_consumption_tenant", "tenant_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    target_kind: Mapped[str] = mapped_column(String(20), nullable=False)

    contract_line_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("contract_lines.id"),
        nullable=True,
    )

    modality_allocation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("modality_allocations.id"),
        nullable=True,
    )

    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    responsible: Mapped[str] = mapped_column(String(100), nullable=False)
    note: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    reversed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reversed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reversed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    @property
    def kind(self) -> TargetKind:
        return TargetKind(self.target_kind)

    @property
    def target_id(self) -> UUID:
        if self.modality_allocation_id is not None:
            return self.modality_allocation_id
        return self.contract_line_id

    def __repr__(self) -> str:
        flag = " reversed" if self.reversed else ""
        return f"<ConsumptionEvent {self.target_kind}:{self.target_id} {self.quantity}{flag}>"
