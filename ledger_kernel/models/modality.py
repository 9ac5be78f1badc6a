"""
Module: ledger_kernel.models.modality
Responsibility: ORM persistence for funding modalities (school-feeding
    program categories) and the per-line allocation of contracted quantity
    to each modality.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Invariant A: 0 <= consumed_quantity <= initial_quantity (CHECK).
    - One allocation per (contract line, modality) pair (unique constraint).
    - Invariant B (sum of initial quantities <= contracted quantity) spans
      rows and is enforced by AllocationService under the line lock.

Failure modes:
    - IntegrityError on a duplicate (contract_line_id, modality_id) pair.
    - StaleDataError on a concurrent update of the same allocation row.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import TrackedBase, UUIDString


class Modality(TrackedBase):
    """
    A funding/program category that can claim part of a contract line.

    ``transfer_amount`` is the program's funding transfer ("valor de
    repasse"); its share of the sum over active modalities is the weight
    used when an order quantity is split proportionally.
    """

    __tablename__ = "modalities"

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_modality_name"),
        CheckConstraint("transfer_amount >= 0", name="ck_transfer_amount_nonneg"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    financial_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    transfer_amount: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Modality {self.name}>"


class ModalityAllocation(TrackedBase):
    """
    Sub-quantity of a contract line assigned to one modality.

    Contract:
        ``initial_quantity`` changes only through an authorized edit
        (AllocationService); ``consumed_quantity`` changes only through
        consumption events (ConsumptionLedger).

    Guarantees:
        - 0 <= consumed_quantity <= initial_quantity.
        - ``version`` increments on every UPDATE.
    """

    __tablename__ = "modality_allocations"

    __table_args__ = (
        UniqueConstraint(
            "contract_line_id", "modality_id", name="uq_allocation_line_modality"
        ),
        CheckConstraint("initial_quantity >= 0", name="ck_initial_quantity_nonneg"),
        CheckConstraint("consumed_quantity >= 0", name="ck_allocation_consumed_nonneg"),
        CheckConstraint(
            "consumed_quantity <= initial_quantity", name="ck_allocation_consumed_bound"
        ),
        Index("idx_allocation_tenant_line", "tenant_id", "contract_line_id"),
        Index("idx_allocation_modality", "modality_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    contract_line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("contract_lines.id"),
        nullable=False,
    )

    modality_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("modalities.id"),
        nullable=False,
    )

    initial_quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    consumed_quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    version: Mapped[int] = mapped_column(BigInteger, nullable=False)

    modality: Mapped[Modality] = relationship("Modality", lazy="selectin")

    __mapper_args__ = {"version_id_col": version}

    @property
    def available_quantity(self) -> Decimal:
        return self.initial_quantity - self.consumed_quantity

    def __repr__(self) -> str:
        return (
            f"<ModalityAllocation line={self.contract_line_id} "
            f"modality={self.modality_id} {self.consumed_quantity}/{self.initial_quantity}>"
        )
