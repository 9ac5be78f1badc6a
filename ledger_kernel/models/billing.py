"""
Module: ledger_kernel.models.billing
Responsibility: ORM persistence for bills ("faturamentos") and their billing
    splits.  A Bill covers one order; each BillingSplit is the portion of one
    ordered product satisfied by one (contract line, modality allocation)
    pair.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One bill per (tenant, order) (unique constraint).
    - Bill numbers are unique per tenant.
    - A split's ``consumption_confirmed`` flag and its
      ``consumption_event_id`` move together: confirmed iff an event id is
      stored (maintained by BillingService).

Failure modes:
    - IntegrityError on a second bill for the same order.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
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

from ledger_kernel.db.base import Base, TrackedBase, UUIDString


class BillStatus(str, Enum):
    """Bill lifecycle status."""

    GENERATED = "GENERATED"
    CONSUMED = "CONSUMED"
    CANCELLED = "CANCELLED"


class Bill(TrackedBase):
    """
    Billing document for one order.

    Contract:
        Created by BillingService.generate_bill().  ``total_value`` is the
        sum of its splits' line totals and is recomputed whenever splits
        are removed.

    Guarantees:
        - status lifecycle: GENERATED <-> CONSUMED (all splits confirmed);
          CANCELLED is terminal.
    """

    __tablename__ = "bills"

    __table_args__ = (
        UniqueConstraint("tenant_id", "order_id", name="uq_bill_order"),
        UniqueConstraint("tenant_id", "number", name="uq_bill_number"),
        Index("idx_bill_tenant_status", "tenant_id", "status"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    number: Mapped[str] = mapped_column(String(30), nullable=False)

    status: Mapped[BillStatus] = mapped_column(
        String(20),
        nullable=False,
        default=BillStatus.GENERATED,
    )

    total_value: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )
    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    billed_at: Mapped[datetime] = mapped_column(nullable=False)

    splits: Mapped[list["BillingSplit"]] = relationship(
        back_populates="bill",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="BillingSplit.sequence",
    )

    def refresh_status(self, actor: str) -> None:
        """CONSUMED when every split is confirmed, else GENERATED; CANCELLED stays."""
        if self.status == BillStatus.CANCELLED:
            return
        confirmed = bool(self.splits) and all(s.consumption_confirmed for s in self.splits)
        self.status = BillStatus.CONSUMED if confirmed else BillStatus.GENERATED
        self.updated_by = actor

    def __repr__(self) -> str:
        return f"<Bill {self.number} order={self.order_id} {self.status}>"


class BillingSplit(TrackedBase):
    """
    Portion of an ordered product fulfilled by one line (and modality).

    ``modality_allocation_id`` is None when the quantity is attributed to
    the contract line directly.  ``percentage_of_ordered_quantity`` is
    informational only.
    """

    __tablename__ = "billing_splits"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_split_quantity_positive"),
        Index("idx_split_bill", "bill_id"),
        Index("idx_split_line", "contract_line_id"),
        Index("idx_split_allocation", "modality_allocation_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    bill_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("bills.id"),
        nullable=False,
    )

    sequence: Mapped[int] = mapped_column(nullable=False)

    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)

    contract_line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("contract_lines.id"),
        nullable=False,
    )

    modality_allocation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("modality_allocations.id"),
        nullable=True,
    )

    ordered_quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    percentage_of_ordered_quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False
    )
    line_total: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    consumption_confirmed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    confirmation_date: Mapped[datetime | None] = mapped_column(nullable=True)

    # Event written by the matching confirm; cleared on reversal.
    consumption_event_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("consumption_events.id"),
        nullable=True,
    )

    # Increments on every UPDATE; guards the confirmation flag.
    version: Mapped[int] = mapped_column(BigInteger, nullable=False)

    bill: Mapped[Bill] = relationship(back_populates="splits")

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        target = self.modality_allocation_id or self.contract_line_id
        flag = " confirmed" if self.consumption_confirmed else ""
        return f"<BillingSplit {self.product_id} {self.quantity} -> {target}{flag}>"


class BillNumberCounter(Base):
    """
    Per-tenant, per-year counter behind bill numbers.

    Row-level locking on this row keeps numbers unique and gap-free under
    concurrent bill generation.
    """

    __tablename__ = "bill_number_counters"

    __table_args__ = (
        UniqueConstraint("tenant_id", "year", name="uq_bill_counter_tenant_year"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    year: Mapped[int] = mapped_column(nullable=False)
    current_value: Mapped[int] = mapped_column(nullable=False, default=0)
