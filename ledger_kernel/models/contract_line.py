"""
Module: ledger_kernel.models.contract_line
Responsibility: ORM persistence for contracted product lines and their running
    balance rows.  A ContractLine is one priced product under a supplier
    contract; its ContractLineBalance holds the quantity consumed directly on
    the line plus the optimistic-lock version that serializes writers.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - contracted_quantity is fixed once registered (enforced by
      ContractCatalogService, not the ORM).
    - 0 <= direct_consumed_quantity (CHECK constraint).
    - One balance row per line (unique contract_line_id).

Failure modes:
    - IntegrityError on a second balance row for the same line.
    - StaleDataError when two transactions update the same balance row from
      the same version.
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


class ContractLine(TrackedBase):
    """
    A purchasable product under a specific supplier contract.

    Contract:
        Supplied by the upstream contract-management collaborator.  The
        ledger reads it and never prices, deletes or re-sizes it.

    Non-goals:
        - Does NOT hold a collection of modality allocations; allocations
          reference the line by id and are looked up by contract_line_id.
    """

    __tablename__ = "contract_lines"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "contract_id", "product_id", name="uq_contract_line_product"
        ),
        CheckConstraint("contracted_quantity >= 0", name="ck_contracted_quantity_nonneg"),
        Index("idx_contract_line_tenant_product", "tenant_id", "product_id"),
        Index("idx_contract_line_contract", "contract_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    contract_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contract_number: Mapped[str] = mapped_column(String(50), nullable=False)

    supplier_id: Mapped[str] = mapped_column(String(64), nullable=False)
    supplier_name: Mapped[str] = mapped_column(String(255), nullable=False)

    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False)

    unit_price: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    contracted_quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    balance: Mapped["ContractLineBalance | None"] = relationship(
        "ContractLineBalance",
        back_populates="contract_line",
        uselist=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ContractLine {self.contract_number}/{self.product_name} "
            f"qty={self.contracted_quantity}>"
        )


class ContractLineBalance(TrackedBase):
    """
    Mutable running balance for a ContractLine.

    Contract:
        Holds only the quantity consumed DIRECTLY on the line.  The line's
        aggregate consumption (direct plus every allocation's consumption)
        is derived by the Balance Store, never stored twice.

    Guarantees:
        - ``version`` increments on every UPDATE; a concurrent writer that
          read an older version fails with StaleDataError.
        - Created lazily with zero consumption; never hard-deleted.
    """

    __tablename__ = "contract_line_balances"

    __table_args__ = (
        UniqueConstraint("contract_line_id", name="uq_balance_contract_line"),
        CheckConstraint(
            "direct_consumed_quantity >= 0", name="ck_direct_consumed_nonneg"
        ),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    contract_line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("contract_lines.id"),
        nullable=False,
    )

    direct_consumed_quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    version: Mapped[int] = mapped_column(BigInteger, nullable=False)

    contract_line: Mapped[ContractLine] = relationship(
        "ContractLine",
        back_populates="balance",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<ContractLineBalance line={self.contract_line_id} "
            f"direct={self.direct_consumed_quantity} v{self.version}>"
        )
