"""
ContractCatalogService -- intake of contract lines and funding modalities.

Responsibility:
    Receives contract lines and modality definitions from the upstream
    contract-management collaborator and keeps the local catalog in sync.
    The ledger never prices or re-sizes a line on its own; this service
    only records what upstream supplies.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - contracted_quantity is immutable once a line is registered;
      re-registration with a different quantity is rejected.
    - Every registered line gets its balance row in the same flush.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - ContractedQuantityImmutableError: upstream re-sync changed the
      contracted quantity of an existing line.
    - InvalidQuantityError: negative contracted quantity or unit price.
    - ContractLineNotFoundError / ModalityNotFoundError on deactivation of
      an unknown id.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from ledger_kernel.db.types import ZERO, to_quantity
from ledger_kernel.domain.dtos import ContractLineInfo, ModalityInfo
from ledger_kernel.exceptions import (
    ContractedQuantityImmutableError,
    InvalidQuantityError,
    ModalityNotFoundError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.contract_line import ContractLine, ContractLineBalance
from ledger_kernel.models.modality import Modality
from ledger_kernel.services.balance_store import BalanceStore
from ledger_kernel.services.base import BaseService

logger = get_logger("services.catalog")


def line_info(line: ContractLine) -> ContractLineInfo:
    return ContractLineInfo(
        id=line.id,
        tenant_id=line.tenant_id,
        contract_id=line.contract_id,
        contract_number=line.contract_number,
        supplier_id=line.supplier_id,
        supplier_name=line.supplier_name,
        product_id=line.product_id,
        product_name=line.product_name,
        unit=line.unit,
        unit_price=line.unit_price,
        contracted_quantity=line.contracted_quantity,
        is_active=line.is_active,
    )


def modality_info(modality: Modality) -> ModalityInfo:
    return ModalityInfo(
        id=modality.id,
        tenant_id=modality.tenant_id,
        name=modality.name,
        financial_code=modality.financial_code,
        transfer_amount=modality.transfer_amount,
        is_active=modality.is_active,
    )


class ContractCatalogService(BaseService):
    """
    Upsert contract lines and modalities supplied from upstream.

    Guarantees:
        - Registration is idempotent for identical input.
        - Returns frozen DTOs, never ORM entities.

    Non-goals:
        - Does NOT delete lines; upstream deactivates them.
    """

    def register_contract_line(
        self,
        tenant_id: str,
        contract_id: str,
        contract_number: str,
        supplier_id: str,
        supplier_name: str,
        product_id: str,
        product_name: str,
        unit: str,
        unit_price: Decimal | int | str,
        contracted_quantity: Decimal | int | str,
        actor: str,
    ) -> ContractLineInfo:
        """
        Register a contract line, or refresh its descriptive fields.

        A line is identified by (tenant_id, contract_id, product_id).

        Raises:
            InvalidQuantityError: negative quantity or price.
            ContractedQuantityImmutableError: the line exists with a
                different contracted quantity.
        """
        quantity = to_quantity(contracted_quantity)
        price = to_quantity(unit_price)
        if quantity < ZERO:
            raise InvalidQuantityError(quantity, "contracted quantity cannot be negative")
        if price < ZERO:
            raise InvalidQuantityError(price, "unit price cannot be negative")

        line = self.session.execute(
            select(ContractLine).where(
                ContractLine.tenant_id == tenant_id,
                ContractLine.contract_id == contract_id,
                ContractLine.product_id == product_id,
            )
        ).scalar_one_or_none()

        if line is not None:
            if line.contracted_quantity != quantity:
                logger.warning(
                    "contracted_quantity_change_rejected",
                    extra={
                        "contract_line_id": str(line.id),
                        "current_quantity": str(line.contracted_quantity),
                        "attempted_quantity": str(quantity),
                    },
                )
                raise ContractedQuantityImmutableError(
                    str(line.id), line.contracted_quantity, quantity
                )
            line.contract_number = contract_number
            line.supplier_id = supplier_id
            line.supplier_name = supplier_name
            line.product_name = product_name
            line.unit = unit
            line.unit_price = price
            line.is_active = True
            line.updated_by = actor
            self.session.flush()
            logger.info(
                "contract_line_refreshed",
                extra={"contract_line_id": str(line.id), "contract_number": contract_number},
            )
            return line_info(line)

        line = ContractLine(
            tenant_id=tenant_id,
            contract_id=contract_id,
            contract_number=contract_number,
            supplier_id=supplier_id,
            supplier_name=supplier_name,
            product_id=product_id,
            product_name=product_name,
            unit=unit,
            unit_price=price,
            contracted_quantity=quantity,
            is_active=True,
            created_by=actor,
        )
        self.session.add(line)
        self.session.flush()
        self.session.add(
            ContractLineBalance(
                tenant_id=tenant_id,
                contract_line_id=line.id,
                direct_consumed_quantity=ZERO,
                created_by=actor,
            )
        )
        self.session.flush()
        logger.info(
            "contract_line_registered",
            extra={
                "contract_line_id": str(line.id),
                "contract_number": contract_number,
                "product_id": product_id,
                "contracted_quantity": str(quantity),
            },
        )
        return line_info(line)

    def deactivate_contract_line(
        self,
        tenant_id: str,
        contract_line_id: UUID,
        actor: str,
    ) -> ContractLineInfo:
        """Mark a line inactive; its balances and history are kept."""
        line = BalanceStore(self.session).get_line(tenant_id, contract_line_id)
        line.is_active = False
        line.updated_by = actor
        self.session.flush()
        logger.info("contract_line_deactivated", extra={"contract_line_id": str(line.id)})
        return line_info(line)

    def register_modality(
        self,
        tenant_id: str,
        name: str,
        actor: str,
        financial_code: str | None = None,
        transfer_amount: Decimal | int | str = ZERO,
    ) -> ModalityInfo:
        """
        Register a funding modality by name, or update its code and
        transfer amount.

        Raises:
            InvalidQuantityError: negative transfer amount.
        """
        amount = to_quantity(transfer_amount)
        if amount < ZERO:
            raise InvalidQuantityError(amount, "transfer amount cannot be negative")

        modality = self.session.execute(
            select(Modality).where(Modality.tenant_id == tenant_id, Modality.name == name)
        ).scalar_one_or_none()

        if modality is None:
            modality = Modality(
                tenant_id=tenant_id,
                name=name,
                financial_code=financial_code,
                transfer_amount=amount,
                is_active=True,
                created_by=actor,
            )
            self.session.add(modality)
            event = "modality_registered"
        else:
            modality.financial_code = financial_code
            modality.transfer_amount = amount
            modality.is_active = True
            modality.updated_by = actor
            event = "modality_updated"

        self.session.flush()
        logger.info(
            event,
            extra={
                "modality_id": str(modality.id),
                "modality_name": name,
                "transfer_amount": str(amount),
            },
        )
        return modality_info(modality)

    def deactivate_modality(self, tenant_id: str, modality_id: UUID, actor: str) -> ModalityInfo:
        """Mark a modality inactive; existing allocations are kept."""
        modality = get_modality(self.session, tenant_id, modality_id)
        modality.is_active = False
        modality.updated_by = actor
        self.session.flush()
        logger.info("modality_deactivated", extra={"modality_id": str(modality_id)})
        return modality_info(modality)


def get_modality(session, tenant_id: str, modality_id: UUID) -> Modality:
    """Load a modality.

    Raises:
        ModalityNotFoundError: unknown id for the tenant.
    """
    modality = session.execute(
        select(Modality).where(Modality.id == modality_id, Modality.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if modality is None:
        raise ModalityNotFoundError(str(modality_id))
    return modality
