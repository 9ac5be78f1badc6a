"""
LedgerCommands -- transactional command and query surface.

Responsibility:
    One method per ledger command.  Each command runs in its own session
    and transaction: it binds the log context, wires the kernel services,
    runs the operation, commits, and retries the whole transaction when a
    concurrent writer on the same line wins the version race.

Architecture position:
    Services -- outermost layer consumed by the UI/API.
    Owns transaction boundaries; kernel services only flush.

Invariants enforced:
    - All-or-nothing: a command either commits every write or none.
    - Only lock/version conflicts (StaleDataError) are retried, up to
      ``max_lock_retries`` attempts; business errors propagate on the
      first attempt with their data intact.
    - Quantities are checked against ``quantity_decimal_places`` before
      any service sees them.

Failure modes:
    - OptimisticLockError after the retry budget is spent.
    - Any LedgerKernelError raised by the kernel, unchanged.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ledger_config import LedgerConfig, get_active_config
from ledger_engines.splitter import SplitMode, SplitResult
from ledger_kernel.db.types import to_quantity
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import (
    AllocationInfo,
    ConsumptionTarget,
    ContractLineInfo,
    ModalityInfo,
)
from ledger_kernel.domain.status import BalanceStatus
from ledger_kernel.exceptions import OptimisticLockError
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.selectors.balance_selector import (
    BalancePage,
    HistoryEntry,
    LineBalanceRow,
    ModalityBalancePage,
    ModalityBalanceRow,
)
from ledger_kernel.services.billing_service import (
    BillInfo,
    BillingSplitInfo,
    BillSummary,
    OrderItem,
    SplitRemovalResult,
)
from ledger_kernel.services.consumption_ledger import ConsumptionResult, ReversalResult
from ledger_services.orchestrator import LedgerOrchestrator

logger = get_logger("services.commands")

T = TypeVar("T")


class LedgerCommands:
    """
    Command facade over the ledger kernel.

    Contract:
        ``session_factory`` returns a new Session per call (a
        ``sessionmaker``).  Every write command takes ``tenant_id`` and the
        acting user; the actor is recorded as the event's responsible party.

    Non-goals:
        - Does NOT authenticate or authorize the actor.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: LedgerConfig | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self.config = config or get_active_config()
        self._clock = clock or SystemClock()

    # -- Catalog -----------------------------------------------------------

    def register_contract_line(
        self,
        tenant_id: str,
        actor: str,
        contract_id: str,
        contract_number: str,
        supplier_id: str,
        supplier_name: str,
        product_id: str,
        product_name: str,
        unit: str,
        unit_price: Decimal | int | str,
        contracted_quantity: Decimal | int | str,
    ) -> ContractLineInfo:
        quantity = self._quantity(contracted_quantity)
        return self._run(
            "register_contract_line",
            tenant_id,
            actor,
            lambda o: o.catalog.register_contract_line(
                tenant_id,
                contract_id,
                contract_number,
                supplier_id,
                supplier_name,
                product_id,
                product_name,
                unit,
                unit_price,
                quantity,
                actor,
            ),
        )

    def deactivate_contract_line(
        self, tenant_id: str, actor: str, contract_line_id: UUID
    ) -> ContractLineInfo:
        return self._run(
            "deactivate_contract_line",
            tenant_id,
            actor,
            lambda o: o.catalog.deactivate_contract_line(tenant_id, contract_line_id, actor),
        )

    def register_modality(
        self,
        tenant_id: str,
        actor: str,
        name: str,
        financial_code: str | None = None,
        transfer_amount: Decimal | int | str = Decimal("0"),
    ) -> ModalityInfo:
        return self._run(
            "register_modality",
            tenant_id,
            actor,
            lambda o: o.catalog.register_modality(
                tenant_id, name, actor, financial_code, transfer_amount
            ),
        )

    def deactivate_modality(
        self, tenant_id: str, actor: str, modality_id: UUID
    ) -> ModalityInfo:
        return self._run(
            "deactivate_modality",
            tenant_id,
            actor,
            lambda o: o.catalog.deactivate_modality(tenant_id, modality_id, actor),
        )

    # -- Allocations -------------------------------------------------------

    def set_modality_allocation(
        self,
        tenant_id: str,
        actor: str,
        contract_line_id: UUID,
        modality_id: UUID,
        new_initial_quantity: Decimal | int | str,
    ) -> AllocationInfo:
        quantity = self._quantity(new_initial_quantity)
        return self._run(
            "set_modality_allocation",
            tenant_id,
            actor,
            lambda o: o.allocations.set_modality_allocation(
                tenant_id, contract_line_id, modality_id, quantity, actor
            ),
        )

    def remove_modality_allocation(
        self, tenant_id: str, actor: str, modality_allocation_id: UUID
    ) -> AllocationInfo:
        return self._run(
            "remove_modality_allocation",
            tenant_id,
            actor,
            lambda o: o.allocations.remove_modality_allocation(
                tenant_id, modality_allocation_id, actor
            ),
        )

    # -- Consumption -------------------------------------------------------

    def record_consumption(
        self,
        tenant_id: str,
        actor: str,
        target: ConsumptionTarget,
        quantity: Decimal | int | str,
        note: str | None = None,
    ) -> ConsumptionResult:
        qty = self._quantity(quantity)
        return self._run(
            "record_consumption",
            tenant_id,
            actor,
            lambda o: o.ledger.record_consumption(tenant_id, target, qty, actor, note),
        )

    def reverse_consumption(
        self, tenant_id: str, actor: str, event_id: UUID
    ) -> ReversalResult:
        return self._run(
            "reverse_consumption",
            tenant_id,
            actor,
            lambda o: o.ledger.reverse_consumption(tenant_id, event_id, actor),
        )

    def delete_consumption(
        self, tenant_id: str, actor: str, event_id: UUID
    ) -> ReversalResult:
        return self._run(
            "delete_consumption",
            tenant_id,
            actor,
            lambda o: o.ledger.delete_consumption(tenant_id, event_id, actor),
        )

    # -- Billing -----------------------------------------------------------

    def preview_split(
        self,
        tenant_id: str,
        product_id: str,
        ordered_quantity: Decimal | int | str,
        contract_line_ids: Sequence[UUID] | None = None,
        mode: SplitMode | None = None,
    ) -> SplitResult:
        """Non-committing split of an ordered quantity."""
        qty = self._quantity(ordered_quantity)
        return self._read(
            lambda o: o.billing.preview_split(
                tenant_id, product_id, qty, contract_line_ids, mode
            )
        )

    def generate_bill(
        self,
        tenant_id: str,
        actor: str,
        order_id: str,
        items: Sequence[OrderItem],
        notes: str | None = None,
        allow_partial: bool = True,
        mode: SplitMode | None = None,
    ) -> BillInfo:
        checked = [
            OrderItem(i.product_id, self._quantity(i.quantity), i.contract_line_ids)
            for i in items
        ]
        return self._run(
            "generate_bill",
            tenant_id,
            actor,
            lambda o: o.billing.generate_bill(
                tenant_id, order_id, checked, actor, notes, allow_partial, mode
            ),
        )

    def confirm_split_consumption(
        self, tenant_id: str, actor: str, split_id: UUID
    ) -> BillingSplitInfo:
        return self._run(
            "confirm_split_consumption",
            tenant_id,
            actor,
            lambda o: o.billing.confirm_split_consumption(tenant_id, split_id, actor),
        )

    def reverse_split_consumption(
        self, tenant_id: str, actor: str, split_id: UUID
    ) -> BillingSplitInfo:
        return self._run(
            "reverse_split_consumption",
            tenant_id,
            actor,
            lambda o: o.billing.reverse_split_consumption(tenant_id, split_id, actor),
        )

    def confirm_bill_consumption(
        self, tenant_id: str, actor: str, bill_id: UUID
    ) -> BillInfo:
        return self._run(
            "confirm_bill_consumption",
            tenant_id,
            actor,
            lambda o: o.billing.confirm_bill_consumption(tenant_id, bill_id, actor),
        )

    def reverse_bill_consumption(
        self, tenant_id: str, actor: str, bill_id: UUID
    ) -> BillInfo:
        return self._run(
            "reverse_bill_consumption",
            tenant_id,
            actor,
            lambda o: o.billing.reverse_bill_consumption(tenant_id, bill_id, actor),
        )

    def remove_modality_splits(
        self,
        tenant_id: str,
        actor: str,
        bill_id: UUID,
        modality_id: UUID,
        contract_id: str | None = None,
    ) -> SplitRemovalResult:
        return self._run(
            "remove_modality_splits",
            tenant_id,
            actor,
            lambda o: o.billing.remove_modality_splits(
                tenant_id, bill_id, modality_id, actor, contract_id
            ),
        )

    def cancel_bill(self, tenant_id: str, actor: str, bill_id: UUID) -> BillInfo:
        return self._run(
            "cancel_bill",
            tenant_id,
            actor,
            lambda o: o.billing.cancel_bill(tenant_id, bill_id, actor),
        )

    def delete_bill(
        self, tenant_id: str, actor: str, bill_id: UUID
    ) -> SplitRemovalResult:
        return self._run(
            "delete_bill",
            tenant_id,
            actor,
            lambda o: o.billing.delete_bill(tenant_id, bill_id, actor),
        )

    # -- Queries -----------------------------------------------------------

    def list_balances(
        self,
        tenant_id: str,
        product_name: str | None = None,
        status: BalanceStatus | None = None,
        supplier_id: str | None = None,
        contract_number: str | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> BalancePage:
        return self._read(
            lambda o: o.balances.list_balances(
                tenant_id, product_name, status, supplier_id, contract_number, page, limit
            )
        )

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
    ) -> ModalityBalancePage:
        return self._read(
            lambda o: o.balances.list_modality_balances(
                tenant_id,
                product_name,
                status,
                modality_id,
                contract_number,
                supplier_id,
                include_absent,
                page,
                limit,
            )
        )

    def get_consumption_history(
        self,
        tenant_id: str,
        contract_line_id: UUID | None = None,
        modality_allocation_id: UUID | None = None,
        include_allocations: bool = False,
    ) -> list[HistoryEntry]:
        return self._read(
            lambda o: o.balances.get_consumption_history(
                tenant_id, contract_line_id, modality_allocation_id, include_allocations
            )
        )

    def get_line_balance(self, tenant_id: str, contract_line_id: UUID) -> LineBalanceRow:
        return self._read(lambda o: o.balances.get_line_balance(tenant_id, contract_line_id))

    def get_allocation_balance(
        self, tenant_id: str, modality_allocation_id: UUID
    ) -> ModalityBalanceRow:
        return self._read(
            lambda o: o.balances.get_allocation_balance(tenant_id, modality_allocation_id)
        )

    def list_modalities(self, tenant_id: str) -> list[ModalityInfo]:
        return self._read(lambda o: o.balances.list_modalities(tenant_id))

    def get_bill(self, tenant_id: str, bill_id: UUID) -> BillInfo:
        return self._read(lambda o: o.billing.get_bill(tenant_id, bill_id))

    def bill_summary(self, tenant_id: str, bill_id: UUID) -> BillSummary:
        return self._read(lambda o: o.billing.bill_summary(tenant_id, bill_id))

    # -- Transaction handling ----------------------------------------------

    def _quantity(self, value: Decimal | int | str) -> Decimal:
        return to_quantity(value, self.config.quantity_decimal_places)

    def _run(
        self,
        operation: str,
        tenant_id: str,
        actor: str,
        fn: Callable[[LedgerOrchestrator], T],
    ) -> T:
        """Run ``fn`` in a fresh transaction, retrying version conflicts."""
        max_attempts = self.config.max_lock_retries
        with LogContext.bind(
            correlation_id=str(uuid4()), tenant_id=tenant_id, actor_id=actor
        ):
            attempt = 0
            while True:
                attempt += 1
                session = self._session_factory()
                try:
                    result = fn(LedgerOrchestrator(session, self.config, self._clock))
                    session.commit()
                    logger.debug(
                        "command_committed",
                        extra={"operation": operation, "attempt": attempt},
                    )
                    return result
                except StaleDataError as exc:
                    session.rollback()
                    if attempt >= max_attempts:
                        logger.error(
                            "command_lock_conflict",
                            extra={"operation": operation, "attempts": attempt},
                        )
                        raise OptimisticLockError(operation, attempt) from exc
                    logger.warning(
                        "command_retry",
                        extra={"operation": operation, "attempt": attempt},
                    )
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()

    def _read(self, fn: Callable[[LedgerOrchestrator], T]) -> T:
        session = self._session_factory()
        try:
            return fn(LedgerOrchestrator(session, self.config, self._clock))
        finally:
            session.rollback()
            session.close()
