"""Services for the ledger kernel (write side)."""

from ledger_kernel.services.allocation_service import AllocationService
from ledger_kernel.services.balance_store import BalanceStore
from ledger_kernel.services.billing_service import (
    BillInfo,
    BillingService,
    BillingSplitInfo,
    BillSummary,
    ContractSummary,
    ModalitySummary,
    OrderItem,
    SplitRemovalResult,
)
from ledger_kernel.services.catalog_service import ContractCatalogService
from ledger_kernel.services.consumption_ledger import (
    ConsumptionLedger,
    ConsumptionResult,
    ReversalResult,
)
from ledger_kernel.services.sequence_service import SequenceService

__all__ = [
    "AllocationService",
    "BalanceStore",
    "BillInfo",
    "BillingService",
    "BillingSplitInfo",
    "BillSummary",
    "ConsumptionLedger",
    "ConsumptionResult",
    "ContractCatalogService",
    "ContractSummary",
    "ModalitySummary",
    "OrderItem",
    "ReversalResult",
    "SequenceService",
    "SplitRemovalResult",
]
