"""Domain models for the ledger kernel."""

from ledger_kernel.models.billing import Bill, BillingSplit, BillNumberCounter, BillStatus
from ledger_kernel.models.consumption import ConsumptionEvent
from ledger_kernel.models.contract_line import ContractLine, ContractLineBalance
from ledger_kernel.models.modality import Modality, ModalityAllocation

__all__ = [
    "ContractLine",
    "ContractLineBalance",
    "Modality",
    "ModalityAllocation",
    "ConsumptionEvent",
    "Bill",
    "BillingSplit",
    "BillStatus",
    "BillNumberCounter",
    "import_all_models",
]


def import_all_models() -> None:
    """Make sure every mapped class is registered on Base.metadata.

    Importing this package already does that; the function gives callers
    such as create_tables() an explicit hook.
    """
    from ledger_kernel.models import billing, consumption, contract_line, modality  # noqa: F401
