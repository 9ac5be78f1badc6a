"""
ledger_services -- transactional command layer over the ledger kernel.

Responsibility:
    Owns sessions and transaction boundaries.  Wires kernel services with
    the active configuration and retries version conflicts.

Architecture position:
    ledger_services/ -> ledger_kernel/, ledger_engines/, ledger_config/  (allowed)
    ledger_kernel/   -> ledger_services/                                 (FORBIDDEN)
"""

from ledger_services.commands import LedgerCommands
from ledger_services.orchestrator import LedgerOrchestrator

__all__ = [
    "LedgerCommands",
    "LedgerOrchestrator",
]
