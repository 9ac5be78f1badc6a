"""Pure domain types for the ledger kernel: clock, targets, DTOs."""
