"""
Typed Exception Hierarchy for the Ledger Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every rejection the ledger produces is shown verbatim to an end user who must
correct the request (use a smaller quantity, change an allocation...).  So
every error:
  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA - the numbers needed to fix the request
     (available quantity, contracted quantity, attempted sum)

Example:
    try:
        ledger.record_consumption(tenant_id, target, Decimal("70"), "ana")
    except InsufficientBalanceError as e:
        api_response(code=e.code, available=e.available, requested=e.requested)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LedgerKernelError (base)
    |
    +-- QuantityError
    |   +-- InvalidQuantityError
    |
    +-- ContractLineError
    |   +-- ContractLineNotFoundError
    |   +-- ContractedQuantityImmutableError
    |
    +-- AllocationError
    |   +-- AllocationExceedsContractError
    |   +-- AllocationNotFoundError
    |   +-- AllocationInUseError
    |   +-- ModalityNotFoundError
    |
    +-- ConsumptionError
    |   +-- InsufficientBalanceError
    |   |   +-- LineConsumptionRestrictedError
    |   +-- ConsumptionEventNotFoundError
    |   +-- EventAlreadyReversedError
    |
    +-- BillingError
    |   +-- BillNotFoundError
    |   +-- BillAlreadyExistsError
    |   +-- BillCancelledError
    |   +-- BillingSplitNotFoundError
    |   +-- SplitAlreadyConfirmedError
    |   +-- SplitNotConfirmedError
    |   +-- PartialFulfillmentError
    |
    +-- ConcurrencyError
        +-- OptimisticLockError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category    | Code                          | When Raised
------------|-------------------------------|----------------------------------------
Quantity    | INVALID_QUANTITY              | Non-positive, float, or below consumed
Contract    | CONTRACT_LINE_NOT_FOUND       | Line ID unknown for this tenant
            | CONTRACTED_QUANTITY_IMMUTABLE | Upstream re-sync changed the quantity
Allocation  | ALLOCATION_EXCEEDS_CONTRACT   | Sum of modality quantities > contracted
            | ALLOCATION_NOT_FOUND          | Allocation ID unknown for this tenant
            | ALLOCATION_IN_USE             | Removing an allocation with consumption
            | MODALITY_NOT_FOUND            | Modality ID unknown for this tenant
Consumption | INSUFFICIENT_BALANCE          | Quantity > available
            | LINE_CONSUMPTION_RESTRICTED   | Direct consumption beyond unallocated part
            | EVENT_NOT_FOUND               | Consumption event ID unknown
            | EVENT_ALREADY_REVERSED        | Reversing the same event twice
Billing     | BILL_NOT_FOUND                | Bill ID unknown
            | BILL_ALREADY_EXISTS           | Second bill for the same order
            | BILL_CANCELLED                | Changing a cancelled bill
            | BILLING_SPLIT_NOT_FOUND       | Split ID unknown
            | SPLIT_ALREADY_CONFIRMED       | Confirming twice
            | SPLIT_NOT_CONFIRMED           | Reversing an unconfirmed split
            | PARTIAL_FULFILLMENT           | Caller refused a partial split
Concurrency | OPTIMISTIC_LOCK_CONFLICT      | Retries exhausted on a version conflict

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Inherit from Exception, not ValueError: business rejections must be
   catchable as a group, separately from programming errors.

2. ``code`` is a class attribute: static per type, usable without
   instantiation.

3. Quantities are carried as Decimal attributes; formatting happens in the
   message only.
"""

from decimal import Decimal


class LedgerKernelError(Exception):
    """
    Base exception for all ledger kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "LEDGER_KERNEL_ERROR"


# Quantity exceptions


class QuantityError(LedgerKernelError):
    """Base exception for quantity validation errors."""

    code: str = "QUANTITY_ERROR"


class InvalidQuantityError(QuantityError):
    """Quantity is non-positive, not a decimal, or shrinks below consumption."""

    code: str = "INVALID_QUANTITY"

    def __init__(
        self,
        quantity,
        reason: str,
        consumed_quantity: Decimal | None = None,
    ):
        self.quantity = quantity
        self.reason = reason
        self.consumed_quantity = consumed_quantity
        message = f"Invalid quantity {quantity}: {reason}"
        if consumed_quantity is not None:
            message += f" (already consumed: {consumed_quantity})"
        super().__init__(message)


# Contract line exceptions


class ContractLineError(LedgerKernelError):
    """Base exception for contract line errors."""

    code: str = "CONTRACT_LINE_ERROR"


class ContractLineNotFoundError(ContractLineError):
    """Contract line with given ID was not found for the tenant."""

    code: str = "CONTRACT_LINE_NOT_FOUND"

    def __init__(self, contract_line_id: str):
        self.contract_line_id = contract_line_id
        super().__init__(f"Contract line not found: {contract_line_id}")


class ContractedQuantityImmutableError(ContractLineError):
    """The contracted quantity of a registered line cannot change."""

    code: str = "CONTRACTED_QUANTITY_IMMUTABLE"

    def __init__(
        self,
        contract_line_id: str,
        current_quantity: Decimal,
        attempted_quantity: Decimal,
    ):
        self.contract_line_id = contract_line_id
        self.current_quantity = current_quantity
        self.attempted_quantity = attempted_quantity
        super().__init__(
            f"Contracted quantity of line {contract_line_id} is fixed at "
            f"{current_quantity}; cannot change it to {attempted_quantity}"
        )


# Allocation exceptions


class AllocationError(LedgerKernelError):
    """Base exception for modality allocation errors."""

    code: str = "ALLOCATION_ERROR"


class AllocationExceedsContractError(AllocationError):
    """Sum of modality allocations would exceed the contracted quantity."""

    code: str = "ALLOCATION_EXCEEDS_CONTRACT"

    def __init__(
        self,
        contract_line_id: str,
        contracted_quantity: Decimal,
        attempted_total: Decimal,
        directly_consumed: Decimal = Decimal("0"),
    ):
        self.contract_line_id = contract_line_id
        self.contracted_quantity = contracted_quantity
        self.attempted_total = attempted_total
        self.directly_consumed = directly_consumed
        message = (
            f"Modality allocations for line {contract_line_id} would total "
            f"{attempted_total}, exceeding the contracted quantity "
            f"{contracted_quantity}"
        )
        if directly_consumed:
            message += f" (plus {directly_consumed} already consumed directly on the line)"
        super().__init__(message)


class AllocationNotFoundError(AllocationError):
    """Modality allocation with given ID was not found for the tenant."""

    code: str = "ALLOCATION_NOT_FOUND"

    def __init__(self, allocation_id: str):
        self.allocation_id = allocation_id
        super().__init__(f"Modality allocation not found: {allocation_id}")


class AllocationInUseError(AllocationError):
    """Allocation cannot be removed while it has recorded consumption."""

    code: str = "ALLOCATION_IN_USE"

    def __init__(
        self,
        allocation_id: str,
        consumed_quantity: Decimal,
        reason: str | None = None,
    ):
        self.allocation_id = allocation_id
        self.consumed_quantity = consumed_quantity
        self.reason = reason or f"{consumed_quantity} already consumed"
        super().__init__(
            f"Modality allocation {allocation_id} cannot be removed: {self.reason}"
        )


class ModalityNotFoundError(AllocationError):
    """Modality with given ID was not found for the tenant."""

    code: str = "MODALITY_NOT_FOUND"

    def __init__(self, modality_id: str):
        self.modality_id = modality_id
        super().__init__(f"Modality not found: {modality_id}")


# Consumption exceptions


class ConsumptionError(LedgerKernelError):
    """Base exception for consumption ledger errors."""

    code: str = "CONSUMPTION_ERROR"


class InsufficientBalanceError(ConsumptionError):
    """Requested consumption exceeds the available quantity."""

    code: str = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        target_kind: str,
        target_id: str,
        requested: Decimal,
        available: Decimal,
        message: str | None = None,
    ):
        self.target_kind = target_kind
        self.target_id = target_id
        self.requested = requested
        self.available = available
        super().__init__(
            message
            or f"Saldo insuficiente. Disponível: {available} "
            f"(requested {requested} from {target_kind} {target_id})"
        )


class LineConsumptionRestrictedError(InsufficientBalanceError):
    """
    Direct consumption on a line that has modality allocations.

    Such a line only accepts direct consumption up to its unallocated
    headroom; ``available`` carries that headroom and ``line_available``
    the line's overall availability (reachable through its allocations).
    """

    code: str = "LINE_CONSUMPTION_RESTRICTED"

    def __init__(
        self,
        target_id: str,
        requested: Decimal,
        available: Decimal,
        line_available: Decimal,
    ):
        self.line_available = line_available
        super().__init__(
            "line",
            target_id,
            requested,
            available,
            message=(
                f"Saldo insuficiente. Disponível: {available} for direct consumption "
                f"on line {target_id}; {line_available} remains available through "
                "its modality allocations"
            ),
        )


class ConsumptionEventNotFoundError(ConsumptionError):
    """Consumption event with given ID was not found."""

    code: str = "EVENT_NOT_FOUND"

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Consumption event not found: {event_id}")


class EventAlreadyReversedError(ConsumptionError):
    """Consumption event has already been reversed."""

    code: str = "EVENT_ALREADY_REVERSED"

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Consumption event {event_id} has already been reversed")


# Billing exceptions


class BillingError(LedgerKernelError):
    """Base exception for billing errors."""

    code: str = "BILLING_ERROR"


class BillNotFoundError(BillingError):
    """Bill with given ID was not found."""

    code: str = "BILL_NOT_FOUND"

    def __init__(self, bill_id: str):
        self.bill_id = bill_id
        super().__init__(f"Bill not found: {bill_id}")


class BillAlreadyExistsError(BillingError):
    """A bill already exists for the order."""

    code: str = "BILL_ALREADY_EXISTS"

    def __init__(self, order_id: str, bill_id: str):
        self.order_id = order_id
        self.bill_id = bill_id
        super().__init__(f"Order {order_id} already has bill {bill_id}")


class BillCancelledError(BillingError):
    """Operation not allowed on a cancelled bill."""

    code: str = "BILL_CANCELLED"

    def __init__(self, bill_id: str):
        self.bill_id = bill_id
        super().__init__(f"Bill {bill_id} is cancelled")


class BillingSplitNotFoundError(BillingError):
    """Billing split with given ID was not found."""

    code: str = "BILLING_SPLIT_NOT_FOUND"

    def __init__(self, split_id: str):
        self.split_id = split_id
        super().__init__(f"Billing split not found: {split_id}")


class SplitAlreadyConfirmedError(BillingError):
    """Consumption for the split has already been confirmed."""

    code: str = "SPLIT_ALREADY_CONFIRMED"

    def __init__(self, split_id: str):
        self.split_id = split_id
        super().__init__(f"Consumption for billing split {split_id} is already confirmed")


class SplitNotConfirmedError(BillingError):
    """Consumption for the split has not been confirmed."""

    code: str = "SPLIT_NOT_CONFIRMED"

    def __init__(self, split_id: str):
        self.split_id = split_id
        super().__init__(f"Consumption for billing split {split_id} is not confirmed")


class PartialFulfillmentError(BillingError):
    """
    The caller asked for full fulfillment and the split came up short.

    Partial fulfillment is normally a reported outcome
    (``SplitResult.unsatisfied_remainder``); this error exists only for
    callers that explicitly refuse it.
    """

    code: str = "PARTIAL_FULFILLMENT"

    def __init__(self, order_id: str, remainders: dict[str, Decimal]):
        self.order_id = order_id
        self.remainders = remainders
        detail = ", ".join(f"{product}: {qty}" for product, qty in remainders.items())
        super().__init__(
            f"Order {order_id} cannot be fully supplied; unsatisfied quantities: {detail}"
        )


# Concurrency exceptions


class ConcurrencyError(LedgerKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict persisted after all retries."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            f"Optimistic lock conflict on {operation}: balance was modified by "
            f"another transaction in each of {attempts} attempts"
        )
