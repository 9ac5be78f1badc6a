"""
SequenceService -- bill numbers from locked counter rows.

Responsibility:
    Hands out the next bill number for a tenant and year, formatted as
    prefix + year + 6-digit sequence (e.g. ``FAT2024000001``).  Uses a
    counter row per (tenant, year) with row-level locking
    (``SELECT ... FOR UPDATE``) so numbers stay unique under concurrency.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by BillingService.generate_bill().

Invariants enforced:
    - Monotonic: the counter only grows; the SQL aggregate
      "count rows plus one" pattern is never used.
    - Transactional: an increment is only visible after the caller's
      transaction commits.  Rollback returns the value.

Failure modes:
    - StaleDataError: two transactions created the same counter row
      concurrently.  The command layer retries.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.billing import BillNumberCounter
from ledger_kernel.services.base import BaseService

logger = get_logger("services.sequence")

DEFAULT_BILL_PREFIX = "FAT"
SEQUENCE_WIDTH = 6


class SequenceService(BaseService):
    """
    Service for generating transactional bill numbers.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def next_value(self, tenant_id: str, year: int) -> int:
        """
        Lock the (tenant, year) counter, increment it and return the value.

        Postconditions:
            - Returns an integer > 0 strictly greater than any value
              previously committed for the same tenant and year.
        """
        counter = self.session.execute(
            select(BillNumberCounter)
            .where(
                BillNumberCounter.tenant_id == tenant_id,
                BillNumberCounter.year == year,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if counter is None:
            counter = BillNumberCounter(tenant_id=tenant_id, year=year, current_value=1)
            self.session.add(counter)
            try:
                self.session.flush()
            except IntegrityError as exc:
                logger.debug(
                    "sequence_counter_race",
                    extra={"tenant_id": tenant_id, "year": year},
                )
                raise StaleDataError(
                    f"Bill counter for {tenant_id}/{year} was created concurrently"
                ) from exc
        else:
            counter.current_value += 1
            self.session.flush()

        logger.debug(
            "sequence_allocated",
            extra={"year": year, "value": counter.current_value},
        )
        return counter.current_value

    def next_bill_number(
        self,
        tenant_id: str,
        year: int,
        prefix: str = DEFAULT_BILL_PREFIX,
    ) -> str:
        """Next formatted bill number, e.g. ``FAT2024000001``."""
        value = self.next_value(tenant_id, year)
        return f"{prefix}{year}{value:0{SEQUENCE_WIDTH}d}"
