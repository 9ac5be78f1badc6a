"""
ConsumptionLedger tests.

Tests cover:
- Status transitions on a 100-unit line (LOW at 95, DEPLETED at 100)
- Over-consumption of an allocation rejected with the available quantity
- Reversal round trip and double-reversal rejection
- Direct consumption limited to the unallocated headroom
- Deletion of events (live and already reversed)
- Ledger consistency: counters equal the sum of live events
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from ledger_kernel.domain.dtos import AllocationTarget, LineTarget
from ledger_kernel.domain.status import BalanceStatus
from ledger_kernel.exceptions import (
    ConsumptionEventNotFoundError,
    ContractLineNotFoundError,
    EventAlreadyReversedError,
    InsufficientBalanceError,
    InvalidQuantityError,
    LineConsumptionRestrictedError,
)
from ledger_kernel.models.consumption import ConsumptionEvent
from tests.conftest import TENANT_ID, TEST_ACTOR


def _live_sum(session, **criteria):
    events = session.execute(
        select(ConsumptionEvent).filter_by(reversed=False, **criteria)
    ).scalars()
    return sum((e.quantity for e in events), Decimal("0"))


class TestLineConsumption:

    def test_low_then_depleted(self, ledger, create_line):
        line = create_line(contracted_quantity="100")
        target = LineTarget(line.id)

        first = ledger.record_consumption(TENANT_ID, target, Decimal("95"), TEST_ACTOR)
        assert first.snapshot.available == Decimal("5")
        assert first.snapshot.status == BalanceStatus.LOW
        assert first.previous_available == Decimal("100")

        second = ledger.record_consumption(TENANT_ID, target, Decimal("5"), TEST_ACTOR)
        assert second.snapshot.available == Decimal("0")
        assert second.snapshot.status == BalanceStatus.DEPLETED

    def test_over_consumption_rejected_with_available(self, ledger, create_line, balance_store):
        line = create_line(contracted_quantity="10")
        ledger.record_consumption(TENANT_ID, LineTarget(line.id), Decimal("4"), TEST_ACTOR)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger.record_consumption(TENANT_ID, LineTarget(line.id), Decimal("7"), TEST_ACTOR)

        assert exc_info.value.available == Decimal("6")
        assert exc_info.value.requested == Decimal("7")
        assert "Disponível: 6" in str(exc_info.value)
        assert balance_store.snapshot_line(TENANT_ID, line.id).consumed == Decimal("4")

    @pytest.mark.parametrize("quantity", [Decimal("0"), Decimal("-3")])
    def test_non_positive_rejected(self, ledger, create_line, quantity):
        line = create_line()
        with pytest.raises(InvalidQuantityError):
            ledger.record_consumption(TENANT_ID, LineTarget(line.id), quantity, TEST_ACTOR)

    def test_unknown_line(self, ledger):
        with pytest.raises(ContractLineNotFoundError):
            ledger.record_consumption(TENANT_ID, LineTarget(uuid4()), Decimal("1"), TEST_ACTOR)

    def test_other_tenant_cannot_see_line(self, ledger, create_line):
        line = create_line()
        with pytest.raises(ContractLineNotFoundError):
            ledger.record_consumption("outra-prefeitura", LineTarget(line.id), 1, TEST_ACTOR)

    def test_default_note(self, ledger, create_line, session):
        line = create_line(product_name="Feijão carioca")
        result = ledger.record_consumption(TENANT_ID, LineTarget(line.id), "2.5", TEST_ACTOR)

        event = session.get(ConsumptionEvent, result.event_id)
        assert event.note == "Consumo de 2.5 Feijão carioca"
        assert event.responsible == TEST_ACTOR

    def test_explicit_note_kept(self, ledger, create_line, session):
        line = create_line()
        result = ledger.record_consumption(
            TENANT_ID, LineTarget(line.id), 1, TEST_ACTOR, note="Entrega escola A"
        )
        assert session.get(ConsumptionEvent, result.event_id).note == "Entrega escola A"


class TestAllocationConsumption:

    def test_over_allocation_rejected_with_available(
        self, ledger, create_line, create_modality, allocate
    ):
        line = create_line(contracted_quantity="100")
        creche = allocate(line, create_modality("Creche"), "60")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger.record_consumption(
                TENANT_ID, AllocationTarget(creche.allocation_id), Decimal("70"), TEST_ACTOR
            )

        assert exc_info.value.available == Decimal("60")
        assert exc_info.value.target_kind == "allocation"

    def test_allocation_consumption_counts_on_line(
        self, ledger, create_line, create_modality, allocate, balance_store
    ):
        line = create_line(contracted_quantity="100")
        creche = allocate(line, create_modality("Creche"), "60")

        result = ledger.record_consumption(
            TENANT_ID, AllocationTarget(creche.allocation_id), Decimal("55"), TEST_ACTOR
        )

        assert result.snapshot.available == Decimal("5")
        assert result.snapshot.status == BalanceStatus.LOW
        line_snapshot = balance_store.snapshot_line(TENANT_ID, line.id)
        assert line_snapshot.consumed == Decimal("55")
        assert line_snapshot.available == Decimal("45")

    def test_default_note_names_modality(self, ledger, create_line, create_modality, allocate, session):
        line = create_line(product_name="Leite integral")
        creche = allocate(line, create_modality("Creche"), "10")

        result = ledger.record_consumption(
            TENANT_ID, AllocationTarget(creche.allocation_id), 3, TEST_ACTOR
        )

        assert session.get(ConsumptionEvent, result.event_id).note == (
            "Consumo de 3 Leite integral - Creche"
        )


class TestDirectConsumptionWithAllocations:

    def test_limited_to_unallocated_headroom(
        self, ledger, create_line, create_modality, allocate
    ):
        line = create_line(contracted_quantity="100")
        allocate(line, create_modality("Creche"), "60")

        ledger.record_consumption(TENANT_ID, LineTarget(line.id), Decimal("40"), TEST_ACTOR)

        with pytest.raises(LineConsumptionRestrictedError) as exc_info:
            ledger.record_consumption(TENANT_ID, LineTarget(line.id), Decimal("1"), TEST_ACTOR)

        assert exc_info.value.available == Decimal("0")
        assert exc_info.value.line_available == Decimal("60")
        assert exc_info.value.code == "LINE_CONSUMPTION_RESTRICTED"

    def test_fully_allocated_line_rejects_direct(
        self, ledger, create_line, create_modality, allocate
    ):
        line = create_line(contracted_quantity="100")
        allocate(line, create_modality("Creche"), "60")
        allocate(line, create_modality("EMEF"), "40")

        with pytest.raises(LineConsumptionRestrictedError):
            ledger.record_consumption(TENANT_ID, LineTarget(line.id), Decimal("1"), TEST_ACTOR)

    def test_restriction_is_an_insufficient_balance(self):
        assert issubclass(LineConsumptionRestrictedError, InsufficientBalanceError)


class TestReversal:

    def test_round_trip_restores_balance(self, ledger, create_line, balance_store):
        line = create_line(contracted_quantity="100")
        ledger.record_consumption(TENANT_ID, LineTarget(line.id), Decimal("30"), TEST_ACTOR)
        before = balance_store.snapshot_line(TENANT_ID, line.id)

        result = ledger.record_consumption(
            TENANT_ID, LineTarget(line.id), Decimal("12.5"), TEST_ACTOR
        )
        reversal = ledger.reverse_consumption(TENANT_ID, result.event_id, "joao.souza")

        after = balance_store.snapshot_line(TENANT_ID, line.id)
        assert after.consumed == before.consumed
        assert after.available == before.available
        assert reversal.snapshot.available == before.available
        assert not reversal.deleted

    def test_reversal_stamps_event(self, ledger, create_line, session, deterministic_clock):
        line = create_line()
        result = ledger.record_consumption(TENANT_ID, LineTarget(line.id), 5, TEST_ACTOR)
        deterministic_clock.advance(60)

        ledger.reverse_consumption(TENANT_ID, result.event_id, "joao.souza")

        event = session.get(ConsumptionEvent, result.event_id)
        assert event.reversed is True
        assert event.reversed_by == "joao.souza"
        assert event.reversed_at is not None

    def test_double_reversal_rejected(self, ledger, create_line, balance_store):
        line = create_line(contracted_quantity="50")
        result = ledger.record_consumption(TENANT_ID, LineTarget(line.id), 10, TEST_ACTOR)
        ledger.reverse_consumption(TENANT_ID, result.event_id, TEST_ACTOR)

        with pytest.raises(EventAlreadyReversedError):
            ledger.reverse_consumption(TENANT_ID, result.event_id, TEST_ACTOR)

        assert balance_store.snapshot_line(TENANT_ID, line.id).available == Decimal("50")

    def test_allocation_round_trip(self, ledger, create_line, create_modality, allocate, balance_store):
        line = create_line(contracted_quantity="100")
        creche = allocate(line, create_modality("Creche"), "60")
        target = AllocationTarget(creche.allocation_id)

        result = ledger.record_consumption(TENANT_ID, target, Decimal("20"), TEST_ACTOR)
        ledger.reverse_consumption(TENANT_ID, result.event_id, TEST_ACTOR)

        snapshot = balance_store.snapshot_allocation(TENANT_ID, creche.allocation_id)
        assert snapshot.consumed == Decimal("0")
        assert snapshot.available == Decimal("60")

    def test_unknown_event(self, ledger):
        with pytest.raises(ConsumptionEventNotFoundError):
            ledger.reverse_consumption(TENANT_ID, uuid4(), TEST_ACTOR)


class TestDeletion:

    def test_delete_live_event_restores_quantity(self, ledger, create_line, session, balance_store):
        line = create_line(contracted_quantity="20")
        result = ledger.record_consumption(TENANT_ID, LineTarget(line.id), 8, TEST_ACTOR)

        deletion = ledger.delete_consumption(TENANT_ID, result.event_id, TEST_ACTOR)

        assert deletion.deleted
        assert session.get(ConsumptionEvent, result.event_id) is None
        assert balance_store.snapshot_line(TENANT_ID, line.id).available == Decimal("20")

    def test_delete_reversed_event_changes_nothing_else(
        self, ledger, create_line, session, balance_store
    ):
        line = create_line(contracted_quantity="20")
        kept = ledger.record_consumption(TENANT_ID, LineTarget(line.id), 3, TEST_ACTOR)
        result = ledger.record_consumption(TENANT_ID, LineTarget(line.id), 8, TEST_ACTOR)
        ledger.reverse_consumption(TENANT_ID, result.event_id, TEST_ACTOR)

        ledger.delete_consumption(TENANT_ID, result.event_id, TEST_ACTOR)

        assert balance_store.snapshot_line(TENANT_ID, line.id).consumed == Decimal("3")
        assert session.get(ConsumptionEvent, kept.event_id) is not None


class TestLedgerConsistency:

    def test_counters_match_live_events(
        self, ledger, create_line, create_modality, allocate, balance_store, session
    ):
        line = create_line(contracted_quantity="100")
        creche = allocate(line, create_modality("Creche"), "50")
        line_target = LineTarget(line.id)
        alloc_target = AllocationTarget(creche.allocation_id)

        ledger.record_consumption(TENANT_ID, line_target, 10, TEST_ACTOR)
        undone = ledger.record_consumption(TENANT_ID, line_target, 5, TEST_ACTOR)
        ledger.record_consumption(TENANT_ID, alloc_target, 7, TEST_ACTOR)
        ledger.record_consumption(TENANT_ID, alloc_target, 3, TEST_ACTOR)
        ledger.reverse_consumption(TENANT_ID, undone.event_id, TEST_ACTOR)

        balance = balance_store.get_balance(line.id)
        allocation = balance_store.get_allocation(TENANT_ID, creche.allocation_id)
        assert balance.direct_consumed_quantity == _live_sum(session, contract_line_id=line.id)
        assert allocation.consumed_quantity == _live_sum(
            session, modality_allocation_id=creche.allocation_id
        )
        assert balance_store.snapshot_line(TENANT_ID, line.id).consumed == Decimal("20")

    def test_logs_consumption(self, ledger, create_line, captured_logs):
        line = create_line()
        result = ledger.record_consumption(TENANT_ID, LineTarget(line.id), 1, TEST_ACTOR)

        records = [r for r in captured_logs() if r["message"] == "consumption_recorded"]
        assert len(records) == 1
        assert records[0]["event_id"] == str(result.event_id)
        assert records[0]["contract_line_id"] == str(line.id)
