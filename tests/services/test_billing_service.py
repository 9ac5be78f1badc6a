"""
BillingService tests.

Tests cover:
- Bill generation: priority by attached contract order, partial remainder,
  refusal of partial bills, one bill per order, sequential bill numbers
- Split confirmation posts consumption to the split's target and links
  the event; reversal restores the balance and clears the link
- Reversing or deleting a confirmed event directly reopens the bill
- Whole-bill confirm/reverse and status transitions
- Removing a modality's splits reverses confirmed ones and recomputes totals
- Cancellation and deletion of bills
- Summary grouped by contract and modality
"""

from decimal import Decimal

import pytest

from ledger_kernel.domain.dtos import AllocationTarget, LineTarget
from ledger_kernel.exceptions import (
    BillAlreadyExistsError,
    BillCancelledError,
    BillNotFoundError,
    InsufficientBalanceError,
    PartialFulfillmentError,
    SplitAlreadyConfirmedError,
    SplitNotConfirmedError,
)
from ledger_kernel.models.billing import Bill, BillingSplit, BillStatus
from ledger_kernel.models.consumption import ConsumptionEvent
from ledger_kernel.services.billing_service import OrderItem
from tests.conftest import TENANT_ID, TEST_ACTOR

PRODUCT = "arroz-5kg"


@pytest.fixture
def supply(create_line, create_modality, allocate):
    """
    Two 50-unit lines of the same product.

    CT-A is fully allocated (Creche 30, EMEF 20); CT-B has no allocations.
    """
    creche = create_modality("Creche", financial_code="PNAE-C")
    emef = create_modality("EMEF", financial_code="PNAE-E")
    line_a = create_line(contracted_quantity="50", contract_id="ct-a", product_id=PRODUCT)
    line_b = create_line(contracted_quantity="50", contract_id="ct-b", product_id=PRODUCT)
    return {
        "line_a": line_a,
        "line_b": line_b,
        "creche": creche,
        "emef": emef,
        "creche_a": allocate(line_a, creche, "30"),
        "emef_a": allocate(line_a, emef, "20"),
    }


@pytest.fixture
def bill(billing, supply):
    return billing.generate_bill(
        TENANT_ID,
        "PED-1",
        [OrderItem(PRODUCT, Decimal("120"), (supply["line_a"].id, supply["line_b"].id))],
        TEST_ACTOR,
    )


class TestGenerateBill:

    def test_splits_follow_attached_contract_order(self, bill, supply):
        assert [(s.contract_line_id, s.modality_allocation_id, s.quantity) for s in bill.splits] == [
            (supply["line_a"].id, supply["creche_a"].allocation_id, Decimal("30")),
            (supply["line_a"].id, supply["emef_a"].allocation_id, Decimal("20")),
            (supply["line_b"].id, None, Decimal("50")),
        ]
        assert all(not s.consumption_confirmed for s in bill.splits)

    def test_partial_remainder_reported(self, bill):
        assert bill.is_partial
        assert bill.unsatisfied == {PRODUCT: Decimal("20")}

    def test_totals_and_number(self, bill):
        assert bill.total_value == Decimal("1000.00")
        assert bill.number == "FAT2024000001"
        assert bill.status == BillStatus.GENERATED
        assert bill.splits[0].percentage_of_ordered_quantity == Decimal("25.00")

    def test_numbers_are_sequential(self, billing, bill, supply):
        second = billing.generate_bill(
            TENANT_ID, "PED-2", [OrderItem(PRODUCT, Decimal("1"))], TEST_ACTOR
        )
        assert second.number == "FAT2024000002"

    def test_reversed_order_of_contracts(self, billing, supply):
        info = billing.generate_bill(
            TENANT_ID,
            "PED-9",
            [OrderItem(PRODUCT, Decimal("60"), (supply["line_b"].id, supply["line_a"].id))],
            TEST_ACTOR,
        )
        assert info.splits[0].contract_line_id == supply["line_b"].id
        assert info.splits[0].quantity == Decimal("50")
        assert info.splits[1].modality_allocation_id == supply["creche_a"].allocation_id

    def test_one_bill_per_order(self, billing, bill):
        with pytest.raises(BillAlreadyExistsError):
            billing.generate_bill(TENANT_ID, "PED-1", [OrderItem(PRODUCT, 1)], TEST_ACTOR)

    def test_partial_refused_when_asked(self, billing, supply, session):
        with pytest.raises(PartialFulfillmentError) as exc_info:
            billing.generate_bill(
                TENANT_ID,
                "PED-3",
                [OrderItem(PRODUCT, Decimal("101"))],
                TEST_ACTOR,
                allow_partial=False,
            )
        assert exc_info.value.remainders == {PRODUCT: Decimal("1")}
        assert session.query(Bill).count() == 0

    def test_same_product_items_are_summed(self, billing, supply):
        info = billing.generate_bill(
            TENANT_ID,
            "PED-4",
            [OrderItem(PRODUCT, Decimal("10")), OrderItem(PRODUCT, Decimal("5"))],
            TEST_ACTOR,
        )
        assert sum(s.quantity for s in info.splits) == Decimal("15")
        assert {s.ordered_quantity for s in info.splits} == {Decimal("15")}

    def test_preview_does_not_write(self, billing, supply, session):
        result = billing.preview_split(TENANT_ID, PRODUCT, Decimal("70"))

        assert result.total_quantity == Decimal("70")
        assert session.query(BillingSplit).count() == 0

    def test_inactive_modality_excluded_from_candidates(self, billing, catalog, supply):
        catalog.deactivate_modality(TENANT_ID, supply["creche"].id, TEST_ACTOR)

        result = billing.preview_split(TENANT_ID, PRODUCT, Decimal("100"))

        assert all(d.modality_name != "Creche" for d in result.drafts)
        assert result.unsatisfied_remainder == Decimal("30")


class TestSplitConsumption:

    def test_confirm_posts_to_allocation(self, billing, bill, supply, session, balance_store):
        split = bill.splits[0]

        confirmed = billing.confirm_split_consumption(TENANT_ID, split.id, TEST_ACTOR)

        assert confirmed.consumption_confirmed
        assert confirmed.confirmation_date is not None
        event = session.get(ConsumptionEvent, confirmed.consumption_event_id)
        assert event.modality_allocation_id == supply["creche_a"].allocation_id
        assert event.quantity == Decimal("30")
        assert event.note == "Faturamento FAT2024000001 - pedido PED-1"
        snapshot = balance_store.snapshot_allocation(TENANT_ID, supply["creche_a"].allocation_id)
        assert snapshot.available == Decimal("0")

    def test_confirm_direct_split_posts_to_line(self, billing, bill, supply, session):
        split = bill.splits[2]

        confirmed = billing.confirm_split_consumption(TENANT_ID, split.id, TEST_ACTOR)

        event = session.get(ConsumptionEvent, confirmed.consumption_event_id)
        assert event.contract_line_id == supply["line_b"].id

    def test_confirm_twice_rejected(self, billing, bill):
        billing.confirm_split_consumption(TENANT_ID, bill.splits[0].id, TEST_ACTOR)
        with pytest.raises(SplitAlreadyConfirmedError):
            billing.confirm_split_consumption(TENANT_ID, bill.splits[0].id, TEST_ACTOR)

    def test_reverse_restores_balance(self, billing, bill, supply, balance_store):
        billing.confirm_split_consumption(TENANT_ID, bill.splits[2].id, TEST_ACTOR)

        reversed_split = billing.reverse_split_consumption(TENANT_ID, bill.splits[2].id, TEST_ACTOR)

        assert not reversed_split.consumption_confirmed
        assert reversed_split.consumption_event_id is None
        assert balance_store.snapshot_line(TENANT_ID, supply["line_b"].id).available == Decimal("50")

    def test_reverse_unconfirmed_rejected(self, billing, bill):
        with pytest.raises(SplitNotConfirmedError):
            billing.reverse_split_consumption(TENANT_ID, bill.splits[0].id, TEST_ACTOR)

    def test_confirm_fails_when_balance_moved(self, billing, bill, supply, ledger):
        ledger.record_consumption(
            TENANT_ID, LineTarget(supply["line_b"].id), Decimal("45"), TEST_ACTOR
        )

        with pytest.raises(InsufficientBalanceError) as exc_info:
            billing.confirm_split_consumption(TENANT_ID, bill.splits[2].id, TEST_ACTOR)

        assert exc_info.value.available == Decimal("5")
        assert not billing.get_bill(TENANT_ID, bill.id).splits[2].consumption_confirmed

    def test_reversing_event_unconfirms_split(self, billing, bill, ledger):
        confirmed = billing.confirm_split_consumption(TENANT_ID, bill.splits[1].id, TEST_ACTOR)

        ledger.reverse_consumption(TENANT_ID, confirmed.consumption_event_id, TEST_ACTOR)

        split = billing.get_bill(TENANT_ID, bill.id).splits[1]
        assert not split.consumption_confirmed
        assert split.consumption_event_id is None

    def test_reversing_event_reopens_consumed_bill(self, billing, bill, ledger):
        consumed = billing.confirm_bill_consumption(TENANT_ID, bill.id, TEST_ACTOR)
        assert consumed.status == BillStatus.CONSUMED

        ledger.reverse_consumption(TENANT_ID, consumed.splits[0].consumption_event_id, TEST_ACTOR)

        reopened = billing.get_bill(TENANT_ID, bill.id)
        assert reopened.status == BillStatus.GENERATED
        assert [s.consumption_confirmed for s in reopened.splits] == [False, True, True]

    def test_deleting_event_reopens_consumed_bill(self, billing, bill, ledger):
        consumed = billing.confirm_bill_consumption(TENANT_ID, bill.id, TEST_ACTOR)

        ledger.delete_consumption(TENANT_ID, consumed.splits[2].consumption_event_id, TEST_ACTOR)

        reopened = billing.get_bill(TENANT_ID, bill.id)
        assert reopened.status == BillStatus.GENERATED
        assert reopened.splits[2].consumption_event_id is None

        # Confirming the released split again closes the bill.
        again = billing.confirm_split_consumption(TENANT_ID, reopened.splits[2].id, TEST_ACTOR)
        assert again.consumption_confirmed
        assert billing.get_bill(TENANT_ID, bill.id).status == BillStatus.CONSUMED


class TestBillConsumption:

    def test_confirm_and_reverse_whole_bill(self, billing, bill, supply, balance_store):
        consumed = billing.confirm_bill_consumption(TENANT_ID, bill.id, TEST_ACTOR)
        assert consumed.status == BillStatus.CONSUMED
        assert all(s.consumption_confirmed for s in consumed.splits)
        assert balance_store.snapshot_line(TENANT_ID, supply["line_a"].id).available == Decimal("0")

        reverted = billing.reverse_bill_consumption(TENANT_ID, bill.id, TEST_ACTOR)
        assert reverted.status == BillStatus.GENERATED
        assert not any(s.consumption_confirmed for s in reverted.splits)
        assert balance_store.snapshot_line(TENANT_ID, supply["line_a"].id).available == Decimal("50")

    def test_partially_confirmed_bill_stays_generated(self, billing, bill):
        billing.confirm_split_consumption(TENANT_ID, bill.splits[0].id, TEST_ACTOR)
        assert billing.get_bill(TENANT_ID, bill.id).status == BillStatus.GENERATED

    def test_unknown_bill(self, billing):
        from uuid import uuid4

        with pytest.raises(BillNotFoundError):
            billing.get_bill(TENANT_ID, uuid4())


class TestRemoveModalitySplits:

    def test_confirmed_splits_reversed_then_removed(self, billing, bill, supply, balance_store):
        billing.confirm_bill_consumption(TENANT_ID, bill.id, TEST_ACTOR)

        result = billing.remove_modality_splits(
            TENANT_ID, bill.id, supply["creche"].id, TEST_ACTOR
        )

        assert result.removed_count == 1
        assert result.reversed_count == 1
        assert result.total_value == Decimal("700.00")
        creche = balance_store.snapshot_allocation(TENANT_ID, supply["creche_a"].allocation_id)
        assert creche.consumed == Decimal("0")
        remaining = billing.get_bill(TENANT_ID, bill.id)
        assert len(remaining.splits) == 2
        assert remaining.total_value == Decimal("700.00")
        assert remaining.status == BillStatus.CONSUMED

    def test_contract_filter(self, billing, bill, supply):
        result = billing.remove_modality_splits(
            TENANT_ID, bill.id, supply["emef"].id, TEST_ACTOR, contract_id="ct-b"
        )
        assert result.removed_count == 0
        assert len(billing.get_bill(TENANT_ID, bill.id).splits) == 3

    def test_no_matching_modality_is_a_no_op(self, billing, bill, create_modality):
        other = create_modality("EJA")
        result = billing.remove_modality_splits(TENANT_ID, bill.id, other.id, TEST_ACTOR)
        assert result.removed_count == 0
        assert result.total_value == Decimal("1000.00")


class TestCancelAndDelete:

    def test_cancel_reverses_and_freezes(self, billing, bill, supply, balance_store):
        billing.confirm_split_consumption(TENANT_ID, bill.splits[2].id, TEST_ACTOR)

        cancelled = billing.cancel_bill(TENANT_ID, bill.id, TEST_ACTOR)

        assert cancelled.status == BillStatus.CANCELLED
        assert balance_store.snapshot_line(TENANT_ID, supply["line_b"].id).consumed == Decimal("0")
        with pytest.raises(BillCancelledError):
            billing.confirm_split_consumption(TENANT_ID, bill.splits[0].id, TEST_ACTOR)
        with pytest.raises(BillCancelledError):
            billing.cancel_bill(TENANT_ID, bill.id, TEST_ACTOR)

    def test_delete_reverses_and_removes(self, billing, bill, supply, balance_store, session):
        billing.confirm_bill_consumption(TENANT_ID, bill.id, TEST_ACTOR)

        result = billing.delete_bill(TENANT_ID, bill.id, TEST_ACTOR)

        assert result.removed_count == 3
        assert result.reversed_count == 3
        assert session.query(Bill).count() == 0
        assert session.query(BillingSplit).count() == 0
        assert balance_store.snapshot_line(TENANT_ID, supply["line_a"].id).consumed == Decimal("0")
        assert balance_store.snapshot_line(TENANT_ID, supply["line_b"].id).consumed == Decimal("0")


class TestBillSummary:

    def test_grouped_by_contract_then_modality(self, billing, bill):
        summary = billing.bill_summary(TENANT_ID, bill.id)

        assert summary.total_quantity == Decimal("100")
        assert summary.total_value == Decimal("1000.00")
        assert [c.contract_number for c in summary.contracts] == ["CT-A", "CT-B"]

        ct_a, ct_b = summary.contracts
        assert [(m.modality_name, m.quantity, m.value) for m in ct_a.modalities] == [
            ("Creche", Decimal("30"), Decimal("300.00")),
            ("EMEF", Decimal("20"), Decimal("200.00")),
        ]
        assert ct_a.modalities[0].financial_code == "PNAE-C"
        assert [(m.modality_name, m.quantity) for m in ct_b.modalities] == [(None, Decimal("50"))]


def test_allocation_with_splits_cannot_be_removed(billing, bill, supply, allocations):
    from ledger_kernel.exceptions import AllocationInUseError

    with pytest.raises(AllocationInUseError) as exc_info:
        allocations.remove_modality_allocation(
            TENANT_ID, supply["emef_a"].allocation_id, TEST_ACTOR
        )
    assert "billing splits" in str(exc_info.value)


def test_split_target_matches_allocation(billing, bill, supply, ledger):
    """Confirming an allocation split is the same debit as a direct allocation debit."""
    billing.confirm_split_consumption(TENANT_ID, bill.splits[1].id, TEST_ACTOR)
    with pytest.raises(InsufficientBalanceError):
        ledger.record_consumption(
            TENANT_ID, AllocationTarget(supply["emef_a"].allocation_id), 1, TEST_ACTOR
        )
