"""
ContractCatalogService tests.

Tests cover:
- Registration creates the line and its zero balance row
- Re-registration refreshes descriptive fields, never the quantity
- Modality upsert by name and deactivation
"""

from decimal import Decimal

import pytest

from ledger_kernel.exceptions import ContractedQuantityImmutableError, InvalidQuantityError
from tests.conftest import TENANT_ID, TEST_ACTOR


class TestContractLines:

    def test_register_creates_balance_row(self, create_line, balance_store):
        line = create_line(contracted_quantity="250")

        balance = balance_store.get_balance(line.id)
        assert balance is not None
        assert balance.direct_consumed_quantity == Decimal("0")
        assert line.is_active

    def test_reregister_refreshes_description(self, create_line):
        first = create_line(contract_id="ct-1", unit_price="2.00", supplier_name="Antigo")
        again = create_line(contract_id="ct-1", unit_price="2.10", supplier_name="Novo")

        assert again.id == first.id
        assert again.unit_price == Decimal("2.10")
        assert again.supplier_name == "Novo"

    def test_contracted_quantity_is_fixed(self, create_line):
        create_line(contract_id="ct-1", contracted_quantity="100")

        with pytest.raises(ContractedQuantityImmutableError) as exc_info:
            create_line(contract_id="ct-1", contracted_quantity="120")

        assert exc_info.value.current_quantity == Decimal("100")
        assert exc_info.value.attempted_quantity == Decimal("120")

    def test_negative_price_rejected(self, create_line):
        with pytest.raises(InvalidQuantityError):
            create_line(unit_price="-1")

    def test_deactivate_and_reactivate(self, create_line, catalog):
        line = create_line(contract_id="ct-9")

        inactive = catalog.deactivate_contract_line(TENANT_ID, line.id, TEST_ACTOR)
        assert not inactive.is_active

        assert create_line(contract_id="ct-9").is_active


class TestModalities:

    def test_upsert_by_name(self, create_modality):
        first = create_modality("Creche", transfer_amount="1000", financial_code="PNAE-01")
        second = create_modality("Creche", transfer_amount="1500", financial_code="PNAE-02")

        assert second.id == first.id
        assert second.transfer_amount == Decimal("1500")
        assert second.financial_code == "PNAE-02"

    def test_negative_transfer_rejected(self, create_modality):
        with pytest.raises(InvalidQuantityError):
            create_modality("Creche", transfer_amount="-5")

    def test_deactivate(self, create_modality, catalog, selector):
        creche = create_modality("Creche")
        create_modality("EMEF")

        catalog.deactivate_modality(TENANT_ID, creche.id, TEST_ACTOR)

        assert [m.name for m in selector.list_modalities(TENANT_ID)] == ["EMEF"]
        assert len(selector.list_modalities(TENANT_ID, include_inactive=True)) == 2
