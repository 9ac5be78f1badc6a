"""
Unit tests for quantity coercion and rounding.

Verifies:
- Float constructor prohibition
- Precision checks against a configured number of decimal places
- Rounding determinism (ROUND_HALF_UP)
"""

from decimal import Decimal

import pytest

from ledger_kernel.db.types import round_quantity, round_value, to_quantity
from ledger_kernel.exceptions import InvalidQuantityError


class TestToQuantity:

    def test_decimal_passes_through(self):
        assert to_quantity(Decimal("12.5")) == Decimal("12.5")

    def test_int_and_str(self):
        assert to_quantity(7) == Decimal("7")
        assert to_quantity("0.125") == Decimal("0.125")

    def test_float_rejected(self):
        with pytest.raises(InvalidQuantityError) as exc_info:
            to_quantity(1.5)
        assert exc_info.value.code == "INVALID_QUANTITY"

    def test_bool_rejected(self):
        with pytest.raises(InvalidQuantityError):
            to_quantity(True)

    def test_garbage_rejected(self):
        with pytest.raises(InvalidQuantityError):
            to_quantity("doze")

    def test_infinity_rejected(self):
        with pytest.raises(InvalidQuantityError):
            to_quantity("Infinity")

    def test_precision_limit(self):
        assert to_quantity("1.125", decimal_places=3) == Decimal("1.125")
        with pytest.raises(InvalidQuantityError) as exc_info:
            to_quantity("1.1255", decimal_places=3)
        assert "3 decimal places" in str(exc_info.value)

    def test_trailing_zeros_do_not_count_as_precision(self):
        assert to_quantity("2.50000", decimal_places=3) == Decimal("2.5")

    def test_large_integers_accepted(self):
        assert to_quantity("1000000", decimal_places=0) == Decimal("1000000")


class TestRounding:

    def test_round_value_half_up(self):
        assert round_value(Decimal("2.345")) == Decimal("2.35")
        assert round_value(Decimal("2.344")) == Decimal("2.34")

    def test_round_quantity(self):
        assert round_quantity(Decimal("1.23456")) == Decimal("1.235")
        assert round_quantity(Decimal("1.23456"), decimal_places=1) == Decimal("1.2")
