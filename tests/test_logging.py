"""
Structured logging tests.

Tests cover:
- Ledger events render as one JSON object per line with the bound
  context (tenant, actor, line, event, bill)
- Rejections log at WARNING with requested and available quantities
- Kernel exceptions flatten into exc_* fields
- LogContext nesting, restoration and field validation
- Splitter runs emit LEDGER_ENGINE_TRACE
"""

import json
import logging
from decimal import Decimal
from io import StringIO

import pytest

from ledger_kernel.domain.dtos import LineTarget
from ledger_kernel.exceptions import InsufficientBalanceError
from ledger_kernel.logging_config import (
    CONTEXT_FIELDS,
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)
from ledger_kernel.services.billing_service import OrderItem
from tests.conftest import TENANT_ID, TEST_ACTOR


@pytest.fixture(autouse=True)
def _isolated_logging():
    reset_logging()
    yield
    reset_logging()
    configure_logging(level=logging.DEBUG)


@pytest.fixture
def records():
    """Route ledger_kernel logs to a buffer; return a reader filtering by message."""
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    configure_logging(level=logging.DEBUG, handler=handler)

    def _read(message=None):
        parsed = [json.loads(line) for line in stream.getvalue().splitlines() if line]
        return [r for r in parsed if message is None or r["message"] == message]

    return _read


class TestLedgerEvents:

    def test_consumption_recorded_carries_context(self, records, ledger, create_line):
        line = create_line()

        with LogContext.bind(tenant_id=TENANT_ID, actor_id=TEST_ACTOR, correlation_id="req-1"):
            result = ledger.record_consumption(
                TENANT_ID, LineTarget(line.id), Decimal("12.5"), TEST_ACTOR
            )

        (record,) = records("consumption_recorded")
        assert record["level"] == "INFO"
        assert record["logger"] == "ledger_kernel.services.consumption"
        assert record["tenant_id"] == TENANT_ID
        assert record["actor_id"] == TEST_ACTOR
        assert record["correlation_id"] == "req-1"
        assert record["contract_line_id"] == str(line.id)
        assert record["event_id"] == str(result.event_id)
        assert record["target_kind"] == "line"
        assert Decimal(record["available"]) == Decimal("87.5")
        assert LogContext.get_all() == {}

    def test_rejection_logged_as_warning(self, records, ledger, create_line):
        line = create_line(contracted_quantity="5")

        with pytest.raises(InsufficientBalanceError):
            ledger.record_consumption(TENANT_ID, LineTarget(line.id), Decimal("6"), TEST_ACTOR)

        (record,) = records("consumption_rejected")
        assert record["level"] == "WARNING"
        assert Decimal(record["requested"]) == Decimal("6")
        assert Decimal(record["available"]) == Decimal("5")
        assert records("consumption_recorded") == []

    def test_bill_generated_binds_bill_id(self, records, billing, create_line):
        create_line(product_id="feijao")

        bill = billing.generate_bill(
            TENANT_ID, "PED-5", [OrderItem("feijao", Decimal("3"))], TEST_ACTOR
        )

        (record,) = records("bill_generated")
        assert record["bill_id"] == str(bill.id)
        assert record["bill_number"] == bill.number
        assert record["partial"] is False
        assert "bill_id" not in LogContext.get_all()

        (trace,) = records("LEDGER_ENGINE_TRACE")
        assert trace["engine_name"] == "billing_splitter"
        assert len(trace["input_fingerprint"]) == 16

    def test_kernel_exception_flattened(self, records):
        try:
            raise InsufficientBalanceError("allocation", "alloc-1", Decimal("10"), Decimal("3"))
        except InsufficientBalanceError:
            get_logger("services.consumption").error("consumption_error", exc_info=True)

        (record,) = records("consumption_error")
        assert record["exc_code"] == "INSUFFICIENT_BALANCE"
        assert record["exc_type"] == "InsufficientBalanceError"
        assert record["exc_requested"] == "10"
        assert record["exc_available"] == "3"
        assert "traceback" in record

    def test_no_context_when_unbound(self, records):
        get_logger("test").info("bare")

        (record,) = records("bare")
        assert not set(CONTEXT_FIELDS) & set(record)


class TestLogContext:

    def test_nested_bind_restores_outer_values(self):
        with LogContext.bind(tenant_id="prefeitura", bill_id="b-1"):
            with LogContext.bind(bill_id="b-2", event_id="e-1"):
                assert LogContext.get_all() == {
                    "tenant_id": "prefeitura",
                    "event_id": "e-1",
                    "bill_id": "b-2",
                }
            assert LogContext.get_all() == {"tenant_id": "prefeitura", "bill_id": "b-1"}
        assert LogContext.get_all() == {}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError):
            LogContext.set(producer="p")
        with pytest.raises(TypeError):
            LogContext.bind(trace_id="t")


def test_configure_is_idempotent():
    configure_logging(handler=logging.StreamHandler(StringIO()))
    configure_logging(handler=logging.StreamHandler(StringIO()))

    assert len(logging.getLogger("ledger_kernel").handlers) == 1
    assert get_logger("services.billing").name == "ledger_kernel.services.billing"
