"""Unit tests for settlement records and their stored payload shape."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from commission_settlement import records
from commission_settlement.constants import NO_MANAGER, InstallmentStatus, SaleStatus, SaleType
from commission_settlement.errors import ValidationGap
from commission_settlement.rates import RateRule


CREATED = datetime(2024, 3, 25, 12, 0, tzinfo=UTC)


def _build(command):
    record, breakdown = records.build_settlement_record(
        command,
        sale_id="sale-1",
        local_id="abc123",
        created_at=CREATED,
    )
    return record, breakdown


def test_validate_accepts_complete_command(make_command):
    records.validate_sale_command(make_command())


def test_validate_lists_every_missing_field(make_command):
    command = make_command(client_name=" ", pv="", credit_value=None, sale_date=None)
    with pytest.raises(ValidationGap) as excinfo:
        records.validate_sale_command(command)
    assert excinfo.value.missing_fields == ("credit_value", "client_name", "sale_date", "pv")
    assert "client_name" in str(excinfo.value)


@pytest.mark.parametrize("credit", [Decimal("0"), Decimal("-1")])
def test_validate_rejects_non_positive_credit(make_command, credit):
    with pytest.raises(ValidationGap):
        records.validate_sale_command(make_command(credit_value=credit))


def test_build_record_starts_pending_with_placeholder(make_command):
    record, breakdown = _build(make_command())
    assert record.remote_id == "local_abc123"
    assert record.is_pending
    assert record.overall_status is SaleStatus.IN_PROGRESS
    assert record.consultant_value == breakdown.totals.consultant == Decimal("2300.2")
    assert record.manager_value == Decimal("499.9")
    assert record.angel_value == Decimal("0")
    assert record.net_value == breakdown.grand_total * Decimal("0.94")


def test_build_record_defaults_manager_and_strips_names(make_command):
    record, _ = _build(make_command(manager_name="  ", client_name="  Maria  ", angel_name=" "))
    assert record.manager_name == NO_MANAGER
    assert record.client_name == "Maria"
    assert record.angel_name is None
    assert record.has_angel is False


def test_build_record_with_angel_uses_angel_table(make_command):
    record, _ = _build(make_command(angel_name="Paula"))
    assert record.has_angel
    assert record.angel_value == Decimal("199.1")
    assert record.manager_value == Decimal("300.8")


def test_payload_round_trip_preserves_record(make_command):
    rules = (RateRule(1, 15, Decimal("0.1"), Decimal("0.02"), Decimal("0.01")),)
    record, _ = _build(make_command(angel_name="Paula", custom_rules=rules))
    record = replace(
        record,
        ledger=record.ledger.apply(1, InstallmentStatus.PAID, paid_date=date(2024, 3, 20)),
    )
    payload = records.record_to_payload(record)
    assert payload["localId"] == "abc123"
    assert payload["status"] == "Em Andamento"
    assert payload["installments"] == 15
    assert payload["customRules"][0]["consultantRate"] == "0.1"

    restored = records.record_from_payload(payload)
    assert restored == record


def test_record_from_payload_uses_store_identifiers(make_command):
    record, _ = _build(make_command())
    payload = records.record_to_payload(record)
    stored_at = datetime(2024, 4, 1, tzinfo=UTC)
    restored = records.record_from_payload(payload, remote_id="r-9", created_at=stored_at)
    assert restored.remote_id == "r-9"
    assert restored.is_pending is False
    assert restored.created_at == stored_at


def test_record_from_legacy_payload_migrates_installments():
    payload = {
        "id": "legacy-1",
        "date": "2023-05-02T00:00:00Z",
        "clientName": "Joao",
        "type": "Veículo",
        "group": "10",
        "quota": "2",
        "pv": "PV Sul",
        "consultant": "Rita",
        "value": 50000,
        "taxRate": 6,
        "installmentDetails": {"1": "Pago", "2": "Atraso"},
        "createdAt": "2023-05-02T10:00:00Z",
    }
    record = records.record_from_payload(payload, remote_id="r-1")
    assert record.sale_type is SaleType.VEHICLE
    assert record.manager_name == NO_MANAGER
    assert record.credit_value == Decimal("50000")
    assert record.local_id == "legacy-1"
    assert record.ledger[1].status is InstallmentStatus.PAID
    assert record.overall_status is SaleStatus.OVERDUE


def test_record_from_payload_requires_id_and_date():
    with pytest.raises(ValueError):
        records.record_from_payload({"clientName": "x", "createdAt": "2024-01-01T00:00:00"})


def test_recompute_commission_follows_new_credit(make_command):
    record, _ = _build(make_command())
    updated = records.recompute_commission(replace(record, credit_value=Decimal("200000")))
    assert updated.consultant_value == Decimal("4600.4")


def test_placeholder_helpers():
    assert records.is_placeholder_id("local_x")
    assert records.is_placeholder_id(None)
    assert not records.is_placeholder_id("r-1")
    assert records.placeholder_remote_id("x") == "local_x"
    assert records.generate_local_id() != records.generate_local_id()
