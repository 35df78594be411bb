"""Unit tests for the business logic layer."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from commission_settlement import constants, core_logic, data_manager
from commission_settlement.competence import CutoffPeriod
from commission_settlement.constants import InstallmentStatus
from commission_settlement.errors import CutoffConfigurationError, MissingReferenceError
from commission_settlement.rates import DEFAULT_RATE_TABLE, RateRule
from commission_settlement.records import build_settlement_record
from commission_settlement.remote import HttpRemoteStore


CREATED = datetime(2024, 3, 25, 12, 0, tzinfo=UTC)


def _record(make_command, sale_id="sale-1", paid=(), **overrides):
    record, _ = build_settlement_record(
        make_command(**overrides),
        sale_id=sale_id,
        local_id=f"local-{sale_id}",
        created_at=CREATED,
    )
    ledger = record.ledger
    for number, paid_on in paid:
        ledger = ledger.apply(number, InstallmentStatus.PAID, paid_date=paid_on)
    return replace(record, ledger=ledger)


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "settlement.xlsx",
        office_name="Office",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        remote_base_url="https://store.test",
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_load_rate_table_defaults_and_caches(context):
    assert core_logic.load_rate_table(context) is DEFAULT_RATE_TABLE
    assert context._cache["rate_table"] is DEFAULT_RATE_TABLE


def test_load_rate_table_applies_overrides(settings, workbook):
    context = core_logic.RuntimeContext(
        settings=replace(settings, rate_overrides={"consultanttier1": "0.2"}),
        workbook=workbook,
    )
    table = core_logic.load_rate_table(context)
    assert table.first_tier.consultant == Decimal("0.2")


def test_load_cutoff_calendar_combines_sheet_and_settings(monkeypatch, settings, workbook):
    period = CutoffPeriod("p1", "Carnival", date(2024, 2, 10), date(2024, 2, 14), "2024-03")
    monkeypatch.setattr(data_manager, "iter_cutoff_periods", Mock(return_value=iter([period])))
    context = core_logic.RuntimeContext(settings=replace(settings, cutoff_days={5: 10}), workbook=workbook)

    calendar = core_logic.load_cutoff_calendar(context)

    assert calendar.periods == (period,)
    assert calendar.cutoff_day_for(5) == 10
    assert calendar.resolve(date(2024, 2, 12)) == "2024-03"
    assert core_logic.load_cutoff_calendar(context) is calendar


def test_add_cutoff_period_appends_valid_period(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_cutoff_periods", Mock(return_value=iter([])))
    append_mock = Mock()
    monkeypatch.setattr(data_manager, "append_cutoff_period", append_mock)
    context._cache["calendar"] = object()

    period = core_logic.add_cutoff_period(
        context,
        name=" Easter ",
        start_date=date(2024, 3, 15),
        end_date=date(2024, 3, 25),
        competence_month="2024-04",
        period_id="p1",
    )

    assert period.name == "Easter"
    append_mock.assert_called_once_with(context.workbook, period)
    assert "calendar" not in context._cache


def test_add_cutoff_period_rejects_overlap(monkeypatch, context):
    existing = CutoffPeriod("p1", "Easter", date(2024, 3, 15), date(2024, 3, 25), "2024-04")
    monkeypatch.setattr(data_manager, "iter_cutoff_periods", Mock(return_value=iter([existing])))
    append_mock = Mock()
    monkeypatch.setattr(data_manager, "append_cutoff_period", append_mock)

    with pytest.raises(CutoffConfigurationError):
        core_logic.add_cutoff_period(
            context,
            name="Overlap",
            start_date=date(2024, 3, 20),
            end_date=date(2024, 3, 30),
            competence_month="2024-05",
        )
    append_mock.assert_not_called()


def test_remove_cutoff_period_missing_raises(monkeypatch, context):
    monkeypatch.setattr(data_manager, "remove_cutoff_period", Mock(return_value=False))
    with pytest.raises(MissingReferenceError):
        core_logic.remove_cutoff_period(context, "ghost")


def test_build_remote_store_uses_settings(settings):
    store = core_logic.build_remote_store(replace(settings, remote_timeout=7.5))
    assert isinstance(store, HttpRemoteStore)
    assert store.base_url == "https://store.test/api"
    assert store.timeout == 7.5


def test_build_pipeline_uses_sync_settings(monkeypatch, settings, workbook):
    monkeypatch.setattr(data_manager, "iter_cutoff_periods", Mock(return_value=iter([])))
    context = core_logic.RuntimeContext(
        settings=replace(settings, write_timeout=4.0, startup_delay=1.0, retry_interval=30.0),
        workbook=workbook,
    )
    store = Mock(name="store")

    pipeline = core_logic.build_pipeline(context, store)

    assert pipeline.store is store
    assert isinstance(pipeline.queue, data_manager.WorkbookQueue)
    assert (pipeline.write_timeout, pipeline.startup_delay, pipeline.retry_interval) == (4.0, 1.0, 30.0)


def test_competence_report_collects_paid_installments(make_command):
    """Only paid installments booked into the month are reported."""

    first = _record(make_command, "sale-1", paid=[(1, date(2024, 3, 20)), (2, date(2024, 3, 10))])
    second = _record(make_command, "sale-2", paid=[(1, date(2024, 3, 25))], client_name="Bruno")

    report = core_logic.build_competence_report([first, second], "2024-05")

    assert [(line.sale_id, line.installment) for line in report.lines] == [("sale-2", 1), ("sale-1", 1)]
    expected = Decimal("128.8") * Decimal("0.94")
    assert report.lines[0].values.consultant == expected
    assert report.consultant_total == expected * 2
    assert report.grand_total == report.consultant_total + report.manager_total + report.angel_total


def test_competence_report_filters_by_role(make_command):
    carlos = _record(make_command, "sale-1", paid=[(1, date(2024, 3, 20))])
    rita = _record(make_command, "sale-2", paid=[(1, date(2024, 3, 20))], consultant_name="Rita")

    report = core_logic.build_competence_report([carlos, rita], "2024-05", consultant="rita")

    assert [line.sale_id for line in report.lines] == ["sale-2"]


def test_competence_report_uses_first_matching_custom_rule(make_command):
    rules = (
        RateRule(1, 5, Decimal("1"), Decimal("0")),
        RateRule(1, 15, Decimal("2"), Decimal("0")),
    )
    record = _record(
        make_command,
        paid=[(3, date(2024, 3, 1))],
        custom_rules=rules,
        tax_rate_percent=Decimal("0"),
    )

    report = core_logic.build_competence_report([record], "2024-04")

    assert report.lines[0].values.consultant == Decimal("1000")


def test_competence_report_rejects_bad_month():
    with pytest.raises(CutoffConfigurationError):
        core_logic.build_competence_report([], "May 2024")


def test_persist_context_writes_to_disk(monkeypatch, context):
    """persist_context should flush workbook changes to disk."""

    save_mock = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save_mock)

    core_logic.persist_context(context)

    save_mock.assert_called_once_with(context.workbook, destination=context.settings.data_file)
