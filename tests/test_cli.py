"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import date
from decimal import Decimal

import pytest

from commission_settlement import cli, core_logic, data_manager
from commission_settlement.constants import SaleType
from commission_settlement.errors import (
    LedgerInvariantViolation,
    RemoteAuthoritativeError,
    RemoteTransientError,
    ValidationGap,
)
from commission_settlement.rates import RateRule


WRITE_COMMANDS = {
    "register",
    "set-status",
    "mark-range",
    "sync",
    "add-cutoff",
    "remove-cutoff",
}

READ_COMMANDS = {
    "simulate",
    "sales",
    "pending",
    "competence",
    "report",
    "cutoffs",
}

REGISTER_ARGS = [
    "register",
    "--client",
    "Maria Souza",
    "--group",
    "1020",
    "--quota",
    "45",
    "--pv",
    "PV Centro",
    "--credit",
    "100000",
    "--consultant",
    "Carlos Lima",
    "--date",
    "2024-03-10",
]


def _registered_choices(parser: argparse.ArgumentParser):
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return action.choices
    return {}


@pytest.fixture
def use_store(monkeypatch):
    """Route the CLI to a fake remote store."""

    def _apply(store):
        monkeypatch.setattr(core_logic, "build_remote_store", lambda settings: store)
        return store

    return _apply


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "settlement-cli"
    assert "settlement" in (parser.description or "")


def test_configure_subcommands_registers_all_commands(cli_parser):
    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert set(_registered_choices(cli_parser)) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


def test_register_command_parses_arguments():
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = cli.register_register_command(subparsers)
    spec.register(subparsers)
    namespace = parser.parse_args(
        [*REGISTER_ARGS, "--angel", "Paula", "--type", "Veículo", "--rule", "1:15:0.1:0.02"]
    )
    assert namespace.client == "Maria Souza"
    assert namespace.sale_date == date(2024, 3, 10)
    assert namespace.sale_type == "Veículo"
    assert namespace.tax == "6"
    assert namespace.rules == ["1:15:0.1:0.02"]


def test_set_status_command_restricts_statuses():
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = cli.register_set_status_command(subparsers)
    spec.register(subparsers)
    with pytest.raises(SystemExit):
        parser.parse_args(["set-status", "--sale-id", "s", "--installment", "1", "--status", "Quitado"])


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]
    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_rejects_unknown(context):
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="nope"), {})


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_register_builds_sale_command():
    namespace = argparse.Namespace(
        client="Maria",
        sale_type="Imóvel",
        group="1",
        quota="2",
        pv="PV",
        credit="1500.50",
        consultant="Carlos",
        sale_date=date(2024, 3, 10),
        manager=None,
        angel="Paula",
        tax="5",
        rules=["1:10:0,1:0.02"],
    )
    command = cli.translate_register(namespace)
    assert command.credit_value == Decimal("1500.50")
    assert command.sale_type is SaleType.REAL_ESTATE
    assert command.tax_rate_percent == Decimal("5")
    assert command.custom_rules == (RateRule(1, 10, Decimal("0.1"), Decimal("0.02")),)
    assert command.has_angel


def test_translate_rules_without_rules_is_none():
    assert cli.translate_rules(argparse.Namespace(rules=None)) is None


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (ValidationGap(["pv"]), 2),
        (LedgerInvariantViolation("no"), 2),
        (FileNotFoundError("missing"), 3),
        (RemoteTransientError("down"), 4),
        (RemoteAuthoritativeError("rejected"), 4),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, code):
    assert cli.handle_cli_error(error) == code


# ---------------------------------------------------------------------------
# End-to-end command execution
# ---------------------------------------------------------------------------


def test_main_simulate_prints_breakdown(config_file, capsys):
    exit_code = cli.main(["--config", str(config_file), "simulate", "--credit", "100000"])
    output = capsys.readouterr().out
    assert exit_code == 0
    assert "Installments 1-10" in output
    assert "2300.20" in output


def test_main_register_persists_remotely(config_file, use_store, store_factory, capsys):
    store = use_store(store_factory())

    exit_code = cli.main(["--config", str(config_file), *REGISTER_ARGS])

    assert exit_code == 0
    assert store.closed
    assert "remote-1" in capsys.readouterr().out
    assert store.documents["remote-1"]["clientName"] == "Maria Souza"


def test_main_register_offline_queues_write(config_factory, use_store, store_factory, capsys):
    bundle = config_factory()
    use_store(store_factory(always_fail=True))

    exit_code = cli.main(["--config", str(bundle.config_path), *REGISTER_ARGS])

    assert exit_code == 0
    assert "pending" in capsys.readouterr().out
    workbook = data_manager.open_workbook(bundle.workbook_path)
    entries = list(data_manager.iter_pending_writes(workbook))
    assert len(entries) == 1
    assert entries[0].attempt_count == 0

    cli.main(["--config", str(bundle.config_path), "pending"])
    assert entries[0].local_id in capsys.readouterr().out


def test_main_sync_recovers_queued_write(config_factory, use_store, store_factory, capsys):
    bundle = config_factory()
    use_store(store_factory(always_fail=True))
    cli.main(["--config", str(bundle.config_path), *REGISTER_ARGS])

    store = use_store(store_factory())
    exit_code = cli.main(["--config", str(bundle.config_path), "sync"])

    assert exit_code == 0
    assert "recovered 1" in capsys.readouterr().out
    assert len(store.documents) == 1
    workbook = data_manager.open_workbook(bundle.workbook_path)
    assert list(data_manager.iter_pending_writes(workbook)) == []


def test_main_set_status_then_competence(config_file, use_store, store_factory, capsys):
    store = use_store(store_factory())
    cli.main(["--config", str(config_file), *REGISTER_ARGS])
    sale_id = store.documents["remote-1"]["id"]
    capsys.readouterr()

    exit_code = cli.main(
        [
            "--config",
            str(config_file),
            "set-status",
            "--sale-id",
            sale_id,
            "--installment",
            "1",
            "--status",
            "Pago",
            "--paid-date",
            "2024-03-20",
        ]
    )
    assert exit_code == 0
    assert store.documents["remote-1"]["installmentDetails"]["1"]["competenceMonth"] == "2024-05"

    capsys.readouterr()
    assert cli.main(["--config", str(config_file), "competence", "--month", "2024-05"]) == 0
    output = capsys.readouterr().out
    assert "Maria Souza" in output
    assert "121.07" in output


def test_main_report_exports_workbook(config_file, use_store, store_factory, tmp_path):
    store = use_store(store_factory())
    cli.main(["--config", str(config_file), *REGISTER_ARGS])
    sale_id = store.documents["remote-1"]["id"]
    cli.main(
        ["--config", str(config_file), "mark-range", "--sale-id", sale_id, "--start", "1",
         "--end", "3", "--status", "Pago", "--paid-date", "2024-03-05"]
    )

    output = tmp_path / "report.xlsx"
    exit_code = cli.main(["--config", str(config_file), "report", "--month", "2024-04", "--output", str(output)])

    assert exit_code == 0
    assert output.exists()


def test_main_cutoff_commands(config_file, capsys):
    exit_code = cli.main(
        ["--config", str(config_file), "add-cutoff", "--name", "Easter", "--start", "2024-03-15",
         "--end", "2024-03-25", "--competence-month", "2024-04"]
    )
    assert exit_code == 0
    period_id = capsys.readouterr().out.strip()

    assert cli.main(["--config", str(config_file), "cutoffs"]) == 0
    assert "Easter" in capsys.readouterr().out

    assert cli.main(["--config", str(config_file), "remove-cutoff", "--period-id", period_id]) == 0
    assert cli.main(["--config", str(config_file), "remove-cutoff", "--period-id", period_id]) == 2


def test_main_rejects_overlapping_cutoff(config_file):
    base = ["--config", str(config_file), "add-cutoff", "--competence-month", "2024-05"]
    assert cli.main([*base, "--name", "A", "--start", "2024-04-01", "--end", "2024-04-20"]) == 0
    assert cli.main([*base, "--name", "B", "--start", "2024-04-10", "--end", "2024-04-25"]) == 2


def test_main_register_validation_gap_exit_code(config_file, use_store, store_factory):
    use_store(store_factory())
    args = [*REGISTER_ARGS]
    args[args.index("--credit") + 1] = "0"
    assert cli.main(["--config", str(config_file), *args]) == 2


def test_main_remote_failure_exit_code(config_file, use_store, store_factory):
    class UnreachableStore(store_factory):
        async def list_all(self):
            raise RemoteTransientError("unreachable")

    use_store(UnreachableStore())
    assert cli.main(["--config", str(config_file), "sales"]) == 4


def test_main_missing_config_exit_code(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.ini"), "cutoffs"]) == 3
