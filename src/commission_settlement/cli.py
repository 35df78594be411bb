"""Command-line entry points for the commission settlement engine.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the objects consumed by the business layer, and
printing results. Commands that talk to the remote store run their
coroutine with :func:`asyncio.run` and close the store afterwards.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .calculator import Breakdown, calculate_breakdown, quantize_money
from .constants import InstallmentStatus, SaleType
from .errors import BusinessRuleViolation, CutoffConfigurationError, RemoteStoreError
from .pipeline import ResilientWritePipeline
from .rates import parse_rule
from .records import SaleCommand, SettlementRecord


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="settlement-cli",
        description="Command-line tools for the commission settlement engine.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as registrations and status changes."""
    specs = {
        "register": register_register_command(subparsers),
        "set-status": register_set_status_command(subparsers),
        "mark-range": register_mark_range_command(subparsers),
        "sync": register_sync_command(subparsers),
        "add-cutoff": register_add_cutoff_command(subparsers),
        "remove-cutoff": register_remove_cutoff_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as simulations and reports."""
    specs = {
        "simulate": register_simulate_command(subparsers),
        "sales": register_sales_command(subparsers),
        "pending": register_pending_command(subparsers),
        "competence": register_competence_command(subparsers),
        "report": register_report_command(subparsers),
        "cutoffs": register_cutoffs_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_rule_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--rule",
        dest="rules",
        action="append",
        default=None,
        metavar="START:END:CONS:MAN[:ANGEL]",
        help="Custom rate rule (percent of credit); repeat for several ranges.",
    )


def _add_status_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--status", required=True, choices=[member.value for member in InstallmentStatus])
    parser.add_argument("--paid-date", type=date.fromisoformat, default=None)
    parser.add_argument("--override", action="store_true", help="Allow leaving a terminal status.")


def _add_report_filters(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--month", required=True, help="Competence month, YYYY-MM.")
    parser.add_argument("--consultant", default=None)
    parser.add_argument("--manager", default=None)
    parser.add_argument("--angel", default=None)
    parser.add_argument("--pv", default=None)


def register_register_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``register``."""
    name = "register"
    help_text = "Register a new sale and persist it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--client", required=True)
        parser.add_argument("--type", dest="sale_type", choices=[member.value for member in SaleType], default=SaleType.REAL_ESTATE.value)
        parser.add_argument("--group", required=True)
        parser.add_argument("--quota", required=True)
        parser.add_argument("--pv", required=True)
        parser.add_argument("--credit", required=True)
        parser.add_argument("--consultant", required=True)
        parser.add_argument("--date", dest="sale_date", type=date.fromisoformat, required=True)
        parser.add_argument("--manager", default=None)
        parser.add_argument("--angel", default=None)
        parser.add_argument("--tax", default="6")
        _add_rule_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_register)


def register_set_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-status``."""
    name = "set-status"
    help_text = "Change the status of one installment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--installment", type=int, required=True)
        _add_status_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_status)


def register_mark_range_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``mark-range``."""
    name = "mark-range"
    help_text = "Change the status of a contiguous range of installments."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--start", type=int, required=True)
        parser.add_argument("--end", type=int, required=True)
        _add_status_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mark_range)


def register_sync_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sync``."""
    name = "sync"
    help_text = "Retry every queued write once."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sync)


def register_add_cutoff_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-cutoff``."""
    name = "add-cutoff"
    help_text = "Add a cutoff period mapping a date range to a competence month."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--start", type=date.fromisoformat, required=True)
        parser.add_argument("--end", type=date.fromisoformat, required=True)
        parser.add_argument("--competence-month", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_cutoff)


def register_remove_cutoff_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-cutoff``."""
    name = "remove-cutoff"
    help_text = "Delete a cutoff period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--period-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_cutoff)


def register_simulate_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``simulate``."""
    name = "simulate"
    help_text = "Preview the commission breakdown for a credit value."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--credit", required=True)
        parser.add_argument("--angel", action="store_true", help="An angel participates in the sale.")
        _add_rule_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_simulate)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List every sale with its overall status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales)


def register_pending_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pending``."""
    name = "pending"
    help_text = "List writes waiting for the remote store."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pending)


def register_competence_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``competence``."""
    name = "competence"
    help_text = "Display the commission booked into a competence month."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_report_filters(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_competence)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Export a competence month report to an Excel file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_report_filters(parser)
        parser.add_argument("--output", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def register_cutoffs_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cutoffs``."""
    name = "cutoffs"
    help_text = "List configured cutoff periods."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cutoffs)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_rules(args: argparse.Namespace):
    """Translate repeated ``--rule`` options into rate rules."""
    raw_rules = getattr(args, "rules", None) or []
    return tuple(parse_rule(text) for text in raw_rules) or None


def translate_register(args: argparse.Namespace) -> SaleCommand:
    """Translate CLI args into a sale command object."""
    return SaleCommand(
        client_name=args.client,
        sale_type=SaleType(args.sale_type),
        group=args.group,
        quota=args.quota,
        pv=args.pv,
        credit_value=Decimal(args.credit),
        consultant_name=args.consultant,
        sale_date=args.sale_date,
        manager_name=args.manager,
        angel_name=args.angel,
        tax_rate_percent=Decimal(args.tax),
        custom_rules=translate_rules(args),
    )


def format_breakdown(breakdown: Breakdown) -> str:
    """Render a breakdown as a plain-text table."""
    lines = [f"{'Range':<20}{'Consultant':>14}{'Manager':>14}{'Angel':>14}"]
    for row in breakdown.rows:
        lines.append(
            f"{row.label:<20}"
            f"{quantize_money(row.consultant.per_installment):>14}"
            f"{quantize_money(row.manager.per_installment):>14}"
            f"{quantize_money(row.angel.per_installment):>14}"
        )
    totals = breakdown.totals
    lines.append(
        f"{'Total':<20}"
        f"{quantize_money(totals.consultant):>14}"
        f"{quantize_money(totals.manager):>14}"
        f"{quantize_money(totals.angel):>14}"
    )
    lines.append(f"Grand total: {quantize_money(breakdown.grand_total)}")
    return "\n".join(lines)


def format_record(record: SettlementRecord) -> str:
    state = "pending" if record.is_pending else record.remote_id
    return (
        f"{record.sale_id}  {record.sale_date.isoformat()}  {record.client_name:<25} "
        f"{record.overall_status.value:<13} {quantize_money(record.gross_total):>12}  [{state}]"
    )


def _run_with_pipeline(
    context: core_logic.RuntimeContext,
    action: Callable[[ResilientWritePipeline], Awaitable[Any]],
) -> Any:
    """Run ``action`` against a pipeline wired to the configured remote store."""

    async def runner() -> Any:
        store = core_logic.build_remote_store(context.settings)
        try:
            pipeline = core_logic.build_pipeline(context, store)
            return await action(pipeline)
        finally:
            await store.aclose()

    return asyncio.run(runner())


def run_register(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Register a sale and wait for its first write to settle."""
    command = translate_register(args)

    async def action(pipeline: ResilientWritePipeline) -> int:
        record = await pipeline.register_sale(command)
        await pipeline.drain()
        record = pipeline.get_record(record.sale_id)
        if record.is_pending:
            log.warning("Sale '%s' saved locally; the remote write will be retried", record.sale_id)
        print(format_record(record))
        return 0

    return _run_with_pipeline(context, action)


def run_set_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Change one installment's status."""

    async def action(pipeline: ResilientWritePipeline) -> int:
        await pipeline.bootstrap()
        record = await pipeline.set_installment_status(
            args.sale_id,
            args.installment,
            InstallmentStatus(args.status),
            args.paid_date,
            override=args.override,
        )
        print(format_record(record))
        return 0

    return _run_with_pipeline(context, action)


def run_mark_range(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Change the status of a range of installments."""

    async def action(pipeline: ResilientWritePipeline) -> int:
        await pipeline.bootstrap()
        record = await pipeline.mark_installment_range(
            args.sale_id,
            args.start,
            args.end,
            InstallmentStatus(args.status),
            args.paid_date,
            override=args.override,
        )
        print(format_record(record))
        return 0

    return _run_with_pipeline(context, action)


def run_sync(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Run one recovery pass over the queued writes."""

    async def action(pipeline: ResilientWritePipeline) -> int:
        result = await pipeline.recover_pending()
        print(f"Attempted {result.attempted}, recovered {result.recovered}, still pending {result.failed}")
        return 0

    return _run_with_pipeline(context, action)


def run_add_cutoff(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Add a cutoff period to the workbook."""
    period = core_logic.add_cutoff_period(
        context,
        name=args.name,
        start_date=args.start,
        end_date=args.end,
        competence_month=args.competence_month,
    )
    print(period.period_id)
    return 0


def run_remove_cutoff(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Delete a cutoff period from the workbook."""
    core_logic.remove_cutoff_period(context, args.period_id)
    return 0


def run_simulate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the commission breakdown without registering anything."""
    breakdown = calculate_breakdown(
        Decimal(args.credit),
        args.angel,
        translate_rules(args),
        rate_table=core_logic.load_rate_table(context),
    )
    print(format_breakdown(breakdown))
    return 0


def run_sales(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every known sale."""

    async def action(pipeline: ResilientWritePipeline) -> int:
        await pipeline.bootstrap()
        for record in pipeline.records:
            print(format_record(record))
        return 0

    return _run_with_pipeline(context, action)


def run_pending(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the writes still waiting in the local queue."""
    for entry in core_logic.build_queue(context).list_all():
        print(
            f"{entry.local_id}  queued {entry.enqueued_at}  "
            f"attempts {entry.attempt_count}  last error: {entry.last_error or '-'}"
        )
    return 0


def _build_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.CompetenceReport:
    async def action(pipeline: ResilientWritePipeline) -> core_logic.CompetenceReport:
        await pipeline.bootstrap()
        return core_logic.build_competence_report(
            pipeline.records,
            args.month,
            consultant=args.consultant,
            manager=args.manager,
            angel=args.angel,
            pv=args.pv,
            rate_table=pipeline.rate_table,
        )

    return _run_with_pipeline(context, action)


def run_competence(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the competence report for a month."""
    report = _build_report(context, args)
    for line in report.lines:
        print(
            f"{line.client_name:<25} #{line.installment:<3} "
            f"{quantize_money(line.values.consultant):>10} "
            f"{quantize_money(line.values.manager):>10} "
            f"{quantize_money(line.values.angel):>10}"
        )
    print(
        f"Totals for {report.month}: consultant {quantize_money(report.consultant_total)}, "
        f"manager {quantize_money(report.manager_total)}, angel {quantize_money(report.angel_total)}"
    )
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Export the competence report for a month to ``--output``."""
    report = _build_report(context, args)
    destination = data_manager.export_competence_report(report, args.output)
    print(destination)
    return 0


def run_cutoffs(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print configured cutoff periods."""
    for period in core_logic.list_cutoff_periods(context):
        print(
            f"{period.period_id}  {period.name:<25} {period.start_date.isoformat()} "
            f"-> {period.end_date.isoformat()}  competence {period.competence_month}"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (BusinessRuleViolation, CutoffConfigurationError)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, RemoteStoreError):
        log.error("Remote store error: %s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
