"""Business logic layer for the commission settlement engine.

This module wires configuration, the local workbook and the remote store
into a working session. It consumes the data access layer for all workbook
I/O and exposes the operations that do not belong to a single sale:
cutoff-period management and the monthly competence report.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import httpx
from openpyxl.workbook import Workbook

from . import data_manager, log
from .calculator import InstallmentValues, installment_values
from .clock import Clock
from .competence import CutoffCalendar, CutoffPeriod, build_cutoff_calendar, parse_competence_month
from .constants import EXPECTED_SCHEMA_VERSION, InstallmentStatus
from .errors import MissingReferenceError
from .pipeline import ResilientWritePipeline
from .rates import DEFAULT_RATE_TABLE, RateTable, ZERO, build_rate_table
from .records import SettlementRecord
from .remote import HttpRemoteStore, RemoteStore


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class CompetenceLine:
    """One paid installment booked into the reported competence month."""

    sale_id: str
    client_name: str
    consultant_name: str
    manager_name: str
    angel_name: Optional[str]
    pv: str
    sale_date: date
    installment: int
    competence_month: str
    values: InstallmentValues


@dataclass(frozen=True)
class CompetenceReport:
    """Commission owed per role for a competence month."""

    month: str
    lines: tuple[CompetenceLine, ...]

    @property
    def consultant_total(self) -> Decimal:
        return sum((line.values.consultant for line in self.lines), ZERO)

    @property
    def manager_total(self) -> Decimal:
        return sum((line.values.manager for line in self.lines), ZERO)

    @property
    def angel_total(self) -> Decimal:
        return sum((line.values.angel for line in self.lines), ZERO)

    @property
    def grand_total(self) -> Decimal:
        return self.consultant_total + self.manager_total + self.angel_total


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def load_rate_table(context: RuntimeContext) -> RateTable:
    """Return the session's rate table, honouring ``[Rates]`` overrides.

    The table is built once per context and cached.
    """

    table = context._cache.get("rate_table")
    if table is None:
        overrides = context.settings.rate_overrides
        table = build_rate_table(overrides) if overrides else DEFAULT_RATE_TABLE
        context._cache["rate_table"] = table
    return table


def list_cutoff_periods(context: RuntimeContext) -> List[CutoffPeriod]:
    """Return the configured cutoff periods ordered by start date."""
    periods = list(data_manager.iter_cutoff_periods(context.workbook))
    return sorted(periods, key=lambda period: (period.start_date, period.period_id))


def load_cutoff_calendar(context: RuntimeContext) -> CutoffCalendar:
    """Freeze the workbook's cutoff periods and ``[CutoffDays]`` into a calendar.

    Raises:
        CutoffConfigurationError: If the stored configuration is invalid.
    """

    calendar = context._cache.get("calendar")
    if calendar is None:
        calendar = build_cutoff_calendar(
            list_cutoff_periods(context),
            context.settings.cutoff_days,
        )
        context._cache["calendar"] = calendar
    return calendar


def add_cutoff_period(
    context: RuntimeContext,
    *,
    name: str,
    start_date: date,
    end_date: date,
    competence_month: str,
    period_id: Optional[str] = None,
) -> CutoffPeriod:
    """Validate and store a new cutoff period.

    The candidate is checked together with every existing period, so an
    overlap is rejected before anything is written. The change is kept in
    memory; call :func:`persist_context` to save it.

    Returns:
        CutoffPeriod: The stored period.

    Raises:
        CutoffConfigurationError: If the period is invalid or overlaps
            another one.
    """

    period = CutoffPeriod(
        period_id=period_id or uuid.uuid4().hex[:12],
        name=name.strip(),
        start_date=start_date,
        end_date=end_date,
        competence_month=competence_month,
    )
    build_cutoff_calendar([*list_cutoff_periods(context), period], context.settings.cutoff_days)
    data_manager.append_cutoff_period(context.workbook, period)
    context._cache.pop("calendar", None)
    log.info(
        "Added cutoff period '%s' (%s to %s -> %s)",
        period.name,
        period.start_date.isoformat(),
        period.end_date.isoformat(),
        period.competence_month,
    )
    return period


def remove_cutoff_period(context: RuntimeContext, period_id: str) -> None:
    """Delete a cutoff period.

    Raises:
        MissingReferenceError: If no period has ``period_id``.
    """

    if not data_manager.remove_cutoff_period(context.workbook, period_id):
        log.error("Cutoff period '%s' not found", period_id)
        raise MissingReferenceError(f"Unknown cutoff period: {period_id}")
    context._cache.pop("calendar", None)
    log.info("Removed cutoff period '%s'", period_id)


def build_queue(context: RuntimeContext) -> data_manager.WorkbookQueue:
    return data_manager.WorkbookQueue(context.workbook, context.settings.data_file)


def build_remote_store(
    settings: data_manager.ConfigSettings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> HttpRemoteStore:
    return HttpRemoteStore(
        settings.remote_base_url,
        api_key=settings.remote_api_key,
        tenant=settings.remote_tenant,
        timeout=settings.remote_timeout,
        transport=transport,
    )


def build_pipeline(
    context: RuntimeContext,
    store: RemoteStore,
    *,
    clock: Optional[Clock] = None,
) -> ResilientWritePipeline:
    """Assemble a write pipeline from the session's configuration.

    Args:
        context (RuntimeContext): Active session.
        store (RemoteStore): Remote backend, usually from
            :func:`build_remote_store`.
        clock (Clock | None): Optional time source override.

    Returns:
        ResilientWritePipeline: Pipeline backed by the workbook queue.
    """

    settings = context.settings
    return ResilientWritePipeline(
        store,
        build_queue(context),
        calendar=load_cutoff_calendar(context),
        rate_table=load_rate_table(context),
        clock=clock,
        write_timeout=settings.write_timeout,
        startup_delay=settings.startup_delay,
        retry_interval=settings.retry_interval,
    )


def _matches(value: Optional[str], wanted: Optional[str]) -> bool:
    if not wanted:
        return True
    return (value or "").strip().casefold() == wanted.strip().casefold()


def build_competence_report(
    records: Iterable[SettlementRecord],
    month: str,
    *,
    consultant: Optional[str] = None,
    manager: Optional[str] = None,
    angel: Optional[str] = None,
    pv: Optional[str] = None,
    rate_table: RateTable = DEFAULT_RATE_TABLE,
) -> CompetenceReport:
    """Collect the commission booked into ``month``.

    Every paid installment whose competence month equals ``month`` becomes a
    line, valued net of the sale's tax with first-match custom rules. The
    optional filters compare names case-insensitively and drop sales that do
    not match.

    Args:
        records (Iterable[SettlementRecord]): Sales to scan.
        month (str): Competence month, ``YYYY-MM``.
        consultant (str | None): Only sales of this consultant.
        manager (str | None): Only sales of this manager.
        angel (str | None): Only sales with this angel.
        pv (str | None): Only sales of this point of sale.
        rate_table (RateTable): Default coefficients.

    Returns:
        CompetenceReport: Lines ordered by sale date, client and installment.

    Raises:
        CutoffConfigurationError: If ``month`` is not a valid label.
    """

    parse_competence_month(month)
    lines: List[CompetenceLine] = []
    for record in records:
        if not (
            _matches(record.consultant_name, consultant)
            and _matches(record.manager_name, manager)
            and _matches(record.angel_name, angel)
            and _matches(record.pv, pv)
        ):
            continue
        for number, info in record.ledger.items():
            if info.status is not InstallmentStatus.PAID or info.competence_month != month:
                continue
            values = installment_values(
                record.credit_value,
                number,
                has_angel=record.has_angel,
                rules=record.custom_rules,
                tax_rate_percent=record.tax_rate_percent,
                rate_table=rate_table,
            )
            lines.append(
                CompetenceLine(
                    sale_id=record.sale_id,
                    client_name=record.client_name,
                    consultant_name=record.consultant_name,
                    manager_name=record.manager_name,
                    angel_name=record.angel_name,
                    pv=record.pv,
                    sale_date=record.sale_date,
                    installment=number,
                    competence_month=month,
                    values=values,
                )
            )

    lines.sort(key=lambda line: (line.sale_date, line.client_name, line.installment))
    log.info("Competence report for %s has %d paid installments", month, len(lines))
    return CompetenceReport(month=month, lines=tuple(lines))


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to disk."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)
