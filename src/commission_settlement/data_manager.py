"""Data access layer for the commission settlement engine.

This module provides low-level helpers that read from and write to the local
settlement workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   removing individual rows of the ``PendingWrites`` and ``CutoffPeriods``
   sheets.
4. Report export: writing a competence report to its own workbook.

:class:`WorkbookQueue` builds the durable retry queue on top of the sheet
operations, saving the workbook after every mutation so queued writes
survive a restart.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.styles import Font
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .competence import CutoffPeriod
from .constants import SheetName

if TYPE_CHECKING:
    from .core_logic import CompetenceReport


CONFIG_FILE_NAME = "config.ini"
PENDING_WRITES_SHEET = SheetName.PENDING_WRITES.value
CUTOFF_PERIODS_SHEET = SheetName.CUTOFF_PERIODS.value

PENDING_WRITE_COLUMNS = {
    "local_id": "LocalID",
    "enqueued_at": "EnqueuedAt",
    "attempt_count": "AttemptCount",
    "last_error": "LastError",
    "payload": "Payload",
}

REPORT_COLUMNS: Sequence[str] = (
    "Client",
    "Consultant",
    "Manager",
    "Angel",
    "Installment",
    "Consultant Value",
    "Manager Value",
    "Angel Value",
    "Sale Date",
    "Competence Month",
    "PV",
)
REPORT_CURRENCY_COLUMNS = ("F", "G", "H")
CURRENCY_FORMAT = "R$ #,##0.00"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    office_name: str
    schema_version: str
    remote_base_url: str
    remote_api_key: Optional[str] = None
    remote_tenant: Optional[str] = None
    remote_timeout: float = 30.0
    write_timeout: float = 10.0
    startup_delay: float = 3.0
    retry_interval: float = 120.0
    cutoff_days: Mapping[int, int] = field(default_factory=dict)
    rate_overrides: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PendingWrite:
    """A sale whose remote insert has not been confirmed yet."""

    local_id: str
    payload: Mapping[str, Any]
    enqueued_at: str
    attempt_count: int = 0
    last_error: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function
    walks up from the current working directory toward the filesystem root
    looking for a file named ``CONFIG_FILE_NAME``. The first match that exists
    on disk is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def _parse_cutoff_days(parser: configparser.ConfigParser) -> Dict[int, int]:
    if not parser.has_section("CutoffDays"):
        return {}
    days: Dict[int, int] = {}
    for month, day in parser.items("CutoffDays"):
        try:
            days[int(month)] = int(day)
        except ValueError as exc:
            raise KeyError(f"Invalid CutoffDays entry '{month} = {day}'") from exc
    return days


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Remote] BaseUrl`` are mandatory. ``[Sync]`` timings,
    remote credentials, ``[CutoffDays]`` and ``[Rates]`` are optional and
    fall back to the engine defaults. Relative ``DataFile`` paths are
    resolved against ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing, or an optional
            entry cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        office_name = parser.get("System", "OfficeName")
        schema_version = parser.get("System", "SchemaVersion")
        remote_base_url = parser.get("Remote", "BaseUrl")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    try:
        remote_timeout = parser.getfloat("Remote", "Timeout", fallback=30.0)
        write_timeout = parser.getfloat("Sync", "WriteTimeout", fallback=10.0)
        startup_delay = parser.getfloat("Sync", "StartupDelay", fallback=3.0)
        retry_interval = parser.getfloat("Sync", "RetryInterval", fallback=120.0)
    except ValueError as exc:
        raise KeyError(f"Invalid numeric configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    rate_overrides = dict(parser.items("Rates")) if parser.has_section("Rates") else {}

    return ConfigSettings(
        data_file=data_file_path,
        office_name=office_name,
        schema_version=schema_version,
        remote_base_url=remote_base_url,
        remote_api_key=parser.get("Remote", "ApiKey", fallback="") or None,
        remote_tenant=parser.get("Remote", "Tenant", fallback="") or None,
        remote_timeout=remote_timeout,
        write_timeout=write_timeout,
        startup_delay=startup_delay,
        retry_interval=retry_interval,
        cutoff_days=_parse_cutoff_days(parser),
        rate_overrides=rate_overrides,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the settlement workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the key column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def iter_pending_writes(workbook: Workbook) -> Iterable[PendingWrite]:
    """Stream queued writes from the ``PendingWrites`` worksheet in queue order."""

    sheet = workbook[PENDING_WRITES_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_pending_write(raw)


def append_pending_write(workbook: Workbook, record: PendingWrite) -> None:
    sheet = workbook[PENDING_WRITES_SHEET]
    sheet.append(serialize_pending_write(record))


def update_pending_write(workbook: Workbook, local_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of a queued write.

    Args:
        workbook (Workbook): Workbook containing the pending writes sheet.
        local_id (str): Queue key of the entry.
        field_values (Mapping[str, Any]): :class:`PendingWrite` attribute
            names mapped to their replacement values. Payloads are
            serialized to JSON.

    Raises:
        KeyError: If the entry or any referenced field cannot be found.
    """

    row_index = locate_row(workbook, PENDING_WRITES_SHEET, "LocalID", local_id)
    if row_index is None:
        raise KeyError(f"Pending write not found: {local_id}")

    sheet = workbook[PENDING_WRITES_SHEET]
    header_map = _header_map(workbook, PENDING_WRITES_SHEET)

    for name, value in field_values.items():
        if name not in PENDING_WRITE_COLUMNS:
            raise KeyError(f"Unknown pending write field: {name}")
        if name == "payload":
            value = _dump_payload(value)
        col = header_map[PENDING_WRITE_COLUMNS[name]]
        sheet.cell(row=row_index, column=col, value=value)


def remove_pending_write(workbook: Workbook, local_id: str) -> bool:
    """Delete a queued write. Returns ``False`` when the entry was absent."""

    row_index = locate_row(workbook, PENDING_WRITES_SHEET, "LocalID", local_id)
    if row_index is None:
        return False
    workbook[PENDING_WRITES_SHEET].delete_rows(row_index, 1)
    return True


def iter_cutoff_periods(workbook: Workbook) -> Iterable[CutoffPeriod]:
    sheet = workbook[CUTOFF_PERIODS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_cutoff_period(raw)


def append_cutoff_period(workbook: Workbook, period: CutoffPeriod) -> None:
    sheet = workbook[CUTOFF_PERIODS_SHEET]
    sheet.append(serialize_cutoff_period(period))


def remove_cutoff_period(workbook: Workbook, period_id: str) -> bool:
    row_index = locate_row(workbook, CUTOFF_PERIODS_SHEET, "PeriodID", period_id)
    if row_index is None:
        return False
    workbook[CUTOFF_PERIODS_SHEET].delete_rows(row_index, 1)
    return True


def _dump_payload(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def serialize_pending_write(record: PendingWrite) -> list[object]:
    """Arrange a queued write as ``[LocalID, EnqueuedAt, AttemptCount, LastError, Payload]``."""

    return [
        record.local_id,
        record.enqueued_at,
        record.attempt_count,
        record.last_error,
        _dump_payload(record.payload),
    ]


def deserialize_pending_write(raw_row: Sequence[object]) -> PendingWrite:
    """Convert a raw worksheet row into a :class:`PendingWrite`.

    Attempt counts default to zero when blank and the payload JSON is decoded
    back into a dictionary.
    """

    local_id, enqueued_at, attempt_raw, last_error, payload_raw = raw_row[:5]
    return PendingWrite(
        local_id=str(local_id),
        enqueued_at=str(enqueued_at) if enqueued_at is not None else "",
        attempt_count=int(attempt_raw) if attempt_raw is not None else 0,
        last_error=str(last_error) if last_error is not None else None,
        payload=json.loads(payload_raw) if payload_raw else {},
    )


def serialize_cutoff_period(period: CutoffPeriod) -> list[object]:
    return [
        period.period_id,
        period.name,
        period.start_date.isoformat(),
        period.end_date.isoformat(),
        period.competence_month,
    ]


def _cell_to_date(value: object) -> date:
    if isinstance(value, date):
        return value if type(value) is date else value.date()
    return date.fromisoformat(str(value)[:10])


def deserialize_cutoff_period(raw_row: Sequence[object]) -> CutoffPeriod:
    """Convert a raw worksheet row into a :class:`CutoffPeriod`.

    Excel may hand dates back as ``datetime`` objects when a user edits the
    sheet by hand; both forms are accepted.
    """

    period_id, name, start_raw, end_raw, competence_month = raw_row[:5]
    return CutoffPeriod(
        period_id=str(period_id),
        name=str(name) if name is not None else "",
        start_date=_cell_to_date(start_raw),
        end_date=_cell_to_date(end_raw),
        competence_month=str(competence_month) if competence_month is not None else "",
    )


class WorkbookQueue:
    """Durable retry queue stored in the ``PendingWrites`` sheet.

    Every mutation is saved to ``data_file`` immediately; an entry that was
    acknowledged by :meth:`enqueue` is on disk before the call returns.
    """

    def __init__(self, workbook: Workbook, data_file: Path):
        self.workbook = workbook
        self.data_file = Path(data_file)

    def _persist(self) -> None:
        save_workbook(self.workbook, self.data_file)

    def enqueue(self, entry: PendingWrite) -> None:
        if locate_row(self.workbook, PENDING_WRITES_SHEET, "LocalID", entry.local_id) is not None:
            raise KeyError(f"Pending write already queued: {entry.local_id}")
        append_pending_write(self.workbook, entry)
        self._persist()
        log.info("Queued pending write '%s'", entry.local_id)

    def list_all(self) -> List[PendingWrite]:
        return list(iter_pending_writes(self.workbook))

    def get(self, local_id: str) -> Optional[PendingWrite]:
        for entry in iter_pending_writes(self.workbook):
            if entry.local_id == local_id:
                return entry
        return None

    def remove(self, local_id: str) -> bool:
        removed = remove_pending_write(self.workbook, local_id)
        if removed:
            self._persist()
            log.info("Removed pending write '%s'", local_id)
        return removed

    def update(self, local_id: str, **patch: Any) -> None:
        update_pending_write(self.workbook, local_id, field_values=patch)
        self._persist()


def export_competence_report(report: "CompetenceReport", destination: Path) -> Path:
    """Write a competence report to a standalone ``.xlsx`` file.

    One row per paid installment, in the report's order, with the three
    commission columns formatted as currency and a bold header row.

    Args:
        report (CompetenceReport): Report built by
            :func:`core_logic.build_competence_report`.
        destination (Path): Output file.

    Returns:
        Path: Resolved location of the written file.
    """

    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = f"Competence {report.month}"
    sheet.append(list(REPORT_COLUMNS))
    for cell in sheet[1]:
        cell.font = Font(bold=True)

    for line in report.lines:
        sheet.append(
            [
                line.client_name,
                line.consultant_name,
                line.manager_name,
                line.angel_name or "N/A",
                line.installment,
                float(line.values.consultant),
                float(line.values.manager),
                float(line.values.angel),
                line.sale_date.isoformat(),
                line.competence_month,
                line.pv,
            ]
        )

    for column in REPORT_CURRENCY_COLUMNS:
        for cell in sheet[column][1:]:
            cell.number_format = CURRENCY_FORMAT
    for column, width in zip("ABCDEFGHIJK", (25, 25, 25, 25, 12, 18, 18, 18, 14, 18, 20)):
        sheet.column_dimensions[column].width = width

    dest = Path(destination).expanduser().resolve()
    save_workbook(workbook, dest)
    log.info("Exported competence report for %s to '%s'", report.month, dest)
    return dest
