"""Create the local settlement workbook with the expected sheets and headers."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import SheetName


SHEET_COLUMNS = {
    SheetName.PENDING_WRITES.value: list(data_manager.PENDING_WRITE_COLUMNS.values()),
    SheetName.CUTOFF_PERIODS.value: ["PeriodID", "Name", "StartDate", "EndDate", "CompetenceMonth"],
}


def create_master_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """
    Creates a new, empty settlement workbook at ``destination``
    with the correct sheets and column headers.

    Raises:
        FileExistsError: If the file exists and ``overwrite`` is ``False``.
    """
    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"'{destination}' already exists. Please remove it to re-initialize."
        )

    # Create a new workbook and remove the default "Sheet"
    wb = openpyxl.Workbook()
    if "Sheet" in wb.sheetnames:
        del wb["Sheet"]

    bold_font = Font(bold=True)

    for sheet_name, columns in SHEET_COLUMNS.items():
        ws = wb.create_sheet(title=sheet_name)
        for col_idx, column_name in enumerate(columns, 1):
            cell = ws.cell(row=1, column=col_idx)
            cell.value = column_name
            cell.font = bold_font
        log.info("Created sheet '%s'", sheet_name)

    data_manager.save_workbook(wb, destination)
    log.info("Created settlement workbook '%s'", destination)
    return destination


def run_from_config(config_path: Optional[Path] = None, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile`` in ``config.ini``."""
    located = Path(data_manager.find_config_file(config_path)).expanduser().resolve()
    parser = data_manager.read_config(located)
    settings = data_manager.parse_settings(parser, base_path=located.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="settlement-setup",
        description="Initialize the local settlement workbook.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Optional path to config.ini.")
    parser.add_argument("--overwrite", action="store_true", help="Replace an existing workbook.")
    args = parser.parse_args(argv)
    try:
        run_from_config(args.config, overwrite=args.overwrite)
    except (FileNotFoundError, FileExistsError, KeyError) as error:
        log.error("%s", error)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
