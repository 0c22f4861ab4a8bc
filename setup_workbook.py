"""Utility for initializing the Podo Ledger master workbook.

The module doubles as a script (``python setup_workbook.py``) and as a library
used by tests or other tooling. Besides the empty collection sheets it seeds
the branch directory and every branch's shelf layout, since neither is
managed through the ledger.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from podo_ledger.constants import SHELF_TYPES, RecordStatus, SheetName
from podo_ledger.data_manager import SHEET_COLUMNS

# Branch rows as (BranchID, BranchName, Code, Address, Status).
DEFAULT_BRANCHES: Sequence[Sequence[str]] = (
    ("BR001", "Mokpo", "MP", "19 Sugang-ro 4beon-gil, Mokpo, Jeollanam-do", RecordStatus.ACTIVE.value),
    ("BR002", "Ganghwa", "GH", "Jungang-ro, Ganghwa-eup, Incheon", RecordStatus.ACTIVE.value),
    ("BR003", "Gwangju", "GJ", "Dong-gu, Gwangju", RecordStatus.PENDING.value),
)

# Number of shelves of each type per branch.
DEFAULT_SHELF_LAYOUT: Mapping[str, Mapping[str, int]] = {
    "BR001": {"M": 40, "S": 100, "L": 60, "F": 20},
    "BR002": {"M": 30, "S": 80, "L": 30, "F": 10},
    "BR003": {"M": 50, "S": 150, "L": 80, "F": 20},
}

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config file's
    directory, matching how the ledger itself resolves them.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path)


def build_shelf_rows(branch_code: str, branch_id: str, layout: Mapping[str, int]) -> list[list[object]]:
    """Return ``Shelves`` rows for one branch.

    Shelf codes restart per type and branch (``M01``, ``S01``...) while shelf
    ids stay unique across branches (``SH-MP-M1``).
    """

    rows: list[list[object]] = []
    for shelf_type, count in layout.items():
        price = SHELF_TYPES[shelf_type].price
        for number in range(1, count + 1):
            rows.append(
                [
                    f"SH-{branch_code}-{shelf_type}{number}",
                    f"{shelf_type}{number:02d}",
                    branch_id,
                    shelf_type,
                    price,
                    None,
                ]
            )
    return rows


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    branches: Sequence[Sequence[str]] = DEFAULT_BRANCHES,
    shelf_layout: Mapping[str, Mapping[str, int]] = DEFAULT_SHELF_LAYOUT,
    overwrite: bool = False,
) -> Path:
    """Create the Podo Ledger master workbook at ``destination``.

    Parameters are overridable to facilitate testing. When ``overwrite`` is
    ``False`` (the default) this function raises ``FileExistsError`` if the
    target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    branches_sheet = workbook[SheetName.BRANCHES.value]
    shelves_sheet = workbook[SheetName.SHELVES.value]
    for branch in branches:
        branch_id, code = branch[0], branch[2]
        branches_sheet.append(list(branch))
        for row in build_shelf_rows(code, branch_id, shelf_layout.get(branch_id, {})):
            shelves_sheet.append(row)

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook configured in ``config_path``."""

    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the Podo Ledger data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Podo Ledger Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
