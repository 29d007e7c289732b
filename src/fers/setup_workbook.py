"""Utility for initializing the FERS shop workbook.

The module doubles as a script (``fers-setup``) and as a library used by
tests. It creates every sheet with bold headers, seeds the id counters and
registers the default administrator named in ``config.ini`` so a fresh shop
always has someone who can manage the catalog.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import AccountRole, SheetName

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def build_workbook(
    *,
    admin_username: str,
    admin_password: str,
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
) -> Workbook:
    """Build an in-memory shop workbook with headers and the default admin."""

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

    sequences = workbook[SheetName.SEQUENCES.value]
    for sheet_name in data_manager.KEY_COLUMNS:
        sequences.append([sheet_name, 0])

    data_manager.append_account(
        workbook,
        data_manager.AccountRow(
            account_id=None,
            account_name=admin_username,
            password=admin_password,
            role=AccountRole.ADMIN.value,
        ),
    )
    return workbook


def create_master_workbook(
    destination: Path,
    *,
    admin_username: str,
    admin_password: str,
    overwrite: bool = False,
) -> Path:
    """Create the shop workbook at ``destination``.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is
            ``False``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing shop workbook: {destination}"
        )

    workbook = build_workbook(admin_username=admin_username, admin_password=admin_password)
    data_manager.save_workbook(workbook, destination)
    log.info("Created shop workbook '%s' with default admin '%s'", destination, admin_username)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config_path`` using its admin defaults."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return create_master_workbook(
        settings.data_file,
        admin_username=settings.admin_username,
        admin_password=settings.admin_password,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the FERS shop workbook")
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
    """Entry point for the ``fers-setup`` script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- FERS Setup ---")
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

    print(f"\n[SUCCESS] Created shop workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
