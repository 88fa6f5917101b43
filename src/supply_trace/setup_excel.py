"""Utility for initializing the supply trace ledger workbook.

The module doubles as a script (``trace-setup`` / ``python -m
supply_trace.setup_excel``) and as a library used by tests or other tooling.
Bootstrapping is the only place the admin identity is written: it is
auto-registered as a Manufacturer and stays the sole admin for the workbook's
lifetime.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import FIRST_PRODUCT_ID, Role, SheetName, SystemKey

# One sheet per logical table, columns in serialization order.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.SYSTEM.value: ["Key", "Value"],
    SheetName.PARTICIPANTS.value: ["Identifier", "Name", "Role", "Registered"],
    SheetName.BATCHES.value: ["ProductID", "LotCode", "Status", "CurrentOwner"],
    SheetName.HISTORY.value: [
        "ProductID",
        "Timestamp",
        "ActorIdentifier",
        "ActorName",
        "Status",
        "Action",
    ],
    SheetName.LOT_INDEX.value: ["LotCode", "ProductID"],
    SheetName.NOTIFICATIONS.value: ["EventID", "Timestamp", "EventName", "Payload"],
}

CONFIG_FILE = "config.ini"


def build_master_workbook(
    *,
    admin_identity: str,
    admin_name: str,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
) -> Workbook:
    """Return a fresh in-memory ledger workbook with the admin registered.

    Raises:
        ValueError: If ``admin_identity`` is blank.
    """

    if not admin_identity.strip():
        raise ValueError("Admin identity must not be blank")

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

    system_sheet = workbook[SheetName.SYSTEM.value]
    system_sheet.append([SystemKey.ADMIN_IDENTITY.value, admin_identity])
    system_sheet.append([SystemKey.NEXT_PRODUCT_ID.value, FIRST_PRODUCT_ID])

    data_manager.append_participant(
        workbook,
        data_manager.ParticipantRow(
            identifier=admin_identity,
            name=admin_name,
            role=Role.MANUFACTURER.value,
            registered=True,
        ),
    )
    return workbook


def create_master_workbook(
    destination: Path,
    *,
    admin_identity: str,
    admin_name: str,
    overwrite: bool = False,
) -> Path:
    """Create the ledger workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists, since replacing a ledger
    would discard its history.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    workbook = build_master_workbook(admin_identity=admin_identity, admin_name=admin_name)
    data_manager.save_workbook(workbook, destination)
    log.info("Created ledger workbook '%s' administered by '%s'", destination, admin_identity)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Read ``config.ini`` and create the workbook it points at."""

    resolved = config_path.expanduser().resolve()
    parser = data_manager.read_config(resolved)
    settings = data_manager.parse_settings(parser, base_path=resolved.parent)
    return create_master_workbook(
        settings.data_file,
        admin_identity=settings.admin_identity,
        admin_name=settings.admin_name,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the supply trace ledger workbook")
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
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Supply Trace Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
