"""Data access layer for the supply trace ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business rules belong in :mod:`supply_trace.core_logic`.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records, appending rows to the
   append-only sheets (history, lot index, notifications) and updating the few
   cells that are allowed to change in place.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
SYSTEM_SHEET = SheetName.SYSTEM.value
PARTICIPANTS_SHEET = SheetName.PARTICIPANTS.value
BATCHES_SHEET = SheetName.BATCHES.value
HISTORY_SHEET = SheetName.HISTORY.value
LOT_INDEX_SHEET = SheetName.LOT_INDEX.value
NOTIFICATIONS_SHEET = SheetName.NOTIFICATIONS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    network_name: str
    schema_version: str
    admin_identity: str
    admin_name: str


@dataclass(frozen=True)
class ParticipantRow:
    """In-memory view of a row from the ``Participants`` sheet."""

    identifier: str
    name: str
    role: str
    registered: bool


@dataclass(frozen=True)
class BatchRow:
    """In-memory view of a row from the ``Batches`` sheet."""

    product_id: int
    lot_code: str
    status: str
    current_owner: str


@dataclass(frozen=True)
class HistoryRow:
    """In-memory view of a row from the ``History`` sheet."""

    product_id: int
    timestamp_iso: str
    actor_identifier: str
    actor_name: str
    status: str
    action: str


@dataclass(frozen=True)
class LotIndexRow:
    """In-memory view of a row from the ``LotIndex`` sheet."""

    lot_code: str
    product_id: int


@dataclass(frozen=True)
class NotificationRow:
    """In-memory view of a row from the ``Notifications`` sheet."""

    event_id: int
    timestamp_iso: str
    event_name: str
    payload: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
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

    Validation of individual entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback, and then
    resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        network_name = parser.get("System", "NetworkName")
        schema_version = parser.get("System", "SchemaVersion")
        admin_identity = parser.get("Defaults", "AdminIdentity")
        admin_name = parser.get("Defaults", "AdminName")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        network_name=network_name,
        schema_version=schema_version,
        admin_identity=admin_identity,
        admin_name=admin_name,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [name.value for name in SheetName if name.value not in wb.sheetnames]
    if missing:
        log.error("Workbook '%s' is missing sheets: %s", data_file, ", ".join(missing))
        raise KeyError(f"Workbook is missing sheets: {', '.join(missing)}")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def read_system_values(workbook: Workbook) -> Dict[str, object]:
    """Return the ``System`` sheet as a ``{Key: Value}`` dictionary."""

    return {str(raw[0]): raw[1] for raw in _iter_raw_rows(workbook, SYSTEM_SHEET)}


def iter_participants(workbook: Workbook) -> Iterable[ParticipantRow]:
    """Iterate over the ``Participants`` worksheet and yield typed records."""

    for raw in _iter_raw_rows(workbook, PARTICIPANTS_SHEET):
        yield deserialize_participant(raw)


def iter_batches(workbook: Workbook) -> Iterable[BatchRow]:
    """Iterate over the ``Batches`` worksheet in creation order."""

    for raw in _iter_raw_rows(workbook, BATCHES_SHEET):
        yield deserialize_batch(raw)


def iter_history(workbook: Workbook) -> Iterable[HistoryRow]:
    """Stream every history entry in the order it was appended.

    Entries for all batches share one sheet; callers group them by
    ``product_id`` while preserving sheet order.
    """

    for raw in _iter_raw_rows(workbook, HISTORY_SHEET):
        yield deserialize_history(raw)


def iter_lot_index(workbook: Workbook) -> Iterable[LotIndexRow]:
    """Stream lot membership rows in insertion order."""

    for raw in _iter_raw_rows(workbook, LOT_INDEX_SHEET):
        yield deserialize_lot_index(raw)


def iter_notifications(workbook: Workbook) -> Iterable[NotificationRow]:
    """Stream published notifications in publication order."""

    for raw in _iter_raw_rows(workbook, NOTIFICATIONS_SHEET):
        yield deserialize_notification(raw)


def ensure_storable_text(value: object, label: str) -> None:
    """Raise :class:`ValueError` when ``value`` holds characters a cell cannot store.

    openpyxl rejects control characters only once a cell is assigned, which
    would leave a row half written; callers check values before appending.
    """

    if isinstance(value, str) and ILLEGAL_CHARACTERS_RE.search(value):
        raise ValueError(f"{label} contains control characters that cannot be stored: {value!r}")


def _append_row(workbook: Workbook, sheet_name: str, values: Sequence[object]) -> None:
    for value in values:
        ensure_storable_text(value, f"{sheet_name} value")
    workbook[sheet_name].append(list(values))


def append_participant(workbook: Workbook, record: ParticipantRow) -> None:
    """Append a participant record to the ``Participants`` worksheet."""

    _append_row(workbook, PARTICIPANTS_SHEET, serialize_participant(record))


def append_batch(workbook: Workbook, record: BatchRow) -> None:
    """Append a batch record to the ``Batches`` worksheet."""

    _append_row(workbook, BATCHES_SHEET, serialize_batch(record))


def append_history(workbook: Workbook, record: HistoryRow) -> None:
    """Append a history entry. History rows are never updated or removed."""

    _append_row(workbook, HISTORY_SHEET, serialize_history(record))


def append_lot_index(workbook: Workbook, record: LotIndexRow) -> None:
    """Append a lot membership row to the ``LotIndex`` worksheet."""

    _append_row(workbook, LOT_INDEX_SHEET, [record.lot_code, record.product_id])


def append_notification(workbook: Workbook, record: NotificationRow) -> None:
    """Append a published notification to the ``Notifications`` worksheet."""

    _append_row(
        workbook,
        NOTIFICATIONS_SHEET,
        [record.event_id, record.timestamp_iso, record.event_name, record.payload],
    )


def _update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: object, field_values: dict[str, Any]) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    # Validate every column and value before touching any cell.
    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        ensure_storable_text(value, f"{sheet_name}.{field}")
    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=value)


def update_participant(workbook: Workbook, identifier: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing participant.

    Raises:
        KeyError: If the participant or any referenced column cannot be found.
    """

    _update_row(workbook, PARTICIPANTS_SHEET, "Identifier", identifier, field_values)


def update_batch(workbook: Workbook, product_id: int, *, field_values: dict[str, Any]) -> None:
    """Update selected columns (``Status``, ``CurrentOwner``) of a batch.

    Raises:
        KeyError: If the batch or any referenced column cannot be found.
    """

    _update_row(workbook, BATCHES_SHEET, "ProductID", product_id, field_values)


def set_system_value(workbook: Workbook, key: str, value: object) -> None:
    """Overwrite the ``Value`` stored under ``key`` in the ``System`` sheet."""

    _update_row(workbook, SYSTEM_SHEET, "Key", key, {"Value": value})


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: object) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (object): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_participant(record: ParticipantRow) -> list[object]:
    """Arrange a participant as ``[Identifier, Name, Role, Registered]``."""

    return [record.identifier, record.name, record.role, record.registered]


def serialize_batch(record: BatchRow) -> list[object]:
    """Arrange a batch as ``[ProductID, LotCode, Status, CurrentOwner]``."""

    return [record.product_id, record.lot_code, record.status, record.current_owner]


def serialize_history(record: HistoryRow) -> list[object]:
    """Arrange a history entry in the ``History`` sheet column order."""

    return [
        record.product_id,
        record.timestamp_iso,
        record.actor_identifier,
        record.actor_name,
        record.status,
        record.action,
    ]


def _text(value: object) -> str:
    # openpyxl may hand back None for cells saved as empty strings.
    return str(value) if value is not None else ""


def deserialize_participant(raw_row: Sequence[object]) -> ParticipantRow:
    """Convert a raw worksheet row into a :class:`ParticipantRow`."""

    identifier, name, role, registered = raw_row[:4]
    return ParticipantRow(
        identifier=_text(identifier),
        name=_text(name),
        role=_text(role),
        registered=bool(registered),
    )


def deserialize_batch(raw_row: Sequence[object]) -> BatchRow:
    """Convert a raw worksheet row into a :class:`BatchRow`.

    Excel may store the product id as a float, so it is coerced to ``int``.
    """

    product_id, lot_code, status, current_owner = raw_row[:4]
    return BatchRow(
        product_id=int(product_id),
        lot_code=_text(lot_code),
        status=_text(status),
        current_owner=_text(current_owner),
    )


def deserialize_history(raw_row: Sequence[object]) -> HistoryRow:
    """Convert a raw worksheet row into a :class:`HistoryRow`."""

    (
        product_id,
        timestamp_iso,
        actor_identifier,
        actor_name,
        status,
        action,
    ) = raw_row[:6]

    return HistoryRow(
        product_id=int(product_id),
        timestamp_iso=_text(timestamp_iso),
        actor_identifier=_text(actor_identifier),
        actor_name=_text(actor_name),
        status=_text(status),
        action=_text(action),
    )


def deserialize_lot_index(raw_row: Sequence[object]) -> LotIndexRow:
    """Convert a raw worksheet row into a :class:`LotIndexRow`."""

    lot_code, product_id = raw_row[:2]
    return LotIndexRow(lot_code=_text(lot_code), product_id=int(product_id))


def deserialize_notification(raw_row: Sequence[object]) -> NotificationRow:
    """Convert a raw worksheet row into a :class:`NotificationRow`."""

    event_id, timestamp_iso, event_name, payload = raw_row[:4]
    return NotificationRow(
        event_id=int(event_id),
        timestamp_iso=_text(timestamp_iso),
        event_name=_text(event_name),
        payload=_text(payload) or "{}",
    )
