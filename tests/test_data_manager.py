"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from supply_trace import constants, data_manager
from supply_trace.setup_excel import build_master_workbook

from conftest import ADMIN_ID, ADMIN_NAME


@pytest.fixture
def workbook():
    return build_master_workbook(admin_identity=ADMIN_ID, admin_name=ADMIN_NAME)


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=ledger.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "NetworkName") == "Test Network"
    assert parser.get("Defaults", "AdminIdentity") == ADMIN_ID


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.admin_identity == ADMIN_ID
    assert settings.admin_name == ADMIN_NAME
    assert settings.network_name == "Test Network"


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=x.xlsx\nNetworkName=n\nSchemaVersion=1.0.0\n")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(ledger_workbook_path):
    assert isinstance(data_manager.open_workbook(ledger_workbook_path), OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_open_workbook_rejects_foreign_workbook(tmp_path):
    """A workbook without the ledger sheets should not be opened silently."""

    foreign = tmp_path / "foreign.xlsx"
    openpyxl.Workbook().save(foreign)

    with pytest.raises(KeyError, match="missing sheets"):
        data_manager.open_workbook(foreign)


def test_save_workbook_persists_changes(ledger_workbook_path):
    """save_workbook should persist appended rows to disk."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_batch(workbook, data_manager.BatchRow(1, "LOT001", "Good", ADMIN_ID))
    data_manager.save_workbook(workbook, ledger_workbook_path)

    reloaded = data_manager.open_workbook(ledger_workbook_path)
    assert list(data_manager.iter_batches(reloaded)) == [
        data_manager.BatchRow(product_id=1, lot_code="LOT001", status="Good", current_owner=ADMIN_ID)
    ]


def test_refresh_workbook_discards_unsaved_changes(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_lot_index(workbook, data_manager.LotIndexRow("LOT001", 1))

    refreshed = data_manager.refresh_workbook(ledger_workbook_path)

    assert refreshed is not workbook
    assert list(data_manager.iter_lot_index(refreshed)) == []


def test_bootstrap_rows_are_readable(workbook):
    """The bootstrap admin and system values should deserialize cleanly."""

    participants = list(data_manager.iter_participants(workbook))
    system = data_manager.read_system_values(workbook)

    assert participants == [
        data_manager.ParticipantRow(ADMIN_ID, ADMIN_NAME, constants.Role.MANUFACTURER.value, True)
    ]
    assert system == {
        constants.SystemKey.ADMIN_IDENTITY.value: ADMIN_ID,
        constants.SystemKey.NEXT_PRODUCT_ID.value: constants.FIRST_PRODUCT_ID,
    }


def test_history_rows_keep_append_order(workbook):
    first = data_manager.HistoryRow(1, "2025-01-01T00:00:00+00:00", "F", "Farm", "Good", "Batch Created")
    second = data_manager.HistoryRow(2, "2025-01-01T00:00:01+00:00", "F", "Farm", "Good", "Batch Created")
    third = data_manager.HistoryRow(1, "2025-01-01T00:00:02+00:00", "D", "Dist", "Good", "Transferred")
    for row in (first, second, third):
        data_manager.append_history(workbook, row)

    assert list(data_manager.iter_history(workbook)) == [first, second, third]


def test_update_batch_changes_only_requested_columns(workbook):
    data_manager.append_batch(workbook, data_manager.BatchRow(1, "LOT001", "Good", "F"))
    data_manager.append_batch(workbook, data_manager.BatchRow(2, "LOT001", "Good", "F"))

    data_manager.update_batch(workbook, 2, field_values={"Status": "Recalled"})

    assert list(data_manager.iter_batches(workbook)) == [
        data_manager.BatchRow(1, "LOT001", "Good", "F"),
        data_manager.BatchRow(2, "LOT001", "Recalled", "F"),
    ]


def test_update_batch_unknown_column_writes_nothing(workbook):
    """An unknown column should fail before any cell is written."""

    data_manager.append_batch(workbook, data_manager.BatchRow(1, "LOT001", "Good", "F"))

    with pytest.raises(KeyError):
        data_manager.update_batch(
            workbook,
            1,
            field_values={"Status": "Recalled", "Colour": "red"},
        )

    assert next(iter(data_manager.iter_batches(workbook))).status == "Good"


def test_append_rejects_control_characters_before_writing(workbook):
    with pytest.raises(ValueError):
        data_manager.append_batch(workbook, data_manager.BatchRow(1, "LOT\x01", "Good", "F"))
    with pytest.raises(ValueError):
        data_manager.append_participant(workbook, data_manager.ParticipantRow("0xBAD", "Bad\x07Name", "Farm", True))

    assert list(data_manager.iter_batches(workbook)) == []
    assert [row.identifier for row in data_manager.iter_participants(workbook)] == [ADMIN_ID]


def test_update_batch_rejects_control_characters_before_writing(workbook):
    data_manager.append_batch(workbook, data_manager.BatchRow(1, "LOT001", "Good", "F"))

    with pytest.raises(ValueError):
        data_manager.update_batch(
            workbook,
            1,
            field_values={"Status": "Recalled", "CurrentOwner": "0xD1\x01"},
        )

    assert list(data_manager.iter_batches(workbook)) == [data_manager.BatchRow(1, "LOT001", "Good", "F")]


def test_update_batch_unknown_row_raises(workbook):
    with pytest.raises(KeyError):
        data_manager.update_batch(workbook, 99, field_values={"Status": "Recalled"})


def test_set_system_value_overwrites_counter(workbook):
    data_manager.set_system_value(workbook, constants.SystemKey.NEXT_PRODUCT_ID.value, 7)

    assert data_manager.read_system_values(workbook)[constants.SystemKey.NEXT_PRODUCT_ID.value] == 7


def test_locate_row_returns_none_for_missing_key(workbook):
    assert data_manager.locate_row(workbook, data_manager.PARTICIPANTS_SHEET, "Identifier", "nobody") is None
    assert data_manager.locate_row(workbook, data_manager.PARTICIPANTS_SHEET, "Identifier", ADMIN_ID) == 2


def test_locate_row_unknown_column_raises(workbook):
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.BATCHES_SHEET, "Nope", 1)


def test_deserialize_batch_coerces_numeric_ids():
    """Excel may hand back floats; product ids must come back as ints."""

    row = data_manager.deserialize_batch((3.0, "LOT9", "Hold", "D"))
    assert row.product_id == 3
    assert isinstance(row.product_id, int)


def test_deserialize_participant_tolerates_blank_cells():
    row = data_manager.deserialize_participant(("0xA", None, "Farm", None))
    assert row == data_manager.ParticipantRow("0xA", "", "Farm", False)


def test_deserialize_notification_defaults_empty_payload():
    row = data_manager.deserialize_notification((1, "2025-01-01T00:00:00", "BatchCreated", None))
    assert row.payload == "{}"
