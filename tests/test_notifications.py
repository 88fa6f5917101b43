"""Tests for the notification outbox."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from supply_trace import data_manager, notifications
from supply_trace.constants import EventName
from supply_trace.setup_excel import build_master_workbook

from conftest import ADMIN_ID, ADMIN_NAME

MOMENT = datetime(2025, 6, 1, 8, 30, tzinfo=UTC)


def test_every_event_type_has_a_name():
    assert set(notifications.EVENT_NAMES.values()) == set(EventName)


def test_transfer_payload_uses_external_field_names():
    payload = json.loads(notifications.encode_payload(notifications.BatchTransferred(5, "0xA", "0xB")))
    assert payload == {"product_id": 5, "from": "0xA", "to": "0xB"}


def test_publish_appends_to_outbox():
    workbook = build_master_workbook(admin_identity=ADMIN_ID, admin_name=ADMIN_NAME)

    first = notifications.publish(
        workbook,
        notifications.BatchCreated(product_id=1, lot_code="LOT001", creator="0xF1"),
        event_id=1,
        timestamp=MOMENT,
    )
    second = notifications.publish(
        workbook,
        notifications.BatchRecalled(lot_code="LOT001", triggered_by=ADMIN_ID),
        event_id=2,
        timestamp=MOMENT,
    )

    assert list(data_manager.iter_notifications(workbook)) == [first, second]
    assert second.event_name == "BatchRecalled"
    assert notifications.decode_payload(second) == {"lot_code": "LOT001", "triggered_by": ADMIN_ID}
    assert first.timestamp_iso == MOMENT.isoformat()


def test_publish_rejects_unknown_events():
    workbook = build_master_workbook(admin_identity=ADMIN_ID, admin_name=ADMIN_NAME)

    with pytest.raises(TypeError):
        notifications.publish(workbook, object(), event_id=1, timestamp=MOMENT)

    assert list(data_manager.iter_notifications(workbook)) == []
