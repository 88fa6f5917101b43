"""Write-only notification outbox for external observers.

The ledger publishes one event per successful mutation (one per recall
invocation, regardless of how many batches it touched). Events are appended to
the ``Notifications`` sheet with a JSON payload and echoed to the log; nothing
inside the package reads them back to make decisions.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EventName


@dataclass(frozen=True)
class ParticipantRegistered:
    identifier: str
    name: str
    role: str


@dataclass(frozen=True)
class BatchCreated:
    product_id: int
    lot_code: str
    creator: str


@dataclass(frozen=True)
class BatchTransferred:
    product_id: int
    from_owner: str
    to_owner: str


@dataclass(frozen=True)
class BatchRecalled:
    lot_code: str
    triggered_by: str


Notification = Union[ParticipantRegistered, BatchCreated, BatchTransferred, BatchRecalled]

EVENT_NAMES: Dict[type, EventName] = {
    ParticipantRegistered: EventName.PARTICIPANT_REGISTERED,
    BatchCreated: EventName.BATCH_CREATED,
    BatchTransferred: EventName.BATCH_TRANSFERRED,
    BatchRecalled: EventName.BATCH_RECALLED,
}


def event_name(event: Notification) -> EventName:
    try:
        return EVENT_NAMES[type(event)]
    except KeyError as exc:
        raise TypeError(f"Unsupported notification type: {type(event).__name__}") from exc


def encode_payload(event: Notification) -> str:
    """Serialize ``event`` to the JSON object stored in the ``Payload`` column.

    Transfer payloads use the external field names ``from`` and ``to``.
    """

    payload: Dict[str, Any] = asdict(event)
    if isinstance(event, BatchTransferred):
        payload = {
            "product_id": event.product_id,
            "from": event.from_owner,
            "to": event.to_owner,
        }
    return json.dumps(payload, sort_keys=True)


def decode_payload(record: data_manager.NotificationRow) -> Dict[str, Any]:
    return json.loads(record.payload)


def publish(workbook: Workbook, event: Notification, *, event_id: int, timestamp: datetime) -> data_manager.NotificationRow:
    """Append ``event`` to the outbox and return the stored row.

    Args:
        workbook (Workbook): Ledger workbook holding the ``Notifications`` sheet.
        event (Notification): Event dataclass to publish.
        event_id (int): Sequence number assigned by the caller, starting at 1.
        timestamp (datetime): Moment the triggering mutation completed.

    Raises:
        TypeError: If ``event`` is not one of the known notification types.
    """

    name = event_name(event)
    record = data_manager.NotificationRow(
        event_id=event_id,
        timestamp_iso=timestamp.isoformat(),
        event_name=name.value,
        payload=encode_payload(event),
    )
    data_manager.append_notification(workbook, record)
    log.info("Published %s #%d %s", name.value, event_id, record.payload)
    return record


__all__ = [
    "ParticipantRegistered",
    "BatchCreated",
    "BatchTransferred",
    "BatchRecalled",
    "Notification",
    "EVENT_NAMES",
    "event_name",
    "encode_payload",
    "decode_payload",
    "publish",
]
