"""Enumerations and fixed vocabulary shared across the supply trace layers.

The data access layer (DAL), the authorization guard, and the ledger logic all
import from here so that roles, statuses, history labels and sheet names have a
single definition.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# First product id handed out by a freshly bootstrapped workbook.
FIRST_PRODUCT_ID = 1


class Role(str, Enum):
    """Enumerate the supply chain roles a participant can hold."""

    UNASSIGNED = "Unassigned"
    FARM = "Farm"
    MANUFACTURER = "Manufacturer"
    DISTRIBUTOR = "Distributor"
    RETAILER = "Retailer"


class BatchStatus(str, Enum):
    """Enumerate the lifecycle states of a product batch."""

    GOOD = "Good"
    HOLD = "Hold"
    RECALLED = "Recalled"
    DESTROYED = "Destroyed"


# Hold and Destroyed are reserved: no operation drives them yet, but the table
# keeps them reachable so future actions only need a new entry point.
STATUS_TRANSITIONS: Mapping[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.GOOD: frozenset({BatchStatus.HOLD, BatchStatus.RECALLED}),
    BatchStatus.HOLD: frozenset({BatchStatus.GOOD, BatchStatus.RECALLED}),
    BatchStatus.RECALLED: frozenset({BatchStatus.DESTROYED}),
    BatchStatus.DESTROYED: frozenset(),
}

TERMINAL_STATUSES: frozenset[BatchStatus] = frozenset(
    status for status, targets in STATUS_TRANSITIONS.items() if not targets
)


class HistoryAction(str, Enum):
    """Labels written into the ``Action`` column of a batch history entry."""

    CREATED = "Batch Created"
    TRANSFERRED = "Transferred"
    RECALLED = "Product Recalled"


class EventName(str, Enum):
    """Enumerate the notifications published for external observers."""

    PARTICIPANT_REGISTERED = "ParticipantRegistered"
    BATCH_CREATED = "BatchCreated"
    BATCH_TRANSFERRED = "BatchTransferred"
    BATCH_RECALLED = "BatchRecalled"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    SYSTEM = "System"
    PARTICIPANTS = "Participants"
    BATCHES = "Batches"
    HISTORY = "History"
    LOT_INDEX = "LotIndex"
    NOTIFICATIONS = "Notifications"


class SystemKey(str, Enum):
    """Keys stored in the two-column ``System`` sheet."""

    ADMIN_IDENTITY = "AdminIdentity"
    NEXT_PRODUCT_ID = "NextProductId"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "FIRST_PRODUCT_ID",
    "Role",
    "BatchStatus",
    "STATUS_TRANSITIONS",
    "TERMINAL_STATUSES",
    "HistoryAction",
    "EventName",
    "SheetName",
    "SystemKey",
]
