"""Domain records handed out by the business layer.

These are immutable snapshots. The workbook rows in :mod:`data_manager` carry
plain strings; the records here carry enums and tuples so callers can never
mutate ledger state through a returned value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from .constants import BatchStatus, Role


@dataclass(frozen=True)
class Participant:
    """A registered (or default, unregistered) supply chain actor."""

    identifier: str
    name: str = ""
    role: Role = Role.UNASSIGNED
    registered: bool = False


@dataclass(frozen=True)
class HistoryEntry:
    """One provenance record. ``actor_name`` is a snapshot taken at write time."""

    timestamp_iso: str
    actor_identifier: str
    actor_name: str
    status: BatchStatus
    action: str


@dataclass(frozen=True)
class ProductBatch:
    """A batch and its full provenance trail.

    ``product_id == 0`` marks the default record returned for ids that were
    never issued.
    """

    product_id: int = 0
    lot_code: str = ""
    status: BatchStatus = BatchStatus.GOOD
    current_owner: str = ""
    history: Tuple[HistoryEntry, ...] = ()

    @property
    def exists(self) -> bool:
        return self.product_id > 0


@dataclass(frozen=True)
class RecallResult:
    """Outcome of a lot-wide recall cascade."""

    lot_code: str
    triggered_by: str
    recalled: Tuple[int, ...]
    unchanged: Tuple[int, ...]


__all__ = ["Participant", "HistoryEntry", "ProductBatch", "RecallResult"]
