"""Business logic layer for the supply trace ledger.

This module owns the batch lifecycle: participant registration, batch creation,
ownership transfer, and the lot-wide recall cascade. It consumes the Data
Access Layer (DAL) for all I/O and the authorization guard for every write
precondition.

Every mutating function follows the same shape: take the context lock, resolve
the records it needs, run every guard, and only then write. A raised
:class:`~supply_trace.errors.BusinessRuleViolation` therefore leaves the
registry, ledger, lot index, counter and outbox untouched.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log, notifications
from .authorization import (
    Capability,
    require_admin,
    require_capability,
    require_owner,
    require_recipient,
    require_registered,
)
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    FIRST_PRODUCT_ID,
    STATUS_TRANSITIONS,
    BatchStatus,
    HistoryAction,
    Role,
    SystemKey,
)
from .errors import BusinessRuleViolation, InvalidState, NoBatchesForLot, AlreadyRegistered
from .models import HistoryEntry, Participant, ProductBatch, RecallResult


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and coordination state used by the BLL.

    The re-entrant lock serializes every mutation and every snapshot read
    against this workbook.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class RegisterParticipantCommand:
    """Admin intent for registering a supply chain participant."""

    identifier: str
    name: str
    role: Role
    caller: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CreateBatchCommand:
    """Farm intent for creating a new batch under ``lot_code``."""

    lot_code: str
    caller: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class TransferBatchCommand:
    """Owner intent for handing a batch to another registered participant."""

    product_id: int
    new_owner: str
    caller: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class RecallCommand:
    """Admin intent for recalling every batch of a lot."""

    lot_code: str
    caller: str
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when provided, otherwise the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets hold derived views of one worksheet (lists in sheet order plus
    lookup dictionaries) so repeated reads do not rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can invalidate without checking.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_system_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "system")
    if "admin_identity" not in bucket:
        values = data_manager.read_system_values(context.workbook)
        try:
            bucket["admin_identity"] = str(values[SystemKey.ADMIN_IDENTITY.value])
        except KeyError as exc:
            raise KeyError("Workbook has no admin identity; was it bootstrapped?") from exc
        raw_next = values.get(SystemKey.NEXT_PRODUCT_ID.value)
        bucket["next_product_id"] = int(raw_next) if raw_next is not None else FIRST_PRODUCT_ID
        log.debug(
            "Populated system cache (admin=%s, next_product_id=%s)",
            bucket["admin_identity"],
            bucket["next_product_id"],
        )
    return bucket


def _ensure_participants_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the participant cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` rows in sheet order and a
            ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "participants")
    if "all" not in bucket:
        all_participants = list(data_manager.iter_participants(context.workbook))
        bucket["all"] = all_participants
        bucket["by_id"] = {row.identifier: row for row in all_participants}
        log.debug("Populated participants cache with %d entries", len(all_participants))
    return bucket


def _ensure_batches_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "batches")
    if "all" not in bucket:
        all_batches = list(data_manager.iter_batches(context.workbook))
        bucket["all"] = all_batches
        bucket["by_id"] = {row.product_id: row for row in all_batches}
        log.debug("Populated batches cache with %d entries", len(all_batches))
    return bucket


def _ensure_history_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Group the shared ``History`` sheet by product id, keeping sheet order."""

    bucket = _get_cache_bucket(context, "history")
    if "by_product" not in bucket:
        by_product: Dict[int, List[data_manager.HistoryRow]] = {}
        count = 0
        for row in data_manager.iter_history(context.workbook):
            by_product.setdefault(row.product_id, []).append(row)
            count += 1
        bucket["by_product"] = by_product
        log.debug("Populated history cache with %d entries", count)
    return bucket


def _ensure_lot_index_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "lot_index")
    if "by_lot" not in bucket:
        by_lot: Dict[str, List[int]] = {}
        for row in data_manager.iter_lot_index(context.workbook):
            by_lot.setdefault(row.lot_code, []).append(row.product_id)
        bucket["by_lot"] = by_lot
        log.debug("Populated lot index cache with %d lots", len(by_lot))
    return bucket


def _ensure_notifications_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "notifications")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_notifications(context.workbook))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options or sheets are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Also warns when ``config.ini`` names a different admin than the workbook;
    the workbook value always wins because the admin is fixed at bootstrap.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    workbook_admin = get_admin_identity(context)
    if workbook_admin != context.settings.admin_identity:
        log.warning(
            "Configured admin '%s' differs from workbook admin '%s'; using the workbook value",
            context.settings.admin_identity,
            workbook_admin,
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def get_admin_identity(context: RuntimeContext) -> str:
    """Return the admin identity fixed when the workbook was bootstrapped."""
    with context._lock:
        return _ensure_system_cache(context)["admin_identity"]


def peek_next_product_id(context: RuntimeContext) -> int:
    """Return the id the next successful :func:`create_batch` will issue."""
    with context._lock:
        return _ensure_system_cache(context)["next_product_id"]


# ---------------------------------------------------------------------------
# Participant registry
# ---------------------------------------------------------------------------


def _to_participant(row: data_manager.ParticipantRow) -> Participant:
    return Participant(
        identifier=row.identifier,
        name=row.name,
        role=Role(row.role),
        registered=row.registered,
    )


def get_participant(context: RuntimeContext, identifier: str) -> Participant:
    """Resolve a participant by identifier.

    This read never fails: an unknown identifier yields a default,
    unregistered :class:`Participant`.
    """
    with context._lock:
        row = _ensure_participants_cache(context)["by_id"].get(identifier)
    if row is None:
        return Participant(identifier=identifier)
    return _to_participant(row)


def list_participants(context: RuntimeContext) -> List[Participant]:
    """Return every registered participant in registration order."""
    with context._lock:
        rows = list(_ensure_participants_cache(context)["all"])
    return [_to_participant(row) for row in rows if row.registered]


def register_participant(context: RuntimeContext, command: RegisterParticipantCommand) -> Participant:
    """Register ``command.identifier`` with a name and role.

    Only the admin may register participants. A record that exists but is not
    registered is overwritten; a registered one is rejected, so the
    ``registered`` flag never goes back to ``False``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access,
            caches and the write lock.
        command (RegisterParticipantCommand): Registration intent.

    Returns:
        Participant: The registered participant.

    Raises:
        NotAdmin: If ``command.caller`` is not the admin.
        AlreadyRegistered: If the identifier is already registered.
        BusinessRuleViolation: If ``command.role`` is not a :class:`Role`.
        ValueError: If the identifier is blank, or the identifier or name
            contains control characters.
    """
    with context._lock:
        require_admin(command.caller, get_admin_identity(context))
        require_text(command.identifier, "Participant identifier")
        require_storable(command.name, "Participant name")
        if not isinstance(command.role, Role):
            log.error("Unsupported role provided: %s", command.role)
            raise BusinessRuleViolation(f"Unsupported role: {command.role}")
        existing = get_participant(context, command.identifier)
        if existing.registered:
            log.warning("Participant '%s' is already registered", command.identifier)
            raise AlreadyRegistered(f"'{command.identifier}' is already registered")

        timestamp = _resolve_timestamp(command.timestamp)
        row = data_manager.ParticipantRow(
            identifier=command.identifier,
            name=command.name,
            role=command.role.value,
            registered=True,
        )
        if command.identifier in _ensure_participants_cache(context)["by_id"]:
            data_manager.update_participant(
                context.workbook,
                command.identifier,
                field_values={"Name": row.name, "Role": row.role, "Registered": True},
            )
        else:
            data_manager.append_participant(context.workbook, row)
        _invalidate_cache(context, "participants")
        _publish(
            context,
            notifications.ParticipantRegistered(
                identifier=row.identifier,
                name=row.name,
                role=row.role,
            ),
            timestamp=timestamp,
        )
        log.info(
            "Registered participant '%s' (%s) as %s",
            command.identifier,
            command.name,
            command.role.value,
        )
        return _to_participant(row)


# ---------------------------------------------------------------------------
# Batch ledger and lot index
# ---------------------------------------------------------------------------


def _to_history_entry(row: data_manager.HistoryRow) -> HistoryEntry:
    return HistoryEntry(
        timestamp_iso=row.timestamp_iso,
        actor_identifier=row.actor_identifier,
        actor_name=row.actor_name,
        status=BatchStatus(row.status),
        action=row.action,
    )


def get_batch(context: RuntimeContext, product_id: int) -> ProductBatch:
    """Return an immutable snapshot of a batch and its history.

    Ids that were never issued (including ``0``) yield the default
    :class:`ProductBatch`, whose ``exists`` property is ``False``.
    """
    with context._lock:
        row = _ensure_batches_cache(context)["by_id"].get(product_id)
        if row is None:
            return ProductBatch()
        history_rows = list(_ensure_history_cache(context)["by_product"].get(product_id, ()))
    return ProductBatch(
        product_id=row.product_id,
        lot_code=row.lot_code,
        status=BatchStatus(row.status),
        current_owner=row.current_owner,
        history=tuple(_to_history_entry(entry) for entry in history_rows),
    )


def batch_exists(context: RuntimeContext, product_id: int) -> bool:
    return get_batch(context, product_id).exists


def list_batches(context: RuntimeContext) -> List[ProductBatch]:
    """Return snapshots of every batch in creation order."""
    with context._lock:
        ids = [row.product_id for row in _ensure_batches_cache(context)["all"]]
        return [get_batch(context, product_id) for product_id in ids]


def get_product_status(context: RuntimeContext, product_id: int) -> BatchStatus:
    """Return the batch status; unknown ids report the default ``Good``."""
    return get_batch(context, product_id).status


def get_product_history(context: RuntimeContext, product_id: int) -> Tuple[HistoryEntry, ...]:
    """Return the provenance trail in append order; unknown ids yield ``()``."""
    return get_batch(context, product_id).history


def get_lot_batches(context: RuntimeContext, lot_code: str) -> Tuple[int, ...]:
    """Return the product ids created under ``lot_code`` in creation order."""
    with context._lock:
        return tuple(_ensure_lot_index_cache(context)["by_lot"].get(lot_code, ()))


def can_transition(current: BatchStatus, target: BatchStatus) -> bool:
    return target in STATUS_TRANSITIONS[current]


def require_status(batch: ProductBatch, expected: BatchStatus) -> None:
    """Raise :class:`InvalidState` unless ``batch`` is in ``expected`` status."""
    if batch.status is not expected:
        log.warning(
            "Product %s is %s, expected %s",
            batch.product_id,
            batch.status.value,
            expected.value,
        )
        raise InvalidState(
            f"Product {batch.product_id} is {batch.status.value}, expected {expected.value}"
        )


def require_storable(value: str, label: str) -> None:
    """Raise :class:`ValueError` when ``value`` cannot be written to a cell."""
    try:
        data_manager.ensure_storable_text(value, label)
    except ValueError:
        log.error("%s validation failed: %r", label, value)
        raise


def require_text(value: str, label: str) -> None:
    """Raise :class:`ValueError` when ``value`` is blank or not storable."""
    if not isinstance(value, str) or not value.strip():
        log.error("%s validation failed: %r", label, value)
        raise ValueError(f"{label} must not be blank")
    require_storable(value, label)


def build_history_row(
    product_id: int,
    *,
    actor: Participant,
    status: BatchStatus,
    action: HistoryAction,
    timestamp: datetime,
) -> data_manager.HistoryRow:
    """Materialize a history entry, snapshotting the actor's current name."""

    return data_manager.HistoryRow(
        product_id=product_id,
        timestamp_iso=timestamp.isoformat(),
        actor_identifier=actor.identifier,
        actor_name=actor.name,
        status=status.value,
        action=action.value,
    )


def create_batch(context: RuntimeContext, command: CreateBatchCommand) -> ProductBatch:
    """Create a batch owned by the calling farm and index it under its lot.

    The batch receives the next product id, starts in ``Good`` status and gets
    its genesis history entry (``"Batch Created"``). The id is appended to the
    lot index and the counter advances by exactly one.

    Args:
        context (RuntimeContext): Runtime context providing workbook access,
            caches and the write lock.
        command (CreateBatchCommand): Creation intent.

    Returns:
        ProductBatch: Snapshot of the new batch.

    Raises:
        NotRegistered: If the caller is not a registered participant.
        NotAuthorized: If the caller's role cannot create batches.
        ValueError: If the lot code is blank or contains control characters.
    """
    with context._lock:
        caller = get_participant(context, command.caller)
        require_registered(command.caller, caller)
        require_capability(caller, Capability.CREATE_BATCH)
        require_text(command.lot_code, "Lot code")

        timestamp = _resolve_timestamp(command.timestamp)
        product_id = _ensure_system_cache(context)["next_product_id"]

        data_manager.append_batch(
            context.workbook,
            data_manager.BatchRow(
                product_id=product_id,
                lot_code=command.lot_code,
                status=BatchStatus.GOOD.value,
                current_owner=caller.identifier,
            ),
        )
        data_manager.append_history(
            context.workbook,
            build_history_row(
                product_id,
                actor=caller,
                status=BatchStatus.GOOD,
                action=HistoryAction.CREATED,
                timestamp=timestamp,
            ),
        )
        data_manager.append_lot_index(
            context.workbook,
            data_manager.LotIndexRow(lot_code=command.lot_code, product_id=product_id),
        )
        data_manager.set_system_value(
            context.workbook, SystemKey.NEXT_PRODUCT_ID.value, product_id + 1
        )
        _invalidate_cache(context, "batches", "history", "lot_index", "system")
        _publish(
            context,
            notifications.BatchCreated(
                product_id=product_id,
                lot_code=command.lot_code,
                creator=caller.identifier,
            ),
            timestamp=timestamp,
        )
        log.info(
            "Created product %d in lot '%s' for '%s'",
            product_id,
            command.lot_code,
            caller.identifier,
        )
        return get_batch(context, product_id)


def transfer_batch(context: RuntimeContext, command: TransferBatchCommand) -> ProductBatch:
    """Hand a ``Good`` batch from its current owner to a registered participant.

    The appended history entry names the *new* owner as actor, with status
    ``Good`` and action ``"Transferred"``. This is the only operation that
    changes ``current_owner``.

    Raises:
        NotRegistered: If the caller is not registered.
        NotOwner: If the caller does not own the batch (or it does not exist).
        UnknownRecipient: If ``command.new_owner`` is not registered.
        InvalidState: If the batch is not ``Good``.
    """
    with context._lock:
        caller = get_participant(context, command.caller)
        require_registered(command.caller, caller)
        batch = get_batch(context, command.product_id)
        require_owner(command.caller, batch)
        recipient = get_participant(context, command.new_owner)
        require_recipient(recipient)
        require_status(batch, BatchStatus.GOOD)

        timestamp = _resolve_timestamp(command.timestamp)
        data_manager.update_batch(
            context.workbook,
            batch.product_id,
            field_values={"CurrentOwner": recipient.identifier},
        )
        data_manager.append_history(
            context.workbook,
            build_history_row(
                batch.product_id,
                actor=recipient,
                status=BatchStatus.GOOD,
                action=HistoryAction.TRANSFERRED,
                timestamp=timestamp,
            ),
        )
        _invalidate_cache(context, "batches", "history")
        _publish(
            context,
            notifications.BatchTransferred(
                product_id=batch.product_id,
                from_owner=caller.identifier,
                to_owner=recipient.identifier,
            ),
            timestamp=timestamp,
        )
        log.info(
            "Transferred product %d from '%s' to '%s'",
            batch.product_id,
            caller.identifier,
            recipient.identifier,
        )
        return get_batch(context, batch.product_id)


# ---------------------------------------------------------------------------
# Recall coordinator
# ---------------------------------------------------------------------------


def trigger_recall(context: RuntimeContext, command: RecallCommand) -> RecallResult:
    """Move every recallable batch of ``command.lot_code`` to ``Recalled``.

    Batches are visited in lot index order. Those whose status can transition
    to ``Recalled`` (``Good`` and ``Hold``) are updated and receive a
    ``"Product Recalled"`` history entry attributed to the admin; batches
    already ``Recalled`` or ``Destroyed`` are left alone. Re-running a recall
    is therefore a successful no-op for those batches. Exactly one
    ``BatchRecalled`` notification is published after the cascade.

    The whole cascade runs under the context lock, so readers never observe a
    partially recalled lot.

    Args:
        context (RuntimeContext): Runtime context providing workbook access,
            caches and the write lock.
        command (RecallCommand): Recall intent.

    Returns:
        RecallResult: Ids that changed status and ids left unchanged.

    Raises:
        NotAdmin: If the caller is not the admin.
        NoBatchesForLot: If no batch was ever created under the lot code.
    """
    with context._lock:
        admin = get_admin_identity(context)
        require_admin(command.caller, admin)
        product_ids = get_lot_batches(context, command.lot_code)
        if not product_ids:
            log.warning("Recall requested for unknown lot '%s'", command.lot_code)
            raise NoBatchesForLot(f"No batches recorded for lot '{command.lot_code}'")

        actor = get_participant(context, admin)
        batches = [get_batch(context, product_id) for product_id in product_ids]
        to_recall = [b.product_id for b in batches if can_transition(b.status, BatchStatus.RECALLED)]
        unchanged = [b.product_id for b in batches if b.product_id not in to_recall]

        timestamp = _resolve_timestamp(command.timestamp)
        for product_id in to_recall:
            data_manager.update_batch(
                context.workbook,
                product_id,
                field_values={"Status": BatchStatus.RECALLED.value},
            )
            data_manager.append_history(
                context.workbook,
                build_history_row(
                    product_id,
                    actor=actor,
                    status=BatchStatus.RECALLED,
                    action=HistoryAction.RECALLED,
                    timestamp=timestamp,
                ),
            )
        _invalidate_cache(context, "batches", "history")
        _publish(
            context,
            notifications.BatchRecalled(lot_code=command.lot_code, triggered_by=admin),
            timestamp=timestamp,
        )
        log.info(
            "Recall of lot '%s' recalled %d batch(es), left %d unchanged",
            command.lot_code,
            len(to_recall),
            len(unchanged),
        )
        return RecallResult(
            lot_code=command.lot_code,
            triggered_by=admin,
            recalled=tuple(to_recall),
            unchanged=tuple(unchanged),
        )


# ---------------------------------------------------------------------------
# Notification outbox
# ---------------------------------------------------------------------------


def _publish(context: RuntimeContext, event: notifications.Notification, *, timestamp: datetime) -> None:
    event_id = len(_ensure_notifications_cache(context)["all"]) + 1
    notifications.publish(context.workbook, event, event_id=event_id, timestamp=timestamp)
    _invalidate_cache(context, "notifications")


def list_notifications(context: RuntimeContext) -> List[data_manager.NotificationRow]:
    """Return every published notification in publication order."""
    with context._lock:
        return list(_ensure_notifications_cache(context)["all"])


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    Caches remain valid because the workbook handle is unchanged after the
    save completes.
    """
    with context._lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, an empty
            cache and its own lock.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
