"""Authorization guard applied before every ledger mutation.

Each ``require_*`` function is a pure check: it inspects the values it is
given, logs and raises on failure, and never touches workbook state. Callers
resolve participants and batches first and evaluate every guard before the
first write.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping

from . import log
from .constants import Role
from .errors import NotAdmin, NotAuthorized, NotOwner, NotRegistered, UnknownRecipient
from .models import Participant, ProductBatch


class Capability(str, Enum):
    """Role-gated actions beyond plain registration."""

    CREATE_BATCH = "create_batch"


# Every Role must appear here; tests enforce the mapping stays exhaustive.
ROLE_CAPABILITIES: Mapping[Role, frozenset[Capability]] = {
    Role.UNASSIGNED: frozenset(),
    Role.FARM: frozenset({Capability.CREATE_BATCH}),
    Role.MANUFACTURER: frozenset(),
    Role.DISTRIBUTOR: frozenset(),
    Role.RETAILER: frozenset(),
}


def require_admin(caller: str, admin_identity: str) -> None:
    """Raise :class:`NotAdmin` unless ``caller`` is the fixed admin identity."""

    if caller != admin_identity:
        log.warning("Admin-only action rejected for '%s'", caller)
        raise NotAdmin(f"'{caller}' is not the admin")


def require_registered(caller: str, participant: Participant) -> None:
    """Raise :class:`NotRegistered` unless ``participant`` is registered.

    Args:
        caller (str): Identity making the request, used for messaging.
        participant (Participant): Registry record resolved for ``caller``.
    """

    if not participant.registered:
        log.warning("Unregistered caller '%s' rejected", caller)
        raise NotRegistered(f"'{caller}' is not a registered participant")


def has_capability(role: Role, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES[role]


def require_capability(participant: Participant, capability: Capability) -> None:
    """Raise :class:`NotAuthorized` when the participant's role lacks ``capability``."""

    if not has_capability(participant.role, capability):
        log.warning(
            "Participant '%s' with role '%s' may not %s",
            participant.identifier,
            participant.role.value,
            capability.value,
        )
        raise NotAuthorized(
            f"Role '{participant.role.value}' is not allowed to {capability.value}"
        )


def require_owner(caller: str, batch: ProductBatch) -> None:
    """Raise :class:`NotOwner` unless ``caller`` currently owns ``batch``.

    Unknown batches have an empty owner, so they fail this check too.
    """

    if not batch.exists or batch.current_owner != caller:
        log.warning("'%s' does not own product %s", caller, batch.product_id or "<unknown>")
        raise NotOwner(f"'{caller}' is not the current owner of the batch")


def require_recipient(recipient: Participant) -> None:
    """Raise :class:`UnknownRecipient` if a transfer target is unregistered."""

    if not recipient.registered:
        log.warning("Transfer recipient '%s' is not registered", recipient.identifier)
        raise UnknownRecipient(f"Recipient '{recipient.identifier}' is not registered")


__all__ = [
    "Capability",
    "ROLE_CAPABILITIES",
    "require_admin",
    "require_registered",
    "has_capability",
    "require_capability",
    "require_owner",
    "require_recipient",
]
