"""Exception hierarchy raised by the supply trace business layer.

Two families hang off :class:`BusinessRuleViolation`:

* :class:`AuthorizationError` for caller faults (wrong identity, missing
  registration, wrong role, not the owner).
* :class:`ValidityError` for well-formed requests whose preconditions do not
  hold (bad state, unknown recipient, duplicate registration, empty lot).

Neither family is retryable and both are raised before any state changes.
"""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class AuthorizationError(BusinessRuleViolation):
    """The caller is not permitted to perform the requested action."""


class ValidityError(BusinessRuleViolation):
    """The request is well formed but its preconditions are not met."""


class NotAdmin(AuthorizationError):
    """Raised when a non-admin identity attempts an admin-only action."""


class NotRegistered(AuthorizationError):
    """Raised when the caller has never been registered as a participant."""


class NotAuthorized(AuthorizationError):
    """Raised when the caller's role does not allow the action."""


class NotOwner(AuthorizationError):
    """Raised when the caller does not currently own the batch."""


class InvalidState(ValidityError):
    """Raised when a batch's status does not allow the requested action."""


class UnknownRecipient(ValidityError):
    """Raised when a transfer targets an unregistered identity."""


class AlreadyRegistered(ValidityError):
    """Raised when registering an identifier that is already registered."""


class NoBatchesForLot(ValidityError):
    """Raised when a recall targets a lot code with no batches."""


__all__ = [
    "BusinessRuleViolation",
    "AuthorizationError",
    "ValidityError",
    "NotAdmin",
    "NotRegistered",
    "NotAuthorized",
    "NotOwner",
    "InvalidState",
    "UnknownRecipient",
    "AlreadyRegistered",
    "NoBatchesForLot",
]
