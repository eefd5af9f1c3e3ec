"""Error taxonomy shared by repositories and the workflow engine."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories surfaced to callers through ``Outcome``."""

    NOT_FOUND = "not_found"
    VALIDATION_REJECTED = "validation_rejected"
    TRANSIENT_IO_FAILURE = "transient_io_failure"
    ILLEGAL_TRANSITION = "illegal_transition"


class TicketflowError(Exception):
    """Base class for all ticketflow errors."""

    kind: ErrorKind = ErrorKind.TRANSIENT_IO_FAILURE


class NotFound(TicketflowError):
    """Zero rows, or more than one, where exactly one was expected."""

    kind = ErrorKind.NOT_FOUND


class ValidationRejected(TicketflowError):
    """The store refused an insert or update (constraint failure)."""

    kind = ErrorKind.VALIDATION_REJECTED


class TransientIOFailure(TicketflowError):
    """The store could not be reached or failed mid-operation."""

    kind = ErrorKind.TRANSIENT_IO_FAILURE


class IllegalTransition(TicketflowError):
    """A state change was requested from a state that does not allow it."""

    kind = ErrorKind.ILLEGAL_TRANSITION


class ConcurrencyConflict(TicketflowError):
    """A conditional write lost against a concurrent writer.

    Raised by repositories when the row version no longer matches the one the
    caller read. The engine handles it by re-reading the row.
    """

    kind = ErrorKind.TRANSIENT_IO_FAILURE


class NotificationError(TicketflowError):
    """An email notification could not be delivered."""
