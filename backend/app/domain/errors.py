"""Closed error hierarchy for ticket sales, check-ins and vendor flows.

Every failure is raised as one of these classes at the point where it is
detected. The HTTP layer maps ``status_code``/``kind`` straight into the
response envelope, so nothing downstream has to guess what went wrong from a
message string.
"""

from __future__ import annotations

from typing import Any


class TicketingError(Exception):
    """Base class for failures surfaced to API clients."""

    kind = "ticketing_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "kind": self.kind,
        }
        if self.retryable:
            payload["retryable"] = True
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigurationError(TicketingError):
    kind = "configuration_error"
    status_code = 500


class ValidationError(TicketingError):
    """Malformed request body; ``details`` carries field-level messages."""

    kind = "validation_error"
    status_code = 400


class EventNotFound(TicketingError):
    kind = "event_not_found"
    status_code = 400


class TicketsNotCreated(TicketingError):
    kind = "tickets_not_created"
    status_code = 400


class MirrorQueryError(TicketingError):
    """Mirror node unreachable, returned non-2xx, or sent a malformed payload."""

    kind = "mirror_query_error"
    status_code = 502
    retryable = True


class TransactionNotVisible(MirrorQueryError):
    """The mirror has not indexed the transaction (yet)."""

    kind = "transaction_not_visible"


class PaymentRejected(TicketingError):
    """Base for verification rejections; never consumes the payment reference."""

    kind = "payment_rejected"
    status_code = 400


class InvalidDirection(PaymentRejected):
    kind = "invalid_direction"


class InsufficientAmount(PaymentRejected):
    kind = "insufficient_amount"


class DuplicatePayment(TicketingError):
    kind = "duplicate_payment"
    status_code = 409


class NotAssociated(TicketingError):
    kind = "not_associated"
    status_code = 400


class LedgerError(TicketingError):
    """A ledger submission failed outside of ticket issuance."""

    kind = "ledger_error"
    status_code = 502


class LedgerOutcomeUnknown(LedgerError):
    """The submission may have reached consensus; read its effect back from the mirror."""

    kind = "ledger_outcome_unknown"


class IssuanceError(TicketingError):
    """Mint, transfer or audit submission failed during issuance.

    ``partial`` holds whatever was obtained before the failure (serial number,
    transaction ids, the stage that failed) so the ticket can be reconciled.
    """

    kind = "issuance_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        partial: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.stage = stage
        self.partial = dict(partial or {})

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["stage"] = self.stage
        payload["partial"] = self.partial
        return payload


class OwnershipMismatch(TicketingError):
    kind = "ownership_mismatch"
    status_code = 400


class AlreadyCheckedIn(TicketingError):
    kind = "already_checked_in"
    status_code = 409


__all__ = [
    "AlreadyCheckedIn",
    "ConfigurationError",
    "DuplicatePayment",
    "EventNotFound",
    "InsufficientAmount",
    "InvalidDirection",
    "IssuanceError",
    "LedgerError",
    "LedgerOutcomeUnknown",
    "MirrorQueryError",
    "NotAssociated",
    "OwnershipMismatch",
    "PaymentRejected",
    "TicketingError",
    "TicketsNotCreated",
    "TransactionNotVisible",
    "ValidationError",
]
