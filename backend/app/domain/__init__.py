"""Domain models and errors for payment-verified ticket issuance."""

from .models import (
    TINYBARS_PER_HBAR,
    AuditKind,
    AuditLogEntry,
    EmittedAuditEntry,
    NftOwnership,
    NftTransfer,
    OperatorCredentials,
    PaymentVerificationRequest,
    TicketDefaults,
    TicketMintResult,
    TopicMessage,
    TransactionRecord,
    Transfer,
    VerifiedPayment,
)

__all__ = [
    "TINYBARS_PER_HBAR",
    "AuditKind",
    "AuditLogEntry",
    "EmittedAuditEntry",
    "NftOwnership",
    "NftTransfer",
    "OperatorCredentials",
    "PaymentVerificationRequest",
    "TicketDefaults",
    "TicketMintResult",
    "TopicMessage",
    "TransactionRecord",
    "Transfer",
    "VerifiedPayment",
]
