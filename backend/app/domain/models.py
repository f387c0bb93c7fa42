"""Typed domain representations shared by the mirror client, services, and APIs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


TINYBARS_PER_HBAR = 100_000_000


class AuditKind(str, Enum):
    EVENT_CREATED = "EVENT_CREATED"
    TICKETS_CREATED = "TICKETS_CREATED"
    TICKET_PURCHASED = "TICKET_PURCHASED"
    TICKET_CHECKED_IN = "TICKET_CHECKED_IN"


@dataclass(frozen=True, slots=True)
class OperatorCredentials:
    """Treasury identity used to sign every submission of one deployment."""

    account_id: str
    private_key: str = field(repr=False)
    network: str = "testnet"


@dataclass(frozen=True, slots=True)
class Transfer:
    account: str
    amount: int


@dataclass(frozen=True, slots=True)
class NftTransfer:
    """One NFT movement; a mint has no sender."""

    token_id: str
    serial_number: int
    sender: str | None
    receiver: str | None


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    """Finalized transfer list of one ledger transaction as seen by the mirror."""

    reference: str
    transfers: tuple[Transfer, ...]
    result: str | None = None
    consensus_timestamp: str | None = None
    nft_transfers: tuple[NftTransfer, ...] = ()

    def minted_serials(self, token_id: str) -> tuple[int, ...]:
        return tuple(
            item.serial_number
            for item in self.nft_transfers
            if item.token_id == token_id and item.sender is None
        )


@dataclass(frozen=True, slots=True)
class PaymentVerificationRequest:
    reference: str
    buyer_identity: str
    recipient_identity: str
    minimum_price: Any


@dataclass(frozen=True, slots=True)
class VerifiedPayment:
    reference: str
    debit: int
    credit: int
    atomic_minimum: int


@dataclass(frozen=True, slots=True)
class TicketMintResult:
    serial_number: int
    transaction_reference: str
    ticket_token_id: str
    transfer_transaction_id: str | None = None
    audit_transaction_id: str | None = None


@dataclass(frozen=True, slots=True)
class AuditLogEntry:
    event_topic: str
    payload_kind: str
    payload: dict[str, Any]
    logged_at: datetime
    sequence_number: int | None = None


@dataclass(frozen=True, slots=True)
class EmittedAuditEntry:
    entry: AuditLogEntry
    transaction_id: str


@dataclass(frozen=True, slots=True)
class NftOwnership:
    token_id: str
    serial_number: int
    owner_account_id: str


@dataclass(frozen=True, slots=True)
class TopicMessage:
    """Raw topic message as returned by the mirror, already base64-decoded."""

    topic_id: str
    sequence_number: int
    consensus_timestamp: str
    message: bytes


@dataclass(frozen=True, slots=True)
class TicketDefaults:
    """Registry view consulted when a purchase omits the token or the price."""

    event_id: str
    topic_id: str
    ticket_token_id: str | None
    price: float | None
