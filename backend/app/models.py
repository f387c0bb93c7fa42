from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    BigInteger,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


GLOBAL_SCOPE_KEY = "*"


class ClaimStatus(str, Enum):
    RESERVED = "reserved"
    MINTING = "minting"
    MINTED = "minted"
    TRANSFERRED = "transferred"
    COMPLETED = "completed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Event(Base):
    __tablename__ = "events"

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    price: Mapped[float | None] = mapped_column(Numeric(24, 8), nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False, default="General")
    banner_url: Mapped[str | None] = mapped_column(String, nullable=True)
    vendor_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    max_tickets: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hedera_topic_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True, index=True)
    hedera_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    ticket_token_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PaymentClaim(Base):
    """A payment reference reserved for (at most) one ticket mint."""

    __tablename__ = "payment_claims"
    __table_args__ = (
        UniqueConstraint("payment_reference", "scope_key", name="uq_payment_claim_reference_scope"),
    )

    claim_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_reference: Mapped[str] = mapped_column(String, nullable=False, index=True)
    scope_key: Mapped[str] = mapped_column(String, nullable=False)
    event_id: Mapped[str] = mapped_column(String, nullable=False)
    ticket_token_id: Mapped[str] = mapped_column(String, nullable=False)
    buyer_account_id: Mapped[str] = mapped_column(String, nullable=False)
    price: Mapped[float | None] = mapped_column(Numeric(24, 8), nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=ClaimStatus.RESERVED.value, index=True)
    serial_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mint_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    transfer_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    audit_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class TicketCheckIn(Base):
    __tablename__ = "ticket_check_ins"
    __table_args__ = (
        UniqueConstraint("ticket_token_id", "serial_number", name="uq_ticket_check_in_serial"),
    )

    check_in_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String, nullable=False)
    ticket_token_id: Mapped[str] = mapped_column(String, nullable=False)
    serial_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    owner_account_id: Mapped[str] = mapped_column(String, nullable=False)
    audit_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    checked_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
