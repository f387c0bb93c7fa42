"""Single-use enforcement for payment references."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.db import session_scope
from app.domain.errors import DuplicatePayment
from app.models import GLOBAL_SCOPE_KEY, ClaimStatus, PaymentClaim
from app.repositories import ClaimRepository


@dataclass(frozen=True, slots=True)
class ReservedClaim:
    claim_id: int
    payment_reference: str
    scope_key: str
    event_id: str
    ticket_token_id: str
    buyer_account_id: str


class KeyedLocks:
    """Per-key mutexes that are dropped once no thread holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[tuple[str, ...], list] = {}

    @contextmanager
    def hold(self, key: tuple[str, ...]) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class IdempotencyGuard:
    """Make a payment reference authorize at most one ticket mint.

    ``reserve`` is the atomic check-and-record: an INSERT against the unique
    ``(payment_reference, scope_key)`` constraint, committed before any ledger
    call is made. The per-key lock only serializes that INSERT inside this
    process; the constraint is what holds across workers and restarts.

    With ``scope="token"`` a reference is single-use per ticket collection;
    ``scope="global"`` makes it single-use across all collections.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        scope: str = "token",
        locks: KeyedLocks | None = None,
    ) -> None:
        if scope not in {"token", "global"}:
            raise ValueError("scope must be 'token' or 'global'")
        self._session_factory = session_factory
        self.scope = scope
        self._locks = locks or KeyedLocks()

    def scope_key(self, ticket_token_id: str) -> str:
        return GLOBAL_SCOPE_KEY if self.scope == "global" else ticket_token_id

    def reserve(
        self,
        payment_reference: str,
        *,
        event_id: str,
        ticket_token_id: str,
        buyer_account_id: str,
        price: float | None = None,
    ) -> ReservedClaim:
        scope_key = self.scope_key(ticket_token_id)
        with self._locks.hold((payment_reference, scope_key)):
            try:
                with session_scope(self._session_factory) as session:
                    claim = ClaimRepository(session).insert_claim(
                        payment_reference=payment_reference,
                        scope_key=scope_key,
                        event_id=event_id,
                        ticket_token_id=ticket_token_id,
                        buyer_account_id=buyer_account_id,
                        price=price,
                    )
                    reserved = ReservedClaim(
                        claim_id=claim.claim_id,
                        payment_reference=payment_reference,
                        scope_key=scope_key,
                        event_id=event_id,
                        ticket_token_id=ticket_token_id,
                        buyer_account_id=buyer_account_id,
                    )
            except IntegrityError as exc:
                existing = self.lookup(payment_reference, ticket_token_id)
                logger.warning(
                    "Rejected duplicate use of payment {} for ticket collection {} (existing status {})",
                    payment_reference,
                    ticket_token_id,
                    existing.status if existing else "unknown",
                )
                details: dict[str, object] = {"payment_reference": payment_reference}
                if existing is not None:
                    details["status"] = existing.status
                    details["ticket_token_id"] = existing.ticket_token_id
                    if existing.serial_number is not None:
                        details["serial_number"] = existing.serial_number
                raise DuplicatePayment(
                    "Payment reference has already been used to issue a ticket",
                    details=details,
                ) from exc

        logger.info(
            "Reserved payment {} for event {} (claim {})",
            payment_reference,
            event_id,
            reserved.claim_id,
        )
        return reserved

    def lookup(self, payment_reference: str, ticket_token_id: str) -> PaymentClaim | None:
        with session_scope(self._session_factory) as session:
            return ClaimRepository(session).find_claim(
                payment_reference, self.scope_key(ticket_token_id)
            )

    def record_minting(self, claim_id: int, *, transaction_id: str) -> None:
        """Store the mint's transaction id before it is submitted.

        From here on the claim is only given back once the ledger is known to
        have rejected that transaction.
        """

        with session_scope(self._session_factory) as session:
            claim = self._require(session, claim_id)
            if claim.status != ClaimStatus.RESERVED.value:
                raise ValueError(f"payment claim {claim_id} is {claim.status}, expected reserved")
            claim.status = ClaimStatus.MINTING.value
            claim.mint_transaction_id = transaction_id

    def record_mint_rejected(self, claim_id: int, message: str) -> None:
        with session_scope(self._session_factory) as session:
            claim = self._require(session, claim_id)
            if claim.status != ClaimStatus.MINTING.value:
                return
            claim.status = ClaimStatus.RESERVED.value
            claim.mint_transaction_id = None
            claim.last_error = message

    def record_minted(self, claim_id: int, *, serial_number: int, transaction_id: str) -> None:
        with session_scope(self._session_factory) as session:
            claim = self._require(session, claim_id)
            claim.status = ClaimStatus.MINTED.value
            claim.serial_number = serial_number
            claim.mint_transaction_id = transaction_id
            claim.last_error = None

    def record_transferred(self, claim_id: int, *, transaction_id: str | None) -> None:
        with session_scope(self._session_factory) as session:
            claim = self._require(session, claim_id)
            claim.status = ClaimStatus.TRANSFERRED.value
            claim.transfer_transaction_id = transaction_id
            claim.last_error = None

    def record_completed(self, claim_id: int, *, transaction_id: str) -> None:
        with session_scope(self._session_factory) as session:
            claim = self._require(session, claim_id)
            claim.status = ClaimStatus.COMPLETED.value
            claim.audit_transaction_id = transaction_id
            claim.last_error = None

    def record_failure(self, claim_id: int, message: str) -> None:
        with session_scope(self._session_factory) as session:
            claim = self._require(session, claim_id)
            claim.last_error = message

    def release(self, claim_id: int) -> bool:
        """Give the reference back; only possible while no mint was submitted."""

        with session_scope(self._session_factory) as session:
            released = ClaimRepository(session).delete_reserved(claim_id)
        if released:
            logger.info("Released payment claim {}", claim_id)
        return released

    @staticmethod
    def _require(session: Session, claim_id: int) -> PaymentClaim:
        claim = ClaimRepository(session).get_claim(claim_id)
        if claim is None:
            raise LookupError(f"payment claim {claim_id} does not exist")
        return claim


__all__ = ["IdempotencyGuard", "KeyedLocks", "ReservedClaim"]
