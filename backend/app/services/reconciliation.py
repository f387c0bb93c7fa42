"""Resume ticket issuances that stopped after the mint."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.db import session_scope
from app.domain import NftOwnership, TransactionRecord
from app.domain.errors import IssuanceError, MirrorQueryError, TransactionNotVisible
from app.models import ClaimStatus, utcnow
from app.repositories import ClaimRepository, EventRepository

from .ticket_issuer import TicketIssuer


# a mint that has not reached the mirror this long after it was recorded never will
DEFAULT_MINT_TIMEOUT = timedelta(minutes=3)


class ReconciliationMirror(Protocol):
    def get_nft_owner(self, token_id: str, serial_number: int) -> NftOwnership: ...

    def get_transaction(self, reference: str) -> TransactionRecord: ...


@dataclass(frozen=True, slots=True)
class PendingClaim:
    claim_id: int
    payment_reference: str
    status: str
    topic_id: str
    ticket_token_id: str
    serial_number: int | None
    buyer_account_id: str
    price: float | None
    mint_transaction_id: str | None
    transfer_transaction_id: str | None
    updated_at: datetime | None = None


@dataclass(slots=True)
class ReconciliationReport:
    examined: int = 0
    completed: list[int] = field(default_factory=list)
    released: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    pending: list[PendingClaim] = field(default_factory=list)


class ReconciliationService:
    """Walk claims stuck in ``minting``, ``minted`` or ``transferred`` and finish them.

    ``minting`` claims are settled from the mirror's record of their mint
    transaction: a successful mint yields the serial number and the claim
    carries on as ``minted``; a failed mint, or one still invisible after
    ``mint_timeout``, gives the payment reference back. ``minted`` claims are
    transferred (unless the mirror already shows the buyer as owner) and then
    logged; ``transferred`` claims are only logged. No new ticket is ever
    minted here.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        issuer: TicketIssuer,
        mirror: ReconciliationMirror,
        mint_timeout: timedelta = DEFAULT_MINT_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._issuer = issuer
        self._mirror = mirror
        self._mint_timeout = mint_timeout
        self._clock = clock

    def pending_claims(self, *, limit: int | None = None) -> list[PendingClaim]:
        pending: list[PendingClaim] = []
        with session_scope(self._session_factory) as session:
            events = EventRepository(session)
            for claim in ClaimRepository(session).list_unfinished(limit=limit):
                if claim.serial_number is None and claim.status != ClaimStatus.MINTING.value:
                    logger.warning("Claim {} is {} without a serial number", claim.claim_id, claim.status)
                    continue
                event = events.get_event(claim.event_id)
                topic_id = event.hedera_topic_id if event is not None and event.hedera_topic_id else claim.event_id
                pending.append(
                    PendingClaim(
                        claim_id=claim.claim_id,
                        payment_reference=claim.payment_reference,
                        status=claim.status,
                        topic_id=topic_id,
                        ticket_token_id=claim.ticket_token_id,
                        serial_number=int(claim.serial_number) if claim.serial_number is not None else None,
                        buyer_account_id=claim.buyer_account_id,
                        price=float(claim.price) if claim.price is not None else None,
                        mint_transaction_id=claim.mint_transaction_id,
                        transfer_transaction_id=claim.transfer_transaction_id,
                        updated_at=claim.updated_at,
                    )
                )
        return pending

    def run(self, *, limit: int | None = None, dry_run: bool = False) -> ReconciliationReport:
        report = ReconciliationReport()
        for claim in self.pending_claims(limit=limit):
            report.examined += 1
            if dry_run:
                report.pending.append(claim)
                logger.info(
                    "Would resume claim {} ({}) for ticket {}/{}",
                    claim.claim_id,
                    claim.status,
                    claim.ticket_token_id,
                    claim.serial_number,
                )
                continue
            try:
                if claim.status == ClaimStatus.MINTING.value:
                    settled = self.settle_mint(claim)
                    if settled is None:
                        report.released.append(claim.claim_id)
                        continue
                    claim = settled
                self.resume(claim)
            except (IssuanceError, MirrorQueryError) as exc:
                report.failed[claim.claim_id] = exc.message
                continue
            report.completed.append(claim.claim_id)
        logger.info(
            "Reconciliation examined {} claims: {} completed, {} released, {} failed",
            report.examined,
            len(report.completed),
            len(report.released),
            len(report.failed),
        )
        return report

    def settle_mint(self, claim: PendingClaim) -> PendingClaim | None:
        """Read a ``minting`` claim's mint back from the mirror.

        Returns the claim as ``minted`` when the mint landed, or ``None`` once
        the claim has been released because it did not.
        """

        if not claim.mint_transaction_id:
            raise IssuanceError(
                f"Claim {claim.claim_id} is minting without a mint transaction id",
                stage="reconcile",
                partial={"claim_id": claim.claim_id},
            )
        try:
            record = self._mirror.get_transaction(claim.mint_transaction_id)
        except TransactionNotVisible:
            if not self._mint_expired(claim):
                raise
            self._abandon(claim, f"Mint {claim.mint_transaction_id} never reached the mirror node")
            return None

        if record.result != "SUCCESS":
            self._abandon(claim, f"Mint {claim.mint_transaction_id} failed with {record.result}")
            return None

        serials = record.minted_serials(claim.ticket_token_id)
        if len(serials) != 1:
            raise IssuanceError(
                f"Mint {claim.mint_transaction_id} shows {len(serials)} tickets on {claim.ticket_token_id}",
                stage="reconcile",
                partial={"claim_id": claim.claim_id, "mint_transaction_id": claim.mint_transaction_id},
            )
        self._issuer.mark_minted(
            claim.claim_id,
            token_id=claim.ticket_token_id,
            serial_number=serials[0],
            transaction_id=claim.mint_transaction_id,
        )
        logger.info(
            "Mint {} for claim {} landed as ticket {}/{}",
            claim.mint_transaction_id,
            claim.claim_id,
            claim.ticket_token_id,
            serials[0],
        )
        return replace(claim, status=ClaimStatus.MINTED.value, serial_number=serials[0])

    def _mint_expired(self, claim: PendingClaim) -> bool:
        if claim.updated_at is None:
            return False
        recorded = claim.updated_at
        # sqlite hands timestamps back without a zone
        if recorded.tzinfo is None:
            recorded = recorded.replace(tzinfo=timezone.utc)
        return self._clock() - recorded >= self._mint_timeout

    def _abandon(self, claim: PendingClaim, reason: str) -> None:
        logger.warning("{}; releasing payment {} (claim {})", reason, claim.payment_reference, claim.claim_id)
        self._issuer.abandon_mint(claim.claim_id, reason)

    def resume(self, claim: PendingClaim) -> None:
        if claim.serial_number is None:
            raise IssuanceError(
                f"Claim {claim.claim_id} has no ticket serial number to resume from",
                stage="reconcile",
                partial={"claim_id": claim.claim_id},
            )
        transfer_transaction_id = claim.transfer_transaction_id
        if claim.status == ClaimStatus.MINTED.value:
            owner = self._mirror.get_nft_owner(claim.ticket_token_id, claim.serial_number)
            if owner.owner_account_id == claim.buyer_account_id:
                logger.info(
                    "Ticket {}/{} already held by {}; skipping transfer",
                    claim.ticket_token_id,
                    claim.serial_number,
                    claim.buyer_account_id,
                )
                self._issuer.mark_transferred(claim.claim_id, transaction_id=transfer_transaction_id)
            else:
                transfer_transaction_id = self._issuer.transfer(
                    claim.claim_id,
                    token_id=claim.ticket_token_id,
                    serial_number=claim.serial_number,
                    buyer=claim.buyer_account_id,
                    mint_transaction_id=claim.mint_transaction_id,
                )

        self._issuer.log_purchase(
            claim.claim_id,
            topic_id=claim.topic_id,
            token_id=claim.ticket_token_id,
            serial_number=claim.serial_number,
            buyer=claim.buyer_account_id,
            price=claim.price,
            mint_transaction_id=claim.mint_transaction_id,
            transfer_transaction_id=transfer_transaction_id,
        )
        logger.info("Resumed claim {} for payment {}", claim.claim_id, claim.payment_reference)


__all__ = [
    "DEFAULT_MINT_TIMEOUT",
    "PendingClaim",
    "ReconciliationMirror",
    "ReconciliationReport",
    "ReconciliationService",
]
