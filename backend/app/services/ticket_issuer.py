"""Mint-and-transfer of NFT tickets against a reserved payment claim."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Protocol

from loguru import logger

from app.domain import AuditKind, TicketMintResult
from app.domain.errors import IssuanceError, LedgerError, LedgerOutcomeUnknown, NotAssociated
from app.ledger.gateway import LedgerGateway

from .audit_log import AuditLogEmitter, epoch_millis, utcnow
from .idempotency import IdempotencyGuard, ReservedClaim


class AssociationSource(Protocol):
    def is_token_associated(self, account_id: str, token_id: str) -> bool: ...


def build_ticket_metadata(event_id: str, minted_at: datetime) -> bytes:
    # ledger NFT metadata is capped at 100 bytes, keep it compact
    return json.dumps(
        {"eventId": event_id, "ticketType": "standard", "mintedAt": epoch_millis(minted_at)},
        separators=(",", ":"),
    ).encode("utf-8")


class TicketIssuer:
    """Mint one ticket, hand it to the buyer, and log the purchase.

    The three ledger submissions are separate transactions. The mint's
    transaction id is stored on the claim (``minting``) before it is sent and
    progress is written after each step, so a failure past that point leaves a
    claim in ``minting``, ``minted`` or ``transferred`` that
    :class:`~app.services.reconciliation.ReconciliationService` can resume.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        mirror: AssociationSource,
        audit: AuditLogEmitter,
        guard: IdempotencyGuard,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._gateway = gateway
        self._mirror = mirror
        self._audit = audit
        self._guard = guard
        self._clock = clock

    def issue(self, claim: ReservedClaim, *, topic_id: str, price: Any) -> TicketMintResult:
        token_id = claim.ticket_token_id
        buyer = claim.buyer_account_id

        if not self._mirror.is_token_associated(buyer, token_id):
            raise NotAssociated(
                f"Account {buyer} is not associated with ticket token {token_id}. "
                "Associate the token from your wallet, then retry with the same payment reference.",
                details={"buyer": buyer, "ticket_token_id": token_id},
            )

        metadata = build_ticket_metadata(topic_id, self._clock())
        mint_transaction_id = self._gateway.new_transaction_id()
        try:
            self._guard.record_minting(claim.claim_id, transaction_id=mint_transaction_id)
        except Exception as exc:  # noqa: BLE001
            raise IssuanceError(
                "Could not record the mint attempt; nothing was submitted",
                stage="mint",
                partial={"ticket_token_id": token_id},
            ) from exc

        partial: dict[str, Any] = {
            "ticket_token_id": token_id,
            "mint_transaction_id": mint_transaction_id,
        }
        try:
            mint = self._gateway.mint_nft(token_id, metadata, transaction_id=mint_transaction_id)
        except LedgerOutcomeUnknown as exc:
            message = f"Mint {mint_transaction_id} on {token_id} was submitted but not confirmed: {exc.message}"
            logger.error("{} (claim {})", message, claim.claim_id)
            self._note_failure(claim.claim_id, message)
            raise IssuanceError(message, stage="mint_unconfirmed", partial=partial) from exc
        except LedgerError as exc:
            self._record(
                lambda: self._guard.record_mint_rejected(claim.claim_id, exc.message),
                stage="record_mint",
                partial=partial,
            )
            raise IssuanceError(
                f"Failed to mint ticket: {exc.message}", stage="mint", partial=partial
            ) from exc

        logger.info(
            "Minted ticket {}/{} for payment {} ({})",
            token_id,
            mint.serial_number,
            claim.payment_reference,
            mint.transaction_id,
        )
        self.mark_minted(
            claim.claim_id,
            token_id=token_id,
            serial_number=mint.serial_number,
            transaction_id=mint.transaction_id,
        )

        transfer_transaction_id = self.transfer(
            claim.claim_id,
            token_id=token_id,
            serial_number=mint.serial_number,
            buyer=buyer,
            mint_transaction_id=mint.transaction_id,
        )
        audit_transaction_id = self.log_purchase(
            claim.claim_id,
            topic_id=topic_id,
            token_id=token_id,
            serial_number=mint.serial_number,
            buyer=buyer,
            price=price,
            mint_transaction_id=mint.transaction_id,
            transfer_transaction_id=transfer_transaction_id,
        )

        return TicketMintResult(
            serial_number=mint.serial_number,
            transaction_reference=mint.transaction_id,
            ticket_token_id=token_id,
            transfer_transaction_id=transfer_transaction_id,
            audit_transaction_id=audit_transaction_id,
        )

    def mark_minted(
        self, claim_id: int, *, token_id: str, serial_number: int, transaction_id: str
    ) -> None:
        self._record(
            lambda: self._guard.record_minted(
                claim_id, serial_number=serial_number, transaction_id=transaction_id
            ),
            stage="record_mint",
            partial={
                "ticket_token_id": token_id,
                "serial_number": serial_number,
                "mint_transaction_id": transaction_id,
            },
        )

    def abandon_mint(self, claim_id: int, reason: str) -> bool:
        """Release a claim whose mint is known not to have happened on the ledger."""

        self._guard.record_mint_rejected(claim_id, reason)
        return self._guard.release(claim_id)

    def transfer(
        self,
        claim_id: int,
        *,
        token_id: str,
        serial_number: int,
        buyer: str,
        mint_transaction_id: str | None,
    ) -> str:
        partial = {
            "ticket_token_id": token_id,
            "serial_number": serial_number,
            "mint_transaction_id": mint_transaction_id,
        }
        try:
            receipt = self._gateway.transfer_nft(
                token_id, serial_number, self._gateway.operator_account_id, buyer
            )
        except LedgerError as exc:
            message = f"Ticket {token_id}/{serial_number} minted but transfer to {buyer} failed: {exc.message}"
            logger.error("{} (claim {})", message, claim_id)
            self._note_failure(claim_id, message)
            raise IssuanceError(message, stage="transfer", partial=partial) from exc

        self._record(
            lambda: self._guard.record_transferred(claim_id, transaction_id=receipt.transaction_id),
            stage="record_transfer",
            partial={**partial, "transfer_transaction_id": receipt.transaction_id},
        )
        return receipt.transaction_id

    def mark_transferred(self, claim_id: int, *, transaction_id: str | None) -> None:
        """Record a transfer that already happened on the ledger."""

        self._record(
            lambda: self._guard.record_transferred(claim_id, transaction_id=transaction_id),
            stage="record_transfer",
            partial={"claim_id": claim_id, "transfer_transaction_id": transaction_id},
        )

    def log_purchase(
        self,
        claim_id: int,
        *,
        topic_id: str,
        token_id: str,
        serial_number: int,
        buyer: str,
        price: Any,
        mint_transaction_id: str | None,
        transfer_transaction_id: str | None,
    ) -> str:
        partial = {
            "ticket_token_id": token_id,
            "serial_number": serial_number,
            "mint_transaction_id": mint_transaction_id,
            "transfer_transaction_id": transfer_transaction_id,
        }
        payload = {
            "eventId": topic_id,
            "ticketTokenId": token_id,
            "ticketSerialNumber": serial_number,
            "buyer": buyer,
            "price": float(price) if price is not None else None,
            "purchaseDate": epoch_millis(self._clock()),
        }
        try:
            emitted = self._audit.emit(topic_id, AuditKind.TICKET_PURCHASED, payload)
        except LedgerError as exc:
            message = (
                f"Ticket {token_id}/{serial_number} delivered to {buyer} but the purchase "
                f"was not logged: {exc.message}"
            )
            logger.error("{} (claim {})", message, claim_id)
            self._note_failure(claim_id, message)
            raise IssuanceError(message, stage="audit", partial=partial) from exc

        self._record(
            lambda: self._guard.record_completed(claim_id, transaction_id=emitted.transaction_id),
            stage="record_audit",
            partial={**partial, "audit_transaction_id": emitted.transaction_id},
        )
        return emitted.transaction_id

    def _note_failure(self, claim_id: int, message: str) -> None:
        try:
            self._guard.record_failure(claim_id, message)
        except Exception:  # noqa: BLE001
            logger.exception("Could not store failure on payment claim {}", claim_id)

    @staticmethod
    def _record(action: Callable[[], None], *, stage: str, partial: dict[str, Any]) -> None:
        try:
            action()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Ledger step succeeded but claim progress was not stored ({})", stage)
            raise IssuanceError(
                "Ticket issuance progress could not be recorded; manual reconciliation required",
                stage=stage,
                partial=partial,
            ) from exc


__all__ = ["AssociationSource", "TicketIssuer", "build_ticket_metadata"]
