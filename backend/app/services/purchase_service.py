"""Payment-verified ticket purchase."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from loguru import logger

from app.domain import (
    PaymentVerificationRequest,
    TicketMintResult,
    TransactionRecord,
)
from app.domain.errors import (
    EventNotFound,
    IssuanceError,
    NotAssociated,
    PaymentRejected,
    TicketsNotCreated,
    ValidationError,
)
from app.ledger.gateway import LedgerGateway
from mirror.normalize import normalize_transaction_id
from mirror.service import DEFAULT_BACKOFF_SECONDS, fetch_transaction_with_retry

from .audit_log import AuditLogEmitter
from .event_service import EventService
from .idempotency import IdempotencyGuard, ReservedClaim
from .payment_verifier import verify_payment
from .ticket_issuer import TicketIssuer


class PurchaseMirror(Protocol):
    def get_transaction(self, reference: str) -> TransactionRecord: ...

    def is_token_associated(self, account_id: str, token_id: str) -> bool: ...


@dataclass(slots=True)
class PurchaseRequest:
    event_id: str
    buyer_account_id: str
    payment_reference: str
    ticket_token_id: str | None = None
    ticket_price: float | None = None


@dataclass(slots=True)
class ResolvedPurchase:
    event_id: str
    topic_id: str
    ticket_token_id: str
    price: float


class PurchaseService:
    """Verify a buyer's payment on the mirror node, then issue exactly one ticket.

    Order of operations:

    1. resolve token and price (registry defaults for omitted fields)
    2. fetch the payment transaction, waiting out mirror lag per ``backoff``
    3. verify direction and amount against the operator (treasury) account
    4. reserve the payment reference; a second use raises ``DuplicatePayment``
    5. mint, transfer and log through :class:`TicketIssuer`

    A rejected payment is never reserved, so it can be retried once the
    buyer's transaction is fixed. A reservation is released again only when no
    mint was submitted for it or the ledger rejected that mint. A mint whose
    outcome is unknown keeps the reservation until reconciliation settles it.

    A registered event's price is the floor: a lower quoted ``ticket_price``
    is ignored.
    """

    def __init__(
        self,
        *,
        mirror: PurchaseMirror,
        gateway: LedgerGateway,
        guard: IdempotencyGuard,
        events: EventService,
        issuer: TicketIssuer | None = None,
        backoff: Sequence[float] = DEFAULT_BACKOFF_SECONDS,
        aggregate_transfers: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._mirror = mirror
        self._gateway = gateway
        self._guard = guard
        self._events = events
        self._issuer = issuer or TicketIssuer(gateway, mirror, AuditLogEmitter(gateway), guard)
        self._backoff = tuple(backoff)
        self._aggregate = aggregate_transfers
        self._sleep = sleep

    def resolve(self, request: PurchaseRequest) -> ResolvedPurchase:
        token_id = request.ticket_token_id
        price = request.ticket_price
        event_id = request.event_id
        topic_id = request.event_id

        try:
            defaults = self._events.resolve_ticket_defaults(request.event_id)
        except EventNotFound:
            # on-chain events created elsewhere are bought with explicit token and price
            if token_id is None or price is None:
                raise
            defaults = None

        if defaults is not None:
            event_id = defaults.event_id
            topic_id = defaults.topic_id
            if defaults.ticket_token_id and token_id and token_id != defaults.ticket_token_id:
                raise ValidationError(
                    "Ticket token does not belong to this event",
                    details={"ticket_token_id": token_id, "expected": defaults.ticket_token_id},
                )
            token_id = token_id or defaults.ticket_token_id
            if defaults.price is not None and (price is None or price < defaults.price):
                if price is not None:
                    logger.warning(
                        "Purchase for {} quoted {} below the registered price {}; using {}",
                        event_id,
                        price,
                        defaults.price,
                        defaults.price,
                    )
                price = defaults.price

        if not token_id:
            raise TicketsNotCreated(
                "Tickets have not been created for this event",
                details={"event_id": request.event_id},
            )
        if price is None:
            raise ValidationError(
                "Ticket price is not set for this event",
                details={"event_id": request.event_id},
            )
        if price < 0:
            raise ValidationError("Ticket price must be non-negative", details={"ticket_price": price})

        return ResolvedPurchase(
            event_id=event_id, topic_id=topic_id, ticket_token_id=token_id, price=float(price)
        )

    def purchase(self, request: PurchaseRequest) -> TicketMintResult:
        resolved = self.resolve(request)
        # one spelling per payment, so the claim key matches what the mirror looks up
        reference = normalize_transaction_id(request.payment_reference)

        record = fetch_transaction_with_retry(
            self._mirror, reference, backoff=self._backoff, sleep=self._sleep
        )
        try:
            verify_payment(
                record,
                PaymentVerificationRequest(
                    reference=reference,
                    buyer_identity=request.buyer_account_id,
                    recipient_identity=self._gateway.operator_account_id,
                    minimum_price=resolved.price,
                ),
                aggregate=self._aggregate,
            )
        except PaymentRejected as exc:
            logger.warning(
                "Rejected payment {} from {}: {}",
                reference,
                request.buyer_account_id,
                exc.message,
            )
            raise

        claim = self._guard.reserve(
            reference,
            event_id=resolved.event_id,
            ticket_token_id=resolved.ticket_token_id,
            buyer_account_id=request.buyer_account_id,
            price=resolved.price,
        )
        try:
            result = self._issuer.issue(claim, topic_id=resolved.topic_id, price=resolved.price)
        except NotAssociated:
            self._release(claim)
            raise
        except IssuanceError as exc:
            if exc.stage == "mint":
                self._release(claim)
            raise
        except Exception:
            # release is a no-op once a mint has been submitted for the claim
            self._release(claim)
            raise

        logger.info(
            "Issued ticket {}/{} to {} for payment {}",
            result.ticket_token_id,
            result.serial_number,
            request.buyer_account_id,
            reference,
        )
        return result

    def _release(self, claim: ReservedClaim) -> None:
        try:
            self._guard.release(claim.claim_id)
        except Exception:  # noqa: BLE001
            logger.exception("Could not release payment claim {}", claim.claim_id)


__all__ = ["PurchaseMirror", "PurchaseRequest", "PurchaseService", "ResolvedPurchase"]
