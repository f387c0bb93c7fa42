"""Vendor-facing event registry flows: listings, on-chain deployment and ticket collections."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Sequence

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.db import session_scope
from app.domain import AuditKind, TicketDefaults
from app.domain.errors import ConfigurationError, EventNotFound, LedgerError
from app.ledger.gateway import LedgerGateway
from app.models import Event
from app.repositories import EventRepository

from .audit_log import AuditLogEmitter, epoch_millis, utcnow


@dataclass(slots=True)
class EventListing:
    name: str
    description: str | None = None
    event_date: datetime | None = None
    location: str | None = None
    price: float | None = None
    category: str = "General"
    banner_url: str | None = None
    vendor_account_id: str | None = None
    hedera_topic_id: str | None = None
    hedera_transaction_id: str | None = None


@dataclass(slots=True)
class EventQueryResult:
    total: int
    events: Sequence[Event]


@dataclass(slots=True)
class DeployedEvent:
    event: Event
    topic_id: str
    transaction_id: str
    audit_transaction_id: str


@dataclass(slots=True)
class CreatedTickets:
    event_id: str
    ticket_token_id: str
    transaction_id: str
    audit_transaction_id: str


def new_event_id() -> str:
    return uuid.uuid4().hex[:16]


def ticket_collection_names(topic_id: str) -> tuple[str, str]:
    return f"Event Ticket - {topic_id}", f"ETIX-{topic_id[-4:]}"


class EventService:
    """Registry facade used by the vendor endpoints and by purchase defaults.

    Read paths only need a session factory. Deployment and ticket creation
    submit ledger transactions and therefore require ``gateway``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        gateway: LedgerGateway | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._clock = clock
        self._audit = AuditLogEmitter(gateway, clock=clock) if gateway is not None else None

    def _require_gateway(self) -> tuple[LedgerGateway, AuditLogEmitter]:
        if self._gateway is None or self._audit is None:
            raise ConfigurationError("Ledger gateway is not configured for event deployment")
        return self._gateway, self._audit

    def create_listing(self, listing: EventListing) -> Event:
        with session_scope(self._session_factory) as session:
            event = EventRepository(session).add_event(
                event_id=new_event_id(),
                name=listing.name,
                description=listing.description,
                event_date=listing.event_date,
                location=listing.location,
                price=listing.price,
                category=listing.category or "General",
                banner_url=listing.banner_url,
                vendor_account_id=listing.vendor_account_id,
                hedera_topic_id=listing.hedera_topic_id,
                hedera_transaction_id=listing.hedera_transaction_id,
            )
        logger.info("Created event listing {} ({})", event.event_id, event.name)
        return event

    def list_events(self, *, limit: int = 50, offset: int = 0) -> EventQueryResult:
        with session_scope(self._session_factory) as session:
            events, total = EventRepository(session).list_events(limit=limit, offset=offset)
            return EventQueryResult(total=total, events=list(events))

    def get_event(self, identifier: str) -> Event:
        with session_scope(self._session_factory) as session:
            event = EventRepository(session).find_event(identifier)
        if event is None:
            raise EventNotFound(f"Event {identifier} not found", details={"event_id": identifier})
        return event

    def deploy_event(
        self,
        listing: EventListing,
        *,
        max_tickets: int,
        event_admin: str | None = None,
    ) -> DeployedEvent:
        """Create the event's audit topic, log ``EVENT_CREATED`` and store the listing.

        The topic id becomes the event's on-chain identifier. A failure after
        the topic exists is not rolled back on the ledger; the listing is only
        persisted once the creation message has been submitted.
        """

        gateway, audit = self._require_gateway()
        topic = gateway.create_topic(f"Event: {listing.name}")
        topic_id = topic.entity_id
        if not topic_id:
            raise LedgerError("Topic creation did not return a topic id")

        created_at = self._clock()
        metadata: dict[str, Any] = {
            "eventId": topic_id,
            "name": listing.name,
            "description": listing.description,
            "date": epoch_millis(listing.event_date) if listing.event_date else None,
            "location": listing.location,
            "ticketPrice": listing.price,
            "maxTickets": max_tickets,
            "eventAdmin": event_admin or gateway.operator_account_id,
            "eventStatus": "active",
            "createdAt": epoch_millis(created_at),
        }
        emitted = audit.emit(topic_id, AuditKind.EVENT_CREATED, metadata)

        with session_scope(self._session_factory) as session:
            event = EventRepository(session).add_event(
                event_id=new_event_id(),
                name=listing.name,
                description=listing.description,
                event_date=listing.event_date,
                location=listing.location,
                price=listing.price,
                category=listing.category or "General",
                banner_url=listing.banner_url,
                vendor_account_id=listing.vendor_account_id,
                max_tickets=max_tickets,
                hedera_topic_id=topic_id,
                hedera_transaction_id=topic.transaction_id,
            )
        logger.info("Deployed event {} on topic {}", event.event_id, topic_id)
        return DeployedEvent(
            event=event,
            topic_id=topic_id,
            transaction_id=topic.transaction_id,
            audit_transaction_id=emitted.transaction_id,
        )

    def create_tickets(self, event_id: str, *, max_tickets: int, ticket_price: float) -> CreatedTickets:
        """Create the NFT collection for an event and point the registry entry at it.

        ``event_id`` is the topic id, or a listing id whose listing was deployed.
        """

        gateway, audit = self._require_gateway()
        with session_scope(self._session_factory) as session:
            event = EventRepository(session).find_event(event_id)
            topic_id = event.hedera_topic_id if event is not None and event.hedera_topic_id else event_id
            if event is not None and event.ticket_token_id:
                logger.warning(
                    "Event {} already has ticket collection {}; creating a new one",
                    event.event_id,
                    event.ticket_token_id,
                )

        name, symbol = ticket_collection_names(topic_id)
        token = gateway.create_nft_collection(name=name, symbol=symbol, max_supply=max_tickets)
        token_id = token.entity_id
        if not token_id:
            raise LedgerError("Token creation did not return a token id")

        emitted = audit.emit(
            topic_id,
            AuditKind.TICKETS_CREATED,
            {
                "eventId": topic_id,
                "ticketTokenId": token_id,
                "maxTickets": max_tickets,
                "ticketPrice": ticket_price,
            },
        )

        with session_scope(self._session_factory) as session:
            repository = EventRepository(session)
            event = repository.find_event(event_id)
            if event is None:
                logger.warning(
                    "Ticket collection {} created for unregistered event {}", token_id, event_id
                )
            else:
                repository.set_ticket_collection(
                    event, ticket_token_id=token_id, price=ticket_price, max_tickets=max_tickets
                )

        logger.info("Created ticket collection {} for event {}", token_id, topic_id)
        return CreatedTickets(
            event_id=topic_id,
            ticket_token_id=token_id,
            transaction_id=token.transaction_id,
            audit_transaction_id=emitted.transaction_id,
        )

    def resolve_ticket_defaults(self, event_id: str) -> TicketDefaults:
        event = self.get_event(event_id)
        price = float(event.price) if event.price is not None else None
        return TicketDefaults(
            event_id=event.event_id,
            topic_id=event.hedera_topic_id or event.event_id,
            ticket_token_id=event.ticket_token_id,
            price=price,
        )


__all__ = [
    "CreatedTickets",
    "DeployedEvent",
    "EventListing",
    "EventQueryResult",
    "EventService",
    "new_event_id",
    "ticket_collection_names",
]
