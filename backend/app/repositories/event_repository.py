"""Event registry persistence helpers."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.models import Event


class EventRepository:
    """Listing store mapping event ids (or topic ids) to ticket collections."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def add_event(
        self,
        *,
        event_id: str,
        name: str,
        description: str | None,
        event_date: datetime | None,
        location: str | None,
        price: float | None,
        category: str,
        banner_url: str | None,
        vendor_account_id: str | None,
        max_tickets: int | None = None,
        hedera_topic_id: str | None = None,
        hedera_transaction_id: str | None = None,
    ) -> Event:
        record = Event(
            event_id=event_id,
            name=name,
            description=description,
            event_date=event_date,
            location=location,
            price=price,
            category=category,
            banner_url=banner_url,
            vendor_account_id=vendor_account_id,
            max_tickets=max_tickets,
            hedera_topic_id=hedera_topic_id,
            hedera_transaction_id=hedera_transaction_id,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def get_event(self, event_id: str) -> Event | None:
        return self._session.get(Event, event_id)

    def find_event(self, identifier: str) -> Event | None:
        """Match either the listing id or the on-chain topic id."""

        query = select(Event).where(
            or_(Event.event_id == identifier, Event.hedera_topic_id == identifier)
        )
        return self._session.execute(query).scalars().first()

    def list_events(self, *, limit: int, offset: int) -> tuple[Sequence[Event], int]:
        total = self._session.execute(select(func.count()).select_from(Event)).scalar_one()
        query = (
            select(Event)
            .order_by(Event.created_at.desc(), Event.event_id.asc())
            .limit(limit)
            .offset(offset)
        )
        return self._session.execute(query).scalars().all(), int(total)

    def set_ticket_collection(
        self, event: Event, *, ticket_token_id: str, price: float, max_tickets: int
    ) -> Event:
        event.ticket_token_id = ticket_token_id
        event.price = price
        event.max_tickets = max_tickets
        self._session.flush()
        return event


__all__ = ["EventRepository"]
