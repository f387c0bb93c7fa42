"""Ticket check-in persistence helpers."""

from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.models import TicketCheckIn


class CheckInRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_check_in(self, ticket_token_id: str, serial_number: int) -> TicketCheckIn | None:
        query = select(TicketCheckIn).where(
            TicketCheckIn.ticket_token_id == ticket_token_id,
            TicketCheckIn.serial_number == serial_number,
        )
        return self._session.execute(query).scalar_one_or_none()

    def insert_check_in(
        self,
        *,
        event_id: str,
        ticket_token_id: str,
        serial_number: int,
        owner_account_id: str,
    ) -> TicketCheckIn:
        record = TicketCheckIn(
            event_id=event_id,
            ticket_token_id=ticket_token_id,
            serial_number=serial_number,
            owner_account_id=owner_account_id,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def set_audit_transaction(self, check_in_id: int, transaction_id: str) -> None:
        record = self._session.get(TicketCheckIn, check_in_id)
        if record is not None:
            record.audit_transaction_id = transaction_id

    def delete_check_in(self, check_in_id: int) -> None:
        self._session.execute(
            delete(TicketCheckIn).where(TicketCheckIn.check_in_id == check_in_id)
        )


__all__ = ["CheckInRepository"]
