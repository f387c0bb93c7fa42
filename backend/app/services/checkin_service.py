"""Ticket check-in: ``Issued -> CheckedIn``, once per serial."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.db import session_scope
from app.domain import AuditKind, NftOwnership
from app.domain.errors import AlreadyCheckedIn, LedgerError, OwnershipMismatch, ValidationError
from app.repositories import CheckInRepository, EventRepository

from .audit_log import AuditLogEmitter, epoch_millis, utcnow


class OwnerSource(Protocol):
    def get_nft_owner(self, token_id: str, serial_number: int) -> NftOwnership: ...


@dataclass(frozen=True, slots=True)
class CheckInResult:
    transaction_id: str
    event_id: str
    token_id: str
    serial_number: int
    owner: str
    checked_in_at: datetime


class CheckInService:
    """Verify current NFT ownership on the mirror and log the check-in to the event topic.

    The ``(token, serial)`` row is inserted before the topic message is
    submitted so two concurrent check-ins cannot both log; if the submission
    fails the row is removed and the ticket remains ``Issued``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        mirror: OwnerSource,
        audit: AuditLogEmitter,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._mirror = mirror
        self._audit = audit
        self._clock = clock

    def _resolve_topic(self, event_id: str, token_id: str) -> str:
        with session_scope(self._session_factory) as session:
            event = EventRepository(session).find_event(event_id)
        if event is None:
            return event_id
        if event.ticket_token_id and event.ticket_token_id != token_id:
            raise ValidationError(
                "Ticket token does not belong to this event",
                details={"token_id": token_id, "expected": event.ticket_token_id},
            )
        return event.hedera_topic_id or event_id

    def check_in(
        self,
        event_id: str,
        token_id: str,
        serial_number: int,
        owner_account_id: str | None = None,
    ) -> CheckInResult:
        topic_id = self._resolve_topic(event_id, token_id)

        current_owner = self._mirror.get_nft_owner(token_id, serial_number).owner_account_id
        if owner_account_id and owner_account_id != current_owner:
            logger.warning(
                "Check-in refused for {}/{}: provided owner {} but mirror reports {}",
                token_id,
                serial_number,
                owner_account_id,
                current_owner,
            )
            raise OwnershipMismatch(
                f"Ownership mismatch: provided {owner_account_id} but current owner is {current_owner}",
                details={"provided": owner_account_id, "current_owner": current_owner},
            )

        checked_in_at = self._clock()
        try:
            with session_scope(self._session_factory) as session:
                repository = CheckInRepository(session)
                existing = repository.get_check_in(token_id, serial_number)
                if existing is not None:
                    raise AlreadyCheckedIn(
                        f"Ticket {token_id}/{serial_number} has already been checked in",
                        details={"checked_in_at": existing.checked_in_at.isoformat()},
                    )
                record = repository.insert_check_in(
                    event_id=event_id,
                    ticket_token_id=token_id,
                    serial_number=serial_number,
                    owner_account_id=current_owner,
                )
                check_in_id = record.check_in_id
        except IntegrityError as exc:
            raise AlreadyCheckedIn(
                f"Ticket {token_id}/{serial_number} has already been checked in"
            ) from exc

        payload = {
            "eventId": topic_id,
            "ticketTokenId": token_id,
            "serialNumber": serial_number,
            "owner": current_owner,
            "checkedInAt": epoch_millis(checked_in_at),
        }
        try:
            emitted = self._audit.emit(topic_id, AuditKind.TICKET_CHECKED_IN, payload)
        except LedgerError:
            logger.error("Check-in of {}/{} was not logged; reverting", token_id, serial_number)
            with session_scope(self._session_factory) as session:
                CheckInRepository(session).delete_check_in(check_in_id)
            raise

        with session_scope(self._session_factory) as session:
            CheckInRepository(session).set_audit_transaction(check_in_id, emitted.transaction_id)

        logger.info("Checked in ticket {}/{} for {}", token_id, serial_number, current_owner)
        return CheckInResult(
            transaction_id=emitted.transaction_id,
            event_id=event_id,
            token_id=token_id,
            serial_number=serial_number,
            owner=current_owner,
            checked_in_at=checked_in_at,
        )


__all__ = ["CheckInResult", "CheckInService", "OwnerSource"]
