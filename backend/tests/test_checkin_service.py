from __future__ import annotations

import json

import pytest

from app.db import session_scope
from app.domain.errors import AlreadyCheckedIn, LedgerError, OwnershipMismatch, ValidationError
from app.models import TicketCheckIn
from app.repositories import EventRepository
from app.services.audit_log import AuditLogEmitter
from app.services.checkin_service import CheckInService

from conftest import BUYER_ACCOUNT

TOKEN = "0.0.7000"
TOPIC = "0.0.9000"


@pytest.fixture
def service(session_factory, ledger, mirror) -> CheckInService:
    return CheckInService(session_factory, mirror=mirror, audit=AuditLogEmitter(ledger))


@pytest.fixture
def issued_ticket(ledger) -> int:
    ledger.owners[(TOKEN, 1)] = BUYER_ACCOUNT
    return 1


def test_owner_mismatch_writes_nothing(service, ledger, session_factory, issued_ticket):
    with pytest.raises(OwnershipMismatch) as excinfo:
        service.check_in(TOPIC, TOKEN, issued_ticket, owner_account_id="0.0.555")

    assert excinfo.value.status_code == 400
    assert excinfo.value.details["current_owner"] == BUYER_ACCOUNT
    assert ledger.messages == []
    with session_scope(session_factory) as session:
        assert session.query(TicketCheckIn).count() == 0


def test_check_in_logs_to_the_event_topic(service, ledger, issued_ticket):
    result = service.check_in(TOPIC, TOKEN, issued_ticket, owner_account_id=BUYER_ACCOUNT)

    assert result.owner == BUYER_ACCOUNT
    topic, message = ledger.messages[0]
    assert topic == TOPIC
    decoded = json.loads(message)
    assert decoded["type"] == "TICKET_CHECKED_IN"
    assert decoded["data"]["serialNumber"] == issued_ticket
    assert decoded["data"]["owner"] == BUYER_ACCOUNT


def test_owner_is_optional(service, issued_ticket):
    result = service.check_in(TOPIC, TOKEN, issued_ticket)

    assert result.owner == BUYER_ACCOUNT


def test_second_check_in_is_rejected(service, ledger, issued_ticket):
    service.check_in(TOPIC, TOKEN, issued_ticket)

    with pytest.raises(AlreadyCheckedIn) as excinfo:
        service.check_in(TOPIC, TOKEN, issued_ticket)

    assert excinfo.value.status_code == 409
    assert len(ledger.messages) == 1


def test_failed_log_leaves_ticket_issued(service, ledger, session_factory, issued_ticket):
    ledger.fail_on.add("submit_topic_message")
    with pytest.raises(LedgerError):
        service.check_in(TOPIC, TOKEN, issued_ticket)

    with session_scope(session_factory) as session:
        assert session.query(TicketCheckIn).count() == 0

    ledger.fail_on.clear()
    assert service.check_in(TOPIC, TOKEN, issued_ticket).serial_number == issued_ticket


def test_registered_event_resolves_topic_and_checks_token(service, ledger, session_factory, issued_ticket):
    with session_scope(session_factory) as session:
        repository = EventRepository(session)
        event = repository.add_event(
            event_id="evt-1",
            name="Launch party",
            description=None,
            event_date=None,
            location=None,
            price=50,
            category="General",
            banner_url=None,
            vendor_account_id=None,
            hedera_topic_id=TOPIC,
        )
        repository.set_ticket_collection(event, ticket_token_id=TOKEN, price=50, max_tickets=10)

    service.check_in("evt-1", TOKEN, issued_ticket)
    assert ledger.messages[0][0] == TOPIC

    with pytest.raises(ValidationError):
        service.check_in("evt-1", "0.0.7999", issued_ticket)
