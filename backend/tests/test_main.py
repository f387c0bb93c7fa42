from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.domain import AuditLogEntry, TicketMintResult
from app.domain.errors import (
    DuplicatePayment,
    EventNotFound,
    InsufficientAmount,
    IssuanceError,
    OwnershipMismatch,
    TransactionNotVisible,
)
from app.main import (
    _audit_reader,
    _checkin_service,
    _event_deployer,
    _event_registry,
    _purchase_service,
    app,
)
from app.models import Event
from app.services.checkin_service import CheckInResult
from app.services.event_service import CreatedTickets, DeployedEvent, EventQueryResult

PURCHASE_BODY = {
    "eventId": "0.0.9000",
    "buyerAccountId": "0.0.100",
    "paymentReference": "0.0.100@1700000000.000000001",
    "ticketTokenId": "0.0.7000",
    "ticketPrice": 50,
}


@pytest.fixture
def client():
    """Test client that cleans up dependency overrides after each test."""
    yield TestClient(app)
    app.dependency_overrides.clear()


def _event(**overrides) -> Event:
    values = {
        "event_id": "evt-1",
        "name": "Launch party",
        "description": "An evening of tickets",
        "event_date": datetime(2026, 12, 1, 19, 0, tzinfo=timezone.utc),
        "location": "Lisbon",
        "price": 50,
        "category": "General",
        "hedera_topic_id": "0.0.9000",
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return Event(**values)


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_purchase_returns_ticket(client):
    mock_service = MagicMock()
    mock_service.purchase.return_value = TicketMintResult(
        serial_number=1,
        transaction_reference="0.0.200@1700000001.000000001",
        ticket_token_id="0.0.7000",
        transfer_transaction_id="0.0.200@1700000001.000000002",
        audit_transaction_id="0.0.200@1700000001.000000003",
    )
    app.dependency_overrides[_purchase_service] = lambda: mock_service

    response = client.post("/purchase", json=PURCHASE_BODY)

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["ticketSerialNumber"] == 1
    assert body["data"]["transactionId"] == "0.0.200@1700000001.000000001"
    assert body["data"]["ticketTokenId"] == "0.0.7000"
    request = mock_service.purchase.call_args.args[0]
    assert request.payment_reference == PURCHASE_BODY["paymentReference"]
    assert request.ticket_price == 50


def test_purchase_without_optional_fields_is_accepted(client):
    mock_service = MagicMock()
    mock_service.purchase.side_effect = EventNotFound("Event evt-x not found")
    app.dependency_overrides[_purchase_service] = lambda: mock_service

    body = {key: PURCHASE_BODY[key] for key in ("eventId", "buyerAccountId", "paymentReference")}
    response = client.post("/purchase", json=body)

    assert response.status_code == 400
    assert response.json()["kind"] == "event_not_found"
    request = mock_service.purchase.call_args.args[0]
    assert request.ticket_token_id is None
    assert request.ticket_price is None


def test_purchase_validation_errors_have_field_details(client):
    app.dependency_overrides[_purchase_service] = lambda: MagicMock()

    response = client.post("/purchase", json={"eventId": "0.0.9000", "ticketPrice": -1})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["kind"] == "validation_error"
    assert {"buyerAccountId", "paymentReference", "ticketPrice"} <= set(body["details"]["fields"])


@pytest.mark.parametrize(
    ("error", "status", "kind"),
    [
        (InsufficientAmount("Payment amount below required price"), 400, "insufficient_amount"),
        (DuplicatePayment("Payment reference has already been used"), 409, "duplicate_payment"),
        (TransactionNotVisible("not indexed yet"), 502, "transaction_not_visible"),
    ],
)
def test_purchase_errors_use_the_envelope(client, error, status, kind):
    mock_service = MagicMock()
    mock_service.purchase.side_effect = error
    app.dependency_overrides[_purchase_service] = lambda: mock_service

    response = client.post("/purchase", json=PURCHASE_BODY)

    assert response.status_code == status
    body = response.json()
    assert body["success"] is False
    assert body["kind"] == kind
    assert body["error"] == error.message


def test_mirror_errors_are_marked_retryable(client):
    mock_service = MagicMock()
    mock_service.purchase.side_effect = TransactionNotVisible("not indexed yet")
    app.dependency_overrides[_purchase_service] = lambda: mock_service

    assert client.post("/purchase", json=PURCHASE_BODY).json()["retryable"] is True


def test_issuance_error_reports_partial_result(client):
    mock_service = MagicMock()
    mock_service.purchase.side_effect = IssuanceError(
        "transfer failed", stage="transfer", partial={"serial_number": 4}
    )
    app.dependency_overrides[_purchase_service] = lambda: mock_service

    response = client.post("/purchase", json=PURCHASE_BODY)

    assert response.status_code == 500
    assert response.json()["stage"] == "transfer"
    assert response.json()["partial"] == {"serial_number": 4}


def test_unexpected_errors_hide_details():
    mock_service = MagicMock()
    mock_service.purchase.side_effect = RuntimeError("database password is hunter2")
    app.dependency_overrides[_purchase_service] = lambda: mock_service
    try:
        response = TestClient(app, raise_server_exceptions=False).post("/purchase", json=PURCHASE_BODY)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert "hunter2" not in response.text


def test_checkin_returns_transaction(client):
    mock_service = MagicMock()
    mock_service.check_in.return_value = CheckInResult(
        transaction_id="0.0.200@1700000002.000000001",
        event_id="0.0.9000",
        token_id="0.0.7000",
        serial_number=1,
        owner="0.0.100",
        checked_in_at=datetime(2026, 12, 1, tzinfo=timezone.utc),
    )
    app.dependency_overrides[_checkin_service] = lambda: mock_service

    response = client.post(
        "/checkin",
        json={"eventId": "0.0.9000", "tokenId": "0.0.7000", "serialNumber": 1, "ownerAccountId": "0.0.100"},
    )

    assert response.status_code == 201
    assert response.json()["data"] == {
        "transactionId": "0.0.200@1700000002.000000001",
        "eventId": "0.0.9000",
        "tokenId": "0.0.7000",
        "serialNumber": 1,
        "owner": "0.0.100",
    }
    mock_service.check_in.assert_called_once_with("0.0.9000", "0.0.7000", 1, owner_account_id="0.0.100")


def test_checkin_owner_mismatch(client):
    mock_service = MagicMock()
    mock_service.check_in.side_effect = OwnershipMismatch("Ownership mismatch")
    app.dependency_overrides[_checkin_service] = lambda: mock_service

    response = client.post("/checkin", json={"eventId": "0.0.9000", "tokenId": "0.0.7000", "serialNumber": 1})

    assert response.status_code == 400
    assert response.json()["kind"] == "ownership_mismatch"


def test_checkin_rejects_non_integer_serial(client):
    app.dependency_overrides[_checkin_service] = lambda: MagicMock()

    response = client.post("/checkin", json={"eventId": "0.0.9000", "tokenId": "0.0.7000", "serialNumber": "1"})

    assert response.status_code == 400


def test_checkin_rejects_serial_zero(client):
    mock_service = MagicMock()
    app.dependency_overrides[_checkin_service] = lambda: mock_service

    response = client.post("/checkin", json={"eventId": "0.0.9000", "tokenId": "0.0.7000", "serialNumber": 0})

    assert response.status_code == 400
    assert "serialNumber" in response.json()["details"]["fields"]
    mock_service.check_in.assert_not_called()


def test_list_events(client):
    mock_service = MagicMock()
    mock_service.list_events.return_value = EventQueryResult(total=1, events=[_event()])
    app.dependency_overrides[_event_registry] = lambda: mock_service

    response = client.get("/events?limit=10")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] == 1
    item = data["items"][0]
    assert item["id"] == "evt-1"
    assert item["hederaTopicId"] == "0.0.9000"
    assert item["price"] == 50.0
    mock_service.list_events.assert_called_once_with(limit=10, offset=0)


def test_create_event_accepts_epoch_millis(client):
    mock_service = MagicMock()
    mock_service.create_listing.return_value = _event()
    app.dependency_overrides[_event_registry] = lambda: mock_service

    response = client.post(
        "/events",
        json={
            "name": "Launch party",
            "description": "An evening of tickets",
            "date": 1796151600000,
            "location": "Lisbon",
            "price": 50,
        },
    )

    assert response.status_code == 201
    listing = mock_service.create_listing.call_args.args[0]
    assert listing.event_date == datetime.fromtimestamp(1796151600, tz=timezone.utc)
    assert listing.category == "General"


def test_deploy_event(client):
    mock_service = MagicMock()
    mock_service.deploy_event.return_value = DeployedEvent(
        event=_event(),
        topic_id="0.0.9000",
        transaction_id="0.0.200@1700000003.000000001",
        audit_transaction_id="0.0.200@1700000003.000000002",
    )
    app.dependency_overrides[_event_deployer] = lambda: mock_service

    response = client.post(
        "/events/deploy",
        json={
            "name": "Launch party",
            "description": "An evening of tickets",
            "date": "2026-12-01T19:00:00Z",
            "location": "Lisbon",
            "ticketPrice": 50,
            "maxTickets": 100,
        },
    )

    assert response.status_code == 201
    assert response.json()["data"]["topicId"] == "0.0.9000"
    assert mock_service.deploy_event.call_args.kwargs["max_tickets"] == 100


def test_create_tickets(client):
    mock_service = MagicMock()
    mock_service.create_tickets.return_value = CreatedTickets(
        event_id="0.0.9000",
        ticket_token_id="0.0.7000",
        transaction_id="0.0.200@1700000004.000000001",
        audit_transaction_id="0.0.200@1700000004.000000002",
    )
    app.dependency_overrides[_event_deployer] = lambda: mock_service

    response = client.post("/events/tickets", json={"eventId": "0.0.9000", "maxTickets": 10, "ticketPrice": 5})

    assert response.status_code == 201
    assert response.json()["data"]["ticketTokenId"] == "0.0.7000"
    mock_service.create_tickets.assert_called_once_with("0.0.9000", max_tickets=10, ticket_price=5)


def test_audit_log_for_registered_event(client):
    registry = MagicMock()
    registry.get_event.return_value = _event()
    reader = MagicMock()
    reader.list_entries.return_value = [
        AuditLogEntry(
            event_topic="0.0.9000",
            payload_kind="TICKET_PURCHASED",
            payload={"ticketSerialNumber": 1},
            logged_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            sequence_number=2,
        )
    ]
    app.dependency_overrides[_event_registry] = lambda: registry
    app.dependency_overrides[_audit_reader] = lambda: reader

    response = client.get("/events/evt-1/audit-log?kind=TICKET_PURCHASED")

    assert response.status_code == 200
    entry = response.json()["data"][0]
    assert entry["payloadKind"] == "TICKET_PURCHASED"
    assert entry["sequenceNumber"] == 2
    reader.list_entries.assert_called_once_with("0.0.9000", kind="TICKET_PURCHASED", limit=100)


def test_audit_log_for_unregistered_topic(client):
    registry = MagicMock()
    registry.get_event.side_effect = EventNotFound("missing")
    reader = MagicMock()
    reader.list_entries.return_value = []
    app.dependency_overrides[_event_registry] = lambda: registry
    app.dependency_overrides[_audit_reader] = lambda: reader

    response = client.get("/events/0.0.9123/audit-log")

    assert response.status_code == 200
    assert response.json() == {"success": True, "data": []}
    reader.list_entries.assert_called_once_with("0.0.9123", kind=None, limit=100)
