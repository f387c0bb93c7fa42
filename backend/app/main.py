from __future__ import annotations

from collections.abc import Iterator
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from . import schemas
from .core.config import Settings, get_settings, settings
from .db import SessionLocal, init_db
from .domain.errors import EventNotFound, TicketingError
from .ledger.gateway import LedgerGateway
from .services.audit_log import AuditLogEmitter, AuditLogReader
from .services.checkin_service import CheckInService
from .services.event_service import EventListing, EventService
from .services.idempotency import IdempotencyGuard, KeyedLocks
from .services.purchase_service import PurchaseRequest, PurchaseService
from mirror.client import MirrorNodeClient

app = FastAPI(title="Ticketgate API", version="0.1.0", debug=settings.debug)

# Shared by every request so reservations of the same payment serialize in-process.
_claim_locks = KeyedLocks()


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database connections when the API boots."""

    init_db()


@app.exception_handler(TicketingError)
def _ticketing_error_handler(request: Request, exc: TicketingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields: dict[str, list[str]] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        fields.setdefault(".".join(location) or "body", []).append(error.get("msg", "invalid"))
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Invalid request body",
            "kind": "validation_error",
            "details": {"fields": fields},
        },
    )


@app.exception_handler(Exception)
def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on {} {}", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "kind": "internal_error"},
    )


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness check consumed by infrastructure monitors."""

    return {"status": "ok"}


def _settings() -> Settings:
    return get_settings()


def _session_factory() -> sessionmaker[Session]:
    return SessionLocal


def _mirror_client(settings: Settings = Depends(_settings)) -> Iterator[MirrorNodeClient]:
    """Provide a mirror node client that is closed once the request finishes."""

    client = MirrorNodeClient(settings=settings)
    try:
        yield client
    finally:
        client.close()


def _ledger_gateway(settings: Settings = Depends(_settings)) -> LedgerGateway:
    """Provide the operator's ledger gateway; fails with a configuration error when unset."""

    from .ledger.hedera import get_ledger_gateway

    return get_ledger_gateway(settings)


def _idempotency_guard(
    settings: Settings = Depends(_settings),
    session_factory: sessionmaker[Session] = Depends(_session_factory),
) -> IdempotencyGuard:
    return IdempotencyGuard(session_factory, scope=settings.idempotency_scope, locks=_claim_locks)


def _event_registry(
    session_factory: sessionmaker[Session] = Depends(_session_factory),
) -> EventService:
    """Registry reads that need no ledger access."""

    return EventService(session_factory)


def _event_deployer(
    session_factory: sessionmaker[Session] = Depends(_session_factory),
    gateway: LedgerGateway = Depends(_ledger_gateway),
) -> EventService:
    return EventService(session_factory, gateway=gateway)


def _purchase_service(
    settings: Settings = Depends(_settings),
    mirror: MirrorNodeClient = Depends(_mirror_client),
    gateway: LedgerGateway = Depends(_ledger_gateway),
    guard: IdempotencyGuard = Depends(_idempotency_guard),
    events: EventService = Depends(_event_registry),
) -> PurchaseService:
    return PurchaseService(
        mirror=mirror,
        gateway=gateway,
        guard=guard,
        events=events,
        backoff=settings.mirror_retry_backoff_schedule,
        aggregate_transfers=settings.payment_aggregate_transfers,
    )


def _checkin_service(
    session_factory: sessionmaker[Session] = Depends(_session_factory),
    mirror: MirrorNodeClient = Depends(_mirror_client),
    gateway: LedgerGateway = Depends(_ledger_gateway),
) -> CheckInService:
    return CheckInService(session_factory, mirror=mirror, audit=AuditLogEmitter(gateway))


def _audit_reader(mirror: MirrorNodeClient = Depends(_mirror_client)) -> AuditLogReader:
    return AuditLogReader(mirror)


@app.post("/purchase", status_code=201, tags=["tickets"])
def purchase_ticket(
    payload: schemas.PurchaseRequest,
    service: PurchaseService = Depends(_purchase_service),
) -> dict[str, Any]:
    """Verify the buyer's payment on the mirror node and issue one NFT ticket for it."""

    result = service.purchase(
        PurchaseRequest(
            event_id=payload.event_id,
            buyer_account_id=payload.buyer_account_id,
            payment_reference=payload.payment_reference,
            ticket_token_id=payload.ticket_token_id,
            ticket_price=payload.ticket_price,
        )
    )
    return schemas.envelope(
        schemas.PurchaseData(
            ticket_serial_number=result.serial_number,
            transaction_id=result.transaction_reference,
            ticket_token_id=result.ticket_token_id,
            transfer_transaction_id=result.transfer_transaction_id,
            audit_transaction_id=result.audit_transaction_id,
        )
    )


@app.post("/checkin", status_code=201, tags=["tickets"])
def check_in_ticket(
    payload: schemas.CheckInRequest,
    service: CheckInService = Depends(_checkin_service),
) -> dict[str, Any]:
    """Check a ticket in after confirming its current owner on the mirror node."""

    result = service.check_in(
        payload.event_id,
        payload.token_id,
        payload.serial_number,
        owner_account_id=payload.owner_account_id,
    )
    return schemas.envelope(
        schemas.CheckInData(
            transaction_id=result.transaction_id,
            event_id=result.event_id,
            token_id=result.token_id,
            serial_number=result.serial_number,
            owner=result.owner,
        )
    )


@app.get("/events", tags=["events"])
def list_events(
    *,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    service: EventService = Depends(_event_registry),
) -> dict[str, Any]:
    """Return registered events, newest first."""

    result = service.list_events(limit=limit, offset=offset)
    return schemas.envelope(
        schemas.EventList(
            total=result.total,
            items=[schemas.Event.model_validate(event) for event in result.events],
        )
    )


@app.post("/events", status_code=201, tags=["events"])
def create_event(
    payload: schemas.EventCreateRequest,
    service: EventService = Depends(_event_registry),
) -> dict[str, Any]:
    """Register an event listing without deploying anything on the ledger."""

    event = service.create_listing(
        EventListing(
            name=payload.name,
            description=payload.description,
            event_date=payload.date,
            location=payload.location,
            price=payload.price,
            category=payload.category,
            banner_url=payload.banner_url,
            vendor_account_id=payload.vendor_account_id,
            hedera_topic_id=payload.hedera_topic_id,
            hedera_transaction_id=payload.hedera_transaction_id,
        )
    )
    return schemas.envelope(schemas.Event.model_validate(event))


@app.post("/events/deploy", status_code=201, tags=["events"])
def deploy_event(
    payload: schemas.EventDeployRequest,
    service: EventService = Depends(_event_deployer),
) -> dict[str, Any]:
    """Create the event's audit topic on the ledger and register the listing."""

    deployed = service.deploy_event(
        EventListing(
            name=payload.name,
            description=payload.description,
            event_date=payload.date,
            location=payload.location,
            price=payload.ticket_price,
            category=payload.category or "General",
            banner_url=payload.banner_url,
            vendor_account_id=payload.vendor_account_id,
        ),
        max_tickets=payload.max_tickets,
        event_admin=payload.event_admin,
    )
    return schemas.envelope(
        schemas.DeployedEventData(
            event=schemas.Event.model_validate(deployed.event),
            topic_id=deployed.topic_id,
            transaction_id=deployed.transaction_id,
            audit_transaction_id=deployed.audit_transaction_id,
        )
    )


@app.post("/events/tickets", status_code=201, tags=["events"])
def create_tickets(
    payload: schemas.TicketsCreateRequest,
    service: EventService = Depends(_event_deployer),
) -> dict[str, Any]:
    """Create the NFT ticket collection for a deployed event."""

    created = service.create_tickets(
        payload.event_id, max_tickets=payload.max_tickets, ticket_price=payload.ticket_price
    )
    return schemas.envelope(
        schemas.TicketsData(
            event_id=created.event_id,
            ticket_token_id=created.ticket_token_id,
            transaction_id=created.transaction_id,
            audit_transaction_id=created.audit_transaction_id,
        )
    )


@app.get("/events/{event_id}/audit-log", tags=["events"])
def get_audit_log(
    event_id: str,
    *,
    kind: Annotated[str | None, Query(description="Only entries of this type, e.g. TICKET_PURCHASED")] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
    registry: EventService = Depends(_event_registry),
    reader: AuditLogReader = Depends(_audit_reader),
) -> dict[str, Any]:
    """Re-read an event's audit trail from its ledger topic."""

    try:
        topic_id = registry.get_event(event_id).hedera_topic_id or event_id
    except EventNotFound:
        # unregistered on-chain events are addressed by topic id directly
        topic_id = event_id
    entries = reader.list_entries(topic_id, kind=kind, limit=limit)
    return schemas.envelope(
        [schemas.AuditLogEntry.model_validate(entry).model_dump(mode="json", by_alias=True) for entry in entries]
    )
