from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _parse_event_date(value: Any) -> datetime | None:
    """Accept ISO strings or epoch milliseconds, as the vendor UI sends either."""

    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("date must be an ISO string or a timestamp in milliseconds")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError("date must be an ISO 8601 string") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError("date must be an ISO string or a timestamp in milliseconds")


class PurchaseRequest(CamelModel):
    event_id: str = Field(min_length=3)
    buyer_account_id: str = Field(min_length=3)
    payment_reference: str = Field(min_length=3)
    ticket_token_id: str | None = Field(default=None, min_length=3)
    ticket_price: float | None = Field(default=None, ge=0)


class PurchaseData(CamelModel):
    ticket_serial_number: int
    transaction_id: str
    ticket_token_id: str
    transfer_transaction_id: str | None = None
    audit_transaction_id: str | None = None


class CheckInRequest(CamelModel):
    event_id: str = Field(min_length=3)
    token_id: str = Field(min_length=3)
    serial_number: int = Field(gt=0, strict=True)
    owner_account_id: str | None = None


class CheckInData(CamelModel):
    transaction_id: str
    event_id: str
    token_id: str
    serial_number: int
    owner: str


class EventCreateRequest(CamelModel):
    name: str = Field(min_length=3)
    description: str = Field(min_length=10)
    date: datetime
    location: str = Field(min_length=2)
    price: float = Field(ge=0)
    category: str = "General"
    banner_url: str | None = None
    vendor_account_id: str | None = None
    hedera_topic_id: str | None = None
    hedera_transaction_id: str | None = None

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> datetime | None:
        return _parse_event_date(value)


class EventDeployRequest(CamelModel):
    name: str = Field(min_length=3)
    description: str = Field(min_length=10)
    date: datetime
    location: str = Field(min_length=2)
    ticket_price: float = Field(ge=0)
    max_tickets: int = Field(gt=0)
    event_admin: str | None = None
    category: str | None = None
    banner_url: str | None = None
    vendor_account_id: str | None = None

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> datetime | None:
        return _parse_event_date(value)


class TicketsCreateRequest(CamelModel):
    event_id: str = Field(min_length=3)
    max_tickets: int = Field(gt=0)
    ticket_price: float = Field(ge=0)


class Event(CamelModel):
    id: str = Field(validation_alias="event_id")
    name: str
    description: str | None = None
    date: datetime | None = Field(default=None, validation_alias="event_date")
    location: str | None = None
    price: float | None = None
    category: str
    banner_url: str | None = None
    vendor_account_id: str | None = None
    max_tickets: int | None = None
    hedera_topic_id: str | None = None
    hedera_transaction_id: str | None = None
    ticket_token_id: str | None = None
    created_at: datetime

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        if value is None:
            return None
        return float(value)


class EventList(CamelModel):
    total: int
    items: list[Event]


class DeployedEventData(CamelModel):
    event: Event
    topic_id: str
    transaction_id: str
    audit_transaction_id: str


class TicketsData(CamelModel):
    event_id: str
    ticket_token_id: str
    transaction_id: str
    audit_transaction_id: str


class AuditLogEntry(CamelModel):
    event_topic: str
    payload_kind: str
    payload: dict[str, Any]
    logged_at: datetime
    sequence_number: int | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def envelope(data: Any) -> dict[str, Any]:
    """Wrap a response model in the ``{success, data}`` envelope using camelCase keys."""

    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)
    return {"success": True, "data": data}
