"""Append-only audit trail on per-event ledger topics.

Each entry is one topic message encoded as
``{"type": <kind>, "data": <payload>, "timestamp": <epoch ms>}``. Ordering is
whatever consensus order the ledger assigns; the emitter submits exactly one
message per call and never batches or reorders.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Protocol

from loguru import logger

from app.domain import AuditKind, AuditLogEntry, EmittedAuditEntry, TopicMessage
from app.ledger.gateway import LedgerGateway


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def epoch_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return epoch_millis(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def encode_audit_message(kind: str, payload: dict[str, Any], logged_at: datetime) -> str:
    return json.dumps(
        {"type": kind, "data": payload, "timestamp": epoch_millis(logged_at)},
        separators=(",", ":"),
        default=_json_default,
    )


def _parse_consensus_timestamp(value: str | None) -> datetime | None:
    # mirror form: "<seconds>.<nanos>"
    if not value:
        return None
    try:
        seconds = Decimal(value)
    except ArithmeticError:
        return None
    return datetime.fromtimestamp(float(seconds), tz=timezone.utc)


def decode_audit_message(
    raw: bytes | str,
    topic_id: str,
    *,
    consensus_timestamp: str | None = None,
    sequence_number: int | None = None,
) -> AuditLogEntry | None:
    """Parse a topic message back into an entry; ``None`` for foreign messages."""

    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        decoded = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(decoded, dict):
        return None
    kind = decoded.get("type")
    payload = decoded.get("data")
    if not isinstance(kind, str) or not isinstance(payload, dict):
        return None

    logged_at = _parse_consensus_timestamp(consensus_timestamp)
    if logged_at is None:
        timestamp = decoded.get("timestamp")
        if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
            logged_at = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
        else:
            logged_at = datetime.fromtimestamp(0, tz=timezone.utc)

    return AuditLogEntry(
        event_topic=topic_id,
        payload_kind=kind,
        payload=payload,
        logged_at=logged_at,
        sequence_number=sequence_number,
    )


class AuditLogEmitter:
    def __init__(self, gateway: LedgerGateway, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._gateway = gateway
        self._clock = clock

    def emit(self, topic_id: str, kind: AuditKind | str, payload: dict[str, Any]) -> EmittedAuditEntry:
        """Submit one entry; a failed submission raises ``LedgerError``."""

        kind_value = kind.value if isinstance(kind, AuditKind) else str(kind)
        logged_at = self._clock()
        message = encode_audit_message(kind_value, payload, logged_at)
        receipt = self._gateway.submit_topic_message(topic_id, message)
        logger.info(
            "Logged {} to topic {} ({})", kind_value, topic_id, receipt.transaction_id
        )
        entry = AuditLogEntry(
            event_topic=topic_id,
            payload_kind=kind_value,
            payload=dict(payload),
            logged_at=logged_at,
        )
        return EmittedAuditEntry(entry=entry, transaction_id=receipt.transaction_id)


class TopicMessageSource(Protocol):
    def iter_topic_messages(
        self, topic_id: str, *, limit: int | None = None
    ) -> Iterable[TopicMessage]: ...


class AuditLogReader:
    """Re-read an event's audit trail from the mirror node."""

    def __init__(self, mirror: TopicMessageSource) -> None:
        self._mirror = mirror

    def list_entries(
        self,
        topic_id: str,
        *,
        kind: str | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        entries: list[AuditLogEntry] = []
        for message in self._mirror.iter_topic_messages(topic_id):
            entry = decode_audit_message(
                message.message,
                topic_id,
                consensus_timestamp=message.consensus_timestamp,
                sequence_number=message.sequence_number,
            )
            if entry is None:
                logger.debug(
                    "Skipping non-audit message {} on topic {}", message.sequence_number, topic_id
                )
                continue
            if kind and entry.payload_kind != kind:
                continue
            entries.append(entry)
            if limit is not None and len(entries) >= limit:
                break
        return entries


__all__ = [
    "AuditLogEmitter",
    "AuditLogReader",
    "decode_audit_message",
    "encode_audit_message",
    "epoch_millis",
]
