from __future__ import annotations

import base64
import binascii
import re
from typing import Any

from app.domain import NftOwnership, NftTransfer, TopicMessage, TransactionRecord, Transfer
from app.domain.errors import MirrorQueryError


_SDK_TRANSACTION_ID = re.compile(r"^(\d+\.\d+\.\d+)@(\d+)\.(\d+)$")
_MIRROR_TRANSACTION_ID = re.compile(r"^\d+\.\d+\.\d+-\d+-\d+$")


def normalize_transaction_id(reference: str) -> str:
    """Convert ``0.0.5@1700000000.000000001`` to the mirror form ``0.0.5-1700000000-000000001``.

    References already in mirror form (or any other shape) are returned stripped
    but otherwise untouched; the mirror decides whether they exist.
    """

    candidate = reference.strip()
    match = _SDK_TRANSACTION_ID.match(candidate)
    if match:
        account, seconds, nanos = match.groups()
        return f"{account}-{seconds}-{nanos}"
    return candidate


def is_mirror_transaction_id(reference: str) -> bool:
    return bool(_MIRROR_TRANSACTION_ID.match(reference))


def _parse_amount(value: Any, *, reference: str) -> int:
    # bool is an int subclass but never a valid amount
    if isinstance(value, bool):
        raise MirrorQueryError(f"Mirror transfer amount for {reference} is not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise MirrorQueryError(
                f"Mirror transfer amount for {reference} is not an integer"
            ) from exc
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise MirrorQueryError(f"Mirror transfer amount for {reference} is not an integer")


def _parse_transfers(raw_transfers: Any, *, reference: str) -> tuple[Transfer, ...]:
    if not isinstance(raw_transfers, list):
        raise MirrorQueryError("Mirror payload missing transfers", details={"reference": reference})

    transfers: list[Transfer] = []
    for item in raw_transfers:
        if not isinstance(item, dict):
            raise MirrorQueryError(
                "Mirror payload contains a malformed transfer entry",
                details={"reference": reference},
            )
        account = item.get("account")
        if not isinstance(account, str) or not account:
            raise MirrorQueryError(
                "Mirror transfer entry is missing its account",
                details={"reference": reference},
            )
        transfers.append(
            Transfer(account=account, amount=_parse_amount(item.get("amount"), reference=reference))
        )
    return tuple(transfers)


def _parse_nft_transfers(raw_transfers: Any, *, reference: str) -> tuple[NftTransfer, ...]:
    if raw_transfers is None:
        return ()
    if not isinstance(raw_transfers, list):
        raise MirrorQueryError("Mirror payload has malformed NFT transfers", details={"reference": reference})

    transfers: list[NftTransfer] = []
    for item in raw_transfers:
        token_id = item.get("token_id") if isinstance(item, dict) else None
        serial = item.get("serial_number") if isinstance(item, dict) else None
        if not isinstance(token_id, str) or isinstance(serial, bool) or not isinstance(serial, int):
            raise MirrorQueryError(
                "Mirror payload contains a malformed NFT transfer entry",
                details={"reference": reference},
            )
        transfers.append(
            NftTransfer(
                token_id=token_id,
                serial_number=serial,
                sender=item.get("sender_account_id") or None,
                receiver=item.get("receiver_account_id") or None,
            )
        )
    return tuple(transfers)


def normalize_transaction(payload: Any, reference: str) -> TransactionRecord:
    """Build a :class:`TransactionRecord` from either mirror response shape.

    The mirror answers ``{"transactions": [{...}]}``; some proxies flatten it to
    the transaction object itself. Anything without a transfer list is rejected
    rather than read as an empty (and therefore failed) payment.
    """

    if not isinstance(payload, dict):
        raise MirrorQueryError("Mirror payload is not a JSON object", details={"reference": reference})

    transactions = payload.get("transactions")
    if transactions is not None:
        if not isinstance(transactions, list):
            raise MirrorQueryError(
                "Mirror payload has a malformed transactions list",
                details={"reference": reference},
            )
        if not transactions:
            raise MirrorQueryError(
                "Mirror returned no transactions for reference",
                details={"reference": reference},
            )
        transaction = transactions[0]
        if not isinstance(transaction, dict):
            raise MirrorQueryError(
                "Mirror payload has a malformed transaction entry",
                details={"reference": reference},
            )
    else:
        transaction = payload

    result = transaction.get("result")
    consensus_timestamp = transaction.get("consensus_timestamp")
    return TransactionRecord(
        reference=str(transaction.get("transaction_id") or reference),
        transfers=_parse_transfers(transaction.get("transfers"), reference=reference),
        result=str(result) if result is not None else None,
        consensus_timestamp=str(consensus_timestamp) if consensus_timestamp is not None else None,
        nft_transfers=_parse_nft_transfers(transaction.get("nft_transfers"), reference=reference),
    )


def normalize_nft(payload: Any, token_id: str, serial_number: int) -> NftOwnership:
    if not isinstance(payload, dict):
        raise MirrorQueryError("Mirror NFT payload is not a JSON object")
    if payload.get("deleted") is True:
        raise MirrorQueryError(
            f"NFT {token_id}/{serial_number} has been burned",
            details={"token_id": token_id, "serial_number": serial_number},
        )
    owner = payload.get("account_id") or payload.get("owner_account_id") or payload.get("accountId")
    if not owner:
        raise MirrorQueryError(
            "NFT not found or owner unknown",
            details={"token_id": token_id, "serial_number": serial_number},
        )
    return NftOwnership(token_id=token_id, serial_number=serial_number, owner_account_id=str(owner))


def normalize_topic_message(raw: Any, topic_id: str) -> TopicMessage:
    if not isinstance(raw, dict):
        raise MirrorQueryError("Mirror topic message is not a JSON object")
    encoded = raw.get("message")
    if not isinstance(encoded, str):
        raise MirrorQueryError("Mirror topic message is missing its body")
    try:
        body = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MirrorQueryError("Mirror topic message is not valid base64") from exc
    try:
        sequence_number = int(raw.get("sequence_number"))
    except (TypeError, ValueError) as exc:
        raise MirrorQueryError("Mirror topic message is missing its sequence number") from exc
    return TopicMessage(
        topic_id=str(raw.get("topic_id") or topic_id),
        sequence_number=sequence_number,
        consensus_timestamp=str(raw.get("consensus_timestamp") or ""),
        message=body,
    )


__all__ = [
    "is_mirror_transaction_id",
    "normalize_nft",
    "normalize_topic_message",
    "normalize_transaction",
    "normalize_transaction_id",
]
