"""Decide whether a mirror transaction pays for a ticket."""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any

from app.domain import (
    TINYBARS_PER_HBAR,
    PaymentVerificationRequest,
    TransactionRecord,
    VerifiedPayment,
)
from app.domain.errors import InsufficientAmount, InvalidDirection


SUCCESS_RESULT = "SUCCESS"


def to_atomic(price: Any) -> int:
    """Convert a whole-HBAR price to tinybars, truncating toward zero.

    ``price`` goes through ``str`` before ``Decimal`` so float inputs such as
    ``0.1`` convert to exactly 10 000 000 tinybars instead of carrying binary
    rounding noise.
    """

    if isinstance(price, bool):
        raise ValueError("price must be a number")
    try:
        amount = price if isinstance(price, Decimal) else Decimal(str(price))
    except InvalidOperation as exc:
        raise ValueError(f"price {price!r} is not a number") from exc
    if not amount.is_finite():
        raise ValueError("price must be finite")
    if amount < 0:
        raise ValueError("price must be non-negative")
    return int((amount * TINYBARS_PER_HBAR).to_integral_value(rounding=ROUND_DOWN))


def _amount_for(record: TransactionRecord, account: str, *, aggregate: bool) -> int | None:
    matches = [transfer.amount for transfer in record.transfers if transfer.account == account]
    if not matches:
        return None
    if aggregate:
        return sum(matches)
    return matches[0]


def verify_payment(
    record: TransactionRecord,
    request: PaymentVerificationRequest,
    *,
    aggregate: bool = False,
) -> VerifiedPayment:
    if record.result is not None and record.result != SUCCESS_RESULT:
        raise InvalidDirection(
            f"Payment transaction did not succeed (result {record.result})",
            details={"reference": request.reference, "result": record.result},
        )

    debit = _amount_for(record, request.buyer_identity, aggregate=aggregate)
    if debit is None or debit >= 0:
        raise InvalidDirection(
            "Payment transfer direction invalid: buyer account was not debited",
            details={"reference": request.reference, "buyer": request.buyer_identity},
        )

    credit = _amount_for(record, request.recipient_identity, aggregate=aggregate)
    if credit is None or credit <= 0:
        raise InvalidDirection(
            "Payment transfer direction invalid: recipient account was not credited",
            details={"reference": request.reference, "recipient": request.recipient_identity},
        )

    atomic_minimum = to_atomic(request.minimum_price)
    if abs(debit) < atomic_minimum or credit < atomic_minimum:
        raise InsufficientAmount(
            "Payment amount below required price",
            details={
                "reference": request.reference,
                "required_tinybars": atomic_minimum,
                "debited_tinybars": abs(debit),
                "credited_tinybars": credit,
            },
        )

    return VerifiedPayment(
        reference=request.reference,
        debit=debit,
        credit=credit,
        atomic_minimum=atomic_minimum,
    )


__all__ = ["SUCCESS_RESULT", "to_atomic", "verify_payment"]
