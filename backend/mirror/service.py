from __future__ import annotations

import time
from typing import Callable, Protocol, Sequence

from loguru import logger

from app.domain import TransactionRecord
from app.domain.errors import TransactionNotVisible


DEFAULT_BACKOFF_SECONDS: tuple[float, ...] = (1.0, 2.0, 4.0)


class TransactionSource(Protocol):
    def get_transaction(self, reference: str) -> TransactionRecord: ...


def max_wait_seconds(backoff: Sequence[float]) -> float:
    return float(sum(backoff))


def fetch_transaction_with_retry(
    client: TransactionSource,
    reference: str,
    *,
    backoff: Sequence[float] = DEFAULT_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> TransactionRecord:
    """Look up ``reference``, waiting out mirror indexing lag.

    Only :class:`TransactionNotVisible` is retried, once per entry of
    ``backoff``; the total wait never exceeds ``sum(backoff)``. Once the
    schedule is exhausted the last "not visible" error propagates so the caller
    can ask the buyer to retry the query with the same reference. Every other
    mirror failure propagates on the first attempt.
    """

    delays = tuple(backoff)
    attempt = 0
    while True:
        attempt += 1
        try:
            return client.get_transaction(reference)
        except TransactionNotVisible as exc:
            if attempt > len(delays):
                logger.warning(
                    "Payment {} still not visible on the mirror after {} attempts ({}s)",
                    reference,
                    attempt,
                    max_wait_seconds(delays),
                )
                exc.details.setdefault("attempts", attempt)
                raise
            delay = delays[attempt - 1]
            logger.warning(
                "Payment {} not yet visible on the mirror (attempt {}); retrying in {}s",
                reference,
                attempt,
                delay,
            )
            sleep(delay)


__all__ = ["DEFAULT_BACKOFF_SECONDS", "fetch_transaction_with_retry", "max_wait_seconds"]
