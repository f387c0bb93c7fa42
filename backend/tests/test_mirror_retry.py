from __future__ import annotations

import pytest

from app.domain import TransactionRecord, Transfer
from app.domain.errors import MirrorQueryError, TransactionNotVisible
from mirror.normalize import is_mirror_transaction_id, normalize_transaction_id
from mirror.service import fetch_transaction_with_retry, max_wait_seconds


class FlakyMirror:
    def __init__(self, failures: list[Exception]) -> None:
        self.failures = list(failures)
        self.calls = 0

    def get_transaction(self, reference: str) -> TransactionRecord:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return TransactionRecord(reference=reference, transfers=(Transfer("0.0.1", -1),))


def test_retries_until_the_transaction_is_indexed():
    mirror = FlakyMirror([TransactionNotVisible("not yet"), TransactionNotVisible("not yet")])
    sleeps: list[float] = []

    record = fetch_transaction_with_retry(mirror, "ref", backoff=(1.0, 2.0, 4.0), sleep=sleeps.append)

    assert record.reference == "ref"
    assert mirror.calls == 3
    assert sleeps == [1.0, 2.0]


def test_gives_up_after_the_schedule_is_exhausted():
    mirror = FlakyMirror([TransactionNotVisible("not yet") for _ in range(10)])
    sleeps: list[float] = []

    with pytest.raises(TransactionNotVisible) as excinfo:
        fetch_transaction_with_retry(mirror, "ref", backoff=(1.0, 2.0, 4.0), sleep=sleeps.append)

    assert mirror.calls == 4
    assert sum(sleeps) == max_wait_seconds((1.0, 2.0, 4.0)) == 7.0
    assert excinfo.value.details["attempts"] == 4


def test_other_mirror_failures_are_not_retried():
    mirror = FlakyMirror([MirrorQueryError("malformed")])
    sleeps: list[float] = []

    with pytest.raises(MirrorQueryError):
        fetch_transaction_with_retry(mirror, "ref", sleep=sleeps.append)

    assert mirror.calls == 1
    assert sleeps == []


def test_transaction_id_normalization():
    assert normalize_transaction_id("0.0.5@1700000000.000000001") == "0.0.5-1700000000-000000001"
    assert normalize_transaction_id(" 0.0.5-1700000000-000000001 ") == "0.0.5-1700000000-000000001"
    assert is_mirror_transaction_id("0.0.5-1700000000-000000001")
    assert not is_mirror_transaction_id("0.0.5@1700000000.000000001")
