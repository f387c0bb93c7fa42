from __future__ import annotations

from types import SimpleNamespace

import pytest
from hiero_sdk_python import ResponseCode
from hiero_sdk_python.exceptions import PrecheckError

from app.domain.errors import LedgerError, LedgerOutcomeUnknown
from app.ledger.hedera import HederaLedgerGateway

TRANSACTION_ID = "0.0.200@1700000000.000000001"


class _Transaction:
    def __init__(self, outcome) -> None:
        self.transaction_id = TRANSACTION_ID
        self._outcome = outcome
        self.frozen = False

    def freeze_with(self, client) -> None:
        self.frozen = True

    def sign(self, key) -> None:
        pass

    def execute(self, client):
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome


@pytest.fixture
def gateway() -> HederaLedgerGateway:
    # skip the SDK client; only submission handling is exercised
    instance = HederaLedgerGateway.__new__(HederaLedgerGateway)
    instance._client = object()
    instance._private_key = object()
    return instance


def test_precheck_rejection_is_a_definite_failure(gateway):
    transaction = _Transaction(PrecheckError(ResponseCode.INVALID_SIGNATURE))

    with pytest.raises(LedgerError) as excinfo:
        gateway._execute(transaction, "mint ticket")

    assert not isinstance(excinfo.value, LedgerOutcomeUnknown)
    assert "INVALID_SIGNATURE" in excinfo.value.message


def test_failure_while_waiting_for_receipt_is_indeterminate(gateway):
    transaction = _Transaction(TimeoutError("receipt query timed out"))

    with pytest.raises(LedgerOutcomeUnknown) as excinfo:
        gateway._execute(transaction, "mint ticket")

    assert excinfo.value.details["transaction_id"] == TRANSACTION_ID


def test_duplicate_submission_is_indeterminate(gateway):
    transaction = _Transaction(PrecheckError(ResponseCode.DUPLICATE_TRANSACTION))

    with pytest.raises(LedgerOutcomeUnknown):
        gateway._execute(transaction, "mint ticket")


def test_failed_receipt_status_is_a_definite_failure(gateway):
    transaction = _Transaction(SimpleNamespace(status=ResponseCode.INVALID_SIGNATURE))

    with pytest.raises(LedgerError) as excinfo:
        gateway._execute(transaction, "mint ticket")

    assert not isinstance(excinfo.value, LedgerOutcomeUnknown)


def test_successful_receipt_is_returned_with_transaction_id(gateway):
    receipt = SimpleNamespace(status=ResponseCode.SUCCESS)

    returned, transaction_id = gateway._execute(_Transaction(receipt), "mint ticket")

    assert returned is receipt
    assert transaction_id == TRANSACTION_ID
