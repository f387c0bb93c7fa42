"""Ledger gateway backed by the Hedera Python SDK."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from hiero_sdk_python import (
    AccountId,
    Client,
    Network,
    NftId,
    PrivateKey,
    ResponseCode,
    SupplyType,
    TokenCreateTransaction,
    TokenId,
    TokenMintTransaction,
    TokenType,
    TopicCreateTransaction,
    TopicId,
    TopicMessageSubmitTransaction,
    TransactionId,
    TransferTransaction,
)
from hiero_sdk_python.exceptions import PrecheckError, ReceiptStatusError
from loguru import logger

from app.core.config import Settings
from app.domain import OperatorCredentials
from app.domain.errors import LedgerError, LedgerOutcomeUnknown

from .gateway import LedgerReceipt, MintReceipt


def _status_name(status: Any) -> str:
    return getattr(status, "name", None) or str(status)


class HederaLedgerGateway:
    """Submit topic, token and transfer transactions as the operator account."""

    def __init__(self, credentials: OperatorCredentials) -> None:
        self._credentials = credentials
        self._account_id = AccountId.from_string(credentials.account_id)
        self._private_key = PrivateKey.from_string(credentials.private_key)
        self._client = Client(Network(network=credentials.network))
        self._client.set_operator(self._account_id, self._private_key)

    @property
    def operator_account_id(self) -> str:
        return self._credentials.account_id

    def _execute(
        self, transaction: Any, action: str, *, transaction_id: str | None = None
    ) -> tuple[Any, str]:
        """Sign and submit ``transaction``, waiting for its receipt.

        Failures before the submission, precheck rejections and failed
        receipts mean nothing happened on the ledger and raise ``LedgerError``.
        Anything else raised while waiting (timeouts, exhausted node retries)
        leaves the outcome open and raises ``LedgerOutcomeUnknown``.
        """

        try:
            if transaction_id is not None:
                transaction.set_transaction_id(TransactionId.from_string(transaction_id))
            transaction.freeze_with(self._client)
            transaction.sign(self._private_key)
        except Exception as exc:  # noqa: BLE001 - SDK raises many unrelated types
            raise LedgerError(f"Failed to {action}: {exc}") from exc

        transaction_id = str(transaction.transaction_id)
        logger.info("Submitting {} ({})", action, transaction_id)
        try:
            receipt = transaction.execute(self._client)
        except (PrecheckError, ReceiptStatusError) as exc:
            if exc.status == ResponseCode.DUPLICATE_TRANSACTION:
                # an earlier attempt with this id was already accepted
                raise LedgerOutcomeUnknown(
                    f"Submitted {action} more than once; outcome of the first attempt is unknown",
                    details={"transaction_id": transaction_id},
                ) from exc
            raise LedgerError(
                f"Failed to {action}: ledger returned {_status_name(exc.status)}",
                details={"transaction_id": transaction_id},
            ) from exc
        except Exception as exc:  # noqa: BLE001
            logger.error("No receipt for {} ({}): {}", action, transaction_id, exc)
            raise LedgerOutcomeUnknown(
                f"Submitted {action} but its outcome is unknown: {exc}",
                details={"transaction_id": transaction_id},
            ) from exc

        if receipt.status != ResponseCode.SUCCESS:
            raise LedgerError(
                f"Failed to {action}: ledger returned {_status_name(receipt.status)}",
                details={"transaction_id": transaction_id},
            )
        return receipt, transaction_id

    def create_topic(self, memo: str) -> LedgerReceipt:
        transaction = (
            TopicCreateTransaction()
            .set_memo(memo)
            .set_admin_key(self._private_key.public_key())
            .set_submit_key(self._private_key.public_key())
        )
        receipt, transaction_id = self._execute(transaction, "create event topic")
        if receipt.topic_id is None:
            raise LedgerError("Topic creation receipt did not include a topic id")
        return LedgerReceipt(transaction_id=transaction_id, entity_id=str(receipt.topic_id))

    def submit_topic_message(self, topic_id: str, message: str) -> LedgerReceipt:
        transaction = (
            TopicMessageSubmitTransaction()
            .set_topic_id(TopicId.from_string(topic_id))
            .set_message(message)
        )
        _, transaction_id = self._execute(transaction, f"submit message to topic {topic_id}")
        return LedgerReceipt(transaction_id=transaction_id, entity_id=topic_id)

    def create_nft_collection(self, *, name: str, symbol: str, max_supply: int) -> LedgerReceipt:
        transaction = (
            TokenCreateTransaction()
            .set_token_name(name)
            .set_token_symbol(symbol)
            .set_token_type(TokenType.NON_FUNGIBLE_UNIQUE)
            .set_supply_type(SupplyType.FINITE)
            .set_max_supply(max_supply)
            .set_decimals(0)
            .set_initial_supply(0)
            .set_treasury_account_id(self._account_id)
            .set_admin_key(self._private_key)
            .set_supply_key(self._private_key)
        )
        receipt, transaction_id = self._execute(transaction, "create ticket collection")
        if receipt.token_id is None:
            raise LedgerError("Token creation receipt did not include a token id")
        return LedgerReceipt(transaction_id=transaction_id, entity_id=str(receipt.token_id))

    def new_transaction_id(self) -> str:
        return str(TransactionId.generate(self._account_id))

    def mint_nft(
        self, token_id: str, metadata: bytes, *, transaction_id: str | None = None
    ) -> MintReceipt:
        transaction = (
            TokenMintTransaction()
            .set_token_id(TokenId.from_string(token_id))
            .set_metadata([metadata])
        )
        receipt, transaction_id = self._execute(
            transaction, f"mint ticket on {token_id}", transaction_id=transaction_id
        )
        serials = list(receipt.serial_numbers or [])
        if len(serials) != 1:
            raise LedgerOutcomeUnknown(
                f"Mint receipt reported {len(serials)} serial numbers, expected 1",
                details={"transaction_id": transaction_id},
            )
        return MintReceipt(transaction_id=transaction_id, serial_number=int(serials[0]))

    def transfer_nft(
        self, token_id: str, serial_number: int, sender: str, receiver: str
    ) -> LedgerReceipt:
        nft_id = NftId(token_id=TokenId.from_string(token_id), serial_number=serial_number)
        transaction = TransferTransaction().add_nft_transfer(
            nft_id,
            AccountId.from_string(sender),
            AccountId.from_string(receiver),
        )
        _, transaction_id = self._execute(
            transaction, f"transfer ticket {token_id}/{serial_number} to {receiver}"
        )
        return LedgerReceipt(transaction_id=transaction_id, entity_id=token_id)

    def close(self) -> None:
        self._client.close()


@lru_cache(maxsize=4)
def _gateway_cache(credentials: OperatorCredentials) -> HederaLedgerGateway:
    return HederaLedgerGateway(credentials)


def get_ledger_gateway(settings: Settings) -> HederaLedgerGateway:
    """Build or reuse a gateway for the operator configured in ``settings``.

    Rotating the operator key yields new credentials and therefore a new
    gateway; ``reset_ledger_gateways`` drops the cached ones.
    """

    return _gateway_cache(settings.operator_credentials())


def reset_ledger_gateways() -> None:
    _gateway_cache.cache_clear()


__all__ = ["HederaLedgerGateway", "get_ledger_gateway", "reset_ledger_gateways"]
