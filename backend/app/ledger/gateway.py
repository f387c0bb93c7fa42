"""Interface of the ledger operations this service submits."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True, slots=True)
class LedgerReceipt:
    transaction_id: str
    entity_id: str | None = None


@dataclass(frozen=True, slots=True)
class MintReceipt:
    transaction_id: str
    serial_number: int


class LedgerGateway(Protocol):
    """Signed submissions made with the operator (treasury) identity.

    Implementations raise :class:`app.domain.errors.LedgerError` when a
    submission is rejected or its receipt reports a non-success status, and
    :class:`app.domain.errors.LedgerOutcomeUnknown` when it was sent but no
    receipt came back.
    """

    @property
    def operator_account_id(self) -> str: ...

    def create_topic(self, memo: str) -> LedgerReceipt:
        """Create an append-only topic whose admin and submit key is the operator."""
        raise NotImplementedError

    def submit_topic_message(self, topic_id: str, message: str) -> LedgerReceipt:
        raise NotImplementedError

    def create_nft_collection(self, *, name: str, symbol: str, max_supply: int) -> LedgerReceipt:
        """Create a finite NFT collection with the operator as treasury and supply key."""
        raise NotImplementedError

    def new_transaction_id(self) -> str:
        """Reserve an id for a submission so it can be recorded before it is sent."""
        raise NotImplementedError

    def mint_nft(
        self, token_id: str, metadata: bytes, *, transaction_id: str | None = None
    ) -> MintReceipt:
        raise NotImplementedError

    def transfer_nft(
        self, token_id: str, serial_number: int, sender: str, receiver: str
    ) -> LedgerReceipt:
        raise NotImplementedError


__all__ = ["LedgerGateway", "LedgerReceipt", "MintReceipt"]
