from __future__ import annotations

import base64
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.db import create_db_engine, create_session_factory, init_db
from app.domain import NftOwnership, NftTransfer, TopicMessage, TransactionRecord, Transfer
from app.domain.errors import LedgerError, LedgerOutcomeUnknown, MirrorQueryError, TransactionNotVisible
from app.ledger.gateway import LedgerReceipt, MintReceipt
from mirror.normalize import normalize_transaction_id

OPERATOR_ACCOUNT = "0.0.200"
BUYER_ACCOUNT = "0.0.100"


class FakeLedgerGateway:
    """In-memory ledger: records every submission and hands out increasing ids.

    Actions in ``fail_on`` are rejected before anything happens. Actions in
    ``unconfirmed`` take effect but raise ``LedgerOutcomeUnknown``, as when the
    receipt never arrives. Mint transactions are kept in ``records`` keyed by
    their mirror-form id.
    """

    def __init__(self, operator_account_id: str = OPERATOR_ACCOUNT) -> None:
        self._operator = operator_account_id
        self.fail_on: set[str] = set()
        self.unconfirmed: set[str] = set()
        self.records: dict[str, TransactionRecord] = {}
        self.messages: list[tuple[str, str]] = []
        self.mints: list[tuple[str, bytes]] = []
        self.transfers: list[tuple[str, int, str, str]] = []
        self.collections: list[dict[str, object]] = []
        self.topics: list[str] = []
        self.owners: dict[tuple[str, int], str] = {}
        self._serials: dict[str, int] = {}
        self._counter = 0

    @property
    def operator_account_id(self) -> str:
        return self._operator

    def _next_transaction_id(self) -> str:
        self._counter += 1
        return f"{self._operator}@1700000000.{self._counter:09d}"

    def _maybe_fail(self, action: str) -> None:
        if action in self.fail_on:
            raise LedgerError(f"{action} rejected by ledger")

    def create_topic(self, memo: str) -> LedgerReceipt:
        self._maybe_fail("create_topic")
        topic_id = f"0.0.{9000 + len(self.topics)}"
        self.topics.append(topic_id)
        return LedgerReceipt(transaction_id=self._next_transaction_id(), entity_id=topic_id)

    def submit_topic_message(self, topic_id: str, message: str) -> LedgerReceipt:
        self._maybe_fail("submit_topic_message")
        self.messages.append((topic_id, message))
        return LedgerReceipt(transaction_id=self._next_transaction_id(), entity_id=topic_id)

    def create_nft_collection(self, *, name: str, symbol: str, max_supply: int) -> LedgerReceipt:
        self._maybe_fail("create_nft_collection")
        token_id = f"0.0.{7000 + len(self.collections)}"
        self.collections.append(
            {"token_id": token_id, "name": name, "symbol": symbol, "max_supply": max_supply}
        )
        return LedgerReceipt(transaction_id=self._next_transaction_id(), entity_id=token_id)

    def new_transaction_id(self) -> str:
        return self._next_transaction_id()

    def mint_nft(
        self, token_id: str, metadata: bytes, *, transaction_id: str | None = None
    ) -> MintReceipt:
        self._maybe_fail("mint_nft")
        transaction_id = transaction_id or self._next_transaction_id()
        serial = self._serials.get(token_id, 0) + 1
        self._serials[token_id] = serial
        self.mints.append((token_id, metadata))
        self.owners[(token_id, serial)] = self._operator
        reference = normalize_transaction_id(transaction_id)
        self.records[reference] = TransactionRecord(
            reference=reference,
            transfers=(Transfer(self._operator, -100_000), Transfer("0.0.98", 100_000)),
            result="SUCCESS",
            nft_transfers=(NftTransfer(token_id, serial, None, self._operator),),
        )
        if "mint_nft" in self.unconfirmed:
            raise LedgerOutcomeUnknown("receipt query timed out", details={"transaction_id": transaction_id})
        return MintReceipt(transaction_id=transaction_id, serial_number=serial)

    def transfer_nft(
        self, token_id: str, serial_number: int, sender: str, receiver: str
    ) -> LedgerReceipt:
        self._maybe_fail("transfer_nft")
        self.transfers.append((token_id, serial_number, sender, receiver))
        self.owners[(token_id, serial_number)] = receiver
        return LedgerReceipt(transaction_id=self._next_transaction_id(), entity_id=token_id)


class FakeMirror:
    """Mirror view over a ``FakeLedgerGateway`` plus registered payment transactions."""

    def __init__(self, ledger: FakeLedgerGateway) -> None:
        self.ledger = ledger
        self.transactions: dict[str, TransactionRecord] = {}
        self.associations: set[tuple[str, str]] = set()
        self.associate_all = True
        self.lookups: list[str] = []

    def add_payment(
        self, reference: str, *, buyer: str = BUYER_ACCOUNT, recipient: str = OPERATOR_ACCOUNT, tinybars: int
    ) -> TransactionRecord:
        key = normalize_transaction_id(reference)
        record = TransactionRecord(
            reference=key,
            transfers=(Transfer(buyer, -tinybars), Transfer(recipient, tinybars)),
            result="SUCCESS",
        )
        self.transactions[key] = record
        return record

    def get_transaction(self, reference: str) -> TransactionRecord:
        self.lookups.append(reference)
        key = normalize_transaction_id(reference)
        try:
            return self.transactions.get(key) or self.ledger.records[key]
        except KeyError:
            raise TransactionNotVisible(
                "Transaction not found on mirror node", details={"reference": reference}
            ) from None

    def is_token_associated(self, account_id: str, token_id: str) -> bool:
        return self.associate_all or (account_id, token_id) in self.associations

    def get_nft_owner(self, token_id: str, serial_number: int) -> NftOwnership:
        owner = self.ledger.owners.get((token_id, serial_number))
        if owner is None:
            raise MirrorQueryError(f"NFT {token_id}/{serial_number} not found")
        return NftOwnership(token_id=token_id, serial_number=serial_number, owner_account_id=owner)

    def iter_topic_messages(self, topic_id: str, *, limit: int | None = None):
        sequence = 0
        for message_topic, message in self.ledger.messages:
            if message_topic != topic_id:
                continue
            sequence += 1
            yield TopicMessage(
                topic_id=topic_id,
                sequence_number=sequence,
                consensus_timestamp=f"1700000{sequence:03d}.000000000",
                message=message.encode("utf-8"),
            )
            if limit is not None and sequence >= limit:
                return


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'ticketgate.db'}",
        hedera_account_id=OPERATOR_ACCOUNT,
        hedera_private_key="302e020100300506032b657004220420" + "11" * 32,
        mirror_retry_backoff_seconds=[0.01, 0.02],
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def session_factory(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path/'claims.db'}")
    init_db(bind=engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def ledger() -> FakeLedgerGateway:
    return FakeLedgerGateway()


@pytest.fixture
def mirror(ledger) -> FakeMirror:
    return FakeMirror(ledger)


@pytest.fixture
def topic_message_payload():
    """Build a mirror ``/topics/{id}/messages`` entry for a raw message body."""

    def _build(topic_id: str, body: str, sequence_number: int = 1) -> dict[str, object]:
        return {
            "topic_id": topic_id,
            "sequence_number": sequence_number,
            "consensus_timestamp": f"1700000000.{sequence_number:09d}",
            "message": base64.b64encode(body.encode("utf-8")).decode("ascii"),
        }

    return _build
