from __future__ import annotations

from typing import Any, Iterator
from urllib.parse import quote

import httpx
from loguru import logger

from app.core.config import Settings, settings as default_settings
from app.domain import NftOwnership, TopicMessage, TransactionRecord
from app.domain.errors import MirrorQueryError, TransactionNotVisible

from .normalize import (
    normalize_nft,
    normalize_topic_message,
    normalize_transaction,
    normalize_transaction_id,
)


TOPIC_MESSAGES_PAGE_SIZE = 100


class MirrorNodeClient:
    """Read-only wrapper around the ledger mirror node REST API.

    Every method either returns a fully parsed value or raises
    :class:`MirrorQueryError`; callers decide whether to retry.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
        settings: Settings | None = None,
    ) -> None:
        active_settings = settings or default_settings
        self.base_url = (base_url or active_settings.resolved_mirror_url).rstrip("/")
        self.timeout = timeout if timeout is not None else active_settings.mirror_timeout_seconds
        client_kwargs: dict[str, Any] = {"base_url": self.base_url, "timeout": self.timeout}
        if transport is not None:
            client_kwargs["transport"] = transport
        self.client = httpx.Client(**client_kwargs)

    def _get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        logger.info("Mirror GET {} params={}", path, params or {})
        try:
            return self.client.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise MirrorQueryError(
                "Mirror node timed out; payment not yet confirmed, try again shortly",
                details={"path": path},
            ) from exc
        except httpx.HTTPError as exc:
            raise MirrorQueryError(
                f"Mirror node unreachable: {exc}", details={"path": path}
            ) from exc

    @staticmethod
    def _json(response: httpx.Response, path: str) -> Any:
        if not response.is_success:
            raise MirrorQueryError(
                f"Mirror query failed: {response.status_code}",
                details={"path": path, "status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise MirrorQueryError(
                "Mirror node returned malformed JSON", details={"path": path}
            ) from exc

    def get_transaction(self, reference: str) -> TransactionRecord:
        mirror_id = normalize_transaction_id(reference)
        path = f"/api/v1/transactions/{quote(mirror_id, safe='')}"
        response = self._get(path, params={"details": "true"})
        if response.status_code == 404:
            raise TransactionNotVisible(
                "Payment transaction not found on the mirror node (it may not be indexed yet)",
                details={"reference": reference, "status_code": 404},
            )
        payload = self._json(response, path)
        return normalize_transaction(payload, mirror_id)

    def get_nft_owner(self, token_id: str, serial_number: int) -> NftOwnership:
        path = f"/api/v1/tokens/{quote(token_id, safe='')}/nfts/{int(serial_number)}"
        response = self._get(path)
        if response.status_code == 404:
            raise MirrorQueryError(
                "NFT not found or owner unknown",
                details={"token_id": token_id, "serial_number": serial_number, "status_code": 404},
            )
        return normalize_nft(self._json(response, path), token_id, serial_number)

    def is_token_associated(self, account_id: str, token_id: str) -> bool:
        path = f"/api/v1/accounts/{quote(account_id, safe='')}/tokens"
        response = self._get(path, params={"token.id": token_id})
        if response.status_code == 404:
            raise MirrorQueryError(
                f"Account {account_id} not found on the mirror node",
                details={"account_id": account_id, "status_code": 404},
            )
        payload = self._json(response, path)
        tokens = payload.get("tokens") if isinstance(payload, dict) else None
        if not isinstance(tokens, list):
            raise MirrorQueryError(
                "Mirror payload missing token relationships", details={"account_id": account_id}
            )
        return any(
            isinstance(relationship, dict) and relationship.get("token_id") == token_id
            for relationship in tokens
        )

    def iter_topic_messages(
        self, topic_id: str, *, limit: int | None = None
    ) -> Iterator[TopicMessage]:
        path: str | None = f"/api/v1/topics/{quote(topic_id, safe='')}/messages"
        params: dict[str, Any] | None = {"order": "asc", "limit": TOPIC_MESSAGES_PAGE_SIZE}
        yielded = 0
        while path:
            response = self._get(path, params=params)
            if response.status_code == 404:
                raise MirrorQueryError(
                    f"Topic {topic_id} not found on the mirror node",
                    details={"topic_id": topic_id, "status_code": 404},
                )
            payload = self._json(response, path)
            raw_messages = payload.get("messages") if isinstance(payload, dict) else None
            if not isinstance(raw_messages, list):
                raise MirrorQueryError(
                    "Mirror payload missing topic messages", details={"topic_id": topic_id}
                )

            for raw in raw_messages:
                yield normalize_topic_message(raw, topic_id)
                yielded += 1
                if limit is not None and yielded >= limit:
                    return

            links = payload.get("links") or {}
            next_link = links.get("next") if isinstance(links, dict) else None
            if not raw_messages or not next_link:
                break
            # links.next already carries the cursor query string
            path, params = next_link, None

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "MirrorNodeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["MirrorNodeClient", "TOPIC_MESSAGES_PAGE_SIZE"]
