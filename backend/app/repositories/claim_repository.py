"""Payment claim persistence helpers."""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.models import ClaimStatus, PaymentClaim


class ClaimRepository:
    """Encapsulate reads and writes of payment reference claims."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def insert_claim(
        self,
        *,
        payment_reference: str,
        scope_key: str,
        event_id: str,
        ticket_token_id: str,
        buyer_account_id: str,
        price: float | None,
    ) -> PaymentClaim:
        """Insert a reservation; the unique constraint rejects a second one on flush."""

        claim = PaymentClaim(
            payment_reference=payment_reference,
            scope_key=scope_key,
            event_id=event_id,
            ticket_token_id=ticket_token_id,
            buyer_account_id=buyer_account_id,
            price=price,
            status=ClaimStatus.RESERVED.value,
        )
        self._session.add(claim)
        self._session.flush()
        return claim

    def get_claim(self, claim_id: int) -> PaymentClaim | None:
        return self._session.get(PaymentClaim, claim_id)

    def find_claim(self, payment_reference: str, scope_key: str) -> PaymentClaim | None:
        query = select(PaymentClaim).where(
            PaymentClaim.payment_reference == payment_reference,
            PaymentClaim.scope_key == scope_key,
        )
        return self._session.execute(query).scalar_one_or_none()

    def delete_reserved(self, claim_id: int) -> bool:
        """Delete a claim only while nothing has been minted against it."""

        result = self._session.execute(
            delete(PaymentClaim).where(
                PaymentClaim.claim_id == claim_id,
                PaymentClaim.status == ClaimStatus.RESERVED.value,
            )
        )
        return bool(result.rowcount)

    def list_unfinished(self, *, limit: int | None = None) -> Sequence[PaymentClaim]:
        query = (
            select(PaymentClaim)
            .where(
                PaymentClaim.status.in_(
                    [
                        ClaimStatus.MINTING.value,
                        ClaimStatus.MINTED.value,
                        ClaimStatus.TRANSFERRED.value,
                    ]
                )
            )
            .order_by(PaymentClaim.created_at.asc(), PaymentClaim.claim_id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return self._session.execute(query).scalars().all()


__all__ = ["ClaimRepository"]
