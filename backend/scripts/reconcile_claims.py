import argparse

from loguru import logger

from app.core.config import get_settings
from app.db import SessionLocal, init_db
from app.ledger.hedera import get_ledger_gateway
from app.services.audit_log import AuditLogEmitter
from app.services.idempotency import IdempotencyGuard
from app.services.reconciliation import ReconciliationService
from app.services.ticket_issuer import TicketIssuer
from mirror.client import MirrorNodeClient


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Finish ticket issuances that stopped mid-way (unconfirmed mint, transfer, purchase log)"
    )
    parser.add_argument("--limit", type=int, default=None, help="Process at most N claims")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the claims that would be resumed without submitting anything to the ledger.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    init_db()

    gateway = get_ledger_gateway(settings)
    guard = IdempotencyGuard(SessionLocal, scope=settings.idempotency_scope)

    with MirrorNodeClient(settings=settings) as mirror:
        issuer = TicketIssuer(gateway, mirror, AuditLogEmitter(gateway), guard)
        service = ReconciliationService(SessionLocal, issuer=issuer, mirror=mirror)
        report = service.run(limit=args.limit, dry_run=args.dry_run)

    if args.dry_run:
        for claim in report.pending:
            logger.info(
                "claim={} status={} ticket={}/{} buyer={} payment={}",
                claim.claim_id,
                claim.status,
                claim.ticket_token_id,
                claim.serial_number,
                claim.buyer_account_id,
                claim.payment_reference,
            )
        logger.info("{} claims pending reconciliation", len(report.pending))
        return

    for claim_id, message in report.failed.items():
        logger.error("Claim {} still unfinished: {}", claim_id, message)
    for claim_id in report.released:
        logger.warning("Claim {} released: its mint never landed on the ledger", claim_id)
    logger.info("Completed {} of {} claims", len(report.completed), report.examined)


if __name__ == "__main__":
    main()
