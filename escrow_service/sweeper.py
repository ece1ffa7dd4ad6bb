import logging, time
from datetime import datetime
from typing import Optional
from sqlalchemy import select
from common.retry import retry_call, DATABASE_RETRY_CONFIG
from common.settings import settings
from common.tracing import sweeper_tracer
from escrow_service.db import SessionLocal, atomic
from escrow_service.escrow import release_escrow, vendor_user_id
from escrow_service.ledger import get_or_create_wallet
from escrow_service.models import Escrow, EscrowStatus, utcnow

logger = logging.getLogger(__name__)

def _finalize_expired(escrow_id: str, now: datetime, session_factory) -> bool:
    with session_factory() as db:
        escrow = db.get(Escrow, escrow_id)
        if escrow is None or escrow.status is not EscrowStatus.ACTIVE:
            return False
        vendor_user = vendor_user_id(db, escrow)
        get_or_create_wallet(db, vendor_user)
        with atomic(db):
            return release_escrow(db, escrow, vendor_user, now)

def sweep_expired_escrows(now: Optional[datetime] = None, session_factory=SessionLocal) -> int:
    """Finalize every active escrow whose deadline has passed. Returns how many were finalized.

    Each escrow gets its own session and transaction; one failure is logged
    and the rest of the batch carries on. Disputed escrows are never selected.
    """
    now = now or utcnow()
    finalized = 0
    with sweeper_tracer.start_span("sweep_expired_escrows") as span:
        with session_factory() as db:
            due = db.execute(
                select(Escrow.id)
                .where(Escrow.status == EscrowStatus.ACTIVE, Escrow.auto_finalize_at < now)
                .order_by(Escrow.auto_finalize_at)
            ).scalars().all()

        for escrow_id in due:
            try:
                if retry_call(_finalize_expired, DATABASE_RETRY_CONFIG, escrow_id, now, session_factory):
                    finalized += 1
                    logger.info(f"⏰ Auto-finalized escrow {escrow_id}")
                else:
                    logger.info(f"Escrow {escrow_id} left active state before sweep, skipped")
            except Exception:
                logger.exception(f"❌ Auto-finalize failed for escrow {escrow_id}")

        span.add_tag("escrows.due", len(due))
        span.add_tag("escrows.finalized", finalized)

    logger.info(f"🧹 Sweep at {now.isoformat()}: {finalized}/{len(due)} escrows finalized")
    return finalized

def run():
    logging.basicConfig(level=settings.log_level)
    logger.info(f"🚀 Auto-finalize sweeper running every {settings.sweep_interval_seconds}s")
    while True:
        try:
            sweep_expired_escrows()
        except Exception:
            logger.exception("Sweep pass failed")
        time.sleep(settings.sweep_interval_seconds)

if __name__ == "__main__":
    run()
