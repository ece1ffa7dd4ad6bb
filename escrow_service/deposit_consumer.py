"""
Consumes confirmed deposits from the payment processor feed and credits wallets.

Redis claims filter redelivered events cheaply; the unique ledger idempotency
key is what guarantees a deposit is applied once.
"""
import logging
import time
from typing import Optional
from confluent_kafka import TopicPartition
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from common.kafka import get_consumer, TOPIC_DEPOSIT_EVENTS
from common.money import to_cents
from common.redis_client import redis_client
from common.retry import retry_call, DATABASE_RETRY_CONFIG
from common.schemas import DepositConfirmed
from common.settings import settings
from escrow_service.db import SessionLocal
from escrow_service.errors import EscrowError
from escrow_service.ledger import deposit
from escrow_service.models import WalletTransaction

logger = logging.getLogger(__name__)

def apply_deposit(event: DepositConfirmed, session_factory=SessionLocal) -> WalletTransaction:
    with session_factory() as db:
        return deposit(db, event.user_id, to_cents(event.amount), event.event_id, event.description)

def handle_message(raw: bytes, session_factory=SessionLocal, claims=None) -> Optional[WalletTransaction]:
    """Apply one feed message. Returns None when the message is skipped."""
    claims = claims or redis_client
    try:
        event = DepositConfirmed.model_validate_json(raw)
    except ValidationError as e:
        logger.error(f"❌ Dropping malformed deposit event: {e}")
        return None

    if not claims.claim_event(f"deposit:{event.event_id}", settings.deposit_dedupe_ttl_seconds):
        logger.info(f"🔁 Deposit {event.event_id} already claimed, skipping")
        return None

    try:
        txn = apply_deposit(event, session_factory)
    except EscrowError as e:
        logger.error(f"❌ Deposit {event.event_id} rejected: {e.message}")
        return None
    except SQLAlchemyError:
        claims.release_event(f"deposit:{event.event_id}")
        raise
    logger.info(f"💵 Deposit {event.event_id} credited to {event.user_id}")
    return txn

def consume(consumer=None, max_polls: Optional[int] = None, sleep=time.sleep):
    """Poll the deposit feed. Offsets are committed only after the credit is stored.

    A message whose credit keeps failing is rewound, so the next poll
    delivers it again instead of the one after it.
    """
    c = consumer or get_consumer("escrow-deposits", [TOPIC_DEPOSIT_EVENTS])
    logger.info(f"👂 Listening for deposits on {TOPIC_DEPOSIT_EVENTS}")
    polls = 0
    while max_polls is None or polls < max_polls:
        polls += 1
        msg = c.poll(1.0)
        if not msg or msg.error():
            continue
        try:
            retry_call(handle_message, DATABASE_RETRY_CONFIG, msg.value(), sleep=sleep)
        except SQLAlchemyError:
            logger.exception(f"❌ Deposit at {msg.topic()}[{msg.partition()}]@{msg.offset()} not applied, rewinding")
            c.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
            sleep(settings.deposit_retry_backoff_seconds)
            continue
        c.commit(message=msg, asynchronous=False)

if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    consume()
