import logging, time
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from confluent_kafka import KafkaException
from common.kafka import get_producer
from common.settings import settings
from escrow_service.db import SessionLocal
from escrow_service.models import Outbox

logger = logging.getLogger(__name__)

BATCH_SIZE = 50

def publish_pending(session_factory=SessionLocal, producer=None) -> int:
    """Publish one batch of staged events. Returns the number sent."""
    producer = producer or get_producer()
    sent = 0
    with session_factory() as db:
        rows = db.execute(
            select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(BATCH_SIZE)
        ).scalars().all()
        for row in rows:
            try:
                producer.produce(row.topic, value=row.payload.encode("utf-8"))
                producer.flush()
                db.execute(update(Outbox).where(Outbox.id == row.id).values(status="sent"))
                db.commit()
                sent += 1
            except KafkaException as e:
                logger.error(f"❌ Failed to publish outbox row {row.id}: {e}")
                db.execute(update(Outbox).where(Outbox.id == row.id).values(status="failed"))
                db.commit()
    return sent

def run():
    logging.basicConfig(level=settings.log_level)
    logger.info("📤 Outbox worker started")
    while True:
        try:
            publish_pending()
        except SQLAlchemyError:
            logger.exception("Outbox poll failed")
        time.sleep(settings.outbox_poll_interval)

if __name__ == "__main__":
    run()
