from sqlalchemy.orm import Session
from common.kafka import TOPIC_ESCROW_EVENTS
from common.schemas import EscrowEvent
from common.tracing import get_current_trace_id
from escrow_service.models import Outbox, utcnow

def record_event(db: Session, type: str, **fields) -> Outbox:
    """Stage an event in the caller's transaction; the outbox worker publishes it after commit."""
    event = EscrowEvent(type=type, occurred_at=utcnow(), trace_id=get_current_trace_id(), **fields)
    row = Outbox(topic=TOPIC_ESCROW_EVENTS, payload=event.model_dump_json())
    db.add(row)
    return row
