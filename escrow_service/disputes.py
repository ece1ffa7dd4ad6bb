"""
Dispute lifecycle: open, thread messages, and percentage-split resolution.
"""
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from common.money import apply_percent, format_percent, format_usd
from common.security import Requester
from escrow_service.db import atomic
from escrow_service.errors import (
    DisputeAlreadyResolved, DisputeNotFound, EscrowNotActive, InvalidSplit, NotAuthorized, ValidationFailed,
)
from escrow_service.escrow import escrow_for_order, vendor_user_id
from escrow_service.ledger import credit, get_or_create_wallet
from escrow_service.models import (
    Dispute, DisputeMessage, Escrow, DisputeStatus, EscrowStatus, SenderType, TransactionType,
    ReferenceType, UNRESOLVED_DISPUTE_STATUSES, new_id, utcnow,
)
from escrow_service.outbox import record_event

logger = logging.getLogger(__name__)

HUNDRED = Decimal(100)

def open_dispute(db: Session, order_id: str, requester: Requester, reason: str) -> str:
    """Freeze an active escrow under a new dispute. Returns the dispute id."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("A reason is required to open a dispute.", field="reason")

    escrow = escrow_for_order(db, order_id)
    if escrow.buyer_id != requester.user_id:
        raise NotAuthorized("Only the buyer can open a dispute on this order.")

    dispute_id = new_id()
    with atomic(db):
        result = db.execute(
            update(Escrow)
            .where(Escrow.id == escrow.id, Escrow.status == EscrowStatus.ACTIVE)
            .values(status=EscrowStatus.DISPUTED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            status = db.execute(select(Escrow.status).where(Escrow.id == escrow.id)).scalar_one()
            raise EscrowNotActive(escrow_id=escrow.id, status=status.value)

        dispute = Dispute(
            id=dispute_id,
            escrow_id=escrow.id,
            order_id=order_id,
            opened_by=requester.user_id,
            reason=reason,
            status=DisputeStatus.OPEN,
            created_at=utcnow(),
        )
        db.add(dispute)
        db.add(DisputeMessage(
            dispute=dispute, sender_id=requester.user_id, sender_type=SenderType.USER,
            message=reason, created_at=utcnow(),
        ))
        record_event(
            db, "DisputeOpened", escrow_id=escrow.id, order_id=order_id, dispute_id=dispute_id,
            user_id=requester.user_id, amount_cents=escrow.amount_cents, status=DisputeStatus.OPEN.value,
        )

    logger.info(f"⚠️ Dispute {dispute_id} opened on order {order_id}")
    return dispute_id

def _validate_split(buyer_percentage, vendor_percentage) -> Tuple[Decimal, Decimal]:
    try:
        buyer_pct = Decimal(str(buyer_percentage))
        vendor_pct = Decimal(str(vendor_percentage))
    except (InvalidOperation, ValueError):
        raise InvalidSplit(buyer_percentage=str(buyer_percentage), vendor_percentage=str(vendor_percentage))
    for pct in (buyer_pct, vendor_pct):
        if not pct.is_finite() or pct < 0 or pct > HUNDRED:
            raise InvalidSplit(buyer_percentage=str(buyer_pct), vendor_percentage=str(vendor_pct))
    if buyer_pct + vendor_pct != HUNDRED:
        raise InvalidSplit(
            "Percentages must sum to 100.",
            buyer_percentage=str(buyer_pct), vendor_percentage=str(vendor_pct),
        )
    return buyer_pct, vendor_pct

def _load_dispute(db: Session, dispute_id: str) -> Dispute:
    dispute = db.get(Dispute, dispute_id, populate_existing=True)
    if dispute is None:
        raise DisputeNotFound(dispute_id=dispute_id)
    return dispute

def _load_escrow(db: Session, dispute: Dispute) -> Escrow:
    return db.get(Escrow, dispute.escrow_id, populate_existing=True)

def _outcome(buyer_pct: Decimal, vendor_pct: Decimal) -> Tuple[DisputeStatus, EscrowStatus]:
    if buyer_pct == HUNDRED:
        return DisputeStatus.RESOLVED_BUYER, EscrowStatus.REFUNDED
    if vendor_pct == HUNDRED:
        return DisputeStatus.RESOLVED_VENDOR, EscrowStatus.FINALIZED
    return DisputeStatus.RESOLVED_PARTIAL, EscrowStatus.FINALIZED

def _settle(db: Session, dispute: Dispute, escrow: Escrow, vendor_user: str, requester: Requester,
            buyer_pct: Decimal, vendor_pct: Decimal, notes: Optional[str], now: Optional[datetime]) -> Dispute:
    now = now or utcnow()
    dispute_status, escrow_status = _outcome(buyer_pct, vendor_pct)
    # The buyer share is rounded; the vendor takes the remainder so nothing is lost
    buyer_share = apply_percent(escrow.amount_cents, buyer_pct)
    vendor_share = escrow.amount_cents - buyer_share
    notes = notes or f"Split: {format_percent(buyer_pct)}% buyer, {format_percent(vendor_pct)}% vendor"

    if buyer_share > 0:
        get_or_create_wallet(db, escrow.buyer_id)
    if vendor_share > 0:
        get_or_create_wallet(db, vendor_user)

    with atomic(db):
        result = db.execute(
            update(Dispute)
            .where(Dispute.id == dispute.id, Dispute.status.in_(UNRESOLVED_DISPUTE_STATUSES))
            .values(
                status=dispute_status,
                buyer_refund_cents=buyer_share,
                vendor_payout_cents=vendor_share,
                resolution_notes=notes,
                resolved_by=requester.user_id,
                resolved_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise DisputeAlreadyResolved(dispute_id=dispute.id)

        result = db.execute(
            update(Escrow)
            .where(Escrow.id == escrow.id, Escrow.status == EscrowStatus.DISPUTED)
            .values(status=escrow_status, finalized_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise EscrowNotActive("The escrow is no longer under dispute.", escrow_id=escrow.id)

        reference = (ReferenceType.DISPUTE, dispute.id)
        if buyer_share > 0:
            credit(
                db, escrow.buyer_id, buyer_share, TransactionType.DISPUTE_REFUND,
                f"Dispute refund ({format_percent(buyer_pct)}%): order {escrow.order_id}", reference=reference,
            )
        if vendor_share > 0:
            credit(
                db, vendor_user, vendor_share, TransactionType.DISPUTE_PAYOUT,
                f"Dispute payout ({format_percent(vendor_pct)}%): order {escrow.order_id}", reference=reference,
            )
        record_event(
            db, "DisputeResolved", escrow_id=escrow.id, order_id=escrow.order_id, dispute_id=dispute.id,
            user_id=requester.user_id, amount_cents=escrow.amount_cents, status=dispute_status.value,
        )

    logger.info(
        f"⚖️ Dispute {dispute.id} resolved ({dispute_status.value}): "
        f"buyer {format_usd(buyer_share)}, vendor {format_usd(vendor_share)}"
    )
    return _load_dispute(db, dispute.id)

def resolve_dispute(db: Session, dispute_id: str, requester: Requester, buyer_percentage, vendor_percentage,
                    notes: Optional[str] = None, now: Optional[datetime] = None) -> Dispute:
    """Split the escrowed amount between buyer and vendor. Vendor or admin only."""
    buyer_pct, vendor_pct = _validate_split(buyer_percentage, vendor_percentage)
    dispute = _load_dispute(db, dispute_id)
    escrow = _load_escrow(db, dispute)
    vendor_user = vendor_user_id(db, escrow)
    if not (requester.is_admin or requester.user_id == vendor_user):
        raise NotAuthorized("Only the vendor or an admin can resolve this dispute.")
    return _settle(db, dispute, escrow, vendor_user, requester, buyer_pct, vendor_pct, notes, now)

def release_disputed_escrow(db: Session, dispute_id: str, requester: Requester,
                            now: Optional[datetime] = None) -> Dispute:
    """Buyer gives up the claim: the whole amount goes to the vendor."""
    dispute = _load_dispute(db, dispute_id)
    escrow = _load_escrow(db, dispute)
    if requester.user_id != escrow.buyer_id:
        raise NotAuthorized("Only the buyer can release a disputed escrow.")
    vendor_user = vendor_user_id(db, escrow)
    return _settle(db, dispute, escrow, vendor_user, requester, Decimal(0), HUNDRED,
                   "Released to vendor by buyer", now)

def _sender_type(db: Session, dispute: Dispute, requester: Requester) -> SenderType:
    if requester.is_admin:
        return SenderType.ADMIN
    escrow = _load_escrow(db, dispute)
    if requester.user_id == escrow.buyer_id:
        return SenderType.USER
    if requester.user_id == vendor_user_id(db, escrow):
        return SenderType.VENDOR
    raise NotAuthorized("You are not a party to this dispute.")

def add_dispute_message(db: Session, dispute_id: str, requester: Requester, message: str) -> DisputeMessage:
    message = (message or "").strip()
    if not message:
        raise ValidationFailed("Message cannot be empty.", field="message")
    dispute = _load_dispute(db, dispute_id)
    sender_type = _sender_type(db, dispute, requester)
    if dispute.status.is_resolved:
        raise DisputeAlreadyResolved(dispute_id=dispute_id)

    with atomic(db):
        entry = DisputeMessage(
            dispute_id=dispute_id, sender_id=requester.user_id, sender_type=sender_type,
            message=message, created_at=utcnow(),
        )
        db.add(entry)
        if sender_type is not SenderType.USER:
            # First reply from the other side picks the dispute up
            db.execute(
                update(Dispute)
                .where(Dispute.id == dispute_id, Dispute.status == DisputeStatus.OPEN)
                .values(status=DisputeStatus.IN_PROGRESS)
                .execution_options(synchronize_session=False)
            )
    return entry

def list_dispute_messages(db: Session, dispute_id: str, requester: Requester) -> List[DisputeMessage]:
    dispute = _load_dispute(db, dispute_id)
    _sender_type(db, dispute, requester)
    stmt = select(DisputeMessage).where(DisputeMessage.dispute_id == dispute_id).order_by(DisputeMessage.id)
    return list(db.execute(stmt).scalars())

def get_dispute_view(db: Session, dispute_id: str, requester: Requester) -> dict:
    dispute = _load_dispute(db, dispute_id)
    _sender_type(db, dispute, requester)
    view = dispute.to_dict()
    view["messages"] = [m.to_dict() for m in list_dispute_messages(db, dispute_id, requester)]
    return view

def list_disputes(db: Session, requester: Requester, status: Optional[DisputeStatus] = None) -> List[Dispute]:
    if not requester.is_admin:
        raise NotAuthorized("Admin access required.")
    stmt = select(Dispute).order_by(Dispute.created_at.desc(), Dispute.id)
    if status is not None:
        stmt = stmt.where(Dispute.status == status)
    return list(db.execute(stmt.execution_options(populate_existing=True)).scalars())
