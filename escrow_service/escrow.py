"""
Escrow state machine: checkout, finalize, extend, delivery and order views.

Status changes are conditional UPDATEs keyed on the expected current status.
Money moves only when the update matched exactly one row, inside the same
transaction, so a retried or concurrent call can never pay twice.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from common.money import apply_bps, format_usd, from_cents
from common.security import Requester
from common.settings import settings
from escrow_service.catalog import get_product, get_commission_bps
from escrow_service.db import atomic
from escrow_service.errors import (
    EscrowNotFound, EscrowAlreadyFinalized, EscrowNotActive, MaxExtensionsReached,
    NotAuthorized, OrderNotFound, OutOfStock,
)
from escrow_service.ledger import credit, debit, get_or_create_wallet
from escrow_service.models import (
    Order, Escrow, Product, Vendor, EscrowStatus, ProductType, DeliveryStatus, PaymentStatus,
    TransactionType, ReferenceType, TERMINAL_ESCROW_STATUSES, new_id, utcnow,
)
from escrow_service.outbox import record_event

logger = logging.getLogger(__name__)

def auto_finalize_window(product_type: ProductType) -> timedelta:
    if product_type is ProductType.DIGITAL:
        return timedelta(hours=settings.digital_auto_finalize_hours)
    return timedelta(hours=settings.physical_auto_finalize_hours)

def escrow_for_order(db: Session, order_id: str) -> Escrow:
    stmt = select(Escrow).where(Escrow.order_id == order_id).execution_options(populate_existing=True)
    escrow = db.execute(stmt).scalar_one_or_none()
    if escrow is None:
        raise EscrowNotFound(order_id=order_id)
    return escrow

def vendor_user_id(db: Session, escrow: Escrow) -> str:
    """User id that owns the escrow vendor's wallet."""
    vendor = db.get(Vendor, escrow.vendor_id)
    if vendor is None:
        raise EscrowNotFound("The vendor for this escrow no longer exists.", escrow_id=escrow.id)
    return vendor.user_id

def _current_status(db: Session, escrow_id: str) -> EscrowStatus:
    return db.execute(select(Escrow.status).where(Escrow.id == escrow_id)).scalar_one()

def _reject_transition(status: EscrowStatus, escrow_id: str):
    if status.is_terminal:
        raise EscrowAlreadyFinalized(escrow_id=escrow_id, status=status.normalized().value)
    raise EscrowNotActive(escrow_id=escrow_id, status=status.value)

def create_order_with_escrow(db: Session, buyer_id: str, product_id: str,
                             now: Optional[datetime] = None) -> Tuple[str, str]:
    """Charge the buyer and lock the payment in a new escrow. Returns (order_id, escrow_id)."""
    now = now or utcnow()
    product = get_product(db, product_id)
    is_digital = product.product_type is ProductType.DIGITAL
    if is_digital and product.stock is not None and product.stock <= 0:
        raise OutOfStock(product_id=product_id)

    # Rate is read once here; the escrow keeps the derived amounts for good
    rate_bps = get_commission_bps(db)
    amount = product.price_cents
    commission = apply_bps(amount, rate_bps)
    order_id, escrow_id = new_id(), new_id()

    get_or_create_wallet(db, buyer_id)
    with atomic(db):
        debit(
            db, buyer_id, amount, TransactionType.ESCROW_LOCK, f"Purchase: {product.name}",
            reference=(ReferenceType.ORDER, order_id),
        )

        delivery_status, delivered_content = DeliveryStatus.PENDING, None
        if is_digital:
            if product.stock is not None:
                result = db.execute(
                    update(Product)
                    .where(Product.id == product.id, Product.stock > 0)
                    .values(stock=Product.stock - 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise OutOfStock(product_id=product_id)
            delivery_status, delivered_content = DeliveryStatus.DELIVERED, product.delivery_content

        order = Order(
            id=order_id,
            user_id=buyer_id,
            vendor_id=product.vendor_id,
            product_id=product.id,
            product_name=product.name,
            product_price_cents=amount,
            payment_status=PaymentStatus.COMPLETED,
            delivery_status=delivery_status,
            delivered_content=delivered_content,
            created_at=now,
        )
        escrow = Escrow(
            id=escrow_id,
            order=order,
            buyer_id=buyer_id,
            vendor_id=product.vendor_id,
            amount_cents=amount,
            commission_rate_bps=rate_bps,
            commission_cents=commission,
            vendor_amount_cents=amount - commission,
            status=EscrowStatus.ACTIVE,
            product_type=product.product_type,
            auto_finalize_at=now + auto_finalize_window(product.product_type),
            extended_count=0,
            created_at=now,
        )
        db.add_all([order, escrow])
        record_event(
            db, "EscrowCreated", escrow_id=escrow_id, order_id=order_id, user_id=buyer_id,
            amount_cents=amount, status=EscrowStatus.ACTIVE.value,
        )

    logger.info(f"🔒 Escrow {escrow_id} locked {format_usd(amount)} for order {order_id}")
    return order_id, escrow_id

def release_escrow(db: Session, escrow: Escrow, vendor_user: str, now: datetime) -> bool:
    """Move an active escrow to finalized and pay the vendor.

    Shared by manual finalize and the sweeper. Returns False without touching
    any balance when the escrow was no longer active. Runs inside the caller's
    unit of work.
    """
    result = db.execute(
        update(Escrow)
        .where(Escrow.id == escrow.id, Escrow.status == EscrowStatus.ACTIVE)
        .values(status=EscrowStatus.FINALIZED, finalized_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    if escrow.vendor_amount_cents > 0:
        credit(
            db, vendor_user, escrow.vendor_amount_cents, TransactionType.ESCROW_RELEASE,
            f"Escrow release: order {escrow.order_id}",
            reference=(ReferenceType.ORDER, escrow.order_id),
        )
    record_event(
        db, "EscrowFinalized", escrow_id=escrow.id, order_id=escrow.order_id, user_id=vendor_user,
        amount_cents=escrow.vendor_amount_cents, status=EscrowStatus.FINALIZED.value,
    )
    return True

def finalize_escrow(db: Session, order_id: str, requester: Requester,
                    now: Optional[datetime] = None) -> Escrow:
    escrow = escrow_for_order(db, order_id)
    if escrow.buyer_id != requester.user_id:
        raise NotAuthorized("Only the buyer can finalize this order.")

    vendor_user = vendor_user_id(db, escrow)
    get_or_create_wallet(db, vendor_user)
    with atomic(db):
        if not release_escrow(db, escrow, vendor_user, now or utcnow()):
            _reject_transition(_current_status(db, escrow.id), escrow.id)

    logger.info(f"✅ Escrow {escrow.id} finalized by buyer, vendor paid {format_usd(escrow.vendor_amount_cents)}")
    return escrow_for_order(db, order_id)

def extend_escrow(db: Session, order_id: str, requester: Requester) -> datetime:
    """Push the auto-finalize deadline back by one extension window. Returns the new deadline."""
    escrow = escrow_for_order(db, order_id)
    if escrow.buyer_id != requester.user_id:
        raise NotAuthorized("Only the buyer can extend this escrow.")
    if escrow.status is not EscrowStatus.ACTIVE:
        raise EscrowNotActive(escrow_id=escrow.id, status=escrow.status.value)
    if escrow.extended_count >= settings.max_escrow_extensions:
        raise MaxExtensionsReached(extended_count=escrow.extended_count)

    deadline = escrow.auto_finalize_at + timedelta(hours=settings.escrow_extension_hours)
    with atomic(db):
        # The extension counter doubles as the version of auto_finalize_at
        result = db.execute(
            update(Escrow)
            .where(
                Escrow.id == escrow.id,
                Escrow.status == EscrowStatus.ACTIVE,
                Escrow.extended_count == escrow.extended_count,
            )
            .values(extended_count=escrow.extended_count + 1, auto_finalize_at=deadline)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = escrow_for_order(db, order_id)
            if current.status is not EscrowStatus.ACTIVE:
                raise EscrowNotActive(escrow_id=escrow.id, status=current.status.value)
            if current.extended_count >= settings.max_escrow_extensions:
                raise MaxExtensionsReached(extended_count=current.extended_count)
            raise EscrowNotActive("The escrow changed concurrently, please retry.", escrow_id=escrow.id)
        record_event(
            db, "EscrowExtended", escrow_id=escrow.id, order_id=order_id, user_id=requester.user_id,
            status=EscrowStatus.ACTIVE.value,
        )

    logger.info(f"⏳ Escrow {escrow.id} extended to {deadline.isoformat()}")
    return deadline

def _load_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id, populate_existing=True)
    if order is None:
        raise OrderNotFound(order_id=order_id)
    return order

def _is_order_vendor(db: Session, order: Order, requester: Requester) -> bool:
    vendor = db.get(Vendor, order.vendor_id)
    return vendor is not None and vendor.user_id == requester.user_id

def mark_order_delivered(db: Session, order_id: str, requester: Requester,
                         content: Optional[str] = None) -> Order:
    order = _load_order(db, order_id)
    if not (requester.is_admin or _is_order_vendor(db, order, requester)):
        raise NotAuthorized("Only the vendor can mark this order delivered.")

    # Delivery is only recorded while the funds are still held
    open_escrows = select(Escrow.order_id).where(Escrow.status.not_in(list(TERMINAL_ESCROW_STATUSES)))
    with atomic(db):
        values = {"delivery_status": DeliveryStatus.DELIVERED}
        if content is not None:
            values["delivered_content"] = content
        result = db.execute(
            update(Order).where(Order.id == order_id, Order.id.in_(open_escrows)).values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            status = _current_status(db, escrow_for_order(db, order_id).id)
            raise EscrowNotActive(order_id=order_id, status=status.normalized().value)
    logger.info(f"📦 Order {order_id} marked delivered by {requester.user_id}")
    return _load_order(db, order_id)

def get_order_view(db: Session, order_id: str, requester: Requester) -> dict:
    order = _load_order(db, order_id)
    if not (requester.is_admin or order.user_id == requester.user_id or _is_order_vendor(db, order, requester)):
        raise NotAuthorized("You cannot view this order.")
    if order.escrow is not None:
        escrow_for_order(db, order_id)
    return order.to_dict()

def list_orders(db: Session, requester: Requester) -> List[dict]:
    """The requester's purchases, newest first, with escrow deadline and status."""
    stmt = (
        select(Order, Escrow, Vendor)
        .join(Escrow, Escrow.order_id == Order.id)
        .join(Vendor, Vendor.id == Order.vendor_id)
        .where(Order.user_id == requester.user_id)
        .order_by(Order.created_at.desc(), Order.id)
        .execution_options(populate_existing=True)
    )
    return [
        {
            "id": order.id,
            "escrow_id": escrow.id,
            "product_id": order.product_id,
            "product_name": order.product_name,
            "vendor_name": vendor.name,
            "amount": str(from_cents(escrow.amount_cents)),
            "status": escrow.status.normalized().value,
            "delivery_status": order.delivery_status.value,
            "created_at": order.created_at.isoformat(),
            "auto_finalize_at": escrow.auto_finalize_at.isoformat(),
        }
        for order, escrow, vendor in db.execute(stmt)
    ]
