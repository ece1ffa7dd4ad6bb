import logging
from decimal import Decimal
from typing import Optional
from sqlalchemy import select, func, exists
from sqlalchemy.orm import Session
from common.money import percent_to_bps, bps_to_percent, from_cents
from common.security import Requester
from common.settings import settings
from escrow_service.db import atomic
from escrow_service.errors import ProductNotFound, NotAuthorized, ValidationFailed
from escrow_service.models import (
    Product, Vendor, CommissionSetting, Escrow, EscrowStatus, Dispute, utcnow,
)

logger = logging.getLogger(__name__)

GLOBAL_SETTING = "global"

def get_product(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise ProductNotFound(product_id=product_id)
    return product

def get_vendor(db: Session, vendor_id: str) -> Optional[Vendor]:
    return db.get(Vendor, vendor_id)

def vendor_for_user(db: Session, user_id: str) -> Optional[Vendor]:
    return db.execute(select(Vendor).where(Vendor.user_id == user_id)).scalar_one_or_none()

def get_commission_bps(db: Session) -> int:
    """Current global commission rate; the configured default when none is stored."""
    row = db.get(CommissionSetting, GLOBAL_SETTING, populate_existing=True)
    if row is None:
        return percent_to_bps(settings.default_commission_percentage)
    return row.commission_bps

def set_commission_rate(db: Session, requester: Requester, percentage: Decimal) -> int:
    if not requester.is_admin:
        raise NotAuthorized()
    if percentage < 0 or percentage > 100:
        raise ValidationFailed("Commission rate must be between 0 and 100.", field="commission_rate")
    bps = percent_to_bps(percentage)
    with atomic(db):
        row = db.get(CommissionSetting, GLOBAL_SETTING)
        if row is None:
            db.add(CommissionSetting(setting_type=GLOBAL_SETTING, commission_bps=bps, updated_at=utcnow()))
        else:
            row.commission_bps = bps
            row.updated_at = utcnow()
    logger.info(f"⚙️ Commission rate set to {bps_to_percent(bps)}% by {requester.user_id}")
    return bps

def finance_summary(db: Session) -> dict:
    """Marketplace totals for the admin finance view."""
    total_revenue = db.execute(select(func.coalesce(func.sum(Escrow.amount_cents), 0))).scalar_one()
    held = db.execute(
        select(func.coalesce(func.sum(Escrow.amount_cents), 0))
        .where(Escrow.status.in_([EscrowStatus.ACTIVE, EscrowStatus.DISPUTED]))
    ).scalar_one()
    # Disputed escrows pay out the full amount, so only undisputed finalizations earn commission
    commissions = db.execute(
        select(func.coalesce(func.sum(Escrow.commission_cents), 0))
        .where(
            Escrow.status.in_([EscrowStatus.FINALIZED, EscrowStatus.RELEASED]),
            ~exists().where(Dispute.escrow_id == Escrow.id),
        )
    ).scalar_one()
    return {
        "commission_rate": str(bps_to_percent(get_commission_bps(db))),
        "total_revenue": str(from_cents(total_revenue)),
        "total_commissions": str(from_cents(commissions)),
        "total_escrow": str(from_cents(held)),
    }
