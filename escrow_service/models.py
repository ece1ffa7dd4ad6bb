import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, BigInteger, DateTime, Text, ForeignKey, CheckConstraint, Enum, event, func,
)
from sqlalchemy.orm import declarative_base, relationship
from common.money import from_cents, bps_to_percent

Base = declarative_base()

def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def new_id() -> str:
    return str(uuid.uuid4())

def _iso(value):
    return value.isoformat() if value else None

def _enum_column(enum_cls, **kwargs):
    return Column(
        Enum(enum_cls, native_enum=False, length=24, values_callable=lambda e: [m.value for m in e]),
        **kwargs,
    )

class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    ESCROW_LOCK = "escrow_lock"
    ESCROW_RELEASE = "escrow_release"
    DISPUTE_REFUND = "dispute_refund"
    DISPUTE_PAYOUT = "dispute_payout"
    PURCHASE = "purchase"
    SALE = "sale"
    WITHDRAWAL = "withdrawal"

class ReferenceType(str, enum.Enum):
    ORDER = "order"
    DISPUTE = "dispute"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    CARD_PURCHASE = "card_purchase"

class ProductType(str, enum.Enum):
    DIGITAL = "digital"
    PHYSICAL = "physical"

class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"

class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"

class EscrowStatus(str, enum.Enum):
    ACTIVE = "active"
    DISPUTED = "disputed"
    FINALIZED = "finalized"
    RELEASED = "released"  # legacy name for FINALIZED, never written
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ESCROW_STATUSES

    def normalized(self) -> "EscrowStatus":
        return EscrowStatus.FINALIZED if self is EscrowStatus.RELEASED else self

TERMINAL_ESCROW_STATUSES = frozenset({EscrowStatus.FINALIZED, EscrowStatus.RELEASED, EscrowStatus.REFUNDED})

class DisputeStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED_BUYER = "resolved_buyer"
    RESOLVED_VENDOR = "resolved_vendor"
    RESOLVED_PARTIAL = "resolved_partial"

    @property
    def is_resolved(self) -> bool:
        return self not in (DisputeStatus.OPEN, DisputeStatus.IN_PROGRESS)

UNRESOLVED_DISPUTE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.IN_PROGRESS)

class SenderType(str, enum.Enum):
    USER = "user"
    VENDOR = "vendor"
    ADMIN = "admin"

class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (CheckConstraint("balance_cents >= 0", name="ck_wallet_balance_non_negative"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    balance_cents = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "balance": str(from_cents(self.balance_cents or 0)),
            "currency": "USD",
            "updated_at": _iso(self.updated_at),
        }

class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)
    type = _enum_column(TransactionType, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)  # negative for debits
    balance_after_cents = Column(BigInteger, nullable=False)
    description = Column(String(255), nullable=False, default="")
    reference_type = _enum_column(ReferenceType, nullable=True)
    reference_id = Column(String(64), nullable=True, index=True)
    idempotency_key = Column(String(160), nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type.value,
            "amount": str(from_cents(self.amount_cents)),
            "balance_after": str(from_cents(self.balance_after_cents)),
            "description": self.description,
            "reference_type": self.reference_type.value if self.reference_type else None,
            "reference_id": self.reference_id,
            "created_at": _iso(self.created_at),
        }

class LedgerImmutableError(Exception):
    pass

@event.listens_for(WalletTransaction, "before_update")
def _reject_transaction_update(mapper, connection, target):
    raise LedgerImmutableError(f"wallet transaction {target.id} is immutable")

@event.listens_for(WalletTransaction, "before_delete")
def _reject_transaction_delete(mapper, connection, target):
    raise LedgerImmutableError(f"wallet transaction {target.id} cannot be deleted")

class Vendor(Base):
    __tablename__ = "vendors"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(120), nullable=False, default="")

class Product(Base):
    __tablename__ = "products"
    id = Column(String(36), primary_key=True, default=new_id)
    vendor_id = Column(String(36), ForeignKey("vendors.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    price_cents = Column(BigInteger, nullable=False)
    product_type = _enum_column(ProductType, nullable=False, default=ProductType.PHYSICAL)
    delivery_content = Column(Text, nullable=True)
    stock = Column(Integer, nullable=True)  # NULL means untracked

    vendor = relationship("Vendor")

class CommissionSetting(Base):
    __tablename__ = "commission_settings"
    setting_type = Column(String(32), primary_key=True)
    commission_bps = Column(Integer, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

class Order(Base):
    __tablename__ = "orders"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    vendor_id = Column(String(36), ForeignKey("vendors.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=True)
    product_name = Column(String(200), nullable=False)
    product_price_cents = Column(BigInteger, nullable=False)
    payment_status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING)
    delivery_status = _enum_column(DeliveryStatus, nullable=False, default=DeliveryStatus.PENDING)
    delivered_content = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    escrow = relationship("Escrow", back_populates="order", uselist=False)
    vendor = relationship("Vendor")

    @property
    def escrow_status(self):
        """Display status of the paired escrow; the escrow row is the only stored copy."""
        return self.escrow.status.normalized() if self.escrow else None

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "vendor_id": self.vendor_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_price": str(from_cents(self.product_price_cents)),
            "payment_status": self.payment_status.value,
            "delivery_status": self.delivery_status.value,
            "delivered_content": self.delivered_content,
            "escrow_status": self.escrow_status.value if self.escrow_status else None,
            "created_at": _iso(self.created_at),
            "escrow": self.escrow.to_dict() if self.escrow else None,
        }

class Escrow(Base):
    __tablename__ = "escrows"
    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, unique=True)
    buyer_id = Column(String(64), nullable=False, index=True)
    vendor_id = Column(String(36), ForeignKey("vendors.id"), nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    commission_rate_bps = Column(Integer, nullable=False)
    commission_cents = Column(BigInteger, nullable=False)
    vendor_amount_cents = Column(BigInteger, nullable=False)
    status = _enum_column(EscrowStatus, nullable=False, default=EscrowStatus.ACTIVE, index=True)
    product_type = _enum_column(ProductType, nullable=False)
    auto_finalize_at = Column(DateTime, nullable=False, index=True)
    extended_count = Column(Integer, nullable=False, default=0)
    finalized_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="escrow")
    vendor = relationship("Vendor")
    dispute = relationship("Dispute", back_populates="escrow", uselist=False)

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "buyer_id": self.buyer_id,
            "vendor_id": self.vendor_id,
            "amount": str(from_cents(self.amount_cents)),
            "commission_rate": str(bps_to_percent(self.commission_rate_bps)),
            "commission_amount": str(from_cents(self.commission_cents)),
            "vendor_amount": str(from_cents(self.vendor_amount_cents)),
            "status": self.status.normalized().value,
            "product_type": self.product_type.value,
            "auto_finalize_at": _iso(self.auto_finalize_at),
            "extended_count": self.extended_count,
            "finalized_at": _iso(self.finalized_at),
        }

class Dispute(Base):
    __tablename__ = "disputes"
    id = Column(String(36), primary_key=True, default=new_id)
    escrow_id = Column(String(36), ForeignKey("escrows.id"), nullable=False, unique=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    opened_by = Column(String(64), nullable=False)
    reason = Column(Text, nullable=False)
    status = _enum_column(DisputeStatus, nullable=False, default=DisputeStatus.OPEN, index=True)
    buyer_refund_cents = Column(BigInteger, nullable=True)
    vendor_payout_cents = Column(BigInteger, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by = Column(String(64), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    escrow = relationship("Escrow", back_populates="dispute")
    messages = relationship("DisputeMessage", order_by="DisputeMessage.id", back_populates="dispute")

    def to_dict(self):
        return {
            "id": self.id,
            "escrow_id": self.escrow_id,
            "order_id": self.order_id,
            "opened_by": self.opened_by,
            "reason": self.reason,
            "status": self.status.value,
            "buyer_refund": str(from_cents(self.buyer_refund_cents)) if self.buyer_refund_cents is not None else None,
            "vendor_payout": str(from_cents(self.vendor_payout_cents)) if self.vendor_payout_cents is not None else None,
            "resolution_notes": self.resolution_notes,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "created_at": _iso(self.created_at),
        }

class DisputeMessage(Base):
    __tablename__ = "dispute_messages"
    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=False, index=True)
    sender_id = Column(String(64), nullable=False)
    sender_type = _enum_column(SenderType, nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    dispute = relationship("Dispute", back_populates="messages")

    def to_dict(self):
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "sender_type": self.sender_type.value,
            "message": self.message,
            "created_at": _iso(self.created_at),
        }

class Withdrawal(Base):
    __tablename__ = "withdrawals"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    destination_address = Column(String(128), nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending|sent|rejected
    created_at = Column(DateTime, nullable=False, default=utcnow)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(String(4000), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    status = Column(String(16), default="new")  # new|sent|failed
