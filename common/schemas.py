from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Literal, Optional

class CreateOrder(BaseModel):
    product_id: str

class OpenDispute(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)

class ResolveDispute(BaseModel):
    buyer_percentage: Decimal
    vendor_percentage: Decimal
    resolution_notes: Optional[str] = None

class MarkDelivered(BaseModel):
    content: Optional[str] = None

class DisputeMessageIn(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000)

class WithdrawalIn(BaseModel):
    amount: Decimal = Field(..., gt=0)
    address: str = Field(..., min_length=1, max_length=128)

class CommissionUpdate(BaseModel):
    commission_rate: Decimal = Field(..., ge=0, le=100)

class DepositConfirmed(BaseModel):
    """Confirmed deposit delivered by the payment processor integration."""
    event_id: str
    user_id: str
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = None

class EscrowEvent(BaseModel):
    type: Literal[
        "EscrowCreated",
        "EscrowFinalized",
        "EscrowExtended",
        "DisputeOpened",
        "DisputeResolved",
        "WithdrawalRequested",
    ]
    escrow_id: Optional[str] = None
    order_id: Optional[str] = None
    dispute_id: Optional[str] = None
    user_id: Optional[str] = None
    amount_cents: int = 0
    status: Optional[str] = None
    occurred_at: datetime
    trace_id: Optional[str] = None
