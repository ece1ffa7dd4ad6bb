import logging
from contextlib import asynccontextmanager
import jwt
from fastapi import FastAPI, Depends, Header, HTTPException, Query, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from common.documentation import create_custom_openapi, ESCROW_DOCS
from common.error_handling import add_error_handlers
from common.money import to_cents, from_cents, bps_to_percent
from common.redis_client import redis_client
from common.schemas import (
    CreateOrder, OpenDispute, ResolveDispute, MarkDelivered, DisputeMessageIn, WithdrawalIn,
    CommissionUpdate, DepositConfirmed,
)
from common.security import Requester, verify_token, requester_from_claims
from common.settings import settings
from common.tracing import tracing_middleware, escrow_tracer
from escrow_service import catalog, disputes, escrow, ledger
from escrow_service.db import get_db, init_db
from escrow_service.errors import NotAuthorized
from escrow_service.models import DisputeStatus
from escrow_service.sweeper import sweep_expired_escrows

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("🚀 Escrow service started")
    yield

app = FastAPI(title="Escrow Service", description=ESCROW_DOCS, lifespan=lifespan)
add_error_handlers(app)
app.openapi = lambda: create_custom_openapi(app, "Escrow Service", "1.0.0", ESCROW_DOCS)

@app.middleware("http")
async def trace_requests(request: Request, call_next):
    return await tracing_middleware(request, call_next, escrow_tracer)

def _bearer(authorization: str) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    return authorization.split(" ", 1)[1]

async def current_requester(authorization: str = Header(None)) -> Requester:
    token = _bearer(authorization)
    try:
        return requester_from_claims(verify_token(token))
    except jwt.InvalidTokenError as e:
        raise HTTPException(401, f"invalid token: {e}")

async def require_admin(requester: Requester = Depends(current_requester)) -> Requester:
    if not requester.is_admin:
        raise NotAuthorized("Admin access required.")
    return requester

# Service-to-service calls carry a down-scoped token for this audience
async def internal_auth(authorization: str = Header(None)):
    token = _bearer(authorization)
    try:
        verify_token(token, audience="escrow")
    except jwt.InvalidTokenError as e:
        raise HTTPException(401, f"invalid internal token: {e}")

# Orders

@app.post("/orders", status_code=201, tags=["Orders"])
async def create_order(body: CreateOrder, requester: Requester = Depends(current_requester),
                       db: Session = Depends(get_db)):
    order_id, escrow_id = escrow.create_order_with_escrow(db, requester.user_id, body.product_id)
    return {"order_id": order_id, "escrow_id": escrow_id}

@app.get("/orders", tags=["Orders"])
async def list_orders(requester: Requester = Depends(current_requester), db: Session = Depends(get_db)):
    return {"orders": escrow.list_orders(db, requester)}

@app.get("/orders/{order_id}", tags=["Orders"])
async def get_order(order_id: str, requester: Requester = Depends(current_requester),
                    db: Session = Depends(get_db)):
    return escrow.get_order_view(db, order_id, requester)

@app.post("/orders/{order_id}/finalize", tags=["Orders"])
async def finalize_order(order_id: str, requester: Requester = Depends(current_requester),
                         db: Session = Depends(get_db)):
    released = escrow.finalize_escrow(db, order_id, requester)
    return {"success": True, "escrow": released.to_dict()}

@app.post("/orders/{order_id}/extend", tags=["Orders"])
async def extend_order(order_id: str, requester: Requester = Depends(current_requester),
                       db: Session = Depends(get_db)):
    deadline = escrow.extend_escrow(db, order_id, requester)
    return {"success": True, "auto_finalize_at": deadline.isoformat()}

@app.post("/orders/{order_id}/dispute", status_code=201, tags=["Orders"])
async def dispute_order(order_id: str, body: OpenDispute, requester: Requester = Depends(current_requester),
                        db: Session = Depends(get_db)):
    dispute_id = disputes.open_dispute(db, order_id, requester, body.reason)
    return {"dispute_id": dispute_id}

@app.post("/orders/{order_id}/deliver", tags=["Orders"])
async def deliver_order(order_id: str, body: MarkDelivered = None, requester: Requester = Depends(current_requester),
                        db: Session = Depends(get_db)):
    order = escrow.mark_order_delivered(db, order_id, requester, body.content if body else None)
    return order.to_dict()

# Disputes

@app.get("/disputes/{dispute_id}", tags=["Disputes"])
async def get_dispute(dispute_id: str, requester: Requester = Depends(current_requester),
                      db: Session = Depends(get_db)):
    return disputes.get_dispute_view(db, dispute_id, requester)

@app.get("/disputes/{dispute_id}/messages", tags=["Disputes"])
async def get_dispute_messages(dispute_id: str, requester: Requester = Depends(current_requester),
                               db: Session = Depends(get_db)):
    return {"messages": [m.to_dict() for m in disputes.list_dispute_messages(db, dispute_id, requester)]}

@app.post("/disputes/{dispute_id}/messages", status_code=201, tags=["Disputes"])
async def post_dispute_message(dispute_id: str, body: DisputeMessageIn,
                               requester: Requester = Depends(current_requester), db: Session = Depends(get_db)):
    return disputes.add_dispute_message(db, dispute_id, requester, body.message).to_dict()

@app.post("/disputes/{dispute_id}/resolve", tags=["Disputes"])
async def resolve(dispute_id: str, body: ResolveDispute, requester: Requester = Depends(current_requester),
                  db: Session = Depends(get_db)):
    dispute = disputes.resolve_dispute(
        db, dispute_id, requester, body.buyer_percentage, body.vendor_percentage, body.resolution_notes,
    )
    return {"success": True, "dispute": dispute.to_dict()}

@app.post("/disputes/{dispute_id}/release", tags=["Disputes"])
async def release(dispute_id: str, requester: Requester = Depends(current_requester),
                  db: Session = Depends(get_db)):
    dispute = disputes.release_disputed_escrow(db, dispute_id, requester)
    return {"success": True, "dispute": dispute.to_dict()}

# Wallet

@app.get("/wallet", tags=["Wallet"])
async def wallet(requester: Requester = Depends(current_requester), db: Session = Depends(get_db)):
    return ledger.get_wallet(db, requester.user_id).to_dict()

@app.get("/wallet/transactions", tags=["Wallet"])
async def wallet_transactions(limit: int = Query(50, ge=1, le=200),
                              requester: Requester = Depends(current_requester), db: Session = Depends(get_db)):
    return {"transactions": [t.to_dict() for t in ledger.list_transactions(db, requester.user_id, limit)]}

@app.post("/wallet/withdrawals", status_code=201, tags=["Wallet"])
async def withdraw(body: WithdrawalIn, requester: Requester = Depends(current_requester),
                   db: Session = Depends(get_db)):
    w = ledger.request_withdrawal(db, requester.user_id, to_cents(body.amount), body.address)
    return {"id": w.id, "amount": str(from_cents(w.amount_cents)), "status": w.status}

# Administration

@app.get("/admin/disputes", tags=["Administration"])
async def admin_disputes(status: DisputeStatus = None, requester: Requester = Depends(require_admin),
                         db: Session = Depends(get_db)):
    return {"disputes": [d.to_dict() for d in disputes.list_disputes(db, requester, status)]}

@app.get("/admin/commission", tags=["Administration"])
async def get_commission(requester: Requester = Depends(require_admin), db: Session = Depends(get_db)):
    return {"commission_rate": str(bps_to_percent(catalog.get_commission_bps(db)))}

@app.put("/admin/commission", tags=["Administration"])
async def put_commission(body: CommissionUpdate, requester: Requester = Depends(require_admin),
                         db: Session = Depends(get_db)):
    bps = catalog.set_commission_rate(db, requester, body.commission_rate)
    return {"success": True, "commission_rate": str(bps_to_percent(bps))}

@app.get("/admin/wallets", tags=["Administration"])
async def admin_wallets(limit: int = Query(100, ge=1, le=500), requester: Requester = Depends(require_admin),
                        db: Session = Depends(get_db)):
    return {"wallets": [w.to_dict() for w in ledger.list_wallets(db, requester, limit)]}

@app.get("/admin/finances", tags=["Administration"])
async def finances(requester: Requester = Depends(require_admin), db: Session = Depends(get_db)):
    return catalog.finance_summary(db)

# Internal

@app.post("/internal/deposits", dependencies=[Depends(internal_auth)], tags=["Internal"])
async def confirm_deposit(event: DepositConfirmed, db: Session = Depends(get_db)):
    txn = ledger.deposit(db, event.user_id, to_cents(event.amount), event.event_id, event.description)
    return txn.to_dict()

@app.post("/internal/sweep", dependencies=[Depends(internal_auth)], tags=["Internal"])
async def sweep():
    return {"finalized": sweep_expired_escrows()}

@app.get("/health", tags=["Health"])
async def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.warning(f"Health check database failure: {type(e).__name__}")
        database = "unavailable"
    return {
        "ok": database == "ok",
        "service": "escrow",
        "database": database,
        "redis": "ok" if redis_client.ping() else "unavailable",
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
