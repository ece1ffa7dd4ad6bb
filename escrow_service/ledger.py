"""
Wallet ledger: the only code that writes a wallet balance.

Every balance change is a single conditional UPDATE followed by an append to
wallet_transactions in the same database transaction. credit/debit never
commit; callers wrap them in escrow_service.db.atomic().
"""
import logging
from typing import List, Optional, Tuple
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from common.money import format_usd
from common.security import Requester
from escrow_service.db import atomic
from escrow_service.errors import InsufficientFunds, InvalidAmount, NotAuthorized
from escrow_service.models import (
    Wallet, WalletTransaction, Withdrawal, TransactionType, ReferenceType, new_id, utcnow,
)
from escrow_service.outbox import record_event

logger = logging.getLogger(__name__)

Reference = Optional[Tuple[ReferenceType, str]]

def _find_wallet(db: Session, user_id: str) -> Optional[Wallet]:
    stmt = select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()

def get_or_create_wallet(db: Session, user_id: str) -> Wallet:
    """Return the user's wallet, creating an empty one on first use.

    Commits its own insert, so call it before opening a unit of work. A
    concurrent creator losing the unique-key race re-reads the winner's row.
    """
    wallet = _find_wallet(db, user_id)
    if wallet:
        return wallet
    db.add(Wallet(user_id=user_id, balance_cents=0))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
    wallet = _find_wallet(db, user_id)
    if wallet is None:
        raise RuntimeError(f"wallet for {user_id} vanished after create")
    return wallet

def get_wallet(db: Session, user_id: str) -> Wallet:
    return get_or_create_wallet(db, user_id)

def _require_positive(amount_cents: int):
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
        raise InvalidAmount(field="amount", amount=amount_cents)

def _append(db: Session, wallet_id: int, type: TransactionType, amount_cents: int,
            description: str, reference: Reference, idempotency_key: Optional[str]) -> WalletTransaction:
    balance_after = db.execute(select(Wallet.balance_cents).where(Wallet.id == wallet_id)).scalar_one()
    txn = WalletTransaction(
        wallet_id=wallet_id,
        type=type,
        amount_cents=amount_cents,
        balance_after_cents=balance_after,
        description=description,
        reference_type=reference[0] if reference else None,
        reference_id=reference[1] if reference else None,
        idempotency_key=idempotency_key,
        created_at=utcnow(),
    )
    db.add(txn)
    db.flush()
    return txn

def credit(db: Session, user_id: str, amount_cents: int, type: TransactionType, description: str,
           reference: Reference = None, idempotency_key: Optional[str] = None) -> WalletTransaction:
    _require_positive(amount_cents)
    wallet_id = db.execute(select(Wallet.id).where(Wallet.user_id == user_id)).scalar_one_or_none()
    if wallet_id is None:
        wallet = Wallet(user_id=user_id, balance_cents=0)
        db.add(wallet)
        db.flush()
        wallet_id = wallet.id

    db.execute(
        update(Wallet)
        .where(Wallet.id == wallet_id)
        .values(balance_cents=Wallet.balance_cents + amount_cents, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    txn = _append(db, wallet_id, type, amount_cents, description, reference, idempotency_key)
    logger.info(f"💰 Credited {format_usd(amount_cents)} to {user_id} ({type.value}), balance {format_usd(txn.balance_after_cents)}")
    return txn

def debit(db: Session, user_id: str, amount_cents: int, type: TransactionType, description: str,
          reference: Reference = None, idempotency_key: Optional[str] = None) -> WalletTransaction:
    _require_positive(amount_cents)
    wallet_id = db.execute(select(Wallet.id).where(Wallet.user_id == user_id)).scalar_one_or_none()
    if wallet_id is None:
        raise InsufficientFunds(required=amount_cents, available=0)

    # The balance check and the decrement are one statement
    result = db.execute(
        update(Wallet)
        .where(Wallet.id == wallet_id, Wallet.balance_cents >= amount_cents)
        .values(balance_cents=Wallet.balance_cents - amount_cents, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        available = db.execute(select(Wallet.balance_cents).where(Wallet.id == wallet_id)).scalar_one()
        raise InsufficientFunds(required=amount_cents, available=available)

    txn = _append(db, wallet_id, type, -amount_cents, description, reference, idempotency_key)
    logger.info(f"💸 Debited {format_usd(amount_cents)} from {user_id} ({type.value}), balance {format_usd(txn.balance_after_cents)}")
    return txn

def _transaction_by_key(db: Session, key: str) -> Optional[WalletTransaction]:
    return db.execute(
        select(WalletTransaction).where(WalletTransaction.idempotency_key == key)
    ).scalar_one_or_none()

def deposit(db: Session, user_id: str, amount_cents: int, event_id: str,
            description: Optional[str] = None) -> WalletTransaction:
    """Credit a confirmed deposit exactly once per event id."""
    _require_positive(amount_cents)
    key = f"deposit:{event_id}"
    existing = _transaction_by_key(db, key)
    if existing:
        logger.info(f"🔁 Deposit {event_id} already applied, skipping")
        return existing

    get_or_create_wallet(db, user_id)
    try:
        with atomic(db):
            txn = credit(
                db, user_id, amount_cents, TransactionType.DEPOSIT,
                description or f"Deposit {format_usd(amount_cents)}",
                reference=(ReferenceType.DEPOSIT, event_id),
                idempotency_key=key,
            )
    except IntegrityError:
        existing = _transaction_by_key(db, key)
        if existing is None:
            raise
        logger.info(f"🔁 Deposit {event_id} applied concurrently, skipping")
        return existing
    return txn

def request_withdrawal(db: Session, user_id: str, amount_cents: int, address: str) -> Withdrawal:
    """Move funds out of the wallet into a pending payout request."""
    _require_positive(amount_cents)
    withdrawal_id = new_id()
    with atomic(db):
        debit(
            db, user_id, amount_cents, TransactionType.WITHDRAWAL,
            f"Withdrawal to {address}",
            reference=(ReferenceType.WITHDRAWAL, withdrawal_id),
        )
        withdrawal = Withdrawal(
            id=withdrawal_id, user_id=user_id, amount_cents=amount_cents,
            destination_address=address, status="pending", created_at=utcnow(),
        )
        db.add(withdrawal)
        record_event(db, "WithdrawalRequested", user_id=user_id, amount_cents=amount_cents, status="pending")
    return withdrawal

def list_transactions(db: Session, user_id: str, limit: int = 50) -> List[WalletTransaction]:
    wallet = _find_wallet(db, user_id)
    if wallet is None:
        return []
    stmt = (
        select(WalletTransaction)
        .where(WalletTransaction.wallet_id == wallet.id)
        .order_by(WalletTransaction.id.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())

def reconstructed_balance(db: Session, wallet_id: int) -> int:
    """Balance recomputed from the transaction log alone."""
    total = db.execute(
        select(func.coalesce(func.sum(WalletTransaction.amount_cents), 0))
        .where(WalletTransaction.wallet_id == wallet_id)
    ).scalar_one()
    return int(total)

def list_wallets(db: Session, requester: Requester, limit: int = 100) -> List[Wallet]:
    """Admin overview of every wallet, largest balance first."""
    if not requester.is_admin:
        raise NotAuthorized("Admin access required.")
    stmt = (
        select(Wallet)
        .order_by(Wallet.balance_cents.desc(), Wallet.user_id)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(db.execute(stmt).scalars())
