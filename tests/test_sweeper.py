"""
Auto-finalize sweeper tests.
"""
from datetime import timedelta

from sqlalchemy import delete

from conftest import T0, BUYER, VENDOR, balance, fresh
from escrow_service import disputes, escrow, ledger
from escrow_service.db import SessionLocal
from escrow_service.models import Escrow, EscrowStatus, ProductType, Vendor, Product, Wallet
from escrow_service.sweeper import sweep_expired_escrows


def _buy(db, fund, product, now=T0):
    fund(BUYER.user_id, product.price_cents)
    return escrow.create_order_with_escrow(db, BUYER.user_id, product.id, now=now)


class TestSweep:
    def test_only_expired_escrows_are_finalized(self, db, fund, make_product):
        """One escrow past its deadline and one still running."""
        expired_order, expired_id = _buy(db, fund, make_product(2000, ProductType.DIGITAL), now=T0)
        _, running_id = _buy(db, fund, make_product(5000), now=T0)

        count = sweep_expired_escrows(now=T0 + timedelta(hours=25))

        assert count == 1
        assert fresh(db, Escrow, expired_id).status is EscrowStatus.FINALIZED
        assert fresh(db, Escrow, expired_id).finalized_at == T0 + timedelta(hours=25)
        assert fresh(db, Escrow, running_id).status is EscrowStatus.ACTIVE
        assert fresh(db, Escrow, running_id).finalized_at is None
        assert balance(db, VENDOR.user_id) == 1800

    def test_missing_vendor_wallet_is_created(self, db, fund, make_product):
        _buy(db, fund, make_product(1000, ProductType.DIGITAL))
        assert db.query(Wallet).filter_by(user_id=VENDOR.user_id).first() is None

        assert sweep_expired_escrows(now=T0 + timedelta(days=2)) == 1
        assert balance(db, VENDOR.user_id) == 900

    def test_deadline_is_strict(self, db, fund, make_product):
        _buy(db, fund, make_product(1000, ProductType.DIGITAL))
        assert sweep_expired_escrows(now=T0 + timedelta(hours=24)) == 0

    def test_disputed_escrows_are_never_swept(self, db, fund, make_product):
        order_id, escrow_id = _buy(db, fund, make_product(1000, ProductType.DIGITAL))
        disputes.open_dispute(db, order_id, BUYER, "Code already used")

        assert sweep_expired_escrows(now=T0 + timedelta(days=365)) == 0
        assert fresh(db, Escrow, escrow_id).status is EscrowStatus.DISPUTED
        assert balance(db, VENDOR.user_id) == 0

    def test_rerun_is_a_no_op(self, db, fund, make_product):
        _buy(db, fund, make_product(1000, ProductType.DIGITAL))
        later = T0 + timedelta(days=2)
        assert sweep_expired_escrows(now=later) == 1
        assert sweep_expired_escrows(now=later) == 0
        assert balance(db, VENDOR.user_id) == 900
        assert len(ledger.list_transactions(db, VENDOR.user_id)) == 1

    def test_manually_finalized_escrow_is_not_paid_again(self, db, fund, make_product):
        order_id, _ = _buy(db, fund, make_product(1000, ProductType.DIGITAL))
        escrow.finalize_escrow(db, order_id, BUYER)
        assert sweep_expired_escrows(now=T0 + timedelta(days=2)) == 0
        assert balance(db, VENDOR.user_id) == 900

    def test_one_bad_escrow_does_not_stop_the_batch(self, db, fund, make_product, caplog):
        _, good_id = _buy(db, fund, make_product(1000, ProductType.DIGITAL), now=T0)

        orphan_vendor = Vendor(id="vendor-gone", user_id="vendor-gone-user", name="Gone")
        db.add(orphan_vendor)
        db.commit()
        orphan = Product(vendor_id="vendor-gone", name="orphan", price_cents=500, product_type=ProductType.DIGITAL)
        db.add(orphan)
        db.commit()
        _, bad_id = _buy(db, fund, orphan, now=T0 - timedelta(hours=1))
        db.execute(delete(Vendor).where(Vendor.id == "vendor-gone"))
        db.commit()

        count = sweep_expired_escrows(now=T0 + timedelta(days=2))

        assert count == 1
        assert fresh(db, Escrow, good_id).status is EscrowStatus.FINALIZED
        assert fresh(db, Escrow, bad_id).status is EscrowStatus.ACTIVE
        assert f"Auto-finalize failed for escrow {bad_id}" in caplog.text

    def test_explicit_session_factory(self, db, fund, make_product):
        _buy(db, fund, make_product(1000, ProductType.DIGITAL))
        assert sweep_expired_escrows(T0 + timedelta(days=2), session_factory=SessionLocal) == 1
