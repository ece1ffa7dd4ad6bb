"""
Escrow state machine tests: checkout, finalize, extend, delivery and order views.
"""
import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import T0, BUYER, VENDOR, ADMIN, STRANGER, balance, fresh
from common.security import Requester
from escrow_service import catalog, disputes, escrow, ledger
from escrow_service.errors import (
    EscrowAlreadyFinalized, EscrowNotActive, EscrowNotFound, InsufficientFunds, MaxExtensionsReached,
    NotAuthorized, OrderNotFound, OutOfStock, ProductNotFound,
)
from escrow_service.models import (
    Escrow, EscrowStatus, Order, Outbox, Product, ProductType, DeliveryStatus, PaymentStatus,
    TransactionType, WalletTransaction,
)


def _events(db):
    return [json.loads(row.payload)["type"] for row in db.execute(select(Outbox).order_by(Outbox.id)).scalars()]


class TestCheckout:
    def test_digital_purchase_scenario(self, db, fund, make_product):
        """$50 buyer buys a $30 digital product at the default 10% commission."""
        fund(BUYER.user_id, 5000)
        product = make_product(3000, ProductType.DIGITAL, stock=3, delivery_content="KEY-1234")

        order_id, escrow_id = escrow.create_order_with_escrow(db, BUYER.user_id, product.id, now=T0)

        assert balance(db, BUYER.user_id) == 2000
        order = fresh(db, Order, order_id)
        assert order.delivery_status is DeliveryStatus.DELIVERED
        assert order.delivered_content == "KEY-1234"
        assert order.payment_status is PaymentStatus.COMPLETED
        assert order.escrow_status is EscrowStatus.ACTIVE

        e = fresh(db, Escrow, escrow_id)
        assert e.status is EscrowStatus.ACTIVE
        assert e.auto_finalize_at == T0 + timedelta(hours=24)
        assert e.commission_cents == 300
        assert e.vendor_amount_cents == 2700
        assert e.commission_cents + e.vendor_amount_cents == e.amount_cents
        assert fresh(db, Product, product.id).stock == 2

        lock = ledger.list_transactions(db, BUYER.user_id)[0]
        assert lock.type is TransactionType.ESCROW_LOCK
        assert lock.description == f"Purchase: {product.name}"
        assert lock.reference_id == order_id
        assert _events(db) == ["EscrowCreated"]

    def test_physical_purchase_waits_for_delivery(self, db, fund, make_product):
        fund(BUYER.user_id, 10000)
        product = make_product(10000)
        order_id, escrow_id = escrow.create_order_with_escrow(db, BUYER.user_id, product.id, now=T0)

        order = fresh(db, Order, order_id)
        assert order.delivery_status is DeliveryStatus.PENDING
        assert order.delivered_content is None
        assert fresh(db, Escrow, escrow_id).auto_finalize_at == T0 + timedelta(hours=120)
        assert balance(db, BUYER.user_id) == 0

    def test_price_above_balance_leaves_no_trace(self, db, fund, make_product):
        fund(BUYER.user_id, 2999)
        product = make_product(3000, ProductType.DIGITAL, stock=1, delivery_content="x")

        with pytest.raises(InsufficientFunds):
            escrow.create_order_with_escrow(db, BUYER.user_id, product.id)

        assert balance(db, BUYER.user_id) == 2999
        assert db.execute(select(Order)).scalars().all() == []
        assert db.execute(select(Escrow)).scalars().all() == []
        assert len(db.execute(select(WalletTransaction)).scalars().all()) == 1
        assert fresh(db, Product, product.id).stock == 1
        assert _events(db) == []

    def test_unknown_product(self, db, fund):
        fund(BUYER.user_id, 100)
        with pytest.raises(ProductNotFound):
            escrow.create_order_with_escrow(db, BUYER.user_id, "no-such-product")
        assert balance(db, BUYER.user_id) == 100

    def test_sold_out_digital_product(self, db, fund, make_product):
        fund(BUYER.user_id, 5000)
        product = make_product(1000, ProductType.DIGITAL, stock=0)
        with pytest.raises(OutOfStock):
            escrow.create_order_with_escrow(db, BUYER.user_id, product.id)
        assert balance(db, BUYER.user_id) == 5000

    def test_commission_is_snapshotted_at_purchase(self, db, fund, make_product):
        fund(BUYER.user_id, 10000)
        catalog.set_commission_rate(db, ADMIN, 12.5)
        product = make_product(999)
        _, escrow_id = escrow.create_order_with_escrow(db, BUYER.user_id, product.id)

        catalog.set_commission_rate(db, ADMIN, 50)
        e = fresh(db, Escrow, escrow_id)
        assert e.commission_rate_bps == 1250
        assert e.commission_cents == 125  # 124.875 rounds half up
        assert e.vendor_amount_cents == 874

    def test_only_admin_sets_commission(self, db):
        with pytest.raises(NotAuthorized):
            catalog.set_commission_rate(db, BUYER, 5)
        assert catalog.get_commission_bps(db) == 1000


@pytest.fixture
def order(db, fund, make_product):
    fund(BUYER.user_id, 10000)
    product = make_product(10000)
    order_id, _ = escrow.create_order_with_escrow(db, BUYER.user_id, product.id, now=T0)
    return order_id


class TestFinalize:
    def test_buyer_finalize_pays_vendor_after_commission(self, db, order):
        released = escrow.finalize_escrow(db, order, BUYER, now=T0 + timedelta(hours=1))

        assert released.status is EscrowStatus.FINALIZED
        assert released.finalized_at == T0 + timedelta(hours=1)
        assert balance(db, VENDOR.user_id) == 9000
        payout = ledger.list_transactions(db, VENDOR.user_id)[0]
        assert payout.type is TransactionType.ESCROW_RELEASE
        assert payout.reference_id == order
        assert fresh(db, Order, order).escrow_status is EscrowStatus.FINALIZED
        assert _events(db)[-1] == "EscrowFinalized"

    def test_second_finalize_is_rejected_and_pays_nothing(self, db, order):
        escrow.finalize_escrow(db, order, BUYER)
        with pytest.raises(EscrowAlreadyFinalized):
            escrow.finalize_escrow(db, order, BUYER)
        assert balance(db, VENDOR.user_id) == 9000
        assert len(ledger.list_transactions(db, VENDOR.user_id)) == 1

    def test_only_buyer_can_finalize(self, db, order):
        for requester in (VENDOR, ADMIN, STRANGER):
            with pytest.raises(NotAuthorized):
                escrow.finalize_escrow(db, order, requester)
        assert fresh(db, Order, order).escrow_status is EscrowStatus.ACTIVE

    def test_unknown_order(self, db):
        with pytest.raises(EscrowNotFound):
            escrow.finalize_escrow(db, "missing", BUYER)

    def test_legacy_released_status_reads_as_finalized(self, db, order):
        e = escrow.escrow_for_order(db, order)
        e.status = EscrowStatus.RELEASED
        db.commit()
        assert fresh(db, Order, order).escrow_status is EscrowStatus.FINALIZED
        with pytest.raises(EscrowAlreadyFinalized):
            escrow.finalize_escrow(db, order, BUYER)


class TestExtend:
    def test_extend_adds_48_hours(self, db, order):
        deadline = escrow.extend_escrow(db, order, BUYER)
        assert deadline == T0 + timedelta(hours=168)
        e = escrow.escrow_for_order(db, order)
        assert e.auto_finalize_at == deadline
        assert e.extended_count == 1

    def test_sixth_extension_is_rejected_without_change(self, db, order):
        """An escrow already extended five times cannot be extended again."""
        for _ in range(5):
            escrow.extend_escrow(db, order, BUYER)
        before = escrow.escrow_for_order(db, order).auto_finalize_at

        with pytest.raises(MaxExtensionsReached):
            escrow.extend_escrow(db, order, BUYER)

        e = escrow.escrow_for_order(db, order)
        assert e.extended_count == 5
        assert e.auto_finalize_at == before == T0 + timedelta(hours=120 + 5 * 48)

    def test_cannot_extend_finalized_escrow(self, db, order):
        escrow.finalize_escrow(db, order, BUYER)
        with pytest.raises(EscrowNotActive):
            escrow.extend_escrow(db, order, BUYER)

    def test_only_buyer_can_extend(self, db, order):
        with pytest.raises(NotAuthorized):
            escrow.extend_escrow(db, order, VENDOR)


class TestOrderView:
    def test_parties_can_view(self, db, order):
        for requester in (BUYER, VENDOR, ADMIN):
            view = escrow.get_order_view(db, order, requester)
            assert view["escrow_status"] == "active"
            assert view["escrow"]["amount"] == "100.00"
            assert view["escrow"]["commission_amount"] == "10.00"

    def test_stranger_cannot_view(self, db, order):
        with pytest.raises(NotAuthorized):
            escrow.get_order_view(db, order, STRANGER)

    def test_view_follows_escrow_status(self, db, order):
        escrow.finalize_escrow(db, order, BUYER)
        assert escrow.get_order_view(db, order, BUYER)["escrow_status"] == "finalized"

    def test_unknown_order(self, db):
        with pytest.raises(OrderNotFound):
            escrow.get_order_view(db, "missing", ADMIN)


class TestDelivery:
    def test_vendor_marks_physical_order_delivered(self, db, order):
        delivered = escrow.mark_order_delivered(db, order, VENDOR, "Tracking: 1Z999")
        assert delivered.delivery_status is DeliveryStatus.DELIVERED
        assert delivered.delivered_content == "Tracking: 1Z999"

    def test_buyer_cannot_mark_delivered(self, db, order):
        with pytest.raises(NotAuthorized):
            escrow.mark_order_delivered(db, order, BUYER)

    def test_admin_can_mark_delivered(self, db, order):
        assert escrow.mark_order_delivered(db, order, Requester("ops", is_admin=True)).delivery_status \
            is DeliveryStatus.DELIVERED

    def test_finalized_order_cannot_be_marked_delivered(self, db, order):
        escrow.finalize_escrow(db, order, BUYER)
        with pytest.raises(EscrowNotActive):
            escrow.mark_order_delivered(db, order, VENDOR, "too late")
        assert fresh(db, Order, order).delivery_status is DeliveryStatus.PENDING

    def test_refunded_order_cannot_be_marked_delivered(self, db, order):
        dispute_id = disputes.open_dispute(db, order, BUYER, "Never shipped")
        disputes.resolve_dispute(db, dispute_id, ADMIN, 100, 0)
        with pytest.raises(EscrowNotActive):
            escrow.mark_order_delivered(db, order, ADMIN)
        assert fresh(db, Order, order).delivered_content is None

    def test_disputed_order_can_still_be_marked_delivered(self, db, order):
        disputes.open_dispute(db, order, BUYER, "Where is it?")
        assert escrow.mark_order_delivered(db, order, VENDOR).delivery_status is DeliveryStatus.DELIVERED


class TestOrderList:
    def test_buyer_orders_newest_first(self, db, fund, make_product):
        fund(BUYER.user_id, 20000)
        older, _ = escrow.create_order_with_escrow(db, BUYER.user_id, make_product(5000, name="Lamp").id, now=T0)
        newer, _ = escrow.create_order_with_escrow(
            db, BUYER.user_id, make_product(2500, name="Mug").id, now=T0 + timedelta(hours=2),
        )
        escrow.finalize_escrow(db, older, BUYER)

        orders = escrow.list_orders(db, BUYER)

        assert [o["id"] for o in orders] == [newer, older]
        assert orders[0]["product_name"] == "Mug"
        assert orders[0]["vendor_name"] == "Acme Keys"
        assert orders[0]["amount"] == "25.00"
        assert orders[0]["status"] == "active"
        assert orders[0]["auto_finalize_at"] == (T0 + timedelta(hours=122)).isoformat()
        assert orders[1]["status"] == "finalized"

    def test_other_users_see_nothing(self, db, order):
        assert escrow.list_orders(db, STRANGER) == []
        assert escrow.list_orders(db, VENDOR) == []
