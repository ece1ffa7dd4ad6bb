"""
Pytest fixtures for the escrow service. Every test runs against its own
temporary SQLite database; the engine is rebound before any table is created.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime

import pytest

from common.security import Requester, mint_user_jwt, mint_internal_jwt, ADMIN_SCOPE
from escrow_service import db as escrow_db
from escrow_service import ledger
from escrow_service.models import Vendor, Product, ProductType

T0 = datetime(2026, 3, 1, 12, 0, 0)

BUYER = Requester("buyer-1")
VENDOR = Requester("vendor-user-1")
ADMIN = Requester("admin-1", is_admin=True)
STRANGER = Requester("someone-else")


@pytest.fixture
def database(tmp_path):
    """Point the service at a fresh SQLite file and create the schema."""
    engine = escrow_db.configure_engine(f"sqlite:///{tmp_path / 'escrow.db'}")
    escrow_db.init_db()
    yield engine
    engine.dispose()


@pytest.fixture
def db(database):
    with escrow_db.SessionLocal() as session:
        yield session


@pytest.fixture
def vendor(db):
    v = Vendor(id="vendor-1", user_id=VENDOR.user_id, name="Acme Keys")
    db.add(v)
    db.commit()
    return v


@pytest.fixture
def make_product(db, vendor):
    def _make(price_cents, product_type=ProductType.PHYSICAL, stock=None, delivery_content=None, name=None):
        product = Product(
            vendor_id=vendor.id,
            name=name or f"{product_type.value} item",
            price_cents=price_cents,
            product_type=product_type,
            stock=stock,
            delivery_content=delivery_content,
        )
        db.add(product)
        db.commit()
        return product
    return _make


@pytest.fixture
def fund(db):
    """Credit a wallet through the deposit path, the only way money enters."""
    counter = {"n": 0}

    def _fund(user_id, cents):
        counter["n"] += 1
        return ledger.deposit(db, user_id, cents, f"seed-{user_id}-{counter['n']}")
    return _fund


@pytest.fixture
def client(database):
    from fastapi.testclient import TestClient
    from escrow_service.main import app

    with TestClient(app) as c:
        yield c


def auth(requester: Requester) -> dict:
    scope = ADMIN_SCOPE if requester.is_admin else "user"
    return {"Authorization": f"Bearer {mint_user_jwt(requester.user_id, {'scope': scope})}"}


def internal_auth() -> dict:
    return {"Authorization": f"Bearer {mint_internal_jwt(aud='escrow')}"}


def fresh(db, model, ident):
    return db.get(model, ident, populate_existing=True)


def balance(db, user_id) -> int:
    return ledger.get_wallet(db, user_id).balance_cents
