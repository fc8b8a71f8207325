"""
Pytest fixtures for Tradeflow backend tests.

Provides the in-memory application, a per-test clean database, the wired
service graph, a recording messaging gateway, and seed helpers for parties,
stock positions and credit accounts.
"""

import pytest
from flask import g

from tradeflow import create_app
from tradeflow.extensions import db
from tradeflow.models import CreditAccount, Product, Retailer, Wholesaler, WholesalerProduct
from tradeflow.services import build_services


class RecordingGateway:
    """Messaging gateway double: keeps every message, optionally failing."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, recipient_id, text):
        if self.fail:
            raise RuntimeError("gateway down")
        self.sent.append((recipient_id, text))

    def to(self, recipient_id):
        return [text for rid, text in self.sent if rid == recipient_id]


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'TX_RETRY_ATTEMPTS': 3,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def gateway(app):
    gw = RecordingGateway()
    app.extensions["tradeflow_gateway"] = gw
    yield gw
    app.extensions.pop("tradeflow_gateway", None)


@pytest.fixture(scope='function')
def client(app, gateway):
    """Create test client."""
    # The app context outlives tests; drop the service graph built for a previous one
    g.pop("services", None)
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def services(app, db_session, gateway):
    return build_services(db_session, app.config, app.logger, gateway=gateway)


class Seeder:
    def __init__(self, session):
        self.session = session
        self._seq = 0

    def _next(self):
        self._seq += 1
        return self._seq

    def retailer(self, name="Corner Kirana"):
        retailer = Retailer(name=name, is_active=True)
        self.session.add(retailer)
        self.session.commit()
        return retailer

    def wholesaler(self, name=None, *, reliability=80.0, rating=4.0, total=0, completed=0, active=True):
        wholesaler = Wholesaler(
            business_name=name or f"Wholesaler {self._next()}",
            reliability_score=reliability,
            average_rating=rating,
            total_orders=total,
            completed_orders=completed,
            is_active=active,
        )
        self.session.add(wholesaler)
        self.session.commit()
        return wholesaler

    def product(self, name=None):
        n = self._next()
        product = Product(sku=f"SKU-{n:04d}", name=name or f"Product {n}", unit="pcs")
        self.session.add(product)
        self.session.commit()
        return product

    def stock(self, wholesaler, product, quantity, price_cents=None):
        pos = WholesalerProduct(
            wholesaler_id=wholesaler.id,
            product_id=product.id,
            stock=quantity,
            reserved_stock=0,
            last_counted_stock=quantity,
            price_cents=price_cents,
        )
        self.session.add(pos)
        self.session.commit()
        return pos

    def account(self, retailer, wholesaler, limit_cents, terms_days=30):
        account = CreditAccount(
            retailer_id=retailer.id,
            wholesaler_id=wholesaler.id,
            credit_limit_cents=limit_cents,
            terms_days=terms_days,
        )
        self.session.add(account)
        self.session.commit()
        return account


@pytest.fixture(scope='function')
def seed(db_session):
    return Seeder(db_session)


@pytest.fixture(scope='function')
def market(seed):
    """
    One retailer, two wholesalers stocking two products, with credit lines
    of 100000 cents at both.
    """
    retailer = seed.retailer()
    w1 = seed.wholesaler("Alpha Traders", reliability=90.0, rating=4.5)
    w2 = seed.wholesaler("Beta Distributors", reliability=70.0, rating=3.5)
    rice = seed.product("Rice 5kg")
    oil = seed.product("Oil 1L")
    for w in (w1, w2):
        seed.stock(w, rice, 100, price_cents=150)
        seed.stock(w, oil, 50, price_cents=300)
        seed.account(retailer, w, 100_000)
    return {
        "retailer_id": retailer.id,
        "w1": w1.id,
        "w2": w2.id,
        "rice": rice.id,
        "oil": oil.id,
    }


@pytest.fixture
def auth_headers():
    return {"X-Actor-Id": "admin:test"}
