"""Pytest fixtures for keyshop tests."""

import os

# Point the application engine at an in-memory database before keyshop is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("ZIP_TAX_API_KEY", None)

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from keyshop import auth, models
from keyshop.database import Base, build_engine, get_db
from keyshop.main import app, get_rate_oracle


class StubRateOracle:
    """Rate oracle double returning a fixed rate.

    ``on_lookup`` is awaited before the rate is returned, which lets a test
    run a competing checkout while the request under test is suspended.
    """

    def __init__(self, rate=Decimal("0.08")):
        self.rate = rate
        self.calls = []
        self.on_lookup = None

    async def __call__(self, zip_code):
        self.calls.append(zip_code)
        if self.on_lookup is not None:
            await self.on_lookup(zip_code)
        if isinstance(self.rate, Exception):
            raise self.rate
        return self.rate


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine so several sessions see each other's commits."""
    engine = build_engine(f"sqlite:///{tmp_path / 'keyshop.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def rate_oracle():
    return StubRateOracle()


@pytest.fixture
def client(session_factory, rate_oracle):
    """Test client wired to the per-test database and the stub rate oracle."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_rate_oracle] = lambda: rate_oracle
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email, username, role="customer", is_active=True):
    user = models.User(
        email=email,
        password_hash=auth.get_password_hash("secret123"),
        first_name="Test",
        last_name="User",
        username=username,
        role=role,
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def bearer(user):
    token = auth.create_access_token({"sub": str(user.id), "email": user.email, "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer(db):
    return make_user(db, "carol@keyshop.io", "carol")


@pytest.fixture
def admin(db):
    return make_user(db, "root@keyshop.io", "root", role="admin")


@pytest.fixture
def customer_headers(customer):
    return bearer(customer)


@pytest.fixture
def admin_headers(admin):
    return bearer(admin)


def make_product(db, title, price, stock, is_active=True):
    product = models.Product(title=title, price=Decimal(price), stock=stock, is_active=is_active)
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


@pytest.fixture
def product(db):
    """Product priced 49.99 with 100 units in stock."""
    return make_product(db, "Starfall Odyssey", "49.99", 100)


@pytest.fixture
def make_discount(db):
    def _make(code, percent_off="10", status="active"):
        discount = models.DiscountCode(code=code, percent_off=Decimal(percent_off), status=status)
        db.add(discount)
        db.commit()
        db.refresh(discount)
        return discount

    return _make


@pytest.fixture
def checkout_body():
    """Build a checkout body with valid billing details."""

    def _body(cart, **overrides):
        body = {
            "cartItems": cart,
            "paymentMethod": "card",
            "billing_name": "Alice Smith",
            "billing_email": "alice@keyshop.io",
            "billing_zip": "90210",
        }
        body.update(overrides)
        return body

    return _body
