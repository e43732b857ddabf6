"""
SQLAlchemy ORM models for the keyshop service.

Defines the database schema for users, products, orders, payment
transactions, discount codes and stock keys. Currency columns are
Numeric(10, 2) and surface as ``decimal.Decimal``.
"""
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base


class User(Base):
    """
    User model for registered customers, admins and checkout guests.

    Attributes:
        id (int): Primary key, auto-incremented user ID
        email (str): Email address (unique)
        password_hash (str): bcrypt hash; random for guest shells
        first_name (str): Given name
        last_name (str): Family name
        username (str): Unique handle
        role (str): "customer" or "admin"
        is_active (bool): Whether the account may authenticate
        is_verified (bool): Whether the email was verified
        created_at (datetime): Timestamp when the user was created
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    username = Column(String(50), unique=True, nullable=False)
    role = Column(String(20), default="customer", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Product(Base):
    """
    A purchasable game. ``stock`` counts saleable units and never drops below zero.
    """
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Order(Base):
    """
    Order model representing a completed checkout.

    Attributes:
        id (int): Primary key
        user_id (int): Purchaser (registered or guest shell)
        order_number (str): Unique human-readable number, e.g. "GK-1718000000000-3F9A2C"
        status (str): pending, completed, failed or cancelled
        subtotal, tax, discount, total (Decimal): Monetary breakdown
        discount_code (str): Applied code, if any
        payment_method (str): Method chosen at checkout
        payment_status (str): pending, paid, refunded or failed
        billing_name, billing_email (str): Billing contact
        ip_address, user_agent (str): Client metadata
        completed_at (datetime): When payment completed
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending")
    subtotal = Column(Numeric(10, 2), nullable=False)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    discount_code = Column(String(50), nullable=True)
    total = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(String(50), nullable=True)
    payment_status = Column(String(20), nullable=False, default="pending")
    billing_email = Column(String(255), nullable=False)
    billing_name = Column(String(255), nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    """
    One cart line of an order. ``price`` is a snapshot taken at sale time.
    """
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(10, 2), nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="items")


class Transaction(Base):
    """
    Append-only payment ledger entry.

    The ``metadata`` column is exposed as ``extra_metadata`` because the name
    is reserved on declarative classes.
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    transaction_id = Column(String(255), unique=True, nullable=False)
    type = Column(String(20), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(String(50), nullable=True)
    payment_gateway = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    extra_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class DiscountCode(Base):
    """
    Single-use percentage discount.

    Attributes:
        code (str): Upper-case code, unique
        percent_off (Decimal): 0 to 100
        status (str): active, used, expired or disabled
        created_by (int): Admin who created it
        used_on (datetime): When an order consumed it
        order_number (str): The consuming order
    """
    __tablename__ = "discount_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    percent_off = Column(Numeric(5, 2), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    used_on = Column(DateTime, nullable=True)
    order_number = Column(String(50), nullable=True)


class StockKey(Base):
    """
    A unique license key for one unit of a product.

    ``order_id``/``order_number`` are set exactly when ``status`` is "sold".
    """
    __tablename__ = "stock_keys"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    game_key = Column(String(500), unique=True, nullable=False)
    status = Column(String(20), nullable=False, default="available", index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    order_number = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    assigned_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
