"""
Pydantic schemas for request/response validation in the keyshop service.

These schemas define the structure of data for API requests and responses.
Checkout bodies keep the storefront client's field names (``cartItems``,
``productId``, ``paymentMethod``) through aliases.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, EmailStr, Field


# --- Checkout ---


class CartItem(BaseModel):
    """Schema for a cart line submitted at checkout."""
    product_id: int = Field(..., alias="productId")
    quantity: int

    class Config:
        populate_by_name = True


class CheckoutRequest(BaseModel):
    """Schema for ``POST /checkout``. Presence of billing fields is checked by the order engine."""
    cart_items: List[CartItem] = Field(default_factory=list, alias="cartItems")
    payment_method: Optional[str] = Field(default="card", alias="paymentMethod", max_length=50)
    billing_name: Optional[str] = Field(default=None, max_length=255)
    billing_email: Optional[EmailStr] = None
    billing_zip: Optional[str] = Field(default=None, max_length=20)
    discount_code: Optional[str] = Field(default=None, max_length=50)

    class Config:
        populate_by_name = True


class OrderItem(BaseModel):
    id: int
    product_id: int
    quantity: int
    price: Decimal
    subtotal: Decimal

    class Config:
        from_attributes = True


class Order(BaseModel):
    """
    Schema for order responses.

    Attributes:
        id (int): Order's database identifier
        order_number (str): Human-readable order number
        status (str): Order status
        subtotal, discount, tax, total (Decimal): Monetary breakdown
        payment_status (str): Payment status
        items (List[OrderItem]): Frozen line items
    """
    id: int
    user_id: int
    order_number: str
    status: str
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    discount_code: Optional[str] = None
    total: Decimal
    payment_method: Optional[str] = None
    payment_status: str
    billing_name: str
    billing_email: str
    completed_at: Optional[datetime] = None
    created_at: datetime
    items: List[OrderItem] = Field(default_factory=list)

    class Config:
        from_attributes = True


class Transaction(BaseModel):
    id: int
    user_id: int
    order_id: Optional[int] = None
    transaction_id: str
    type: str
    amount: Decimal
    currency: str
    status: str
    payment_method: Optional[str] = None
    payment_gateway: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias=AliasChoices("extra_metadata", "metadata"))
    created_at: datetime

    class Config:
        from_attributes = True


class Totals(BaseModel):
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal


class CheckoutResponse(BaseModel):
    """Schema for a successful checkout."""
    message: str
    order: Order
    transaction: Transaction
    totals: Totals
    isGuestCheckout: bool


class TaxRate(BaseModel):
    rate: Decimal


class DiscountValidation(BaseModel):
    valid: bool
    code: str
    percent_off: Decimal


# --- Stock keys ---

StockKeyStatus = Literal["available", "reserved", "sold"]


class StockKeyCreate(BaseModel):
    """Schema for adding a single key."""
    product_id: int
    game_key: str = Field(..., min_length=1)
    notes: Optional[str] = None


class StockKeyBulkCreate(BaseModel):
    """Schema for adding many keys for one product."""
    product_id: int
    game_keys: List[str] = Field(..., min_length=1)


class StockKeyAssign(BaseModel):
    """Target order for an assignment; one of the two fields is required."""
    order_id: Optional[int] = None
    order_number: Optional[str] = None


class StockKeyUpdate(BaseModel):
    """Schema for updating a key. All fields are optional."""
    game_key: Optional[str] = None
    status: Optional[StockKeyStatus] = None
    notes: Optional[str] = None


class StockKey(BaseModel):
    """
    Schema for stock key responses.

    Attributes:
        id (int): Key identifier
        product_id (int): Product the key unlocks
        game_key (str): License string
        status (str): available, reserved or sold
        order_id (int): Bound order (sold keys only)
        order_number (str): Bound order number (sold keys only)
        assigned_at (datetime): When the key was sold
    """
    id: int
    product_id: int
    game_key: str
    status: str
    order_id: Optional[int] = None
    order_number: Optional[str] = None
    created_at: datetime
    assigned_at: Optional[datetime] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class StockKeyPage(BaseModel):
    items: List[StockKey]
    total: int
    skip: int
    limit: int


class StockKeyBulkResult(BaseModel):
    message: str
    created: List[StockKey]


class KeyAvailability(BaseModel):
    available: int


# --- Inventory ---


class Restock(BaseModel):
    quantity: int = Field(..., gt=0, description="Units to add")


class StockLevel(BaseModel):
    id: int
    stock: int

    class Config:
        from_attributes = True


# --- Discount codes ---


class DiscountCodeCreate(BaseModel):
    """Schema for creating a discount code."""
    code: str = Field(..., min_length=1, max_length=50)
    percent_off: Decimal = Field(..., ge=0, le=100)


class DiscountCodeStatusUpdate(BaseModel):
    status: Literal["active", "expired", "disabled"]


class DiscountCode(BaseModel):
    id: int
    code: str
    percent_off: Decimal
    status: str
    created_by: Optional[int] = None
    created_at: datetime
    used_on: Optional[datetime] = None
    order_number: Optional[str] = None

    class Config:
        from_attributes = True
