"""
Keyshop Checkout API

This module implements the FastAPI service that sells digital game keys. It
owns the checkout transaction (stock validation, discount codes, tax, order
and payment records) and the admin endpoints that manage license keys,
stock levels and discount codes.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    POST /checkout: Place an order for a cart
    GET /checkout/tax: Tax rate quote for a postal code
    GET /checkout/validate-discount: Check a discount code
    /admin/stock-keys: List, add, bulk add, assign, update and delete license keys
    /admin/products/{id}/restock: Add saleable stock
    /admin/discount-codes: List, create and change the status of discount codes

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "keyshop-checkout"
"""
from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import auth, discounts, inventory, models, orders, schemas
from .clients import tax_client
from .config import LOG_LEVEL
from .database import engine, get_db
from .errors import DiscountNotActive, DiscountNotFound, InvalidRequest, KeyshopError

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    models.Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="keyshop-checkout", lifespan=lifespan)


@app.exception_handler(KeyshopError)
async def keyshop_error_handler(request: Request, exc: KeyshopError) -> JSONResponse:
    """Map KeyshopError subclasses to their HTTP status and a JSON error body."""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, **exc.extra})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies and parameters as 400 like every other validation failure."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


def get_rate_oracle() -> orders.RateOracle:
    """Dependency providing the tax rate lookup used by checkout."""
    return tax_client.get_tax_rate


def client_info(request: Request) -> orders.ClientInfo:
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return orders.ClientInfo(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the checkout service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


# --- Checkout ---


@app.post("/checkout", response_model=schemas.CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout(
    body: schemas.CheckoutRequest,
    request: Request,
    db: Session = Depends(get_db),
    token: Optional[str] = Depends(auth.get_optional_token),
    rate_oracle: orders.RateOracle = Depends(get_rate_oracle),
):
    """
    Place an order for a cart.

    Authenticated callers buy as themselves; anonymous callers check out as a
    guest identified by the billing email. Payment is recorded as paid.

    Args:
        body: Cart, payment method, billing details and optional discount code
        request: Incoming request (client IP and user agent are stored on the order)
        db: Database session (injected)
        token: Optional bearer token (injected)
        rate_oracle: Tax rate lookup (injected)

    Returns:
        The order, its payment transaction, the totals breakdown and whether it was a guest checkout

    Raises:
        400: Missing billing fields, unavailable product, bad quantity, bad discount code
        409: Insufficient stock (body carries productId and availableStock) or a lost race
        500: Unexpected failure
    """
    result = await orders.place_order(
        db,
        body,
        rate_oracle,
        requester_token=token,
        client=client_info(request),
    )
    return schemas.CheckoutResponse(
        message="Order placed successfully.",
        order=schemas.Order.model_validate(result.order),
        transaction=schemas.Transaction.model_validate(result.transaction),
        totals=schemas.Totals(**result.totals.as_dict()),
        isGuestCheckout=result.is_guest,
    )


@app.get("/checkout/tax", response_model=schemas.TaxRate)
async def tax_quote(
    zip: Optional[str] = None,
    rate_oracle: orders.RateOracle = Depends(get_rate_oracle),
):
    """
    Quote the tax rate for a postal code. Falls back to the default rate when the lookup fails.

    Raises:
        400: zip is missing
    """
    if not zip or not zip.strip():
        raise InvalidRequest("zip is required")
    rate = await orders.lookup_tax_rate(rate_oracle, zip.strip())
    return schemas.TaxRate(rate=rate)


@app.get("/checkout/validate-discount", response_model=schemas.DiscountValidation)
def validate_discount(code: Optional[str] = None, db: Session = Depends(get_db)):
    """
    Check whether a discount code can be used. Never marks the code used.

    Returns:
        {valid, code, percent_off}, or {valid: false, error} with 404 (unknown) or 400 (not active / missing)
    """
    if not code or not code.strip():
        return JSONResponse(status_code=400, content={"valid": False, "error": "Discount code is required"})

    try:
        discount = discounts.validate(db, code)
    except DiscountNotFound:
        return JSONResponse(status_code=404, content={"valid": False, "error": "Discount code not found"})
    except DiscountNotActive as e:
        return JSONResponse(status_code=400, content={"valid": False, "error": f"This discount code is {e.status}"})

    return schemas.DiscountValidation(valid=True, code=discount.code, percent_off=discount.percent_off)


# --- Stock keys (admin) ---


@app.get("/admin/stock-keys", response_model=schemas.StockKeyPage)
def list_stock_keys(
    product_id: Optional[int] = None,
    status: Optional[schemas.StockKeyStatus] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    """
    List stock keys, newest first (admin only).

    Args:
        product_id: Only keys for this product
        status: Only keys with this status
        skip: Number of records to skip (default: 0)
        limit: Maximum number of records to return (default: 100, capped at 500)
    """
    skip = max(0, skip)
    limit = max(1, min(limit, 500))
    items, total = inventory.list_keys(db, product_id=product_id, status=status, skip=skip, limit=limit)
    return schemas.StockKeyPage(
        items=[schemas.StockKey.model_validate(k) for k in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@app.get("/admin/stock-keys/availability", response_model=schemas.KeyAvailability)
def stock_key_availability(
    product_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    """Count available keys, optionally for one product (admin only)."""
    return schemas.KeyAvailability(available=inventory.count_available(db, product_id=product_id))


@app.post("/admin/stock-keys", response_model=schemas.StockKey, status_code=status.HTTP_201_CREATED)
def create_stock_key(
    key: schemas.StockKeyCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    """
    Add a single license key (admin only).

    Raises:
        404: Product not found
        409: The key already exists
    """
    return inventory.create_key(db, key.product_id, key.game_key, key.notes)


@app.post("/admin/stock-keys/bulk", response_model=schemas.StockKeyBulkResult, status_code=status.HTTP_201_CREATED)
def bulk_create_stock_keys(
    payload: schemas.StockKeyBulkCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    """
    Add many license keys for one product; keys that already exist are skipped (admin only).
    """
    created = inventory.bulk_create_keys(db, payload.product_id, payload.game_keys)
    return schemas.StockKeyBulkResult(
        message=f"{len(created)} keys added successfully",
        created=[schemas.StockKey.model_validate(k) for k in created],
    )


@app.put("/admin/stock-keys/{key_id}/assign", response_model=schemas.StockKey)
def assign_stock_key(
    key_id: int,
    target: schemas.StockKeyAssign,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    """
    Sell an available key to an order that contains its product (admin only).

    Raises:
        400: No order reference given, or the order does not contain the key's product
        404: Key or order not found
        409: Key is not available (already sold or reserved)
    """
    return inventory.assign_key(db, key_id, order_id=target.order_id, order_number=target.order_number)


@app.put("/admin/stock-keys/{key_id}", response_model=schemas.StockKey)
def update_stock_key(
    key_id: int,
    changes: schemas.StockKeyUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    """
    Update a key's license string, status or notes (admin only).

    Raises:
        400: Disallowed status change
        404: Key not found
        409: License string already used by another key
    """
    return inventory.update_key(db, key_id, changes)


@app.delete("/admin/stock-keys/{key_id}", response_model=dict)
def delete_stock_key(
    key_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    """
    Delete an unsold key (admin only).

    Raises:
        400: Key is sold
        404: Key not found
    """
    inventory.delete_key(db, key_id)
    return {"message": "Stock key deleted successfully"}


# --- Inventory (admin) ---


@app.post("/admin/products/{product_id}/restock", response_model=schemas.StockLevel)
def restock_product(
    product_id: int,
    payload: schemas.Restock,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    """Add saleable units to a product (admin only)."""
    return inventory.restock(db, product_id, payload.quantity)


# --- Discount codes (admin) ---


@app.get("/admin/discount-codes", response_model=list[schemas.DiscountCode])
def list_discount_codes(
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    """List discount codes, newest first (admin only)."""
    items, _ = discounts.list_discounts(db, status=status, skip=max(0, skip), limit=max(1, min(limit, 500)))
    return items


@app.post("/admin/discount-codes", response_model=schemas.DiscountCode, status_code=status.HTTP_201_CREATED)
def create_discount_code(
    payload: schemas.DiscountCodeCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    """
    Create an active discount code (admin only).

    Raises:
        409: The code already exists
    """
    return discounts.create_discount(db, payload.code, payload.percent_off, created_by=current_user.id)


@app.put("/admin/discount-codes/{discount_id}/status", response_model=schemas.DiscountCode)
def set_discount_code_status(
    discount_id: int,
    payload: schemas.DiscountCodeStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    """
    Expire, disable or re-activate a discount code (admin only). Used codes cannot change.

    Raises:
        400: Disallowed status change
        404: Discount code not found
    """
    return discounts.set_discount_status(db, discount_id, payload.status)
