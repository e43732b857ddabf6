"""
Order engine: turns a cart into a paid order in one atomic commit.

Checkout runs in two phases. Validation reads products and the discount code
and computes totals; nothing is written. The rate lookup then suspends for
an arbitrary time, so the commit phase re-reads every product with a row
lock, taken in ascending id order, before decrementing it, and consumes the
discount with a conditional update. Either the order, its items, the stock
decrements, the discount consumption and the payment transaction are all
committed, or none are.
"""
import asyncio
import logging
import secrets
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from . import discounts, identity, inventory, models, pricing, schemas, validators
from .clients.tax_client import MAX_RATE
from .config import CURRENCY, DEFAULT_TAX_RATE, TAX_TIMEOUT
from .errors import (
    CheckoutFailed,
    InsufficientStock,
    InvalidQuantity,
    InvalidRequest,
    KeyshopError,
    ProductUnavailable,
)

logger = logging.getLogger(__name__)

RateOracle = Callable[[str], Awaitable[Decimal]]


@dataclass
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class PricedLine:
    product_id: int
    quantity: int
    price: Decimal
    subtotal: Decimal


@dataclass
class CheckoutQuote:
    """Priced, validated cart waiting for a tax rate."""
    lines: List[PricedLine]
    subtotal: Decimal
    discount_code: Optional[str]
    discount_amount: Decimal
    billing_name: str
    billing_email: str
    billing_zip: str


@dataclass
class CheckoutResult:
    order: models.Order
    transaction: models.Transaction
    totals: pricing.Totals
    is_guest: bool


def generate_order_number() -> str:
    return f"GK-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def generate_transaction_id() -> str:
    return f"TX-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


def price_cart(db: Session, cart_items: List[schemas.CartItem]) -> Tuple[List[PricedLine], Decimal]:
    """
    Validate every cart line against current product state and price it.

    Lines are checked in cart order. Stock is compared against the running
    total requested for the product, so repeated lines cannot oversell.

    Args:
        db: Database session
        cart_items: Cart lines

    Returns:
        Tuple of (priced lines with frozen unit prices, subtotal)

    Raises:
        ProductUnavailable: Product missing or inactive
        InvalidQuantity: Quantity below one
        InsufficientStock: Not enough stock for the requested quantity
    """
    products = {p.id: p for p in inventory.get_products(db, [item.product_id for item in cart_items])}

    requested: Dict[int, int] = defaultdict(int)
    lines = []
    subtotal = Decimal("0")

    for item in cart_items:
        product = products.get(item.product_id)
        if product is None or not product.is_active:
            raise ProductUnavailable(item.product_id)

        if item.quantity < 1:
            raise InvalidQuantity(item.product_id)

        requested[product.id] += item.quantity
        if product.stock < requested[product.id]:
            raise InsufficientStock(product.id, product.title, product.stock)

        price = Decimal(product.price)
        line_subtotal = price * item.quantity
        lines.append(PricedLine(product.id, item.quantity, price, pricing.to_money(line_subtotal)))
        subtotal += line_subtotal

    return lines, pricing.to_money(subtotal)


async def lookup_tax_rate(rate_oracle: RateOracle, zip_code: str) -> Decimal:
    """
    Ask the rate oracle for a rate; fall back to the default on any anomaly.

    Never raises. The call is bounded by ``TAX_TIMEOUT``.
    """
    try:
        raw = await asyncio.wait_for(rate_oracle(zip_code), timeout=TAX_TIMEOUT)
        rate = Decimal(str(raw))
    except asyncio.TimeoutError:
        logger.warning(f"Tax rate lookup for ZIP '{zip_code}' timed out, using default")
        return DEFAULT_TAX_RATE
    except (InvalidOperation, TypeError, ValueError) as e:
        logger.warning(f"Tax rate lookup for ZIP '{zip_code}' returned an invalid rate ({e}), using default")
        return DEFAULT_TAX_RATE
    except Exception as e:
        logger.warning(f"Tax rate lookup for ZIP '{zip_code}' failed ({e}), using default")
        return DEFAULT_TAX_RATE

    if not rate.is_finite() or rate < 0 or rate >= MAX_RATE:
        logger.warning(f"Tax rate {rate} for ZIP '{zip_code}' out of range, using default")
        return DEFAULT_TAX_RATE
    return rate


def _snapshot(
    lines: List[PricedLine],
    totals: pricing.Totals,
    discount_code: Optional[str],
    payment_method: Optional[str],
) -> dict:
    return {
        "cartItems": [
            {"productId": line.product_id, "quantity": line.quantity, "price": str(line.price)}
            for line in lines
        ],
        "subtotal": str(totals.subtotal),
        "discount": str(totals.discount),
        "discount_code": discount_code,
        "tax": str(totals.tax),
        "rate": str(totals.rate),
        "total": str(totals.total),
        "payment_method": payment_method,
    }


def prepare_checkout(db: Session, checkout: schemas.CheckoutRequest) -> CheckoutQuote:
    """
    Validate a checkout request and price it. Writes nothing.

    Ends by rolling back the read transaction so no connection or lock is
    held while the rate oracle is awaited.

    Raises:
        InvalidRequest, ProductUnavailable, InvalidQuantity, InsufficientStock,
        DiscountNotFound, DiscountNotActive
    """
    is_valid, error_message = validators.validate_billing(
        checkout.billing_name, checkout.billing_email, checkout.billing_zip
    )
    if not is_valid:
        raise InvalidRequest(error_message)

    is_valid, error_message = validators.validate_cart_items(checkout.cart_items)
    if not is_valid:
        raise InvalidRequest(error_message)

    lines, subtotal = price_cart(db, checkout.cart_items)

    discount_code = None
    discount_amount = Decimal("0.00")
    if checkout.discount_code and checkout.discount_code.strip():
        record = discounts.validate(db, checkout.discount_code)
        discount_code = record.code
        discount_amount = pricing.discount_for(subtotal, record.percent_off)

    db.rollback()

    return CheckoutQuote(
        lines=lines,
        subtotal=subtotal,
        discount_code=discount_code,
        discount_amount=discount_amount,
        billing_name=checkout.billing_name.strip(),
        billing_email=str(checkout.billing_email).strip(),
        billing_zip=checkout.billing_zip.strip(),
    )


def commit_order(
    db: Session,
    quote: CheckoutQuote,
    totals: pricing.Totals,
    payment_method: Optional[str],
    requester_token: Optional[str],
    client: ClientInfo,
) -> CheckoutResult:
    """
    Write the order, its items, stock decrements, discount consumption and
    payment transaction in one commit, or nothing at all.

    Product rows are locked in ascending id order before any of them is
    decremented, so concurrent carts naming the same products in different
    orders queue behind each other instead of deadlocking.

    Raises:
        StockRaceLost, DiscountAlreadyUsed: Lost a race; rolled back
        CheckoutFailed: Unexpected failure; rolled back
    """
    try:
        requester = identity.resolve_requester(db, requester_token)
        user_id, is_guest = identity.resolve_purchaser(db, requester, quote.billing_name, quote.billing_email)

        order_number = generate_order_number()
        order = models.Order(
            user_id=user_id,
            order_number=order_number,
            status="completed",
            subtotal=totals.subtotal,
            tax=totals.tax,
            discount=totals.discount,
            discount_code=quote.discount_code,
            total=totals.total,
            payment_method=payment_method,
            payment_status="paid",
            billing_email=quote.billing_email,
            billing_name=quote.billing_name,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            completed_at=datetime.utcnow(),
        )
        db.add(order)
        db.flush()

        inventory.lock_products(db, [line.product_id for line in quote.lines])
        for line in quote.lines:
            order.items.append(
                models.OrderItem(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    price=line.price,
                    subtotal=line.subtotal,
                )
            )
            inventory.decrement_stock(db, line.product_id, line.quantity)

        if quote.discount_code:
            discounts.consume(db, quote.discount_code, order_number)

        transaction = models.Transaction(
            user_id=user_id,
            order_id=order.id,
            transaction_id=generate_transaction_id(),
            type="payment",
            amount=totals.total,
            currency=CURRENCY,
            status="success",
            payment_method=payment_method,
            payment_gateway="internal",
            description=f"Payment for order {order_number}",
            extra_metadata=_snapshot(quote.lines, totals, quote.discount_code, payment_method),
        )
        db.add(transaction)
        db.commit()
    except KeyshopError as e:
        db.rollback()
        logger.warning(f"Checkout for {quote.billing_email} rolled back: {e}")
        raise
    except Exception:
        db.rollback()
        logger.exception(f"Checkout for {quote.billing_email} failed during commit")
        raise CheckoutFailed()

    db.refresh(order)
    db.refresh(transaction)
    logger.info(
        f"Order {order.order_number} placed by user {user_id} "
        f"(subtotal {totals.subtotal}, discount {totals.discount}, tax {totals.tax}, total {totals.total})"
    )
    return CheckoutResult(order=order, transaction=transaction, totals=totals, is_guest=is_guest)


async def place_order(
    db: Session,
    checkout: schemas.CheckoutRequest,
    rate_oracle: RateOracle,
    requester_token: Optional[str] = None,
    client: Optional[ClientInfo] = None,
) -> CheckoutResult:
    """
    Place an order for a cart.

    Database work and password hashing run in the threadpool; only the rate
    lookup is awaited on the event loop.

    Args:
        db: Database session; committed on success, rolled back on failure
        checkout: Validated request body
        rate_oracle: Async callable mapping a postal code to a tax rate
        requester_token: Bearer token of the caller, if any
        client: Caller IP address and user agent

    Returns:
        CheckoutResult with the committed order and transaction

    Raises:
        InvalidRequest, ProductUnavailable, InvalidQuantity, InsufficientStock,
        DiscountNotFound, DiscountNotActive: Rejected before anything is written
        StockRaceLost, DiscountAlreadyUsed: Lost a race inside the commit; nothing was written
        CheckoutFailed: Unexpected failure; nothing was written
    """
    quote = await run_in_threadpool(prepare_checkout, db, checkout)

    rate = await lookup_tax_rate(rate_oracle, quote.billing_zip)
    totals = pricing.compute_totals(quote.subtotal, quote.discount_amount, rate)

    return await run_in_threadpool(
        commit_order,
        db,
        quote,
        totals,
        checkout.payment_method,
        requester_token,
        client or ClientInfo(),
    )
