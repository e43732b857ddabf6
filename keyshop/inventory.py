"""
Inventory ledger: saleable stock counts and per-unit stock keys.

Stock is decremented only by checkout (``decrement_stock``, inside the
checkout transaction) and incremented by ``restock``. Stock keys move to
"sold" only through ``assign_key``; every mutation of ``Product.stock`` or
``StockKey.status`` is a conditional single-row update so concurrent writers
cannot both succeed.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas, validators
from .errors import (
    AssignmentTargetMissing,
    CannotDeleteSoldKey,
    DuplicateKey,
    InvalidKeyStatusTransition,
    InvalidRequest,
    KeyNotAvailable,
    KeyNotFound,
    OrderNotFound,
    ProductMismatch,
    ProductNotFound,
    StockRaceLost,
)

logger = logging.getLogger(__name__)


# --- Stock counts ---


def get_product(db: Session, product_id: int) -> Optional[models.Product]:
    return db.get(models.Product, product_id)


def get_products(db: Session, product_ids: List[int]) -> List[models.Product]:
    """
    Load many products in a single query.

    Args:
        db: Database session
        product_ids: IDs to load (duplicates allowed)

    Returns:
        The products that exist, in no particular order
    """
    if not product_ids:
        return []
    return list(db.scalars(select(models.Product).where(models.Product.id.in_(set(product_ids)))).all())


def get_stock(db: Session, product_id: int) -> int:
    """
    Current saleable stock for a product.

    Raises:
        ProductNotFound: Unknown product
    """
    stock = db.scalar(select(models.Product.stock).where(models.Product.id == product_id))
    if stock is None:
        raise ProductNotFound(product_id)
    return stock


def lock_product(db: Session, product_id: int) -> Optional[models.Product]:
    """
    Re-read a product row with a row lock, bypassing any cached state.

    Must be called within a transaction; the lock is held until commit or rollback.
    """
    return db.scalar(
        select(models.Product)
        .where(models.Product.id == product_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def lock_products(db: Session, product_ids: List[int]) -> None:
    """
    Row-lock every distinct product in ascending id order.

    Two transactions locking overlapping products in the same global order
    wait on each other rather than deadlock.
    """
    for product_id in sorted(set(product_ids)):
        lock_product(db, product_id)


def decrement_stock(db: Session, product_id: int, quantity: int) -> int:
    """
    Take ``quantity`` units out of stock inside the caller's transaction.

    Does not commit.

    Args:
        db: Database session with an open transaction
        product_id: Product to decrement
        quantity: Units sold

    Returns:
        The new stock count

    Raises:
        ProductNotFound: Unknown product
        StockRaceLost: Current stock is below ``quantity``
    """
    product = lock_product(db, product_id)
    if product is None:
        raise ProductNotFound(product_id)

    current = product.stock
    if current < quantity:
        raise StockRaceLost(product_id, current)

    result = db.execute(
        update(models.Product)
        .where(models.Product.id == product_id, models.Product.stock >= quantity)
        .values(stock=models.Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(product)
        raise StockRaceLost(product_id, product.stock)

    db.expire(product)
    return current - quantity


def restock(db: Session, product_id: int, quantity: int) -> models.Product:
    """
    Add units to a product's stock and commit.

    Raises:
        InvalidRequest: ``quantity`` is not positive
        ProductNotFound: Unknown product
    """
    if quantity < 1:
        raise InvalidRequest("Restock quantity must be at least 1")

    result = db.execute(
        update(models.Product)
        .where(models.Product.id == product_id)
        .values(stock=models.Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ProductNotFound(product_id)

    db.commit()
    product = db.get(models.Product, product_id)
    db.refresh(product)
    logger.info(f"Restocked product {product_id} by {quantity} (now {product.stock})")
    return product


# --- Stock keys ---


def get_key(db: Session, key_id: int) -> Optional[models.StockKey]:
    return db.get(models.StockKey, key_id)


def get_key_by_value(db: Session, game_key: str) -> Optional[models.StockKey]:
    return db.scalar(select(models.StockKey).where(models.StockKey.game_key == game_key))


def list_keys(
    db: Session,
    product_id: Optional[int] = None,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> Tuple[List[models.StockKey], int]:
    """
    Retrieve stock keys, newest first, with optional filters and pagination.

    Args:
        db: Database session
        product_id: Only keys for this product
        status: Only keys in this status
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return

    Returns:
        Tuple of (page of keys, total matching)
    """
    query = select(models.StockKey)
    if product_id is not None:
        query = query.where(models.StockKey.product_id == product_id)
    if status:
        query = query.where(models.StockKey.status == status)

    total = db.scalar(select(func.count()).select_from(query.subquery()))
    items = db.scalars(
        query.order_by(models.StockKey.created_at.desc(), models.StockKey.id.desc())
        .offset(skip)
        .limit(limit)
    ).all()
    return list(items), total


def count_available(db: Session, product_id: Optional[int] = None) -> int:
    query = select(func.count(models.StockKey.id)).where(models.StockKey.status == "available")
    if product_id is not None:
        query = query.where(models.StockKey.product_id == product_id)
    return db.scalar(query)


def create_key(db: Session, product_id: int, game_key: str, notes: Optional[str] = None) -> models.StockKey:
    """
    Add one available key for a product.

    Raises:
        InvalidRequest: Key is blank
        ProductNotFound: Unknown product
        DuplicateKey: The license string already exists
    """
    game_key = game_key.strip()
    if not game_key:
        raise InvalidRequest("Product ID and game key are required")

    if get_product(db, product_id) is None:
        raise ProductNotFound(product_id)

    if get_key_by_value(db, game_key) is not None:
        raise DuplicateKey()

    key = models.StockKey(product_id=product_id, game_key=game_key, notes=notes or None, status="available")
    db.add(key)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateKey()
    db.refresh(key)
    logger.info(f"Stock key {key.id} added for product {product_id}")
    return key


def bulk_create_keys(db: Session, product_id: int, game_keys: List[str]) -> List[models.StockKey]:
    """
    Add many keys for one product, silently skipping duplicates.

    Blank entries are dropped; keys that already exist, or repeat within the
    batch, are ignored.

    Raises:
        ProductNotFound: Unknown product

    Returns:
        The keys actually created
    """
    if get_product(db, product_id) is None:
        raise ProductNotFound(product_id)

    wanted = list(dict.fromkeys(k.strip() for k in game_keys if k and k.strip()))

    # A concurrent insert can slip in between the filter and the commit; retry once.
    for attempt in range(2):
        existing = set(
            db.scalars(select(models.StockKey.game_key).where(models.StockKey.game_key.in_(wanted))).all()
        ) if wanted else set()
        created = [
            models.StockKey(product_id=product_id, game_key=k, status="available")
            for k in wanted
            if k not in existing
        ]
        db.add_all(created)
        try:
            db.commit()
            break
        except IntegrityError:
            db.rollback()
            if attempt == 1:
                raise

    for key in created:
        db.refresh(key)
    logger.info(f"Bulk added {len(created)} of {len(game_keys)} stock keys for product {product_id}")
    return created


def update_key(db: Session, key_id: int, changes: schemas.StockKeyUpdate) -> models.StockKey:
    """
    Partially update a key's license string, status or notes.

    Status changes are limited to available <-> reserved; "sold" is reached
    only through ``assign_key`` and sold keys keep their status.

    Raises:
        KeyNotFound: Unknown key
        InvalidKeyStatusTransition: Disallowed status change
        InvalidRequest: Blank license string
        DuplicateKey: License string clashes with another key
    """
    key = get_key(db, key_id)
    if key is None:
        raise KeyNotFound(key_id)

    update_data = changes.model_dump(exclude_unset=True)
    values = {}

    if update_data.get("game_key") is not None:
        game_key = update_data["game_key"].strip()
        if not game_key:
            raise InvalidRequest("Game key cannot be blank")
        if game_key != key.game_key:
            if get_key_by_value(db, game_key) is not None:
                raise DuplicateKey()
            values["game_key"] = game_key

    if "notes" in update_data:
        values["notes"] = update_data["notes"]

    old_status = key.status
    new_status = update_data.get("status")
    if new_status is not None and new_status != old_status:
        is_valid, _ = validators.validate_key_status_transition(old_status, new_status)
        if not is_valid:
            raise InvalidKeyStatusTransition(old_status, new_status)
        values["status"] = new_status

    if not values:
        return key

    # Guard on the status we checked so a concurrent assignment is not overwritten
    try:
        result = db.execute(
            update(models.StockKey)
            .where(models.StockKey.id == key_id, models.StockKey.status == old_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    except IntegrityError:
        db.rollback()
        raise DuplicateKey()

    if result.rowcount != 1:
        db.rollback()
        db.refresh(key)
        raise InvalidKeyStatusTransition(key.status, new_status or key.status)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateKey()
    db.refresh(key)
    return key


def delete_key(db: Session, key_id: int) -> None:
    """
    Remove an unsold key.

    Raises:
        KeyNotFound: Unknown key
        CannotDeleteSoldKey: Key has been sold
    """
    key = get_key(db, key_id)
    if key is None:
        raise KeyNotFound(key_id)
    if key.status == "sold":
        raise CannotDeleteSoldKey()

    result = db.execute(
        delete(models.StockKey)
        .where(models.StockKey.id == key_id, models.StockKey.status != "sold")
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise CannotDeleteSoldKey()

    db.commit()
    logger.info(f"Stock key {key_id} deleted")


# --- Key assignment ---


def resolve_order(db: Session, order_id: Optional[int], order_number: Optional[str]) -> models.Order:
    """
    Find the order by id, falling back to its number.

    Raises:
        AssignmentTargetMissing: Neither reference given
        OrderNotFound: Neither reference matches an order
    """
    if order_id is None and not (order_number and order_number.strip()):
        raise AssignmentTargetMissing()

    order = None
    if order_id is not None:
        order = db.get(models.Order, order_id)
    if order is None and order_number and order_number.strip():
        order = db.scalar(select(models.Order).where(models.Order.order_number == order_number.strip()))
    if order is None:
        raise OrderNotFound()
    return order


def assign_key(
    db: Session,
    key_id: int,
    order_id: Optional[int] = None,
    order_number: Optional[str] = None,
) -> models.StockKey:
    """
    Sell a key to an order.

    The key must be available and its product must appear among the order's
    line items. The transition to "sold" happens exactly once: the update
    only matches while the key is still available, so a concurrent or
    repeated request gets ``KeyNotAvailable``.

    Args:
        db: Database session
        key_id: Key to assign
        order_id: Target order id
        order_number: Target order number (used if ``order_id`` is absent or unknown)

    Returns:
        The updated key

    Raises:
        KeyNotFound, KeyNotAvailable, AssignmentTargetMissing, OrderNotFound, ProductMismatch
    """
    key = get_key(db, key_id)
    if key is None:
        raise KeyNotFound(key_id)

    if key.status != "available":
        raise KeyNotAvailable(key.status)

    order = resolve_order(db, order_id, order_number)

    product_ids = set(
        db.scalars(select(models.OrderItem.product_id).where(models.OrderItem.order_id == order.id)).all()
    )
    if key.product_id not in product_ids:
        product = get_product(db, key.product_id)
        raise ProductMismatch(key.product_id, product.title if product else None, order.order_number)

    result = db.execute(
        update(models.StockKey)
        .where(models.StockKey.id == key_id, models.StockKey.status == "available")
        .values(
            status="sold",
            order_id=order.id,
            order_number=order.order_number,
            assigned_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(key)
        raise KeyNotAvailable(key.status)

    db.commit()
    db.refresh(key)
    logger.info(f"Stock key {key_id} assigned to order {order.order_number}")
    return key
