"""
Discount ledger operations.

Validation is a pure read. A code is marked used only by ``consume``, which
the order engine calls inside its checkout transaction, so a code can never
end up used without the order that used it.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, validators
from .errors import (
    DiscountAlreadyUsed,
    DiscountCodeNotFound,
    DiscountNotActive,
    DiscountNotFound,
    DuplicateDiscountCode,
    InvalidDiscountStatusTransition,
)

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return code.strip().upper()


def get_discount(db: Session, code: str) -> Optional[models.DiscountCode]:
    """
    Retrieve a discount code by its (normalised) code string.

    Args:
        db: Database session
        code: Code as typed by the customer

    Returns:
        DiscountCode object or None if not found
    """
    return db.scalar(select(models.DiscountCode).where(models.DiscountCode.code == normalize_code(code)))


def validate(db: Session, code: str) -> models.DiscountCode:
    """
    Check that a code exists and is active. Has no side effects.

    Raises:
        DiscountNotFound: No such code
        DiscountNotActive: Code is used, expired or disabled
    """
    normalized = normalize_code(code)
    discount = get_discount(db, normalized)
    if discount is None:
        raise DiscountNotFound(normalized)
    if discount.status != "active":
        raise DiscountNotActive(normalized, discount.status)
    return discount


def consume(db: Session, code: str, order_number: str) -> None:
    """
    Mark a code used by an order. Must run inside the checkout transaction.

    The update only matches while the code is still active, so of two
    concurrent checkouts presenting the same code exactly one wins.

    Raises:
        DiscountAlreadyUsed: Another order consumed the code first
    """
    result = db.execute(
        update(models.DiscountCode)
        .where(models.DiscountCode.code == normalize_code(code), models.DiscountCode.status == "active")
        .values(status="used", used_on=datetime.utcnow(), order_number=order_number)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise DiscountAlreadyUsed(normalize_code(code))


def create_discount(db: Session, code: str, percent_off, created_by: Optional[int] = None) -> models.DiscountCode:
    """
    Create an active discount code.

    Raises:
        DuplicateDiscountCode: The code already exists
    """
    normalized = normalize_code(code)
    if get_discount(db, normalized) is not None:
        raise DuplicateDiscountCode(normalized)

    discount = models.DiscountCode(
        code=normalized,
        percent_off=percent_off,
        status="active",
        created_by=created_by,
    )
    db.add(discount)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateDiscountCode(normalized)
    db.refresh(discount)
    logger.info(f"Discount code {normalized} created ({percent_off}% off)")
    return discount


def list_discounts(
    db: Session, status: Optional[str] = None, skip: int = 0, limit: int = 100
) -> Tuple[List[models.DiscountCode], int]:
    """
    Retrieve discount codes, newest first, with pagination.

    Returns:
        Tuple of (page of codes, total matching)
    """
    query = select(models.DiscountCode)
    if status:
        query = query.where(models.DiscountCode.status == status)

    total = db.scalar(select(func.count()).select_from(query.subquery()))
    items = db.scalars(
        query.order_by(models.DiscountCode.created_at.desc(), models.DiscountCode.id.desc())
        .offset(skip)
        .limit(limit)
    ).all()
    return list(items), total


def set_discount_status(db: Session, discount_id: int, new_status: str) -> models.DiscountCode:
    """
    Expire, disable or re-activate a code. Used codes never change.

    Raises:
        DiscountCodeNotFound: Unknown id
        InvalidDiscountStatusTransition: Change not allowed from the current status
    """
    discount = db.get(models.DiscountCode, discount_id)
    if discount is None:
        raise DiscountCodeNotFound(discount_id)

    old_status = discount.status
    is_valid, _ = validators.validate_discount_status_transition(old_status, new_status)
    if not is_valid:
        raise InvalidDiscountStatusTransition(old_status, new_status)

    # Guard on the status we validated against; a checkout may consume the code meanwhile
    result = db.execute(
        update(models.DiscountCode)
        .where(models.DiscountCode.id == discount_id, models.DiscountCode.status == old_status)
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(discount)
        raise InvalidDiscountStatusTransition(discount.status, new_status)

    db.commit()
    db.refresh(discount)
    logger.info(f"Discount code {discount.code} status changed from '{old_status}' to '{new_status}'")
    return discount
