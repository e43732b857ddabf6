"""
Business-rule validation for the keyshop service.

Provides validation beyond schema validation. Each helper returns a tuple of
``(is_valid, error_message)``; callers turn failures into domain errors.
"""
from typing import List, Optional, Tuple

from . import schemas

MAX_CART_LINES = 100


def validate_billing(name: Optional[str], email: Optional[str], zip_code: Optional[str]) -> Tuple[bool, str]:
    """
    Validate that every billing field needed to place an order is present.

    Args:
        name: Billing name
        email: Billing email
        zip_code: Billing postal code

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not (name and name.strip()) or not (email and email.strip()) or not (zip_code and zip_code.strip()):
        return False, "Billing name, email, and ZIP code are required."
    return True, ""


def validate_cart_items(items: List[schemas.CartItem]) -> Tuple[bool, str]:
    """
    Validate the shape of a cart.

    Quantities are checked per line by the order engine so that errors are
    reported in cart order.

    Args:
        items: Cart lines

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Cart must contain at least one item."

    if len(items) > MAX_CART_LINES:
        return False, f"Cart cannot contain more than {MAX_CART_LINES} items."

    return True, ""


# Stock keys only move between available and reserved by hand; "sold" is
# reached through assignment and is terminal.
KEY_STATUS_TRANSITIONS = {
    "available": ["reserved"],
    "reserved": ["available"],
    "sold": [],
}

DISCOUNT_STATUS_TRANSITIONS = {
    "active": ["expired", "disabled"],
    "expired": ["active"],
    "disabled": ["active"],
    "used": [],
}


def _validate_transition(transitions: dict, label: str, old_status: str, new_status: str) -> Tuple[bool, str]:
    if old_status not in transitions:
        return False, f"Unknown {label} status: {old_status}"

    if new_status not in transitions:
        return False, f"Unknown {label} status: {new_status}"

    if old_status == new_status:
        return True, ""  # No change is valid

    if new_status not in transitions[old_status]:
        return False, f"Invalid {label} status transition: {old_status} -> {new_status}"

    return True, ""


def validate_key_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """
    Validate a manual stock key status change.

    Args:
        old_status: Current key status
        new_status: Requested key status

    Returns:
        Tuple of (is_valid, error_message)
    """
    return _validate_transition(KEY_STATUS_TRANSITIONS, "stock key", old_status, new_status)


def validate_discount_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """Validate an administrative discount code status change."""
    return _validate_transition(DISCOUNT_STATUS_TRANSITIONS, "discount code", old_status, new_status)
