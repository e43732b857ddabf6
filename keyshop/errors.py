"""Domain exceptions for keyshop.

Every exception carries the HTTP status it maps to and, optionally, extra
fields that are merged into the JSON error body.
"""
from typing import Any, Dict, Optional


class KeyshopError(Exception):
    """Base exception for all keyshop errors."""

    status_code = 500

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self.message = message
        self.extra = extra or {}
        super().__init__(message)


# --- Validation (400) ---


class InvalidRequest(KeyshopError):
    """Raised when a request is missing required fields or carries unusable values."""

    status_code = 400


class InvalidQuantity(KeyshopError):
    """Raised when a cart line asks for fewer than one unit."""

    status_code = 400

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Invalid quantity for product {product_id}.")


# --- Availability (400 / 404) ---


class ProductUnavailable(KeyshopError):
    """Raised when a cart line references a missing or inactive product."""

    status_code = 400

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} is not available.")


class ProductNotFound(KeyshopError):
    status_code = 404

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__("Product not found")


class DiscountNotFound(KeyshopError):
    status_code = 400

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Discount code '{code}' not found.")


class DiscountNotActive(KeyshopError):
    status_code = 400

    def __init__(self, code: str, status: str):
        self.code = code
        self.status = status
        super().__init__(f"Discount code '{code}' is {status}.", {"status": status})


class DiscountCodeNotFound(KeyshopError):
    status_code = 404

    def __init__(self, discount_id: int):
        self.discount_id = discount_id
        super().__init__("Discount code not found")


class KeyNotFound(KeyshopError):
    status_code = 404

    def __init__(self, key_id: int):
        self.key_id = key_id
        super().__init__("Stock key not found")


class OrderNotFound(KeyshopError):
    status_code = 404

    def __init__(self):
        super().__init__("Order not found")


class AssignmentTargetMissing(KeyshopError):
    status_code = 400

    def __init__(self):
        super().__init__("Either order_id or order_number is required")


class ProductMismatch(KeyshopError):
    """Raised when a key's product is not among the order's line items."""

    status_code = 400

    def __init__(self, product_id: int, product_title: Optional[str], order_number: str):
        self.product_id = product_id
        name = product_title or f"product {product_id}"
        super().__init__(
            f"Order {order_number} does not contain {name}",
            {"productId": product_id},
        )


class CannotDeleteSoldKey(KeyshopError):
    status_code = 400

    def __init__(self):
        super().__init__("Cannot delete a sold key")


class InvalidKeyStatusTransition(KeyshopError):
    status_code = 400

    def __init__(self, old_status: str, new_status: str):
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(f"Invalid stock key status transition: {old_status} -> {new_status}")


class InvalidDiscountStatusTransition(KeyshopError):
    status_code = 400

    def __init__(self, old_status: str, new_status: str):
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(f"Invalid discount code status transition: {old_status} -> {new_status}")


# --- Conflicts (409) ---


class InsufficientStock(KeyshopError):
    """Raised by pre-commit validation when stock is below the requested quantity."""

    status_code = 409

    def __init__(self, product_id: int, title: str, available: int):
        self.product_id = product_id
        self.available = available
        super().__init__(
            f"Insufficient stock for product {title}.",
            {"productId": product_id, "availableStock": available},
        )


class StockRaceLost(KeyshopError):
    """Raised inside the commit when another checkout took the remaining stock."""

    status_code = 409

    def __init__(self, product_id: int, available: int):
        self.product_id = product_id
        self.available = available
        super().__init__(
            f"Stock for product {product_id} changed during checkout. Please refresh and try again.",
            {"productId": product_id, "availableStock": available},
        )


class DiscountAlreadyUsed(KeyshopError):
    status_code = 409

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Discount code '{code}' has already been used.")


class KeyNotAvailable(KeyshopError):
    status_code = 409

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Cannot assign key with status: {status}", {"status": status})


class DuplicateKey(KeyshopError):
    status_code = 409

    def __init__(self):
        super().__init__("This game key already exists")


class DuplicateDiscountCode(KeyshopError):
    status_code = 409

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Discount code '{code}' already exists")


# --- Internal (500) ---


class CheckoutFailed(KeyshopError):
    """Generic failure surfaced to the client; details stay in the log."""

    status_code = 500

    def __init__(self):
        super().__init__("Checkout failed.")
