"""
Purchaser resolution for checkout.

An authenticated, active user buys as themselves. Anyone else buys through a
guest account keyed by billing email; the account is created on first use
with a random password that is never disclosed, and exists only to own the
order and transaction rows.
"""
import logging
import random
import secrets
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import auth, models

logger = logging.getLogger(__name__)

USERNAME_MAX = 50
USERNAME_ATTEMPTS = 10


def resolve_requester(db: Session, token: Optional[str]) -> Optional[models.User]:
    """
    Return the user behind a bearer token.

    Invalid or expired tokens and unknown or inactive users all count as
    "no session"; checkout then proceeds as a guest.
    """
    if not token:
        return None

    user_id = auth.decode_user_id(token)
    if user_id is None:
        return None

    user = db.get(models.User, user_id)
    if user is None or not user.is_active:
        return None
    return user


def split_name(name: str) -> Tuple[str, str]:
    """Split "Ada Lovelace King" into ("Ada", "Lovelace King"); missing parts become "Guest"."""
    parts = name.strip().split()
    first_name = parts[0] if parts else "Guest"
    last_name = " ".join(parts[1:]) or "Guest"
    return first_name[:100], last_name[:100]


def _username_taken(db: Session, username: str) -> bool:
    return db.scalar(select(models.User.id).where(models.User.username == username)) is not None


def make_guest_username(db: Session, email: str) -> str:
    """
    Derive a unique username from the email's local part plus a random suffix.
    """
    base = (email.split("@")[0] or "guest")[: USERNAME_MAX - 7]
    for _ in range(USERNAME_ATTEMPTS):
        username = f"{base}_{random.randint(0, 99999)}"
        if not _username_taken(db, username):
            return username
    return f"{base}_{secrets.token_hex(3)}"


def get_or_create_guest(db: Session, billing_name: str, billing_email: str) -> Tuple[models.User, bool]:
    """
    Find the user owning ``billing_email`` or create a guest shell account.

    The new row is flushed but not committed so it belongs to the caller's
    transaction.

    Args:
        db: Database session
        billing_name: Billing name from checkout
        billing_email: Billing email from checkout

    Returns:
        Tuple of (user, created)
    """
    existing = db.scalar(select(models.User).where(models.User.email == billing_email))
    if existing is not None:
        return existing, False

    first_name, last_name = split_name(billing_name)
    user = models.User(
        email=billing_email,
        password_hash=auth.get_password_hash(secrets.token_urlsafe(32)),
        first_name=first_name,
        last_name=last_name,
        username=make_guest_username(db, billing_email),
        role="customer",
        is_verified=False,
        is_active=True,
    )
    db.add(user)
    db.flush()
    logger.info(f"Created guest user {user.id} for checkout")
    return user, True


def resolve_purchaser(
    db: Session,
    requester: Optional[models.User],
    billing_name: str,
    billing_email: str,
) -> Tuple[int, bool]:
    """
    Decide which user owns the order.

    Returns:
        Tuple of (user_id, is_guest_checkout)
    """
    if requester is not None:
        return requester.id, False

    user, _ = get_or_create_guest(db, billing_name, billing_email)
    return user.id, True
