"""
HTTP client for the Zip-Tax sales tax lookup service.

The lookup never fails the caller: any transport error, timeout, unexpected
payload or out-of-range rate is logged and replaced by ``DEFAULT_TAX_RATE``.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from ..config import DEFAULT_TAX_RATE, TAX_TIMEOUT, ZIP_TAX_API_KEY, ZIP_TAX_URL

logger = logging.getLogger(__name__)

MAX_RATE = Decimal("1.5")
SUCCESS_CODE = 100


def _as_rate(value: Any) -> Optional[Decimal]:
    # bool is an int subclass; a JSON true is not a rate
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        return None
    if not rate.is_finite() or rate < 0:
        return None
    return rate


def parse_rate(data: Any) -> Optional[Decimal]:
    """
    Extract a usable tax rate from a Zip-Tax response body.

    Prefers ``taxSales`` and falls back to ``taxUse``.

    Args:
        data: Decoded JSON body

    Returns:
        The rate, or None when the payload carries no acceptable rate
    """
    if not isinstance(data, dict) or data.get("rCode") != SUCCESS_CODE:
        return None

    results = data.get("results")
    if not isinstance(results, list) or not results or not isinstance(results[0], dict):
        return None

    first = results[0]
    rate = _as_rate(first.get("taxSales"))
    if rate is None:
        rate = _as_rate(first.get("taxUse"))

    if rate is None or rate >= MAX_RATE:
        return None
    return rate


async def get_tax_rate(
    zip_code: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    api_key: Optional[str] = None,
) -> Decimal:
    """
    Look up the sales tax rate for a postal code.

    Args:
        zip_code: Billing postal code
        transport: Optional httpx transport (used by tests)
        api_key: Overrides ``ZIP_TAX_API_KEY``

    Returns:
        Tax rate as a fraction, e.g. Decimal("0.0825")
    """
    key = api_key if api_key is not None else ZIP_TAX_API_KEY
    if not key:
        logger.warning("ZIP_TAX_API_KEY not set, using default tax rate")
        return DEFAULT_TAX_RATE

    params = {
        "key": key,
        "postalcode": zip_code,
        "format": "json",
        "countryCode": "USA",
    }

    try:
        async with httpx.AsyncClient(timeout=TAX_TIMEOUT, transport=transport) as client:
            response = await client.get(ZIP_TAX_URL, params=params)
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Error fetching tax rate for ZIP '{zip_code}', using default: {e}")
        return DEFAULT_TAX_RATE

    rate = parse_rate(data)
    if rate is None:
        logger.warning(f"Zip-Tax returned no usable rate for ZIP '{zip_code}', using default")
        return DEFAULT_TAX_RATE

    return rate
