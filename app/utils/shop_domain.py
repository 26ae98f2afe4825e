"""
Shop domain validation.
Every inbound operation passes its storefront identifier through here first.
"""
import re
from functools import lru_cache
from typing import Optional

from app.config import settings
from app.exceptions import InvalidDomain


@lru_cache(maxsize=8)
def _shop_pattern(suffix: str) -> re.Pattern:
    return re.compile(rf"^[A-Za-z0-9][A-Za-z0-9-]*\.{re.escape(suffix)}$")


def validate_shop_domain(raw: Optional[str], suffix: Optional[str] = None) -> str:
    """
    Validate a raw shop domain and return it in canonical form.

    Args:
        raw: Shop domain as received (e.g., ' myshop.myshopify.com ')
        suffix: Platform suffix, defaults to settings.shop_domain_suffix

    Returns:
        The trimmed shop domain

    Raises:
        InvalidDomain: If the value is empty or not a <name>.<suffix> domain
    """
    if not isinstance(raw, str):
        raise InvalidDomain(raw)

    candidate = raw.strip()
    if not candidate or not _shop_pattern(suffix or settings.shop_domain_suffix).match(candidate):
        raise InvalidDomain(raw)

    return candidate


def is_valid_shop_domain(raw: Optional[str], suffix: Optional[str] = None) -> bool:
    """Return True if raw is an acceptable shop domain."""
    try:
        validate_shop_domain(raw, suffix)
    except InvalidDomain:
        return False
    return True
