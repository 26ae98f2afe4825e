"""
Error taxonomy shared by the handshake, storage and upstream client layers.
Routers map each class to an HTTP status in app.main.
"""
from typing import Optional


class BridgeError(Exception):
    """Base exception for all storefront bridge errors."""

    pass


class ValidationError(BridgeError):
    """Raised for malformed client input or a missing required parameter."""

    pass


class InvalidDomain(ValidationError):
    """Raised when a storefront identifier is not a canonical shop domain."""

    def __init__(self, raw: object):
        super().__init__(f"Invalid shop domain: {raw!r}")
        self.raw = raw


class AuthenticationError(BridgeError):
    """Raised when a state nonce or HMAC signature fails verification."""

    pass


class SessionMissing(BridgeError):
    """Raised when no access session is stored for a shop."""

    def __init__(self, shop_domain: str):
        super().__init__(f"No session found for {shop_domain}. Complete OAuth first.")
        self.shop_domain = shop_domain


class UpstreamError(BridgeError):
    """Raised when the Shopify API answers non-2xx (after retries) or is unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class PersistenceError(BridgeError):
    """Raised when a durable store cannot be read or written."""

    pass


class FetchCancelled(BridgeError):
    """Raised when the caller aborts a multi-page catalog fetch."""

    pass
