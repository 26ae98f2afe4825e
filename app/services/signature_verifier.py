"""
HMAC verification for Shopify OAuth callbacks and webhook deliveries.
Both modes use the app's shared secret and constant-time comparison.
"""
import base64
import hashlib
import hmac
from typing import Mapping, Optional, Sequence, Union

import structlog

logger = structlog.get_logger()

QueryValue = Union[str, Sequence[str]]

# Parameters never included in the signed callback message
EXCLUDED_CALLBACK_PARAMS = ("hmac", "signature")

WEBHOOK_HMAC_HEADER = "X-Shopify-Hmac-Sha256"


def canonical_callback_message(query_params: Mapping[str, QueryValue]) -> str:
    """
    Build the string Shopify signs for OAuth redirects.

    Keys are sorted, 'hmac' and 'signature' dropped, values kept verbatim and
    multi-valued parameters joined with a comma.

    Args:
        query_params: Query parameters from the callback URL

    Returns:
        'key=value' pairs joined by '&'
    """
    pairs = []
    for key in sorted(query_params):
        if key in EXCLUDED_CALLBACK_PARAMS:
            continue
        value = query_params[key]
        if not isinstance(value, str):
            value = ",".join(value)
        pairs.append(f"{key}={value}")
    return "&".join(pairs)


class SignatureVerifier:
    """Verifies request authenticity with the Shopify app secret."""

    def __init__(self, secret: str):
        self.secret = secret or ""

    def _digest(self, message: bytes) -> bytes:
        return hmac.new(self.secret.encode("utf-8"), message, hashlib.sha256).digest()

    def sign_callback(self, query_params: Mapping[str, QueryValue]) -> str:
        """Hex HMAC-SHA256 of the canonical callback message."""
        message = canonical_callback_message(query_params)
        return self._digest(message.encode("utf-8")).hex()

    def sign_webhook(self, raw_body: bytes) -> str:
        """Base64 HMAC-SHA256 of the raw webhook body."""
        return base64.b64encode(self._digest(raw_body)).decode("utf-8")

    def verify_callback(self, query_params: Mapping[str, QueryValue]) -> bool:
        """
        Verify the 'hmac' parameter of an OAuth callback.

        Args:
            query_params: All query parameters, including 'hmac'

        Returns:
            True if the signature matches, False otherwise (including missing secret or hmac)
        """
        if not self.secret:
            logger.error("Cannot verify callback HMAC: app secret not configured")
            return False

        received = query_params.get("hmac")
        if not received or not isinstance(received, str):
            return False

        calculated = self.sign_callback(query_params)
        return hmac.compare_digest(calculated.encode("utf-8"), received.encode("utf-8"))

    def verify_webhook(self, raw_body: bytes, hmac_header: Optional[str]) -> bool:
        """
        Verify a webhook signature over the raw, unparsed body.

        Args:
            raw_body: Request body bytes exactly as received
            hmac_header: X-Shopify-Hmac-Sha256 header value

        Returns:
            True if signature is valid, False otherwise
        """
        if not self.secret:
            logger.error("Cannot verify webhook HMAC: app secret not configured")
            return False
        if not hmac_header:
            return False

        calculated = self.sign_webhook(raw_body)
        # Compare using secure comparison to prevent timing attacks
        return hmac.compare_digest(calculated.encode("utf-8"), hmac_header.encode("utf-8"))
