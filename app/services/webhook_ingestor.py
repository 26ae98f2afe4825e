"""
Webhook ingestion: verify, then append to the durable event log.
"""
import json
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

import structlog

from app.exceptions import AuthenticationError, ValidationError
from app.models.database import WebhookEvent
from app.services.signature_verifier import SignatureVerifier
from app.services.storage import CachedCollection
from app.utils.shop_domain import validate_shop_domain

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookIngestor:
    """Records verified webhook deliveries. Unverified deliveries are never stored."""

    def __init__(
        self,
        collection: CachedCollection,
        verifier: SignatureVerifier,
        clock: Callable[[], datetime] = utcnow,
        shop_domain_suffix: Optional[str] = None,
    ):
        self.collection = collection
        self.verifier = verifier
        self.shop_domain_suffix = shop_domain_suffix
        self._clock = clock

    async def ingest(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        topic: Optional[str],
        shop_domain: Optional[str],
        delivery_id: Optional[str] = None,
    ) -> WebhookEvent:
        """
        Verify and record one webhook delivery.

        Args:
            raw_body: Request body bytes exactly as received
            signature_header: X-Shopify-Hmac-Sha256 value
            topic: X-Shopify-Topic value (e.g., 'products/update')
            shop_domain: X-Shopify-Shop-Domain value
            delivery_id: X-Shopify-Webhook-Id value; repeated deliveries are recorded once

        Returns:
            The recorded event (or the previously recorded one for a redelivery)

        Raises:
            AuthenticationError: If the signature does not match
            ValidationError: If shop, topic or body are malformed
        """
        # Signature first; the body is not parsed until it is trusted
        if not self.verifier.verify_webhook(raw_body, signature_header):
            logger.warning("Invalid Shopify webhook signature", topic=topic, shop=shop_domain)
            raise AuthenticationError("Invalid webhook signature")

        shop = validate_shop_domain(shop_domain, self.shop_domain_suffix)
        if not topic or not topic.strip():
            raise ValidationError("Missing webhook topic")

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Invalid JSON payload: {e}") from e

        received_at = self._clock()
        # Fall back to receipt time (ms) when the payload carries no id
        event_id = payload.get("id") if isinstance(payload, dict) else None
        if isinstance(event_id, bool) or not isinstance(event_id, (int, str)):
            event_id = int(received_at.timestamp() * 1000)

        event = WebhookEvent(
            id=event_id,
            shop_domain=shop,
            topic=topic.strip(),
            payload=payload,
            received_at=received_at,
            delivery_id=delivery_id or None,
        )

        key = delivery_id or uuid.uuid4().hex
        existing = await self.collection.put_if_absent(key, event.model_dump(mode="json"))
        if existing is not None:
            logger.info("Duplicate webhook delivery ignored", shop=shop, topic=topic, delivery_id=delivery_id)
            return WebhookEvent.model_validate(existing)

        logger.info("Recorded webhook", shop=shop, topic=event.topic, event_id=event.id)
        return event

    async def list(self) -> List[WebhookEvent]:
        """All recorded events, newest first."""
        events = [WebhookEvent.model_validate(v) for v in await self.collection.values()]
        events.sort(key=lambda e: e.received_at, reverse=True)
        return events
