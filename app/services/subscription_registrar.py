"""
Registers product webhook subscriptions for a newly installed shop.
"""
from typing import Sequence

import structlog

from app.exceptions import UpstreamError
from app.models.shopify import RegistrationReport
from app.services.shopify_api_client import ShopifyAPIClient

logger = structlog.get_logger()

PRODUCT_TOPICS = ("products/create", "products/update", "products/delete")
WEBHOOK_PATH = "/webhooks/products"


class SubscriptionRegistrar:
    """Declares one webhook subscription per product topic."""

    def __init__(
        self,
        api_client: ShopifyAPIClient,
        app_url: str,
        topics: Sequence[str] = PRODUCT_TOPICS,
    ):
        self.api_client = api_client
        self.address = f"{app_url.rstrip('/')}{WEBHOOK_PATH}"
        self.topics = tuple(topics)

    async def register_all(self, shop_domain: str, access_token: str) -> RegistrationReport:
        """
        Register every topic, continuing past failures.

        Topics that registered stay registered when a later one fails;
        Shopify treats re-registration of an existing subscription as harmless.

        Args:
            shop_domain: Shop that just completed OAuth
            access_token: Its access token

        Returns:
            RegistrationReport listing registered and failed topics
        """
        report = RegistrationReport()
        url = self.api_client.admin_url(shop_domain, "webhooks.json")

        for topic in self.topics:
            try:
                await self.api_client.request(
                    "POST",
                    url,
                    access_token=access_token,
                    json={"webhook": {"topic": topic, "address": self.address, "format": "json"}},
                )
            except UpstreamError as e:
                logger.error(
                    "Failed to register webhook",
                    shop=shop_domain,
                    topic=topic,
                    status_code=e.status_code,
                    error=str(e),
                )
                report.failed[topic] = str(e)
                continue

            report.registered.append(topic)
            logger.info("Registered webhook", shop=shop_domain, topic=topic)

        return report
