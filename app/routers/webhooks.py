"""
FastAPI router for Shopify webhook endpoints.
Receives products/create, products/update and products/delete deliveries and lists what was recorded.
"""
from typing import Optional

from fastapi import APIRouter, Header, Request

from app.services.signature_verifier import WEBHOOK_HMAC_HEADER
from app.services.webhook_ingestor import WebhookIngestor


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/products")
async def shopify_product_webhook(
    request: Request,
    x_shopify_hmac_sha256: Optional[str] = Header(None, alias=WEBHOOK_HMAC_HEADER),
    x_shopify_shop_domain: Optional[str] = Header(None, alias="X-Shopify-Shop-Domain"),
    x_shopify_topic: Optional[str] = Header(None, alias="X-Shopify-Topic"),
    x_shopify_webhook_id: Optional[str] = Header(None, alias="X-Shopify-Webhook-Id"),
):
    """
    Handle a Shopify product webhook.
    The raw body is verified before it is parsed; unverified deliveries get 401.
    """
    ingestor: WebhookIngestor = request.app.state.ingestor

    # Read raw body for signature verification
    body_bytes = await request.body()

    event = await ingestor.ingest(
        body_bytes,
        x_shopify_hmac_sha256,
        x_shopify_topic,
        x_shopify_shop_domain,
        delivery_id=x_shopify_webhook_id,
    )
    return {"status": "accepted", "id": event.id, "topic": event.topic}


@router.get("")
async def list_webhooks(request: Request):
    """Recorded webhook events, newest first."""
    ingestor: WebhookIngestor = request.app.state.ingestor
    events = await ingestor.list()
    return {
        "count": len(events),
        "events": [e.model_dump(mode="json") for e in events],
    }
