"""
Pydantic models for persisted entities.
Each model is stored as one JSON document keyed by its natural identifier.
"""
from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel


class StateNonce(BaseModel):
    """One-time OAuth state token bound to the shop that requested it."""
    nonce: str
    shop_domain: str
    created_at: datetime
    ttl_seconds: int


class Session(BaseModel):
    """Access credential for one shop. Keyed by shop_domain."""
    shop_domain: str
    access_token: str
    scope: str
    created_at: datetime
    access_mode: Literal["offline", "per-user"] = "offline"
    expires_in: Optional[int] = None  # per-user tokens only
    associated_user_scope: Optional[str] = None


class WebhookEvent(BaseModel):
    """Verified webhook delivery. Append-only."""
    id: Union[int, str]
    shop_domain: str
    topic: str
    payload: Any = None
    received_at: datetime
    delivery_id: Optional[str] = None
