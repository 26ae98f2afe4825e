"""
Pydantic models for Shopify Admin API payloads and handshake results.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CatalogImage(BaseModel):
    """Product image reference."""
    src: str
    alt: Optional[str] = None


class CatalogProduct(BaseModel):
    """Product record reduced to the fields the catalog view needs."""
    id: int
    title: str
    images: List[CatalogImage] = Field(default_factory=list)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "CatalogProduct":
        """Build from a products.json entry (extra fields ignored)."""
        return cls(
            id=raw["id"],
            title=raw.get("title") or "",
            images=[
                CatalogImage(src=img["src"], alt=img.get("alt"))
                for img in raw.get("images") or []
                if img.get("src")
            ],
        )


class CatalogPage(BaseModel):
    """One page of products plus the cursor for the next page."""
    products: List[CatalogProduct] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class AccessTokenResponse(BaseModel):
    """Body of POST /admin/oauth/access_token."""
    access_token: str
    scope: str = ""
    expires_in: Optional[int] = None
    associated_user_scope: Optional[str] = None


class RegistrationReport(BaseModel):
    """Outcome of registering webhook subscriptions for one shop."""
    registered: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class AuthorizationRedirect(BaseModel):
    """Where to send the merchant to begin the install handshake."""
    url: str
    state: str
    shop: str


class HandshakeResult(BaseModel):
    """Successful install: shop, granted scopes, webhook registration outcome."""
    shop: str
    scopes: List[str]
    subscriptions: RegistrationReport
