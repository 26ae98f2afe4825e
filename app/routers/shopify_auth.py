"""
Shopify OAuth endpoints.
Handles the install redirect, the OAuth callback and session status lookups.
"""

from typing import Dict, List, Optional, Union

from fastapi import APIRouter, Query, Request
from fastapi.responses import RedirectResponse

from app.services.oauth_service import ShopifyOAuthService
from app.services.session_vault import SessionVault
from app.utils.shop_domain import validate_shop_domain


router = APIRouter(prefix="/auth", tags=["shopify-auth"])
api_router = APIRouter(prefix="/api/auth", tags=["auth"])


def _query_params(request: Request) -> Dict[str, Union[str, List[str]]]:
    """Group repeated query keys into lists, keep single values as strings."""
    grouped: Dict[str, List[str]] = {}
    for key, value in request.query_params.multi_items():
        grouped.setdefault(key, []).append(value)
    return {k: v[0] if len(v) == 1 else v for k, v in grouped.items()}


@router.get("")
async def shopify_oauth_initiate(
    request: Request,
    shop: Optional[str] = Query(None, description="Shop domain (e.g., myshop.myshopify.com)"),
):
    """
    Initiate Shopify OAuth flow.
    Redirects to Shopify authorization page.
    """
    oauth: ShopifyOAuthService = request.app.state.oauth
    # A missing shop is rejected by begin() like any other malformed domain
    redirect = await oauth.begin(shop)
    return RedirectResponse(url=redirect.url, status_code=302)


@router.get("/callback")
async def shopify_oauth_callback(request: Request):
    """
    Handle Shopify OAuth callback.
    Verifies state and HMAC, exchanges the code for an access token and registers webhooks.
    """
    oauth: ShopifyOAuthService = request.app.state.oauth
    result = await oauth.complete(_query_params(request))
    return {
        "success": True,
        "shop": result.shop,
        "scopes": result.scopes,
        "subscriptions": result.subscriptions.model_dump(),
    }


@api_router.get("/me")
async def get_current_auth(request: Request, shop: str = Query(..., description="Shop domain")):
    """
    Get current shop's authentication state.
    Never returns the access token itself.
    """
    sessions: SessionVault = request.app.state.sessions
    shop_domain = validate_shop_domain(shop, request.app.state.settings.shop_domain_suffix)
    session = await sessions.get(shop_domain)

    return {
        "shop": shop_domain,
        "is_authenticated": session is not None,
        "scope": session.scope if session else None,
        "access_mode": session.access_mode if session else None,
        "installed_at": session.created_at.isoformat() if session else None,
    }
