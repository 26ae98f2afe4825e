"""
API router for catalog retrieval.
Serves product pages straight from the Shopify Admin API using the shop's stored session.
"""

from typing import Optional

from fastapi import APIRouter, Query, Request

from app.services.catalog_pager import CatalogPager
from app.utils.shop_domain import validate_shop_domain


router = APIRouter(prefix="/products", tags=["products"])


@router.get("")
async def get_products_page(
    request: Request,
    shop: str = Query(..., description="Shop domain"),
    page_info: Optional[str] = Query(None, description="Cursor from a previous page"),
    limit: Optional[int] = Query(None, description="Page size (1-250)"),
):
    """Fetch one page of products."""
    pager: CatalogPager = request.app.state.pager
    shop_domain = validate_shop_domain(shop, request.app.state.settings.shop_domain_suffix)
    page = await pager.fetch_page(shop_domain, cursor=page_info, limit=limit)
    return {
        "count": len(page.products),
        "next_page_info": page.next_cursor,
        "products": [p.model_dump() for p in page.products],
    }


@router.get("/all")
async def get_all_products(request: Request, shop: str = Query(..., description="Shop domain")):
    """
    Fetch the whole catalog by following page cursors.
    Stops early if the client disconnects.
    """
    pager: CatalogPager = request.app.state.pager
    shop_domain = validate_shop_domain(shop, request.app.state.settings.shop_domain_suffix)
    products = await pager.fetch_all(shop_domain, should_stop=request.is_disconnected)
    return {
        "count": len(products),
        "products": [p.model_dump() for p in products],
    }
