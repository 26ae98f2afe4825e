"""
Cursor pagination over a shop's product catalog.
Uses the Link header (rel="next", page_info cursor) returned by the Admin REST API.
"""
from typing import Awaitable, Callable, List, Optional

import httpx
import structlog

from app.exceptions import FetchCancelled, SessionMissing, UpstreamError
from app.models.shopify import CatalogPage, CatalogProduct
from app.services.session_vault import SessionVault
from app.services.shopify_api_client import ShopifyAPIClient

logger = structlog.get_logger()

MIN_PAGE_SIZE = 1
MAX_PAGE_SIZE = 250
PRODUCT_FIELDS = "id,title,images"


def clamp_limit(limit: Optional[int]) -> int:
    """Clamp a requested page size to [1, 250]; None means the maximum."""
    if limit is None:
        return MAX_PAGE_SIZE
    return max(MIN_PAGE_SIZE, min(MAX_PAGE_SIZE, int(limit)))


def next_cursor_from_response(response: httpx.Response) -> Optional[str]:
    """
    Extract the page_info cursor of the rel="next" Link header entry.

    Args:
        response: Products page response

    Returns:
        Cursor string, or None on the last page
    """
    next_link = response.links.get("next")
    if not next_link or not next_link.get("url"):
        return None
    return httpx.URL(next_link["url"]).params.get("page_info") or None


class CatalogPager:
    """Fetches product pages for shops with a stored session."""

    def __init__(self, api_client: ShopifyAPIClient, sessions: SessionVault):
        self.api_client = api_client
        self.sessions = sessions

    async def fetch_page(
        self,
        shop_domain: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = MAX_PAGE_SIZE,
    ) -> CatalogPage:
        """
        Fetch one page of products.

        Args:
            shop_domain: Validated shop domain
            cursor: page_info from the previous page, None for the first page
            limit: Page size, clamped to [1, 250]

        Returns:
            CatalogPage with products and the next cursor (None when done)

        Raises:
            SessionMissing: If the shop has not completed OAuth
            UpstreamError: If Shopify keeps failing after retries
        """
        session = await self.sessions.get(shop_domain)
        if session is None:
            raise SessionMissing(shop_domain)

        params = {"fields": PRODUCT_FIELDS, "limit": clamp_limit(limit)}
        if cursor:
            params["page_info"] = cursor

        response = await self.api_client.request(
            "GET",
            self.api_client.admin_url(shop_domain, "products.json"),
            access_token=session.access_token,
            params=params,
        )

        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamError(
                "Shopify returned a non-JSON products page",
                status_code=response.status_code,
                body=response.text,
            ) from e

        products = [CatalogProduct.from_api(raw) for raw in body.get("products") or []]
        page = CatalogPage(products=products, next_cursor=next_cursor_from_response(response))
        logger.debug(
            "Fetched products page",
            shop=shop_domain,
            count=len(products),
            has_next=page.next_cursor is not None,
        )
        return page

    async def fetch_all(
        self,
        shop_domain: str,
        should_stop: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> List[CatalogProduct]:
        """
        Follow cursors until the last page, keeping products in arrival order.

        Args:
            shop_domain: Validated shop domain
            should_stop: Awaited before each follow-up page; True aborts the loop

        Returns:
            All products

        Raises:
            FetchCancelled: If should_stop() returned True
        """
        products: List[CatalogProduct] = []
        cursor: Optional[str] = None
        pages = 0

        while True:
            page = await self.fetch_page(shop_domain, cursor=cursor)
            products.extend(page.products)
            pages += 1
            cursor = page.next_cursor
            if cursor is None:
                break
            if should_stop is not None and await should_stop():
                logger.info(
                    "Catalog fetch cancelled",
                    shop=shop_domain,
                    pages=pages,
                    products=len(products),
                )
                raise FetchCancelled(f"Catalog fetch for {shop_domain} cancelled after {pages} page(s)")

        logger.info("Fetched full catalog", shop=shop_domain, pages=pages, products=len(products))
        return products
