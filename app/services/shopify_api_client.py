"""
Shopify API client with throttling-aware retry.
Every outbound Admin API call (token exchange, catalog pages, webhook
registration) goes through ShopifyAPIClient.request().
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt

from app.exceptions import UpstreamError
from app.utils.retry import (
    CALL_LIMIT_HEADER,
    backoff_wait,
    is_retryable_response,
    log_retry_attempt,
    parse_bucket_utilization,
    throttle_delay,
)

logger = structlog.get_logger()

DEFAULT_API_VERSION = "2024-04"


class ShopifyAPIClient:
    """Client for making Shopify Admin API calls."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        api_version: str = DEFAULT_API_VERSION,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize Shopify API client.

        Args:
            http_client: Shared httpx client (one is created if omitted)
            api_version: Admin API version used by admin_url()
            max_attempts: Total attempts per call, including the first
            base_delay: Backoff delay in seconds before the first retry
            timeout: Per-call timeout in seconds
            sleep: Awaitable sleep, replaceable in tests
        """
        self.api_version = api_version
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout
        self._sleep = sleep
        self.client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"Content-Type": "application/json"},
        )
        # Last seen bucket utilization, per shop host
        self._utilization: Dict[str, float] = {}

    def admin_url(self, shop_domain: str, path: str) -> str:
        """Versioned Admin REST URL, e.g. admin_url(shop, 'products.json')."""
        return f"https://{shop_domain}/admin/api/{self.api_version}/{path.lstrip('/')}"

    def utilization(self, host: str) -> Optional[float]:
        """Last recorded call-limit utilization for host."""
        return self._utilization.get(host)

    def _record_utilization(self, host: str, response: httpx.Response) -> None:
        utilization = parse_bucket_utilization(response.headers.get(CALL_LIMIT_HEADER))
        if utilization is None:
            # Delay only follows a response that carried the header
            self._utilization.pop(host, None)
        else:
            self._utilization[host] = utilization

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        params: Optional[Dict[str, Any]],
        json: Optional[Any],
    ) -> httpx.Response:
        host = httpx.URL(url).host
        delay = throttle_delay(self._utilization.get(host))
        if delay > 0:
            logger.info(
                "Delaying request for busy call-limit bucket",
                host=host,
                utilization=self._utilization.get(host),
                delay=round(delay, 3),
            )
            await self._sleep(delay)

        try:
            response = await self.client.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            logger.error("Shopify API request failed", method=method, url=url, error=str(e))
            raise UpstreamError(f"Shopify API unreachable: {e}") from e

        self._record_utilization(host, response)
        return response

    async def request(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        retry: bool = True,
    ) -> httpx.Response:
        """
        Issue one Admin API call, retrying throttled and 5xx responses.

        Args:
            method: HTTP method
            url: Absolute URL
            access_token: Shop access token (sent as X-Shopify-Access-Token)
            params: Query parameters
            json: JSON body
            retry: False to make exactly one attempt (e.g. token exchange)

        Returns:
            The 2xx response, untouched

        Raises:
            UpstreamError: On a non-2xx final response or a transport failure
        """
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["X-Shopify-Access-Token"] = access_token

        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(self.max_attempts if retry else 1),
            wait=backoff_wait(self.base_delay),
            retry=retry_if_result(is_retryable_response),
            before_sleep=log_retry_attempt,
            # Out of attempts: hand back the last response instead of RetryError
            retry_error_callback=lambda state: state.outcome.result(),
        )
        response = await retrying(self._send, method, url, headers, params, json)

        if response.is_success:
            return response

        logger.error(
            "Shopify API call failed",
            method=method,
            url=url,
            status_code=response.status_code,
        )
        raise UpstreamError(
            f"Shopify API error: {response.status_code}",
            status_code=response.status_code,
            body=response.text,
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
