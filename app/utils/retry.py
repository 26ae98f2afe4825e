"""
Retry policy for Shopify Admin API calls.
Classifies responses as retryable (429, 5xx) and builds the tenacity wait strategy:
exponential backoff plus a small random jitter.
"""

from typing import Optional

import httpx
import structlog
from tenacity import RetryCallState, wait_exponential, wait_random

logger = structlog.get_logger()

JITTER_SECONDS = 0.1

# Call-limit header: "<used>/<capacity>" for the shop's leaky bucket
CALL_LIMIT_HEADER = "X-Shopify-Shop-Api-Call-Limit"
THROTTLE_THRESHOLD = 0.8
THROTTLE_DELAY_SECONDS_PER_UNIT = 1.0


def is_retryable_status(status_code: int) -> bool:
    """Rate limiting (429) and server errors (5xx) are transient."""
    return status_code == 429 or 500 <= status_code < 600


def is_retryable_response(response: httpx.Response) -> bool:
    """tenacity retry_if_result predicate."""
    return is_retryable_status(response.status_code)


def backoff_wait(base_delay: float):
    """
    Wait strategy for attempt n (0-indexed): base * 2^n + uniform jitter in [0, 100ms).

    Args:
        base_delay: Delay in seconds before the first retry (without jitter)

    Returns:
        tenacity wait strategy
    """
    return wait_exponential(multiplier=base_delay, exp_base=2) + wait_random(0, JITTER_SECONDS)


def parse_bucket_utilization(header_value: Optional[str]) -> Optional[float]:
    """
    Parse a '<used>/<capacity>' call-limit header.

    Args:
        header_value: Raw header value, e.g. '32/40'

    Returns:
        Utilization ratio (0.8 for '32/40'), or None if absent or malformed
    """
    if not header_value or "/" not in header_value:
        return None
    used, _, capacity = header_value.partition("/")
    try:
        used_n = float(used.strip())
        capacity_n = float(capacity.strip())
    except ValueError:
        return None
    if capacity_n <= 0:
        return None
    return used_n / capacity_n


def throttle_delay(utilization: Optional[float]) -> float:
    """
    Pre-emptive delay (seconds) to apply before the next request to a busy bucket.
    Zero below the 80% threshold, then grows linearly with utilization.
    """
    if utilization is None or utilization < THROTTLE_THRESHOLD:
        return 0.0
    return (utilization - THROTTLE_THRESHOLD) * THROTTLE_DELAY_SECONDS_PER_UNIT


def log_retry_attempt(retry_state: RetryCallState):
    """Log retry attempt before sleeping."""
    if retry_state.outcome is None:
        return
    status_code = None
    if not retry_state.outcome.failed:
        status_code = retry_state.outcome.result().status_code
    logger.warning(
        "Retrying Shopify API call after transient response",
        attempt=retry_state.attempt_number,
        status_code=status_code,
        wait_time=retry_state.next_action.sleep if retry_state.next_action else 0,
    )
