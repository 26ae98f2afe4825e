"""
OAuth state nonce ledger.
Issues one-time state tokens for the install handshake and enforces single use and TTL.
"""
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from app.models.database import StateNonce
from app.services.storage import CachedCollection

logger = structlog.get_logger()

NONCE_BYTES = 16
DEFAULT_TTL_SECONDS = 300


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NonceLedger:
    """Durable ledger of outstanding OAuth state nonces."""

    def __init__(
        self,
        collection: CachedCollection,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.collection = collection
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def issue(self, shop_domain: str) -> StateNonce:
        """
        Create and persist a fresh nonce bound to shop_domain.

        Args:
            shop_domain: Validated shop domain starting the handshake

        Returns:
            The persisted StateNonce
        """
        state = StateNonce(
            nonce=secrets.token_hex(NONCE_BYTES),
            shop_domain=shop_domain,
            created_at=self._clock(),
            ttl_seconds=self.ttl_seconds,
        )
        await self.collection.put(state.nonce, state.model_dump(mode="json"))
        logger.info("Issued OAuth state nonce", shop=shop_domain)
        return state

    async def consume(self, nonce: Optional[str], expected_shop_domain: str) -> bool:
        """
        Validate a nonce and remove it whatever the outcome.

        A nonce is deleted on the first attempt to use it, so a replayed state
        fails even if the first attempt failed too.

        Args:
            nonce: State value from the callback
            expected_shop_domain: Shop the callback claims to be for

        Returns:
            True if the nonce existed, belongs to expected_shop_domain and is within its TTL
        """
        if not nonce:
            return False

        entry = await self.collection.pop(nonce)
        if entry is None:
            logger.warning("Unknown or already used OAuth state", shop=expected_shop_domain)
            return False

        state = StateNonce.model_validate(entry)
        if state.shop_domain != expected_shop_domain:
            logger.warning(
                "OAuth state shop mismatch",
                shop=expected_shop_domain,
                bound_shop=state.shop_domain,
            )
            return False

        age = (self._clock() - state.created_at).total_seconds()
        if age > state.ttl_seconds:
            logger.warning(
                "OAuth state expired",
                shop=expected_shop_domain,
                age_seconds=round(age, 1),
            )
            return False

        return True

    async def purge_expired(self) -> int:
        """Drop nonces whose TTL has elapsed. Returns count removed."""
        now = self._clock()

        def _expired(entry) -> bool:
            state = StateNonce.model_validate(entry)
            return (now - state.created_at).total_seconds() > state.ttl_seconds

        removed = await self.collection.remove_where(_expired)
        if removed:
            logger.info("Purged expired OAuth state nonces", count=removed)
        return removed
