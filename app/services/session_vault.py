"""
Session vault: durable shop -> access token mapping.
"""
from typing import Optional

import structlog

from app.models.database import Session
from app.services.storage import CachedCollection
from app.utils.token_encryption import TokenCipher

logger = structlog.get_logger()


class SessionVault:
    """One session per shop, replaced on every successful re-install."""

    def __init__(self, collection: CachedCollection, cipher: Optional[TokenCipher] = None):
        self.collection = collection
        self.cipher = cipher or TokenCipher()

    async def load(self) -> None:
        """Reload all sessions from the backing store."""
        await self.collection.load()

    async def put(self, session: Session) -> None:
        """Store (or overwrite) the session for session.shop_domain."""
        stored = session.model_dump(mode="json")
        stored["access_token"] = self.cipher.encrypt(session.access_token)
        await self.collection.put(session.shop_domain, stored)
        logger.info(
            "Stored shop session",
            shop=session.shop_domain,
            scope=session.scope,
            access_mode=session.access_mode,
        )

    async def get(self, shop_domain: str) -> Optional[Session]:
        entry = await self.collection.get(shop_domain)
        if entry is None:
            return None
        entry["access_token"] = self.cipher.decrypt(entry["access_token"])
        return Session.model_validate(entry)
