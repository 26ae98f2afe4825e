"""
Supabase-backed key-value store.
Keeps every collection in one table with (collection, key, value) rows, value as jsonb.

Expected table:
    create table bridge_store (
        collection text not null,
        key text not null,
        value jsonb not null,
        updated_at timestamptz default now(),
        primary key (collection, key)
    );
"""

import asyncio
from typing import Any, Dict

import structlog
from supabase import Client, create_client

from app.config import Settings
from app.exceptions import PersistenceError

logger = structlog.get_logger()


def create_supabase_client(settings: Settings) -> Client:
    """Initialize Supabase client from settings."""
    return create_client(settings.supabase_url, settings.supabase_service_key)


class SupabaseStore:
    """KeyValueStore over a single Supabase table, scoped to one collection."""

    def __init__(self, client: Client, table: str, collection: str):
        """
        Initialize the store.

        Args:
            client: Supabase client
            table: Table holding all collections
            collection: Collection name this store reads and writes
        """
        self.client = client
        self.table = table
        self.collection = collection

    def _load_all_sync(self) -> Dict[str, Dict[str, Any]]:
        result = (
            self.client.table(self.table)
            .select("key,value")
            .eq("collection", self.collection)
            .execute()
        )
        return {row["key"]: row["value"] for row in (result.data or [])}

    def _put_sync(self, key: str, value: Dict[str, Any]) -> None:
        self.client.table(self.table).upsert(
            {"collection": self.collection, "key": key, "value": value},
            on_conflict="collection,key",
        ).execute()

    def _delete_sync(self, key: str) -> None:
        (
            self.client.table(self.table)
            .delete()
            .eq("collection", self.collection)
            .eq("key", key)
            .execute()
        )

    async def load_all(self) -> Dict[str, Dict[str, Any]]:
        """Fetch every row of this collection."""
        try:
            return await asyncio.to_thread(self._load_all_sync)
        except Exception as e:
            logger.error(
                "Failed to load collection from Supabase",
                collection=self.collection,
                error=str(e),
            )
            raise PersistenceError(f"Supabase load failed for {self.collection}: {e}") from e

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        """Insert or replace one row."""
        try:
            await asyncio.to_thread(self._put_sync, key, value)
        except Exception as e:
            logger.error(
                "Failed to write to Supabase",
                collection=self.collection,
                key=key,
                error=str(e),
            )
            raise PersistenceError(f"Supabase write failed for {self.collection}/{key}: {e}") from e

    async def delete(self, key: str) -> None:
        """Delete one row (no-op if absent)."""
        try:
            await asyncio.to_thread(self._delete_sync, key)
        except Exception as e:
            logger.error(
                "Failed to delete from Supabase",
                collection=self.collection,
                key=key,
                error=str(e),
            )
            raise PersistenceError(f"Supabase delete failed for {self.collection}/{key}: {e}") from e
