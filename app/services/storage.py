"""
Durable key-value storage for nonces, sessions and webhook events.

Each collection is backed by a KeyValueStore (JSON file, Supabase table, or an
in-memory fake for tests). CachedCollection keeps a write-through in-memory view
of one store and serializes every read-modify-write cycle with an asyncio lock.
"""
import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

import structlog

from app.config import Settings
from app.exceptions import PersistenceError

logger = structlog.get_logger()

COLLECTIONS = ("nonces", "sessions", "webhook_events")


@runtime_checkable
class KeyValueStore(Protocol):
    """Async persistence backend for one keyed collection."""

    async def load_all(self) -> Dict[str, Dict[str, Any]]: ...

    async def put(self, key: str, value: Dict[str, Any]) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStore:
    """Dict-backed store. Survives only as long as the instance."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self.data: Dict[str, Dict[str, Any]] = dict(initial or {})

    async def load_all(self) -> Dict[str, Dict[str, Any]]:
        return {k: dict(v) for k, v in self.data.items()}

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        self.data[key] = dict(value)

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStore:
    """
    Store that keeps one collection in a single JSON file.

    The whole file is rewritten on every mutation through a temp file and an
    atomic rename, so a crash mid-write never leaves a truncated collection.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._data: Optional[Dict[str, Dict[str, Any]]] = None

    def _read(self) -> Dict[str, Dict[str, Any]]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise PersistenceError(f"Failed to read {self.path}: {e}") from e

        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt store file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"Corrupt store file {self.path}: expected an object")
        return data

    def _write(self, data: Dict[str, Dict[str, Any]]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write {self.path}: {e}") from e

    async def _snapshot(self) -> Dict[str, Dict[str, Any]]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._read)
        return self._data

    async def load_all(self) -> Dict[str, Dict[str, Any]]:
        self._data = await asyncio.to_thread(self._read)
        return {k: dict(v) for k, v in self._data.items()}

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        current = await self._snapshot()
        updated = {**current, key: dict(value)}
        await asyncio.to_thread(self._write, updated)
        self._data = updated

    async def delete(self, key: str) -> None:
        current = await self._snapshot()
        if key not in current:
            return
        updated = {k: v for k, v in current.items() if k != key}
        await asyncio.to_thread(self._write, updated)
        self._data = updated


class CachedCollection:
    """
    Write-through in-memory view over one KeyValueStore.

    - load() replaces the cache with the store's full contents.
    - Every accessor loads lazily if load() has not run yet.
    - Mutations hit the store first; the cache only changes once the write
      succeeded, so PersistenceError leaves the view consistent with disk.
    """

    def __init__(self, store: KeyValueStore, name: str):
        self.store = store
        self.name = name
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    async def _load_locked(self) -> None:
        try:
            entries = await self.store.load_all()
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to load {self.name}: {e}") from e
        self._entries = entries
        self._loaded = True
        logger.info("Loaded collection", collection=self.name, count=len(entries))

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self._load_locked()

    async def load(self) -> None:
        """Reload the whole collection from the backing store."""
        async with self._lock:
            await self._load_locked()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            await self._ensure_loaded()
            entry = self._entries.get(key)
            return dict(entry) if entry is not None else None

    async def values(self) -> List[Dict[str, Any]]:
        async with self._lock:
            await self._ensure_loaded()
            return [dict(v) for v in self._entries.values()]

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            await self._ensure_loaded()
            await self._write(key, value)

    async def put_if_absent(self, key: str, value: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Store value unless key already exists.

        Returns:
            The existing entry if one was present (nothing written), else None
        """
        async with self._lock:
            await self._ensure_loaded()
            existing = self._entries.get(key)
            if existing is not None:
                return dict(existing)
            await self._write(key, value)
            return None

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        """Remove key and return its value (None if absent)."""
        async with self._lock:
            await self._ensure_loaded()
            entry = self._entries.get(key)
            if entry is None:
                return None
            await self._delete(key)
            return dict(entry)

    async def remove_where(self, predicate: Callable[[Dict[str, Any]], bool]) -> int:
        """Remove all entries matching predicate. Returns count removed."""
        async with self._lock:
            await self._ensure_loaded()
            doomed = [k for k, v in self._entries.items() if predicate(v)]
            for key in doomed:
                await self._delete(key)
            return len(doomed)

    async def _write(self, key: str, value: Dict[str, Any]) -> None:
        try:
            await self.store.put(key, value)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to write {self.name}/{key}: {e}") from e
        self._entries[key] = dict(value)

    async def _delete(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to delete {self.name}/{key}: {e}") from e
        self._entries.pop(key, None)

    @property
    def size(self) -> int:
        """Number of entries currently cached."""
        return len(self._entries)


def build_stores(settings: Settings) -> Dict[str, KeyValueStore]:
    """
    Create one backing store per collection for the configured backend.

    Args:
        settings: Application settings (storage_backend selects the implementation)

    Returns:
        Mapping of collection name ('nonces', 'sessions', 'webhook_events') to store
    """
    backend = settings.storage_backend
    if backend == "memory":
        return {name: MemoryStore() for name in COLLECTIONS}

    if backend == "supabase":
        from app.services.supabase_service import SupabaseStore, create_supabase_client

        client = create_supabase_client(settings)
        return {
            name: SupabaseStore(client, settings.supabase_table, name)
            for name in COLLECTIONS
        }

    data_dir = Path(settings.data_dir)
    return {name: JsonFileStore(data_dir / f"{name}.json") for name in COLLECTIONS}
