"""Persistent indicator cache.

One key per instrument, ``rsi_cache_v1:{instId}``, holding the orjson-encoded
indicator record. Writes overwrite unconditionally; reads never raise, and
a corrupt or unreadable entry is reported as a miss so the scheduler
recomputes it.
"""

import logging

import orjson
from pydantic import ValidationError

from perpboard.core.models import CacheEntry, IndicatorRecord
from perpboard.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "rsi_cache_v1:"


class PersistentIndicatorCache:
    """TTL-aware indicator cache over a KeyValueStore.

    Freshness is decided by the reader (``CacheEntry.is_fresh``); entries
    are never expired by the store itself, so a stale value is still
    available for display until it is recomputed.
    """

    def __init__(self, store: KeyValueStore, prefix: str = KEY_PREFIX):
        self.store = store
        self.prefix = prefix

    def key(self, inst_id: str) -> str:
        return f"{self.prefix}{inst_id}"

    def _decode(self, inst_id: str, raw: bytes | None) -> CacheEntry | None:
        if raw is None:
            return None
        try:
            data = orjson.loads(raw)
            record = IndicatorRecord.model_validate(data)
        except (orjson.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Discarding corrupt cache entry for {inst_id}: {e}")
            return None
        if record.inst_id != inst_id:
            logger.warning(f"Cache entry for {inst_id} holds {record.inst_id}, ignoring")
            return None
        return CacheEntry(record=record, updated_at=record.updated_at)

    async def get(self, inst_id: str) -> CacheEntry | None:
        """
        Read one entry.

        Returns:
            The cached entry, or None when missing, corrupt, or the store is
            unavailable
        """
        raw = await self.store.get(self.key(inst_id))
        return self._decode(inst_id, raw)

    async def get_many(self, inst_ids: list[str]) -> dict[str, CacheEntry]:
        """Read several entries with one round trip; misses are omitted."""
        if not inst_ids:
            return {}
        raws = await self.store.mget([self.key(i) for i in inst_ids])
        result: dict[str, CacheEntry] = {}
        for inst_id, raw in zip(inst_ids, raws):
            entry = self._decode(inst_id, raw)
            if entry is not None:
                result[inst_id] = entry
        return result

    async def set(self, inst_id: str, entry: CacheEntry) -> bool:
        """Overwrite the entry for ``inst_id``. The entry timestamp wins."""
        record = entry.record
        if record.updated_at != entry.updated_at:
            record = record.model_copy(update={"updated_at": entry.updated_at})
        if record.inst_id != inst_id:
            record = record.model_copy(update={"inst_id": inst_id})
        return await self.store.set(self.key(inst_id), orjson.dumps(record.model_dump()))

    async def invalidate(self, inst_ids: list[str] | None = None) -> int:
        """
        Force entries stale by deleting them.

        Args:
            inst_ids: Instruments to invalidate; None clears every entry

        Returns:
            Number of entries removed
        """
        if inst_ids is None:
            keys = await self.store.scan(f"{self.prefix}*")
        else:
            keys = [self.key(i) for i in inst_ids]
        removed = await self.store.delete(*keys) if keys else 0
        logger.info(f"Invalidated {removed} indicator cache entries")
        return removed
