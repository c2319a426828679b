"""Versioned, persistent cache of upstream guide definitions."""

import base64
import gzip
import json
import logging
import zlib
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import async_sessionmaker

from trashsync.config import settings
from trashsync.database import async_session
from trashsync.exceptions import CorruptDataError
from trashsync.models import TrashCache
from trashsync.schemas import CacheStats, CacheStatus, SourceBreakdown
from trashsync.utils import utcnow

logger = logging.getLogger(__name__)

CONFIG_TYPES = ["CUSTOM_FORMATS", "CF_GROUPS", "QUALITY_PROFILES", "QUALITY_SIZE", "NAMING"]

# Errors raised by base64, gzip and json on malformed input
_DECODE_ERRORS = (ValueError, OSError, EOFError, zlib.error)


class GzipCompression:
    """Stores payloads as base64-encoded gzip of their JSON form."""

    def encode(self, value: Any) -> str:
        raw = json.dumps(value).encode("utf-8")
        return base64.b64encode(gzip.compress(raw)).decode("ascii")

    def decode(self, data: str) -> Any:
        raw = gzip.decompress(base64.b64decode(data, validate=True))
        return json.loads(raw.decode("utf-8"))


class NoCompression:
    """Stores payloads as plain JSON text."""

    def encode(self, value: Any) -> str:
        return json.dumps(value)

    def decode(self, data: str) -> Any:
        return json.loads(data)


def is_stale(updated_at: datetime, stale_after_hours: float, now: Optional[datetime] = None) -> bool:
    """True when more than ``stale_after_hours`` have passed since ``updated_at``."""
    now = now or utcnow()
    return now - updated_at > timedelta(hours=stale_after_hours)


def count_source_breakdown(data: Any) -> Optional[SourceBreakdown]:
    """Count items tagged ``_repoSource`` official/custom. None when nothing is tagged."""
    if not isinstance(data, list):
        return None
    official = 0
    custom = 0
    for item in data:
        if isinstance(item, dict):
            source = item.get("_repoSource")
            if source == "official":
                official += 1
            elif source == "custom":
                custom += 1
    if official == 0 and custom == 0:
        return None
    if official + custom != len(data):
        logger.warning(
            f"Source breakdown mismatch: {official} official + {custom} custom of {len(data)} items"
        )
    return SourceBreakdown(official=official, custom=custom)


class TrashCacheManager:
    """Cache of upstream definitions keyed by (service type, config type).

    Every ``set`` bumps the entry version by exactly one, atomically in the
    database, so concurrent writers never share or skip a version.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = None,
        stale_after_hours: float = None,
        compression_enabled: bool = None,
    ):
        self._session_factory = session_factory or async_session
        self.stale_after_hours = (
            stale_after_hours if stale_after_hours is not None else settings.cache_stale_after_hours
        )
        if compression_enabled is None:
            compression_enabled = settings.cache_compression_enabled
        self.compression = GzipCompression() if compression_enabled else NoCompression()

    async def _get_entry(self, session, service_type: str, config_type: str) -> Optional[TrashCache]:
        result = await session.execute(
            select(TrashCache).where(
                TrashCache.service_type == service_type,
                TrashCache.config_type == config_type,
            )
        )
        return result.scalar_one_or_none()

    def _decode(self, entry: TrashCache) -> Any:
        return self.compression.decode(entry.data)

    async def get(self, service_type: str, config_type: str) -> Optional[Any]:
        """Return the cached payload, or None when nothing is cached.

        An entry that cannot be decoded is deleted and reported as corrupt.
        """
        async with self._session_factory() as session:
            entry = await self._get_entry(session, service_type, config_type)
            if entry is None:
                return None
            data = entry.data

        try:
            return self.compression.decode(data)
        except _DECODE_ERRORS as e:
            logger.error(
                f"Cache entry {service_type}/{config_type} is corrupt ({len(data)} bytes): {e}"
            )
            await self.delete(service_type, config_type)
            raise CorruptDataError(
                f"Cache for {service_type}/{config_type} was corrupted and has been cleared",
                record_id=f"{service_type}/{config_type}",
            ) from e

    async def set(
        self,
        service_type: str,
        config_type: str,
        payload: Any,
        commit_hash: Optional[str] = None,
    ) -> int:
        """Upsert the payload for a key and return the new version.

        The version is bumped in the same INSERT ... ON CONFLICT statement
        that writes the payload.
        """
        data = self.compression.encode(payload)
        item_count = len(payload) if isinstance(payload, (list, dict)) else 0
        values = {
            "data": data,
            "commit_hash": commit_hash,
            "item_count": item_count,
            "size_bytes": len(data.encode("utf-8")),
            "updated_at": utcnow(),
        }

        stmt = sqlite_insert(TrashCache).values(
            service_type=service_type,
            config_type=config_type,
            version=1,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["service_type", "config_type"],
            set_={"version": TrashCache.version + 1, **values},
        ).returning(TrashCache.version)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            version = result.scalar_one()
            await session.commit()

        logger.info(
            f"Cached {item_count} {config_type} items for {service_type} "
            f"(version {version}, commit {commit_hash or 'unknown'})"
        )
        return version

    async def is_fresh(self, service_type: str, config_type: str) -> bool:
        async with self._session_factory() as session:
            entry = await self._get_entry(session, service_type, config_type)
        if entry is None:
            return False
        return not is_stale(entry.updated_at, self.stale_after_hours)

    async def get_commit_hash(self, service_type: str, config_type: str) -> Optional[str]:
        async with self._session_factory() as session:
            entry = await self._get_entry(session, service_type, config_type)
        return entry.commit_hash if entry else None

    def _build_status(self, entry: TrashCache, now: datetime) -> CacheStatus:
        breakdown = None
        try:
            breakdown = count_source_breakdown(self._decode(entry))
        except _DECODE_ERRORS as e:
            logger.warning(
                f"Could not decode {entry.service_type}/{entry.config_type} for status: {e}"
            )
        return CacheStatus(
            service_type=entry.service_type,
            config_type=entry.config_type,
            version=entry.version,
            commit_hash=entry.commit_hash,
            last_fetched=entry.updated_at,
            item_count=entry.item_count or 0,
            size_bytes=entry.size_bytes or 0,
            is_stale=is_stale(entry.updated_at, self.stale_after_hours, now),
            source_breakdown=breakdown,
        )

    async def get_status(self, service_type: str, config_type: str) -> Optional[CacheStatus]:
        async with self._session_factory() as session:
            entry = await self._get_entry(session, service_type, config_type)
        if entry is None:
            return None
        return self._build_status(entry, utcnow())

    async def get_all_statuses(self, service_type: str) -> List[CacheStatus]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TrashCache)
                .where(TrashCache.service_type == service_type)
                .order_by(TrashCache.config_type)
            )
            entries = result.scalars().all()
        now = utcnow()
        return [self._build_status(entry, now) for entry in entries]

    async def get_stats(self) -> CacheStats:
        async with self._session_factory() as session:
            result = await session.execute(select(TrashCache))
            entries = result.scalars().all()

        if not entries:
            return CacheStats()

        now = utcnow()
        timestamps = [e.updated_at for e in entries]
        return CacheStats(
            total_entries=len(entries),
            stale_entries=sum(1 for e in entries if is_stale(e.updated_at, self.stale_after_hours, now)),
            total_size_bytes=sum(e.size_bytes or 0 for e in entries),
            oldest_entry=min(timestamps),
            newest_entry=max(timestamps),
        )

    async def delete(self, service_type: str, config_type: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(TrashCache).where(
                    TrashCache.service_type == service_type,
                    TrashCache.config_type == config_type,
                )
            )
            await session.commit()
        return result.rowcount > 0

    async def clear_service(self, service_type: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(TrashCache).where(TrashCache.service_type == service_type)
            )
            await session.commit()
        logger.info(f"Cleared {result.rowcount} cache entries for {service_type}")
        return result.rowcount

    async def clear_all(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(TrashCache))
            await session.commit()
        logger.info(f"Cleared {result.rowcount} cache entries")
        return result.rowcount

    async def cleanup_stale(self) -> int:
        """Delete entries not refreshed for twice the stale threshold."""
        cutoff = utcnow() - timedelta(hours=self.stale_after_hours * 2)
        async with self._session_factory() as session:
            result = await session.execute(delete(TrashCache).where(TrashCache.updated_at < cutoff))
            await session.commit()
        if result.rowcount:
            logger.info(f"Removed {result.rowcount} stale cache entries")
        return result.rowcount


def get_cache_manager() -> TrashCacheManager:
    """Dependency to get a cache manager bound to the application database."""
    return TrashCacheManager()
