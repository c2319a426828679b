"""Guide cache API endpoints."""

import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional
from trashsync.services.cache_manager import CONFIG_TYPES, TrashCacheManager, get_cache_manager
from trashsync.services.upstream_fetcher import TrashGitHubFetcher, get_upstream_fetcher

logger = logging.getLogger(__name__)

router = APIRouter()

SERVICE_TYPES = ("RADARR", "SONARR")


def _service_type(value: str) -> str:
    service_type = value.upper()
    if service_type not in SERVICE_TYPES:
        raise HTTPException(status_code=422, detail=f"Unknown service type: {value}")
    return service_type


@router.get("/stats")
async def get_cache_stats(cache: TrashCacheManager = Depends(get_cache_manager)):
    stats = await cache.get_stats()
    return stats.model_dump(mode="json", by_alias=True)


@router.get("/{service_type}/status")
async def get_cache_status(
    service_type: str,
    cache: TrashCacheManager = Depends(get_cache_manager)
):
    statuses = await cache.get_all_statuses(_service_type(service_type))
    return [s.model_dump(mode="json", by_alias=True) for s in statuses]


@router.post("/{service_type}/refresh")
async def refresh_cache(
    service_type: str,
    config_types: Optional[List[str]] = Query(None),
    cache: TrashCacheManager = Depends(get_cache_manager),
    fetcher: TrashGitHubFetcher = Depends(get_upstream_fetcher)
):
    """Re-fetch config types from upstream and store them at the fetched commit."""
    service_type = _service_type(service_type)
    refreshed = {}
    for config_type in config_types or CONFIG_TYPES:
        if config_type not in CONFIG_TYPES:
            raise HTTPException(status_code=422, detail=f"Unknown config type: {config_type}")
        items, commit_hash = await fetcher.fetch_configs(service_type, config_type)
        version = await cache.set(service_type, config_type, items, commit_hash)
        refreshed[config_type] = {"version": version, "itemCount": len(items), "commitHash": commit_hash}

    logger.info(f"Refreshed {len(refreshed)} cache entries for {service_type}")
    return {"serviceType": service_type, "refreshed": refreshed}


@router.delete("/{service_type}")
async def clear_service_cache(
    service_type: str,
    cache: TrashCacheManager = Depends(get_cache_manager)
):
    cleared = await cache.clear_service(_service_type(service_type))
    return {"success": True, "cleared": cleared}


@router.delete("")
async def clear_cache(cache: TrashCacheManager = Depends(get_cache_manager)):
    cleared = await cache.clear_all()
    return {"success": True, "cleared": cleared}
