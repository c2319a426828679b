"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from trashsync.database import Base
from trashsync.exceptions import RemoteUnreachableError
from trashsync.models import ServiceInstance, TrashTemplate
from trashsync.services.cache_manager import TrashCacheManager

CF_A = "11111111-1111-1111-1111-111111111111"
CF_B = "22222222-2222-2222-2222-222222222222"
CF_C = "33333333-3333-3333-3333-333333333333"
CF_D = "44444444-4444-4444-4444-444444444444"
GROUP_1 = "g1111111-0000-0000-0000-000000000000"


def make_spec(name: str, value: Any, implementation: str = "ReleaseTitleSpecification") -> Dict[str, Any]:
    """Upstream-style specification (fields as a mapping)."""
    return {
        "name": name,
        "implementation": implementation,
        "negate": False,
        "required": True,
        "fields": {"value": value},
    }


def upstream_cf(trash_id: str, name: str, score: Optional[int] = None, pattern: str = "x") -> Dict[str, Any]:
    cf = {"trash_id": trash_id, "name": name, "specifications": [make_spec(name, pattern)]}
    if score is not None:
        cf["trash_scores"] = {"default": score}
    return cf


def template_cf(
    trash_id: str,
    name: str,
    score: Optional[int] = None,
    pattern: str = "x",
    score_override: Optional[int] = None,
) -> Dict[str, Any]:
    cf = {
        "trashId": trash_id,
        "name": name,
        "originalConfig": upstream_cf(trash_id, name, score, pattern),
        "conditionsEnabled": {name: True},
    }
    if score_override is not None:
        cf["scoreOverride"] = score_override
    return cf


def remote_cf(cf_id: int, name: str, pattern: str = "x") -> Dict[str, Any]:
    """Remote-style custom format (fields as a list of name/value pairs)."""
    return {
        "id": cf_id,
        "name": name,
        "includeCustomFormatWhenRenaming": False,
        "specifications": [{
            "name": name,
            "implementation": "ReleaseTitleSpecification",
            "negate": False,
            "required": True,
            "fields": [{"name": "value", "value": pattern}],
        }],
    }


class FakeArrClient:
    """In-memory stand-in for a Radarr/Sonarr instance.

    ``failures`` maps a method name to a list of exceptions raised by
    successive calls before the call goes through.
    """

    def __init__(self, custom_formats: List[Dict] = None, quality_profiles: List[Dict] = None):
        self.custom_formats = [dict(cf) for cf in custom_formats or []]
        self.quality_profiles = [dict(p) for p in quality_profiles or []]
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[tuple] = []
        self.reachable = True
        self.version = "5.2.6"
        self.block: Optional[asyncio.Event] = None
        self._next_id = 100

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    async def _enter(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        if not self.reachable:
            raise RemoteUnreachableError("connection refused")
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def call_count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def get_system_status(self) -> Dict:
        await self._enter("get_system_status")
        return {"version": self.version}

    async def get_custom_formats(self) -> List[Dict]:
        await self._enter("get_custom_formats")
        if self.block is not None:
            await self.block.wait()
        return [dict(cf) for cf in self.custom_formats]

    async def create_custom_format(self, custom_format: Dict) -> Dict:
        await self._enter("create_custom_format", custom_format)
        self._next_id += 1
        created = {**custom_format, "id": self._next_id}
        self.custom_formats.append(created)
        return created

    async def update_custom_format(self, custom_format_id: int, custom_format: Dict) -> Dict:
        await self._enter("update_custom_format", custom_format_id, custom_format)
        updated = {**custom_format, "id": custom_format_id}
        self.custom_formats = [updated if cf["id"] == custom_format_id else cf for cf in self.custom_formats]
        return updated

    async def get_quality_profiles(self) -> List[Dict]:
        await self._enter("get_quality_profiles")
        return [dict(p) for p in self.quality_profiles]

    async def get_quality_profile_schema(self) -> Dict:
        await self._enter("get_quality_profile_schema")
        return {"id": 0, "name": "", "upgradeAllowed": False, "cutoff": 1, "formatItems": [], "items": []}

    async def create_quality_profile(self, profile: Dict) -> Dict:
        await self._enter("create_quality_profile", profile)
        self._next_id += 1
        created = {**profile, "id": self._next_id}
        self.quality_profiles.append(created)
        return created

    async def update_quality_profile(self, profile_id: int, profile: Dict) -> Dict:
        await self._enter("update_quality_profile", profile_id, profile)
        self.quality_profiles = [profile if p["id"] == profile_id else p for p in self.quality_profiles]
        return profile


class FakeFetcher:
    """Upstream fetcher serving fixed data at a fixed commit."""

    def __init__(self, commit: str = "commit-new", configs: Dict[tuple, List[Dict]] = None):
        self.commit = commit
        self.configs = configs or {}
        self.fetches: List[tuple] = []
        self.error: Optional[Exception] = None

    async def fetch_latest_commit(self) -> str:
        return self.commit

    async def fetch_configs(self, service_type: str, config_type: str):
        self.fetches.append((service_type, config_type))
        if self.error is not None:
            raise self.error
        return list(self.configs.get((service_type, config_type), [])), self.commit


class SleepRecorder:
    """Injected in place of asyncio.sleep so retry delays are observable and instant."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
async def session_factory(tmp_path) -> async_sessionmaker:
    """Fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def cache_manager(session_factory) -> TrashCacheManager:
    return TrashCacheManager(session_factory, stale_after_hours=12, compression_enabled=True)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


async def add_instance(session_factory, service: str = "radarr", label: str = "Radarr 4K") -> ServiceInstance:
    instance = ServiceInstance(label=label, service=service, base_url="http://radarr:7878", api_key="key")
    async with session_factory() as session:
        session.add(instance)
        await session.commit()
    return instance


async def add_template(
    session_factory,
    custom_formats: List[Dict] = None,
    groups: List[Dict] = None,
    commit_hash: Optional[str] = "commit-old",
    service_type: str = "RADARR",
    quality_profile: Optional[Dict] = None,
    config_data: Optional[str] = None,
    **fields,
) -> TrashTemplate:
    config = {"customFormats": custom_formats or [], "customFormatGroups": groups or []}
    if quality_profile is not None:
        config["qualityProfile"] = quality_profile
    template = TrashTemplate(
        name=fields.pop("name", "HD Bluray + WEB"),
        service_type=service_type,
        config_data=config_data if config_data is not None else json.dumps(config),
        commit_hash=commit_hash,
        **fields,
    )
    async with session_factory() as session:
        session.add(template)
        await session.commit()
    return template


