"""Fetches guide definitions from the upstream TRaSH Guides GitHub repository."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from trashsync.config import settings
from trashsync.exceptions import (
    FatalRemoteError,
    RemoteTimeoutError,
    RemoteUnreachableError,
    error_for_status,
)
from trashsync.services.retry import with_retry

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_RAW_URL = "https://raw.githubusercontent.com"

# Directory under docs/json/{service}/ for each config type
CONFIG_DIRECTORIES = {
    "CUSTOM_FORMATS": "cf",
    "CF_GROUPS": "cf-groups",
    "QUALITY_PROFILES": "quality-profiles",
    "QUALITY_SIZE": "quality-size",
    "NAMING": "naming",
}


class TrashGitHubFetcher:
    """Reads JSON definitions for one service/config type at a pinned commit."""

    def __init__(
        self,
        owner: str = None,
        repo: str = None,
        branch: str = None,
        token: Optional[str] = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.owner = owner or settings.trash_repo_owner
        self.repo = repo or settings.trash_repo_name
        self.branch = branch or settings.trash_repo_branch
        self.token = token if token is not None else settings.github_token
        self.timeout = timeout if timeout is not None else settings.upstream_timeout_seconds
        self.transport = transport
        self.sleep = sleep

    def _headers(self, api: bool) -> Dict[str, str]:
        headers = {"User-Agent": "trashsync"}
        if api:
            headers["Accept"] = "application/vnd.github+json"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get_json_once(self, url: str, api: bool) -> Any:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await client.get(url, headers=self._headers(api))
        except httpx.TimeoutException as e:
            raise RemoteTimeoutError(f"GET {url} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise RemoteUnreachableError(f"GET {url} failed: {e}") from e

        if response.is_error:
            remaining = response.headers.get("X-RateLimit-Remaining")
            if remaining == "0":
                logger.warning(f"GitHub rate limit exhausted while fetching {url}")
            raise error_for_status(
                response.status_code,
                f"GitHub request failed: {response.status_code} {response.reason_phrase} ({url})",
            )
        return response.json()

    async def _get_json(self, url: str, api: bool = False) -> Any:
        return await with_retry(
            lambda: self._get_json_once(url, api),
            sleep=self.sleep,
            description=f"GET {url}",
        )

    async def fetch_latest_commit(self) -> str:
        """Return the sha at the head of the configured branch."""
        url = f"{GITHUB_API_URL}/repos/{self.owner}/{self.repo}/commits/{self.branch}"
        data = await self._get_json(url, api=True)
        return data["sha"]

    def _directory(self, service_type: str, config_type: str) -> str:
        if config_type not in CONFIG_DIRECTORIES:
            raise ValueError(f"Unknown config type: {config_type}")
        return f"docs/json/{service_type.lower()}/{CONFIG_DIRECTORIES[config_type]}"

    async def _list_json_files(self, directory: str, ref: str) -> List[str]:
        url = f"{GITHUB_API_URL}/repos/{self.owner}/{self.repo}/contents/{directory}?ref={ref}"
        entries = await self._get_json(url, api=True)
        return sorted(
            entry["name"]
            for entry in entries
            if entry.get("type") == "file" and entry.get("name", "").endswith(".json")
        )

    async def fetch_configs(self, service_type: str, config_type: str) -> Tuple[List[Dict], str]:
        """Fetch every definition file for a config type.

        Returns the items and the commit they were read at. A file that
        disappears between listing and download (404) is skipped.
        """
        commit_hash = await self.fetch_latest_commit()
        directory = self._directory(service_type, config_type)
        files = await self._list_json_files(directory, commit_hash)

        items: List[Dict] = []
        for file_name in files:
            url = f"{GITHUB_RAW_URL}/{self.owner}/{self.repo}/{commit_hash}/{directory}/{file_name}"
            try:
                data = await self._get_json(url)
            except FatalRemoteError as e:
                if e.status_code != 404:
                    raise
                logger.warning(f"Skipping {directory}/{file_name}: {e}")
                continue
            if isinstance(data, list):
                items.extend(data)
            else:
                items.append(data)

        logger.info(
            f"Fetched {len(items)} {config_type} items for {service_type} at {commit_hash[:8]}"
        )
        return items, commit_hash


def get_upstream_fetcher() -> TrashGitHubFetcher:
    return TrashGitHubFetcher()
