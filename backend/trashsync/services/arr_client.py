"""Radarr/Sonarr v3 API Client."""

import logging
from typing import Any, Dict, List

import httpx

from trashsync.config import settings
from trashsync.exceptions import (
    RemoteError,
    RemoteTimeoutError,
    RemoteUnreachableError,
    error_for_status,
)
from trashsync.models import ServiceInstance

logger = logging.getLogger(__name__)


class ArrClient:
    """Client for the custom format and quality profile endpoints of an *arr instance."""

    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else ""
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else settings.arr_timeout_seconds
        self.transport = transport
        self.headers = {
            "X-Api-Key": api_key,
            "Content-Type": "application/json",
        }

    @classmethod
    def from_instance(cls, instance: ServiceInstance) -> "ArrClient":
        return cls(base_url=instance.base_url, api_key=instance.api_key)

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: Any = None,
    ) -> Any:
        """Make an API request and map failures to remote error types."""
        if not self.base_url:
            raise RemoteUnreachableError("Instance URL not configured")

        url = f"{self.base_url}/api/v3/{endpoint}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self.headers,
                    json=json,
                )
        except httpx.TimeoutException as e:
            raise RemoteTimeoutError(f"{method} {endpoint} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise RemoteUnreachableError(f"{method} {endpoint} failed: {e}") from e

        if response.is_error:
            message = f"API request failed: {response.status_code} {response.reason_phrase}"
            try:
                body = response.json()
                if isinstance(body, dict) and body.get("message"):
                    message = body["message"]
            except ValueError:
                pass
            raise error_for_status(response.status_code, message)

        if response.status_code == 204 or not response.content:
            return None
        if "application/json" not in response.headers.get("content-type", ""):
            return None
        return response.json()

    async def get_system_status(self) -> Dict:
        """Get system status and version."""
        return await self._request("GET", "system/status")

    async def test_connection(self) -> bool:
        """Test if the instance answers with valid credentials."""
        try:
            await self.get_system_status()
            return True
        except RemoteError as e:
            logger.warning(f"Connection test to {self.base_url} failed: {e}")
            return False

    # Custom formats
    async def get_custom_formats(self) -> List[Dict]:
        return await self._request("GET", "customformat") or []

    async def create_custom_format(self, custom_format: Dict) -> Dict:
        return await self._request("POST", "customformat", json=custom_format)

    async def update_custom_format(self, custom_format_id: int, custom_format: Dict) -> Dict:
        return await self._request("PUT", f"customformat/{custom_format_id}", json=custom_format)

    # Quality profiles
    async def get_quality_profiles(self) -> List[Dict]:
        return await self._request("GET", "qualityprofile") or []

    async def get_quality_profile_schema(self) -> Dict:
        """Blank profile with every quality and custom format, used to create new profiles."""
        return await self._request("GET", "qualityprofile/schema")

    async def create_quality_profile(self, profile: Dict) -> Dict:
        return await self._request("POST", "qualityprofile", json=profile)

    async def update_quality_profile(self, profile_id: int, profile: Dict) -> Dict:
        return await self._request("PUT", f"qualityprofile/{profile_id}", json=profile)


def get_arr_client(instance: ServiceInstance) -> ArrClient:
    """Default factory used by services to talk to an instance."""
    return ArrClient.from_instance(instance)
