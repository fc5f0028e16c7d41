"""
Meraki Dashboard API client

Thin async wrapper over the parts of the dashboard API the pipeline needs:

- Organization and network lookup by name (startup identity resolution)
- Snapshot URL generation for a camera at a given timestamp
- Download of the pre-authenticated snapshot URL

The API key is sent only on dashboard calls; snapshot URLs are signed and
hosted elsewhere, so image downloads go out without it.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Cisco-Meraki-API-Key"
DEFAULT_TIMEOUT_SECONDS = 30.0
USER_AGENT = "mvwatch/1.0"


class MerakiError(Exception):
    """Base class for dashboard and snapshot errors."""
    pass


class StartupResolutionError(MerakiError):
    """Raised when the configured organization or network name does not exist."""
    pass


class TransientAcquisitionError(MerakiError):
    """The snapshot is not available yet; the caller may retry."""
    pass


class SnapshotNotReadyError(TransientAcquisitionError):
    """Snapshot URL generation failed (dashboard not ready or transient error)."""
    pass


class ImageNotReadyError(TransientAcquisitionError):
    """The snapshot URL answered 404: the image has not been materialized yet."""
    pass


class SnapshotServerError(MerakiError):
    """The snapshot host answered 5xx."""

    def __init__(self, status_code: int, reason: str, url: str):
        self.status_code = status_code
        self.reason = reason
        self.url = url
        super().__init__(f"server error={status_code}, {reason}, url={url}")


class ImageFetchError(MerakiError):
    """Any other failure downloading the snapshot image."""
    pass


class MerakiClient:
    """
    Async Meraki dashboard client.

    Attributes:
        base_url: Dashboard API base, e.g. https://api-mp.meraki.com/api/v0
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        """
        Args:
            api_key: Dashboard API key
            base_url: API base URL (no trailing slash needed)
            http_client: Optional shared AsyncClient (created if not provided)
            timeout: Request timeout in seconds for a created client
        """
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
        self._owns_client = http_client is None

    @property
    def _auth_headers(self) -> Dict[str, str]:
        return {API_KEY_HEADER: self._api_key, "Accept": "application/json"}

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, path: str) -> Any:
        response = await self._client.get(f"{self.base_url}{path}", headers=self._auth_headers)
        response.raise_for_status()
        return response.json()

    async def get_organizations(self) -> List[Dict[str, Any]]:
        """List organizations visible to the API key."""
        return await self._get_json("/organizations")

    async def get_networks(self, organization_id: str) -> List[Dict[str, Any]]:
        """List networks in an organization."""
        return await self._get_json(f"/organizations/{organization_id}/networks")

    async def resolve_network_id(self, org_name: str, network_name: str) -> str:
        """
        Find the network id for a named network in a named organization.

        Args:
            org_name: Organization name, matched exactly
            network_name: Network name, matched exactly

        Returns:
            Network id

        Raises:
            StartupResolutionError: If either name is not found
            httpx.HTTPError: If the dashboard cannot be queried
        """
        organizations = await self.get_organizations()
        org_id = next((org["id"] for org in organizations if org.get("name") == org_name), None)
        if org_id is None:
            raise StartupResolutionError(f"Could not find organisation '{org_name}'")
        logger.debug(f"orgID={org_id}", extra={"event_type": "meraki_org_resolved", "org_id": org_id})

        networks = await self.get_networks(org_id)
        net_id = next((net["id"] for net in networks if net.get("name") == network_name), None)
        if net_id is None:
            raise StartupResolutionError(f"Could not find network '{network_name}' in organisation '{org_name}'")
        logger.debug(f"netID={net_id}", extra={"event_type": "meraki_network_resolved", "network_id": net_id})
        return net_id

    async def generate_snapshot(self, network_id: str, serial: str, timestamp: str) -> str:
        """
        Ask the dashboard for a snapshot URL for a camera at a point in time.

        Args:
            network_id: Network containing the camera
            serial: Camera serial number
            timestamp: ISO-8601 instant of the wanted frame

        Returns:
            Time-limited, pre-authenticated image URL

        Raises:
            SnapshotNotReadyError: On any HTTP or transport failure, or a
                response without a url
        """
        url = f"{self.base_url}/networks/{network_id}/cameras/{serial}/snapshot"
        try:
            response = await self._client.post(url, json={"timestamp": timestamp}, headers=self._auth_headers)
        except httpx.RequestError as e:
            raise SnapshotNotReadyError(f"Request error: {e}") from e

        if not response.is_success:
            raise SnapshotNotReadyError(f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise SnapshotNotReadyError("Snapshot response was not JSON") from e

        snapshot_url = data.get("url") if isinstance(data, dict) else None
        if not snapshot_url:
            raise SnapshotNotReadyError("Snapshot response did not contain a url")
        return snapshot_url

    async def fetch_image(self, url: str) -> bytes:
        """
        Download a snapshot image.

        Raises:
            ImageNotReadyError: 404, or an empty body
            SnapshotServerError: 5xx
            ImageFetchError: Any other status or transport error
        """
        try:
            response = await self._client.get(url, headers={"Accept": "image/jpeg"})
        except httpx.RequestError as e:
            raise ImageFetchError(f"Request error: {e}") from e

        if response.status_code == 404:
            raise ImageNotReadyError(f"Image not ready: {url}")
        if 500 <= response.status_code <= 599:
            raise SnapshotServerError(response.status_code, response.reason_phrase, url)
        if not response.is_success:
            raise ImageFetchError(f"HTTP {response.status_code} {response.reason_phrase}: {url}")
        if not response.content:
            raise ImageNotReadyError(f"Empty image body: {url}")
        return response.content
