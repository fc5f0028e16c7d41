"""
Plate Recognizer provider (platerecognizer.com)

Uploads the snapshot as multipart/form-data to the Snapshot Cloud API and
returns the best plate of the first result.
"""
import logging
from typing import List, Optional

import httpx

from mvwatch.services.providers.base import PlateResult, ProviderError, VehicleProvider

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://api.platerecognizer.com/v1/plate-reader"
DEFAULT_TIMEOUT_SECONDS = 30.0


class PlateRecognizerProvider(VehicleProvider):
    """
    Vehicle provider backed by the Plate Recognizer cloud API.

    Attributes:
        name: "plate_recognizer"
    """

    name = "plate_recognizer"

    def __init__(
        self,
        api_token: str,
        url: str = DEFAULT_URL,
        regions: Optional[List[str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        """
        Args:
            api_token: Plate Recognizer API token
            url: plate-reader endpoint
            regions: Optional region hints, e.g. ["nz"]
            http_client: Optional shared AsyncClient (created if not provided)
            timeout: Request timeout for a created client
        """
        if not api_token:
            raise ValueError("Plate Recognizer API token is required")
        self._api_token = api_token
        self._url = url
        self._regions = regions or []
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def recognize(self, camera_id: str, occurred_at: str, image: bytes) -> PlateResult:
        logger.debug("processPlateRecognizer:", extra={"event_type": "plate_recognizer_request", "camera_id": camera_id})

        data = {"camera_id": camera_id, "timestamp": occurred_at}
        if self._regions:
            data["regions"] = self._regions

        try:
            response = await self._client.post(
                self._url,
                files={"upload": ("vehicle.jpg", image, "image/jpeg")},
                data=data,
                headers={"Authorization": f"Token {self._api_token}"},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, "Request timeout") from e
        except httpx.HTTPStatusError as e:
            raise ProviderError(self.name, f"HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except httpx.RequestError as e:
            raise ProviderError(self.name, f"Request error: {e}") from e
        except ValueError as e:
            raise ProviderError(self.name, "Response was not JSON") from e

        results = payload.get("results") or []
        if not results:
            return PlateResult(provider=self.name)

        best = results[0]
        return PlateResult(provider=self.name, plate=best.get("plate"), confidence=best.get("score"))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
