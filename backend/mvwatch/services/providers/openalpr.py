"""
OpenALPR cloud provider (openalpr.com)

Posts the base64-encoded snapshot to recognize_bytes and returns the top
plate candidate.
"""
import base64
import logging
from typing import Optional

import httpx

from mvwatch.services.providers.base import PlateResult, ProviderError, VehicleProvider

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://api.openalpr.com/v2/recognize_bytes"
DEFAULT_TIMEOUT_SECONDS = 30.0


class OpenALPRProvider(VehicleProvider):
    """Vehicle provider backed by the OpenALPR cloud API."""

    name = "openalpr"

    def __init__(
        self,
        secret_key: str,
        country: str = "us",
        url: str = DEFAULT_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        if not secret_key:
            raise ValueError("OpenALPR secret key is required")
        self._secret_key = secret_key
        self._country = country
        self._url = url
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def recognize(self, camera_id: str, occurred_at: str, image: bytes) -> PlateResult:
        logger.debug("processOpenALPR:", extra={"event_type": "openalpr_request", "camera_id": camera_id})

        params = {
            "recognize_vehicle": "0",
            "country": self._country,
            "topn": "1",
            "secret_key": self._secret_key,
        }
        try:
            response = await self._client.post(
                self._url,
                params=params,
                content=base64.b64encode(image),
                headers={"Content-Type": "image/jpeg"},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, "Request timeout") from e
        except httpx.HTTPStatusError as e:
            # The secret key travels in the query string; keep the URL out of the message
            raise ProviderError(self.name, f"HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise ProviderError(self.name, f"Request error: {type(e).__name__}") from e
        except ValueError as e:
            raise ProviderError(self.name, "Response was not JSON") from e

        results = payload.get("results") or []
        if not results:
            return PlateResult(provider=self.name)

        best = results[0]
        confidence = best.get("confidence")
        return PlateResult(
            provider=self.name,
            plate=best.get("plate"),
            confidence=confidence / 100.0 if confidence is not None else None,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
