"""Client for the external clipping worker (clip and audio-extraction endpoints)."""

import logging
from typing import Any, Optional

import httpx

from .errors import ExternalServiceError, ServiceTimeoutError
from .httpclient import http_session

logger = logging.getLogger(__name__)

SERVICE_NAME = "clipping"


class ClippingClient:
    """Talks to the clipping worker over HTTP."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def _post(self, path: str, payload: dict, result_key: str) -> str:
        if not self.configured:
            raise ExternalServiceError(SERVICE_NAME, "clipping worker URL is not configured")

        try:
            async with http_session(self._http_client, self.timeout) as client:
                resp = await client.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        except httpx.TimeoutException:
            raise ServiceTimeoutError(SERVICE_NAME, self.timeout)
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE_NAME, f"request failed: {e}")

        if not resp.is_success:
            raise ExternalServiceError(SERVICE_NAME, resp.text[:500], resp.status_code)

        try:
            data: Any = resp.json()
        except ValueError:
            raise ExternalServiceError(SERVICE_NAME, "response body is not JSON")

        url = data.get(result_key) if isinstance(data, dict) else None
        if not url or not isinstance(url, str):
            raise ExternalServiceError(SERVICE_NAME, f"response is missing '{result_key}'")
        return url

    async def clip(self, input_url: str, start_time: float, end_time: float, output_name: str) -> str:
        """Cut `[start_time, end_time]` out of `input_url`. Returns the clipped media URL."""
        logger.info(f"Requesting clip {start_time:.1f}s – {end_time:.1f}s as {output_name}")
        return await self._post(
            "/clip",
            {
                "inputUrl": input_url,
                "startTime": start_time,
                "endTime": end_time,
                "outputName": output_name,
            },
            "clippedUrl",
        )

    async def extract_audio(self, input_url: str) -> str:
        """Extract the audio track of `input_url`. Returns the audio URL."""
        logger.info("Requesting audio extraction")
        return await self._post("/extract-audio", {"inputUrl": input_url}, "audioUrl")
