"""
Veo video generation via the Gemini REST long-running operation API.

  submit   — POST models/{model}:predictLongRunning
  poll     — GET  {operation name}
  download — GET  {video uri} with the API key
"""

import time
import logging
from typing import NamedTuple, Optional

import httpx

from . import metrics
from .config import GenerationConfig
from .pipeline.errors import PermissionDeniedError, ProviderError, is_permission_failure
from .pipeline.models import MediaPayload

logger = logging.getLogger(__name__)

MAX_REFERENCE_IMAGES = 3


class OperationStatus(NamedTuple):
    name: str
    done: bool
    video_uri: Optional[str] = None
    error: Optional[dict] = None


def _extract_video_uri(response: dict) -> Optional[str]:
    """First generated video's URI, across the REST and SDK-shaped payloads."""
    samples = (
        (response.get("generateVideoResponse") or {}).get("generatedSamples")
        or response.get("generatedVideos")
        or []
    )
    if not samples:
        return None
    video = samples[0].get("video") or {}
    return video.get("uri")


class VeoClient:
    def __init__(self, config: GenerationConfig, http: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._http = http

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        _, api_key = self.config.resolve("video")
        params = dict(kwargs.pop("params", None) or {})
        params["key"] = api_key
        try:
            if self._http is not None:
                resp = await self._http.request(method, url, params=params, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.config.request_timeout) as client:
                    resp = await client.request(method, url, params=params, **kwargs)
        except httpx.HTTPError as e:
            metrics.record_error("video", "transport", str(e))
            raise ProviderError(f"Veo request failed: {e}") from e

        if resp.status_code >= 400:
            detail = resp.text[:500]
            metrics.record_error("video", f"http_{resp.status_code}", detail)
            if is_permission_failure(resp.status_code, detail):
                raise PermissionDeniedError(
                    f"Veo API permission denied ({resp.status_code}): {detail}",
                    status_code=resp.status_code,
                )
            raise ProviderError(f"Veo API error {resp.status_code}: {detail}", status_code=resp.status_code)
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> dict:
        try:
            data = resp.json()
        except ValueError as e:
            metrics.record_error("video", "bad_body", resp.text[:200])
            raise ProviderError(f"Veo returned a non-JSON body: {resp.text[:200]}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"Veo returned an unexpected body: {resp.text[:200]}")
        return data

    async def submit(
        self,
        model: str,
        prompt: str,
        reference_images: list[MediaPayload],
        resolution: str = "720p",
        aspect_ratio: str = "16:9",
    ) -> str:
        """Submit a generation job; returns the operation name."""
        refs = reference_images[:MAX_REFERENCE_IMAGES]
        instance: dict = {"prompt": prompt}
        if refs:
            instance["referenceImages"] = [
                {
                    "image": {"inlineData": {"mimeType": ref.mime_type, "data": ref.to_base64()}},
                    "referenceType": "asset",
                }
                for ref in refs
            ]

        payload = {
            "instances": [instance],
            "parameters": {
                "aspectRatio": aspect_ratio,
                "resolution": resolution,
                "sampleCount": 1,
            },
        }

        metrics.inc_counter("requests.video")
        started = time.time()
        resp = await self._request(
            "POST",
            f"{self.config.api_base}/models/{model}:predictLongRunning",
            json=payload,
        )
        metrics.record_latency("video_submit", (time.time() - started) * 1000)

        name = self._json(resp).get("name")
        if not name:
            raise ProviderError(f"Veo submit returned no operation name: {resp.text[:200]}")

        logger.info(f"Veo job submitted: model={model}, refs={len(refs)}, operation={name}")
        return name

    async def get_operation(self, name: str) -> OperationStatus:
        resp = await self._request("GET", f"{self.config.api_base}/{name}")
        data = self._json(resp)
        done = bool(data.get("done"))
        if not done:
            return OperationStatus(name=name, done=False)
        if data.get("error"):
            return OperationStatus(name=name, done=True, error=data["error"])
        return OperationStatus(name=name, done=True, video_uri=_extract_video_uri(data.get("response") or {}))

    async def download(self, uri: str) -> bytes:
        """Authenticated fetch of a generated video."""
        resp = await self._request("GET", uri, follow_redirects=True)
        return resp.content
