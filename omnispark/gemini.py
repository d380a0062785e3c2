"""
Gemini integration for text, structured JSON and image generation.

All calls go through the REST `generateContent` endpoint with httpx. Binary
media crosses this boundary only as `MediaPayload`; base64 encoding happens
here and nowhere else.
"""

import json
import time
import base64
import binascii
import logging
from typing import Any, Optional, Union

import httpx

from . import metrics
from .config import GenerationConfig, Modality
from .pipeline.errors import (
    GenerationEmptyResult,
    NoImageProduced,
    ParseFailure,
    PermissionDeniedError,
    ProviderError,
    is_permission_failure,
)
from .pipeline.models import MediaPayload

logger = logging.getLogger(__name__)

Contents = Union[str, list]


def _parse_json_response(text: str) -> Any:
    """Parse JSON from a Gemini response, handling markdown code blocks."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            json_block = text.split("```")[1]
            if json_block.startswith("json"):
                json_block = json_block[4:]
            try:
                return json.loads(json_block.strip())
            except json.JSONDecodeError as e:
                raise ParseFailure(f"Gemini returned invalid JSON: {text[:200]}") from e
        raise ParseFailure(f"Gemini returned invalid JSON: {text[:200]}")


def _to_parts(contents: Contents) -> list:
    if isinstance(contents, str):
        return [{"text": contents}]
    parts = []
    for item in contents:
        if isinstance(item, MediaPayload):
            parts.append(item.to_inline_part())
        elif isinstance(item, str):
            parts.append({"text": item})
        else:
            parts.append(item)
    return parts


def _candidate_parts(result: dict) -> list:
    candidates = result.get("candidates") or []
    if not candidates:
        return []
    return (candidates[0].get("content") or {}).get("parts") or []


class GeminiClient:
    """
    Thin call wrapper per modality.

    One request in, one parsed result out; a missing payload raises a typed
    failure. The config is fixed at construction time.
    """

    def __init__(self, config: GenerationConfig, http: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._http = http

    def _url(self, model: str) -> str:
        return f"{self.config.api_base}/models/{model}:generateContent"

    async def _generate_content(
        self,
        modality: Modality,
        contents: Contents,
        generation_config: Optional[dict] = None,
    ) -> dict:
        """Call the generateContent endpoint and map failures onto the error taxonomy."""
        model, api_key = self.config.resolve(modality)

        body: dict = {"contents": [{"parts": _to_parts(contents)}]}
        if generation_config:
            body["generationConfig"] = generation_config

        metrics.inc_counter(f"requests.{modality}")
        started = time.time()
        try:
            if self._http is not None:
                resp = await self._http.post(self._url(model), params={"key": api_key}, json=body)
            else:
                async with httpx.AsyncClient(timeout=self.config.request_timeout) as client:
                    resp = await client.post(self._url(model), params={"key": api_key}, json=body)
        except httpx.HTTPError as e:
            metrics.record_error(modality, "transport", str(e))
            raise ProviderError(f"Gemini request failed: {e}") from e
        finally:
            metrics.record_latency(modality, (time.time() - started) * 1000)

        if resp.status_code != 200:
            detail = resp.text[:500]
            metrics.record_error(modality, f"http_{resp.status_code}", detail)
            if is_permission_failure(resp.status_code, detail):
                raise PermissionDeniedError(
                    f"Gemini API permission denied ({resp.status_code}): {detail}",
                    status_code=resp.status_code,
                )
            raise ProviderError(
                f"Gemini API error {resp.status_code}: {detail}",
                status_code=resp.status_code,
            )

        try:
            result = resp.json()
        except ValueError as e:
            metrics.record_error(modality, "bad_body", resp.text[:200])
            raise ProviderError(f"Gemini returned a non-JSON body: {resp.text[:200]}") from e
        if not isinstance(result, dict):
            raise ProviderError(f"Gemini returned an unexpected body: {resp.text[:200]}")
        return result

    # ── Text ─────────────────────────────────────────────────────────────

    async def generate_text(self, contents: Contents) -> str:
        result = await self._generate_content("text", contents)
        text = "".join(p.get("text", "") for p in _candidate_parts(result)).strip()
        if not text:
            raise GenerationEmptyResult("Gemini returned no text.")
        return text

    async def generate_json(self, contents: Contents, response_schema: dict) -> Any:
        """Structured output call; returns the parsed JSON value."""
        result = await self._generate_content(
            "text",
            contents,
            {"responseMimeType": "application/json", "responseSchema": response_schema},
        )
        text = "".join(p.get("text", "") for p in _candidate_parts(result))
        if not text.strip():
            raise GenerationEmptyResult("Gemini returned no structured output.")
        return _parse_json_response(text)

    # ── Image ────────────────────────────────────────────────────────────

    async def generate_image(self, contents: Contents, aspect_ratio: str) -> MediaPayload:
        """Generate or edit one image; the first inline image part is returned."""
        model, _ = self.config.resolve("image")
        image_config: dict = {"aspectRatio": aspect_ratio}
        if GenerationConfig.is_high_res_model(model):
            image_config["imageSize"] = "1K"

        result = await self._generate_content(
            "image",
            contents,
            {"responseModalities": ["TEXT", "IMAGE"], "imageConfig": image_config},
        )

        for part in _candidate_parts(result):
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                try:
                    data = base64.b64decode(inline["data"])
                except (binascii.Error, TypeError) as e:
                    raise ProviderError("Gemini returned undecodable image data.") from e
                return MediaPayload(mime_type=inline.get("mimeType", "image/png"), data=data)

        raise NoImageProduced("Gemini response contained no image data.")
