"""Gemini image generation client.

One generate_image() call is one external API request. Retries are not
done here; the worker pool owns retry policy. HTTP and transport failures
are mapped onto the engine's error taxonomy:

- 401/403 -> CredentialError (the key is shared by the whole batch)
- 429, 5xx, timeouts, transport errors -> TransientAPIError
- other 4xx -> PermanentAPIError
- blocked prompt, safety stop, or no image in the response -> PermanentAPIError
"""

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import httpx

from workflow_engine.config import settings
from workflow_engine.exceptions import CredentialError, PermanentAPIError, TransientAPIError

logger = logging.getLogger(__name__)

PRO_MODEL = "gemini-3-pro-image-preview"
SAFETY_FINISH_REASONS = ("SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY", "BLOCKLIST")


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str = "image/png"


def _api_key_text(api_key: Union[str, bytes, bytearray]) -> str:
    if isinstance(api_key, (bytes, bytearray)):
        return bytes(api_key).decode("utf-8")
    return api_key


class GeminiImageService:
    """Async client for the generateContent endpoint of Gemini image models."""

    def __init__(self, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or settings.GEMINI_API_BASE_URL).rstrip("/")
        self._transport = transport

    def build_payload(
        self,
        prompt: str,
        model: str,
        aspect_ratio: str,
        resolution: str,
        reference_assets: Optional[List[Dict[str, str]]] = None
    ) -> Dict[str, Any]:
        """Build the request body. Reference images follow the prompt as inline data parts."""
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        for asset in reference_assets or []:
            parts.append({
                "inline_data": {
                    "mime_type": asset["mime_type"],
                    "data": asset["data"],
                }
            })

        image_config: Dict[str, str] = {"aspectRatio": aspect_ratio}
        # imageSize is only accepted by the Pro model
        if model == PRO_MODEL and resolution:
            image_config["imageSize"] = resolution

        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "responseModalities": ["Image"],
                "imageConfig": image_config,
            },
        }

    async def generate_image(
        self,
        api_key: Union[str, bytes, bytearray],
        prompt: str,
        model: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        resolution: Optional[str] = None,
        reference_assets: Optional[List[Dict[str, str]]] = None,
        timeout: float = 60.0
    ) -> GeneratedImage:
        model = model or settings.DEFAULT_IMAGE_MODEL
        payload = self.build_payload(
            prompt,
            model,
            aspect_ratio or settings.DEFAULT_ASPECT_RATIO,
            resolution or settings.DEFAULT_RESOLUTION,
            reference_assets
        )
        url = f"{self.base_url}/models/{model}:generateContent"

        logger.debug(f"Calling {model} (prompt length {len(prompt)}, {len(reference_assets or [])} reference images)")

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={
                        "x-goog-api-key": _api_key_text(api_key),
                        "Content-Type": "application/json"
                    }
                )
        except httpx.TimeoutException as e:
            raise TransientAPIError(f"Request timeout. The image generation took too long: {e}", code="TIMEOUT")
        except httpx.TransportError as e:
            raise TransientAPIError(f"Network error calling image API: {e}", code="NETWORK_ERROR")

        if response.status_code >= 400:
            raise self._map_http_error(response)

        try:
            body = response.json()
        except ValueError:
            raise TransientAPIError("Image API returned a non-JSON response", code="BAD_RESPONSE",
                                    status_code=response.status_code)

        return self.parse_response(body)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
            if isinstance(body, dict):
                error = body.get("error") or {}
                if isinstance(error, dict) and error.get("message"):
                    return error["message"]
        except ValueError:
            pass
        return response.text[:500] or f"HTTP {response.status_code}"

    def _map_http_error(self, response: httpx.Response) -> Exception:
        status = response.status_code
        detail = self._error_message(response)

        if status in (401, 403):
            return CredentialError(f"Invalid API key. Please check your Gemini API key. ({detail})")
        if status == 429:
            return TransientAPIError(f"Rate limit exceeded. Please try again later. ({detail})",
                                     code="RATE_LIMITED", status_code=status)
        if status >= 500:
            return TransientAPIError(f"Gemini API server error ({status}): {detail}",
                                     code="SERVER_ERROR", status_code=status)
        return PermanentAPIError(f"Invalid request: {detail}", code="INVALID_REQUEST", status_code=status)

    @staticmethod
    def parse_response(body: Dict[str, Any]) -> GeneratedImage:
        """Extract the first image part (inline_data or inlineData)."""
        feedback = body.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise PermanentAPIError(f"Prompt blocked: {feedback['blockReason']}", code="CONTENT_REJECTED")

        candidates = body.get("candidates") or []
        if not candidates:
            raise PermanentAPIError("No candidates in image API response", code="CONTENT_REJECTED")

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        parts = (candidate.get("content") or {}).get("parts") or []

        for part in parts:
            inline = part.get("inline_data") or part.get("inlineData")
            if inline and inline.get("data"):
                mime_type = inline.get("mime_type") or inline.get("mimeType") or "image/png"
                try:
                    data = base64.b64decode(inline["data"])
                except ValueError:
                    raise PermanentAPIError("Image data is not valid base64", code="BAD_RESPONSE")
                return GeneratedImage(data=data, mime_type=mime_type)

        if finish_reason in SAFETY_FINISH_REASONS:
            raise PermanentAPIError(f"Content rejected by safety filters ({finish_reason})", code="CONTENT_REJECTED")

        raise PermanentAPIError(
            f"No image in response (finishReason: {finish_reason or 'unknown'})",
            code="CONTENT_REJECTED"
        )
