"""Tests for the Gemini image client, using httpx.MockTransport."""

import asyncio
import base64
import json

import httpx
import pytest

from workflow_engine.exceptions import CredentialError, PermanentAPIError, TransientAPIError
from workflow_engine.services.image_generation_factory import get_image_generation_service
from workflow_engine.services.image_generation_service import GeminiImageService, PRO_MODEL
from workflow_engine.services.mock_image_generation_service import MockImageGenerationService

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


def _image_response(mime_key="inlineData"):
    return {
        "candidates": [{
            "finishReason": "STOP",
            "content": {"parts": [
                {"text": "here you go"},
                {mime_key: {"mimeType": "image/png", "data": base64.b64encode(PNG_BYTES).decode()}},
            ]},
        }]
    }


def _service(handler):
    return GeminiImageService(base_url="https://api.test/v1beta", transport=httpx.MockTransport(handler))


def _generate(service, **kwargs):
    params = {"api_key": bytearray(b"secret-key"), "prompt": "a cat in a hat", "model": "gemini-2.5-flash-image"}
    params.update(kwargs)
    return asyncio.run(service.generate_image(**params))


class TestGeminiImageService:
    """Test suite for GeminiImageService."""

    def test_successful_generation(self):
        """Test the request shape and image extraction."""
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["key"] = request.headers["x-goog-api-key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_image_response())

        image = _generate(_service(handler), aspect_ratio="16:9",
                          reference_assets=[{"mime_type": "image/jpeg", "data": "aGVsbG8="}])

        assert image.data == PNG_BYTES
        assert image.mime_type == "image/png"
        assert seen["url"] == "https://api.test/v1beta/models/gemini-2.5-flash-image:generateContent"
        assert seen["key"] == "secret-key"
        parts = seen["body"]["contents"][0]["parts"]
        assert parts[0] == {"text": "a cat in a hat"}
        assert parts[1]["inline_data"]["mime_type"] == "image/jpeg"
        assert seen["body"]["generationConfig"]["imageConfig"] == {"aspectRatio": "16:9"}

    def test_image_size_only_for_pro(self):
        """Test that imageSize is sent for the Pro model only."""
        service = GeminiImageService(base_url="https://api.test")
        pro = service.build_payload("p", PRO_MODEL, "1:1", "4K")
        flash = service.build_payload("p", "gemini-2.5-flash-image", "1:1", "4K")

        assert pro["generationConfig"]["imageConfig"]["imageSize"] == "4K"
        assert "imageSize" not in flash["generationConfig"]["imageConfig"]

    @pytest.mark.parametrize("status_code, error_type, code", [
        (401, CredentialError, "CREDENTIAL_ERROR"),
        (403, CredentialError, "CREDENTIAL_ERROR"),
        (429, TransientAPIError, "RATE_LIMITED"),
        (500, TransientAPIError, "SERVER_ERROR"),
        (503, TransientAPIError, "SERVER_ERROR"),
        (400, PermanentAPIError, "INVALID_REQUEST"),
        (404, PermanentAPIError, "INVALID_REQUEST"),
    ])
    def test_http_error_mapping(self, status_code, error_type, code):
        """Test HTTP status -> error class."""
        def handler(request):
            return httpx.Response(status_code, json={"error": {"message": "upstream said no"}})

        with pytest.raises(error_type) as exc_info:
            _generate(_service(handler))
        assert exc_info.value.code == code
        assert "upstream said no" in exc_info.value.message

    def test_timeout_is_transient(self):
        """Test that a transport timeout maps to a transient error."""
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(TransientAPIError) as exc_info:
            _generate(_service(handler))
        assert exc_info.value.code == "TIMEOUT"

    def test_connection_error_is_transient(self):
        """Test that a connection failure maps to a transient error."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientAPIError) as exc_info:
            _generate(_service(handler))
        assert exc_info.value.code == "NETWORK_ERROR"


class TestParseResponse:
    """Test suite for response parsing."""

    def test_snake_case_inline_data(self):
        """Test that inline_data parts are accepted as well as inlineData."""
        image = GeminiImageService.parse_response(_image_response(mime_key="inline_data"))
        assert image.data == PNG_BYTES

    @pytest.mark.parametrize("body", [
        {"promptFeedback": {"blockReason": "SAFETY"}},
        {"candidates": []},
        {"candidates": [{"finishReason": "IMAGE_SAFETY", "content": {"parts": []}}]},
        {"candidates": [{"finishReason": "STOP", "content": {"parts": [{"text": "no image"}]}}]},
    ])
    def test_rejected_content(self, body):
        """Test that blocked or empty responses are permanent failures."""
        with pytest.raises(PermanentAPIError) as exc_info:
            GeminiImageService.parse_response(body)
        assert exc_info.value.code == "CONTENT_REJECTED"


class TestImageServiceFactory:
    """Test provider selection."""

    def test_mock_provider(self, monkeypatch):
        """Test that IMAGE_PROVIDER=mock selects the mock service."""
        from workflow_engine.config import settings

        monkeypatch.setattr(settings, "IMAGE_PROVIDER", "mock")
        assert isinstance(get_image_generation_service(), MockImageGenerationService)

        monkeypatch.setattr(settings, "IMAGE_PROVIDER", "gemini")
        assert isinstance(get_image_generation_service(), GeminiImageService)

    def test_mock_service_returns_png(self):
        """Test that the mock service returns a PNG and counts calls."""
        service = MockImageGenerationService(delay_seconds=0)
        image = asyncio.run(service.generate_image(b"key", "any prompt"))

        assert image.data.startswith(b"\x89PNG")
        assert service.calls == 1
