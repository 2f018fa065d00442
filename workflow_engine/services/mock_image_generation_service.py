"""Mock image generation service for local development without an API key."""

import asyncio
import base64
import logging
from typing import Dict, List, Optional, Union

from workflow_engine.services.image_generation_service import GeneratedImage

logger = logging.getLogger(__name__)

# 1x1 transparent PNG
PLACEHOLDER_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


class MockImageGenerationService:
    """Returns the same small PNG for every prompt."""

    def __init__(self, delay_seconds: float = 0.0):
        self.delay_seconds = delay_seconds
        self.calls = 0

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
        self.calls += 1
        logger.info(f"Mock image generation for prompt of length {len(prompt)}")
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return GeneratedImage(data=PLACEHOLDER_PNG, mime_type="image/png")
