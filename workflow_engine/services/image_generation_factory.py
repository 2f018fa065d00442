"""Factory for selecting the image generation provider."""

from workflow_engine.config import settings
import logging

logger = logging.getLogger(__name__)


def get_image_generation_service():
    """Get the configured image generation service."""
    if settings.IMAGE_PROVIDER == "mock":
        logger.info("Loading Mock image generation service")
        from workflow_engine.services.mock_image_generation_service import MockImageGenerationService
        return MockImageGenerationService()

    logger.info(f"Loading Gemini image generation service ({settings.GEMINI_API_BASE_URL})")
    from workflow_engine.services.image_generation_service import GeminiImageService
    return GeminiImageService()
