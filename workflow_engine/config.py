"""
Application Configuration Settings
Batch Workflow Execution Engine
"""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Application
    APP_NAME: str = "Batch Workflow Execution Engine"
    APP_VERSION: str = "1.0.0"
    SECRET_KEY: str = "change-this-in-production"

    # Database
    DATABASE_URL: str = "sqlite:///./workflow_engine.db"

    # Credential encryption (AES-256-GCM master key, 64 hex characters)
    ENCRYPTION_KEY: str = ""
    AZURE_KEY_VAULT_URL: str = ""
    ENCRYPTION_KEY_NAME: str = "api-key-encryption-key"

    # Result storage
    RESULT_STORAGE_DIR: str = "results"
    AZURE_STORAGE_CONNECTION_STRING: str = ""
    AZURE_STORAGE_CONTAINER: str = "workflow-results"

    # External image generation API
    IMAGE_PROVIDER: str = "gemini"  # "gemini" or "mock"
    GEMINI_API_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    DEFAULT_IMAGE_MODEL: str = "gemini-2.5-flash-image"
    DEFAULT_ASPECT_RATIO: str = "1:1"
    DEFAULT_RESOLUTION: str = "1K"
    PRICE_PER_IMAGE: float = 0.039

    # Worker pool (seed values; runtime overrides live in system_config)
    WORKER_POOL_ENABLED: bool = True
    WORKER_POOL_SIZE: int = 4

    # Security
    ALLOWED_ORIGINS: List[str] = ["http://localhost:5173"]

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()

SUPPORTED_MODELS = [
    "gemini-2.5-flash-image",
    "gemini-3-pro-image-preview",
]

SUPPORTED_ASPECT_RATIOS = ["1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9"]

SUPPORTED_RESOLUTIONS = ["1K", "2K", "4K"]

SUPPORTED_REFERENCE_MIME_TYPES = ["image/png", "image/jpeg", "image/webp"]

MAX_REFERENCE_IMAGES = 3
