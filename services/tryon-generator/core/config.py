import os
from typing import Optional

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()


class Settings(BaseSettings):
    APP_NAME: str = "Virtual Try-On Generator"
    LOG_LEVEL: str = "INFO"

    # Fan-out
    MAX_CONCURRENT_GENERATIONS: int = Field(default=4, ge=1)
    GENERATION_TIMEOUT: float = 300.0  # seconds, whole fan-out
    CANONICAL_JPEG_QUALITY: int = Field(default=90, ge=1, le=100)

    # Uploads
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024  # 10MB

    # Request store
    STORE_MAX_ENTRIES: int = Field(default=1000, ge=1)
    STORE_TTL_SECONDS: float = 3600.0

    model_config = SettingsConfigDict()


class LocalSettings(Settings):
    ENV: str = "dev"

    # Edge length of the composites produced by the offline gateway
    LOCAL_RENDER_SIZE: int = 512


class ProductionSettings(Settings):
    ENV: str = "production"
    PROJECT_ID: str = Field(..., validation_alias="PROJECT_ID")
    LOCATION: str = Field(..., validation_alias="LOCATION")
    VTO_MODEL: str = Field(
        default="virtual-try-on-preview-08-04", validation_alias="VTO_MODEL"
    )
    # Static bearer override; unset means Application Default Credentials
    VERTEX_ACCESS_TOKEN: Optional[str] = Field(
        default=None, validation_alias="VERTEX_ACCESS_TOKEN"
    )
    VERTEX_REQUEST_TIMEOUT: float = Field(
        default=300.0, validation_alias="VERTEX_REQUEST_TIMEOUT"
    )


# Factory to choose the right config
def get_settings() -> Settings:
    env = os.getenv("ENV", "local")
    logger.info("loading_settings", env=env)
    if env == "production":
        return ProductionSettings()  # type: ignore
    return LocalSettings()


settings = get_settings()
