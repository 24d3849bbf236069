from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="UPSCALER_")

    PROJECT_NAME: str = "Progressive Upscaler API"

    # Surface limits
    MAX_DIMENSION: int = 32767
    MAX_SAFE_PIXEL_COUNT: int = 50_000_000

    PREVIEW_BOUND: int = 1024

    # Chunked output
    CHUNK_STRATEGY: Literal["lazy", "eager"] = "lazy"
    TILE_SIZE: int = 2048
    TILE_OVERLAP: int = 64
    MAX_WORKERS: int = 4
    TILE_MEMORY_CEILING_MB: int = 1024
    TILE_CACHE_LIMIT: Optional[int] = None

    # Number of results the API keeps around for chunk downloads
    MAX_RESULTS: int = 8


settings = Settings()
