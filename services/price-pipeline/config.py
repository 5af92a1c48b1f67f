"""Environment-based configuration for the price extraction pipeline."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Price pipeline settings, loaded from environment variables."""

    # Server
    PORT: int = 8092

    # Local storage (private to the host process) and the shared area
    # written by the import process
    DATA_DIR: str = "./data"
    SHARED_DIR: str = "./shared"
    QUEUE_FILE_NAME: str = "pendingExtractions.json"
    IMAGES_DIR_NAME: str = "pendingImages"
    MAX_RETRIES: int = 3

    # Extraction service connection
    EXTRACTION_SERVICE_URL: str = ""
    EXTRACTION_TIMEOUT_SECONDS: int = 90
    EXTRACTION_CONNECT_TIMEOUT: int = 30

    # Google Maps link import (short-link resolution and photo download)
    MAPS_TIMEOUT_SECONDS: int = 15

    # Upload image budget
    MAX_UPLOAD_BYTES: int = 2_000_000
    JPEG_START_QUALITY: int = 80
    JPEG_QUALITY_STEP: int = 10
    JPEG_MIN_QUALITY: int = 10
    COMMIT_JPEG_QUALITY: int = 70

    # Auth token for the extraction service (file wins over the static token)
    AUTH_TOKEN: str = ""
    AUTH_TOKEN_FILE: str = ""

    # Record store (empty URL = in-memory store, local dev default)
    RECORD_STORE_URL: str = ""
    RECORD_STORE_API_TOKEN: str = ""
    RECORD_STORE_TIMEOUT_SECONDS: int = 30
    CONTRIBUTOR_ID: str = ""
    CONTRIBUTOR_NAME: str = ""

    # Worker
    INTER_JOB_DELAY_SECONDS: float = 0.5
    BACKGROUND_TASK_ID: str = "priceExtraction"
    BACKGROUND_EARLIEST_BEGIN_SECONDS: float = 15.0
    BACKGROUND_TIME_LIMIT_SECONDS: float = 300.0
    SHUTDOWN_TIMEOUT_SECONDS: float = 30.0

    # Optional automatic retry (disabled = retries are user-driven)
    AUTO_RETRY_ENABLED: bool = False
    RETRY_INITIAL_DELAY: float = 60.0
    RETRY_BACKOFF: float = 2.0
    RETRY_MAX_DELAY: float = 3600.0

    model_config = {"env_prefix": "", "case_sensitive": True}


settings = Settings()
