"""Pipeline configuration settings.

All configuration values are loaded from environment variables (.env file).
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pipeline settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "vidpipe"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Broker
    # QUEUE_BACKEND: redis, memory (single process, local development only)
    QUEUE_BACKEND: str = "redis"
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 5.0
    REDIS_CONNECT_TIMEOUT_SECONDS: float = 5.0

    # Stream and subjects
    STREAM_NAME: str = "VIDEOS"
    STREAM_MAX_MSGS: Optional[int] = 100_000
    STREAM_MAX_AGE_SECONDS: Optional[int] = 7 * 24 * 3600
    UPLOAD_SUBJECT: str = "video.upload"
    PROCESS_SUBJECT: str = "video.process"
    PROCESSED_SUBJECT: str = "video.processed"
    FAILED_SUBJECT: str = "video.failed"
    THUMBNAIL_SUBJECT: str = "video.thumbnail"
    METADATA_SUBJECT: str = "video.metadata"

    # Consumer group and dead-letter policy
    CONSUMER_NAME: str = "video-transcoders"
    ACK_WAIT_SECONDS: float = 120.0
    MAX_DELIVERIES: int = 3
    REDELIVERY_WAIT_SECONDS: float = 30.0
    REDELIVERY_BACKOFF_MULTIPLIER: float = 1.0
    DEAD_LETTER_MAX_AGE_SECONDS: int = 30 * 24 * 3600

    # Worker pool
    MAX_CONCURRENT_TRANSCODES: int = 2
    RENDITION_PARALLELISM: int = 1
    FETCH_TIMEOUT_SECONDS: float = 2.0
    RECONNECT_DELAY_SECONDS: float = 2.0
    SHUTDOWN_GRACE_SECONDS: float = 60.0

    # Transcoding engine
    FFMPEG_PATH: str = "ffmpeg"
    FFMPEG_PRESET: str = "veryfast"
    HLS_SEGMENT_SECONDS: int = 4
    ENGINE_TIMEOUT_SECONDS: Optional[float] = None
    OUTPUT_ROOT: str = "./storage/hls"

    # Completion callback
    CALLBACK_TIMEOUT_SECONDS: float = 10.0
    CALLBACK_MAX_ATTEMPTS: int = 3
    CALLBACK_RETRY_DELAY_SECONDS: float = 1.0

    # Observability
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    METRICS_PORT: Optional[int] = None
    OTLP_ENDPOINT: Optional[str] = None
    ENVIRONMENT: str = "development"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
