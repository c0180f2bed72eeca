from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Audiobookshelf
    ABS_BASE_URL: Optional[str] = None
    ABS_TOKEN: Optional[str] = None
    ABS_CLIENT_NAME: str = "absplayer"
    ABS_DEVICE_ID: str = "absplayer-headless"

    # Playback
    DEFAULT_PLAYBACK_RATE: float = 1.0
    MIN_PLAYBACK_RATE: float = 1.0
    MAX_PLAYBACK_RATE: float = 2.0
    TRACK_END_TOLERANCE_SECONDS: float = 1.0
    SIMULATED_TICK_SECONDS: float = 1.0
    AUTOPLAY_ITEM_ID: Optional[str] = None

    # Sync Logic
    SYNC_INTERVAL_SECONDS: float = 10
    FINISHED_THRESHOLD: float = 0.99
    IN_PROGRESS_FETCH_CHUNK: int = 10

    # System
    LOG_LEVEL: str = "INFO"
    DRY_RUN: bool = False
    HTTP_SERVER_ENABLED: bool = True
    HTTP_SERVER_HOST: str = "0.0.0.0"
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
