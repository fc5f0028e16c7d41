"""Application configuration using Pydantic Settings"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import List
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when required settings are missing at startup."""
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    API_V1_PREFIX: str = "/api/v1"

    # Meraki dashboard
    MERAKI_API_KEY: str = ""
    MERAKI_ORG_NAME: str = ""
    MERAKI_NETWORK_NAME: str = ""
    # The v0 mega-proxy host; the regular shard hosts reject some POSTs
    MERAKI_BASE_URL: str = "https://api-mp.meraki.com/api/v0"

    # MQTT broker
    MQTT_BROKER_HOST: str = "127.0.0.1"
    MQTT_BROKER_PORT: int = 1883
    MQTT_USERNAME: str = ""
    MQTT_PASSWORD: str = ""
    MQTT_USE_TLS: bool = False
    # Stored as string to avoid pydantic-settings JSON parsing; use mqtt_camera_topics
    MQTT_CAMERAS: str = ""
    MQTT_TOPIC_PREFIX: str = "merakimv"

    @property
    def mqtt_camera_topics(self) -> List[str]:
        """Parse MQTT_CAMERAS from comma-separated string"""
        return [topic.strip() for topic in self.MQTT_CAMERAS.split(",") if topic.strip()]

    # Debounce and snapshot acquisition
    DEBOUNCE_WINDOW_MS: int = 500
    SNAPSHOT_URL_MAX_ATTEMPTS: int = 10
    SNAPSHOT_URL_BACKOFF_MIN_SECONDS: float = 1.0
    SNAPSHOT_URL_BACKOFF_MAX_SECONDS: float = 31.0
    # Empirical time the dashboard needs to materialize the image
    SNAPSHOT_READY_DELAY_SECONDS: float = 5.0
    IMAGE_FETCH_MAX_ATTEMPTS: int = 30
    IMAGE_FETCH_RETRY_SECONDS: float = 2.0
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Stolen vehicle lookup
    USE_STOLEN_VEHICLE_LOOKUP: bool = False
    STOLEN_VEHICLES_SOURCE: str = ""  # CSV path or http(s) URL

    # Plate Recognizer (platerecognizer.com)
    USE_PLATE_RECOGNIZER: bool = False
    PLATE_RECOGNIZER_API_TOKEN: str = ""
    PLATE_RECOGNIZER_URL: str = "https://api.platerecognizer.com/v1/plate-reader"
    PLATE_RECOGNIZER_REGIONS: str = ""

    # OpenALPR (openalpr.com)
    USE_OPENALPR: bool = False
    OPENALPR_SECRET_KEY: str = ""
    OPENALPR_URL: str = "https://api.openalpr.com/v2/recognize_bytes"
    OPENALPR_COUNTRY: str = "us"

    # AWS Rekognition
    USE_AWS_REKOGNITION: bool = False
    AWS_REGION: str = ""

    # Image persistence
    USE_SAVE_IMAGES: bool = False
    IMAGE_SAVE_DIR: str = "data/images"

    @field_validator('DEBOUNCE_WINDOW_MS', 'SNAPSHOT_URL_MAX_ATTEMPTS', 'IMAGE_FETCH_MAX_ATTEMPTS', mode='after')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Counts and windows must be positive."""
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator('SNAPSHOT_URL_BACKOFF_MAX_SECONDS', mode='after')
    @classmethod
    def validate_backoff_range(cls, v: float, info) -> float:
        """Upper jitter bound must not be below the lower bound."""
        low = info.data.get('SNAPSHOT_URL_BACKOFF_MIN_SECONDS', 0.0)
        if v < low:
            raise ValueError("SNAPSHOT_URL_BACKOFF_MAX_SECONDS must be >= SNAPSHOT_URL_BACKOFF_MIN_SECONDS")
        return v

    @property
    def effective_log_level(self) -> str:
        """DEBUG forces debug logging regardless of LOG_LEVEL."""
        return "DEBUG" if self.DEBUG else self.LOG_LEVEL.upper()

    def enabled_providers(self) -> List[str]:
        """Names of the analysis providers switched on."""
        enabled = []
        if self.USE_PLATE_RECOGNIZER:
            enabled.append("plate_recognizer")
        if self.USE_OPENALPR:
            enabled.append("openalpr")
        if self.USE_AWS_REKOGNITION:
            enabled.append("aws_rekognition")
        return enabled

    def validate_required(self) -> None:
        """
        Check that everything needed to start is present.

        Raises:
            ConfigurationError: listing every missing setting
        """
        missing = [
            name for name in ("MERAKI_API_KEY", "MERAKI_ORG_NAME", "MERAKI_NETWORK_NAME")
            if not getattr(self, name).strip()
        ]
        if not self.mqtt_camera_topics:
            missing.append("MQTT_CAMERAS")
        if self.USE_PLATE_RECOGNIZER and not self.PLATE_RECOGNIZER_API_TOKEN:
            missing.append("PLATE_RECOGNIZER_API_TOKEN")
        if self.USE_OPENALPR and not self.OPENALPR_SECRET_KEY:
            missing.append("OPENALPR_SECRET_KEY")
        if self.USE_STOLEN_VEHICLE_LOOKUP and not self.STOLEN_VEHICLES_SOURCE:
            missing.append("STOLEN_VEHICLES_SOURCE")

        if missing:
            raise ConfigurationError(
                "Configuration is missing or incomplete. Copy .env.example to .env "
                f"and set: {', '.join(missing)}"
            )

    model_config = SettingsConfigDict(
        # Later files take priority
        env_file=(Path.home() / ".meraki.env", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
