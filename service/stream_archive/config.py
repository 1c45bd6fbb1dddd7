"""Configuration settings for the Stream Archive service."""

import os

from pydantic import Field, model_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from stream_archive.models import StreamSpec

CONFIG_FILE = os.environ.get("STREAM_ARCHIVE_CONFIG", "config/config.json")


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="STREAM_ARCHIVE_",
        env_file=".env",
        json_file=CONFIG_FILE,
        extra="ignore",
    )

    # Service settings
    host: str = "0.0.0.0"
    port: int = 8765
    debug: bool = False

    # Recording settings
    destination_directory: str = "/media/recordings"
    streams: list[StreamSpec] = Field(default_factory=list)
    rotate_old_files: bool = True
    rotate_interval: int = Field(default=300, ge=0)  # seconds, 0 disables the periodic sweep
    segment_settle_delay: float = Field(default=3.0, ge=0)
    restart_delay: float = Field(default=5.0, ge=0)
    timeout_grace: int = Field(default=30, ge=0)
    max_delete_attempts: int = Field(default=5, ge=1)

    # FFmpeg settings
    ffmpeg_path: str = "ffmpeg"

    # Logging settings
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @model_validator(mode="after")
    def check_unique_stream_names(self) -> "Settings":
        seen = set()
        for stream in self.streams:
            if stream.name in seen:
                raise ValueError(f"duplicate stream name: {stream.name}")
            seen.add(stream.name)
        return self


settings = Settings()
