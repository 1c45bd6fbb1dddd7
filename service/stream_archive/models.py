"""Stream configuration models."""

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EncodingOptions(BaseModel):
    """How the encoder treats the video and audio of a stream."""

    model_config = ConfigDict(frozen=True)

    record_video: bool = True
    transcode_video: bool = False
    video_codec: str | None = None
    video_bitrate: int | str | None = None
    video_resolution: str | None = None  # e.g. "1280x720"
    video_fps: int | None = None

    record_audio: bool = True
    transcode_audio: bool = False
    audio_codec: str | None = None
    audio_bitrate: int | str | None = None
    audio_channels: int | None = None

    custom_input_options: list[str] = Field(default_factory=list)
    custom_output_options: list[str] = Field(default_factory=list)


class StreamSpec(BaseModel):
    """A configured source and its capture/retention policy."""

    model_config = ConfigDict(frozen=True)

    name: str
    source: str
    file_duration: int = Field(default=0, ge=0)  # seconds, 0 = unbounded
    storage_duration: int = Field(default=0, ge=0)  # seconds
    format: str | None = None
    extension: str = "mp4"
    encoding: EncodingOptions = Field(default_factory=EncodingOptions)

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        if not value or value in (".", "..") or "/" in value or "\\" in value:
            raise ValueError(f"invalid stream name: {value!r}")
        return value

    @field_validator("extension")
    @classmethod
    def strip_extension_dot(cls, value: str) -> str:
        return value.lstrip(".")
