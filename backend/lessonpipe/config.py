"""Settings for lessonpipe.

Values come from LESSONPIPE_* environment variables, a .env file and an
optional YAML file (config.yaml, or the path in LESSONPIPE_CONFIG).
"""

import os
from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Reads the whole YAML document at once; sections map onto Settings fields."""

    def get_field_value(self, field, field_name: str):
        # Unused: __call__ returns the full mapping
        return None, field_name, False

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        config_path = Path(os.environ.get("LESSONPIPE_CONFIG", "config.yaml"))
        if not config_path.is_file():
            return {}
        with open(config_path, encoding="utf-8") as handle:
            return yaml.safe_load(handle) or {}


class GoogleCloudConfig(BaseModel):
    """Google Generative AI access.

    Either api_key (Gemini Developer API) or project_id with use_vertex_ai
    (Vertex AI via Application Default Credentials) must be set before any
    synthesis capability is built.
    """

    api_key: Optional[str] = None
    project_id: Optional[str] = None
    location: str = "us-central1"
    use_vertex_ai: bool = False


class ModelsConfig(BaseModel):
    """Gemini model ids for analysis, speech and images."""

    content_llm: str = "gemini-2.5-flash"
    tts: str = "gemini-2.5-flash-preview-tts"
    tts_voice: str = "Achird"
    image_gen: str = "gemini-2.5-flash-image"


class PipelineConfig(BaseModel):
    """Concurrency, retry and media-encoding knobs."""

    generation_concurrency: int = 4
    retry_max_attempts: int = 5
    retry_base_delay: int = 2
    default_segment_duration: int = 300
    english_speaking_rate: float = 0.8
    short_text_part_chars: int = 3
    image_max_width: int = 1920
    image_max_height: int = 1080
    image_quality: int = 80
    placeholder_color: str = "0x1e1e2e"


class StorageConfig(BaseModel):
    """Where jobs and artifacts live, and how artifacts are addressed."""

    database_url: str = "sqlite+aiosqlite:///lessonpipe.db"
    videos_dir: Path = Path("videos")
    public_base_url: str = "/videos"

    @field_validator("videos_dir", mode="before")
    @classmethod
    def convert_videos_dir_to_path(cls, v):
        if isinstance(v, str):
            return Path(v)
        return v


class LoggingConfig(BaseModel):
    """Root logger configuration applied by the CLI."""

    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseSettings):
    """Top-level lessonpipe settings.

    Nested sections are overridden from the environment with a double
    underscore, e.g. LESSONPIPE_PIPELINE__GENERATION_CONCURRENCY=8.
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="LESSONPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    google_cloud: GoogleCloudConfig = GoogleCloudConfig()
    models: ModelsConfig = ModelsConfig()
    pipeline: PipelineConfig = PipelineConfig()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Explicit kwargs win, then environment, then .env, then YAML."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Singleton instance for CLI entry points; core components take settings by injection
settings = Settings()
