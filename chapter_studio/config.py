"""Configuration management for Chapter Studio."""

import json
from pathlib import Path
from typing import Optional, List
from pydantic import BaseModel, Field


class PathsConfig(BaseModel):
    """File paths configuration."""
    output: str = "./output"
    packages: str = "./output/packages"
    archive: str = "./output/archive"


class RetryConfig(BaseModel):
    """Retry and fallback behavior for remote calls."""
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    call_timeout_seconds: float = 120.0
    http_timeout_seconds: float = 15.0
    local_relay_url: str = "http://localhost:3000/api/audio-proxy"
    relay_templates: List[str] = Field(default_factory=lambda: [
        "https://corsproxy.io/?url={url}",
        "https://api.allorigins.win/raw?url={url}",
        "https://api.codetabs.com/v1/proxy?quest={url}",
    ])
    min_media_bytes: int = 1000


class GenerationConfig(BaseModel):
    """Chapter generation settings."""
    chars_per_second: float = 15.0
    max_sfx_duration: float = 3.0
    default_sfx_volume: float = 0.7
    chapter_duration_minutes: int = 5
    images_per_chapter: int = 4
    music_required: bool = False
    prefetch_sfx_audio: bool = False


class PackagingConfig(BaseModel):
    """Archive output settings."""
    subtitle_max_line_length: int = 42
    subtitle_max_lines: int = 2
    min_subtitle_duration: float = 1.0
    music_fade_out: float = 1.0
    default_image_duration: float = 5.0
    min_image_duration: float = 2.0
    max_image_duration: float = 20.0
    sfx_sudden_volume: float = 0.40
    sfx_atmospheric_volume: float = 0.20
    sudden_sfx_keywords: List[str] = Field(default_factory=lambda: ["sudden", "loud", "crash", "bang"])
    write_zip: bool = False


class VideoOutputConfig(BaseModel):
    """Settings written into the generated assembly script."""
    resolution: List[int] = Field(default_factory=lambda: [1920, 1080])
    fps: int = 24
    codec: str = "libx264"
    crf: int = 23
    preset: str = "medium"
    audio_codec: str = "aac"


class AudioConfig(BaseModel):
    """Speech synthesis settings."""
    tts_voice: str = "en-US-AriaNeural"
    voice_rate: str = "+0%"
    voice_volume: str = "+0%"
    character_voices: List[str] = Field(default_factory=lambda: [
        "en-US-GuyNeural",
        "en-US-JennyNeural",
        "en-GB-SoniaNeural",
        "en-GB-RyanNeural",
    ])
    silence_sample_rate: int = 24000
    music_volume: float = 0.12


class MusicSourcesConfig(BaseModel):
    """Music and sound-effect source configuration."""
    jamendo_client_id: str = ""
    jamendo_url: str = "https://api.jamendo.com/v3.0/tracks/"
    freesound_api_key: str = ""
    freesound_url: str = "https://freesound.org/apiv2/search/text/"
    result_limit: int = 10
    sfx_search_timeout: float = 15.0


class CacheConfig(BaseModel):
    """Search cache settings."""
    search_ttl_seconds: float = 3600.0
    max_entries: int = 256


class QueueConfig(BaseModel):
    """Queue behavior settings."""
    delay_between_items: float = 0.0
    archive_completed: bool = True


class AppConfig(BaseModel):
    """Main application configuration."""
    paths: PathsConfig = Field(default_factory=PathsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    packaging: PackagingConfig = Field(default_factory=PackagingConfig)
    video: VideoOutputConfig = Field(default_factory=VideoOutputConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    music_sources: MusicSourcesConfig = Field(default_factory=MusicSourcesConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load configuration from JSON file."""
    if config_path is None:
        config_path = Path(__file__).parent.parent / "config.json"

    if not config_path.exists():
        config = AppConfig()
        save_config(config, config_path)
        return config

    with open(config_path, "r") as f:
        data = json.load(f)

    return AppConfig(**data)


def save_config(config: AppConfig, config_path: Optional[Path] = None) -> None:
    """Save configuration to JSON file."""
    if config_path is None:
        config_path = Path(__file__).parent.parent / "config.json"

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        json.dump(config.model_dump(), f, indent=2)
