"""Data models for Chapter Studio."""

from enum import Enum
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


SFX_SPEAKER = "SFX"
PREVIEW_ORDER = ("preview-hq-mp3", "preview-hq-ogg", "preview-lq-mp3", "preview-lq-ogg")


class ChapterStatus(str, Enum):
    """Lifecycle status of a chapter."""
    PENDING = "pending"
    SCRIPT_GENERATING = "script_generating"
    AUDIO_GENERATING = "audio_generating"
    IMAGES_GENERATING = "images_generating"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_generating(self) -> bool:
        return self in (
            ChapterStatus.SCRIPT_GENERATING,
            ChapterStatus.AUDIO_GENERATING,
            ChapterStatus.IMAGES_GENERATING,
        )


class NarrationMode(str, Enum):
    """How script lines are voiced."""
    DIALOGUE = "dialogue"
    MONOLOGUE = "monologue"


class ImageSource(str, Enum):
    """Where chapter images come from."""
    AI = "ai"
    STOCK = "stock"


class QueueStatus(str, Enum):
    """Status of a queue item."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class SoundEffect(BaseModel):
    """A sound effect picked from a search service."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    previews: dict[str, str] = Field(default_factory=dict)
    license: str = ""
    username: str = ""
    duration: float = 0.0
    data: Optional[bytes] = None
    mime_type: str = "audio/mpeg"

    def preview_urls(self) -> list[str]:
        """Preview URLs in preference order, best quality first."""
        urls = [self.previews[key] for key in PREVIEW_ORDER if self.previews.get(key)]
        extra = [url for key, url in self.previews.items() if key not in PREVIEW_ORDER and url]
        return urls + extra


class MusicTrack(BaseModel):
    """A background music track picked from a search service."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    artist: str = ""
    audio_url: str = ""
    duration: float = 0.0
    license: str = ""


class ImageArtifact(BaseModel):
    """An image produced for a chapter."""
    model_config = ConfigDict(frozen=True)

    url: str = ""
    data: Optional[bytes] = None
    mime_type: str = "image/png"
    prompt: str = ""


class ScriptLine(BaseModel):
    """One spoken line or sound-effect cue of a chapter script."""
    model_config = ConfigDict(frozen=True)

    speaker: str
    text: str = ""
    search_keywords: Optional[list[str]] = None
    sound_effect: Optional[SoundEffect] = None
    sound_effect_volume: Optional[float] = None

    @property
    def is_sfx(self) -> bool:
        return self.speaker.strip().upper() == SFX_SPEAKER


class SfxTiming(BaseModel):
    """When a sound effect plays against the narration track."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    start_time: float = Field(alias="startTime")
    duration: float
    volume: float
    file_path: str = Field(alias="filePath")


class NarrationConfig(BaseModel):
    """Voice assignments for a project."""
    model_config = ConfigDict(frozen=True)

    mode: NarrationMode = NarrationMode.DIALOGUE
    character_voices: dict[str, str] = Field(default_factory=dict)
    monologue_voice: Optional[str] = None

    def voice_for(self, speaker: str, default: str) -> str:
        if self.mode == NarrationMode.MONOLOGUE:
            return self.monologue_voice or default
        return self.character_voices.get(speaker, default)


class ThumbnailDesignConcept(BaseModel):
    """A visual concept for a project thumbnail."""
    style: str
    headline: str = ""
    description: str = ""
    text_color: str = "#FFFFFF"


class Thumbnail(BaseModel):
    """A rendered thumbnail image."""
    model_config = ConfigDict(frozen=True)

    style: str
    data: Optional[bytes] = None
    url: str = ""
    mime_type: str = "image/png"


class Chapter(BaseModel):
    """One narrated segment of a project.

    Chapters are frozen; every state change replaces the whole object.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    status: ChapterStatus = ChapterStatus.PENDING
    script: list[ScriptLine] = Field(default_factory=list)
    audio: Optional[bytes] = None
    audio_mime_type: str = "audio/wav"
    images: list[ImageArtifact] = Field(default_factory=list)
    background_music: Optional[MusicTrack] = None
    sfx_timings: Optional[list[SfxTiming]] = None
    music_keywords: list[str] = Field(default_factory=list)
    visual_prompts: list[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def has_audio(self) -> bool:
        return bool(self.audio)

    @property
    def sfx_lines(self) -> list[ScriptLine]:
        return [line for line in self.script if line.is_sfx]


class Project(BaseModel):
    """A long-form narrated project made of ordered chapters."""
    model_config = ConfigDict(frozen=True)

    id: str
    topic: str
    selected_title: str = ""
    title_options: list[str] = Field(default_factory=list)
    description: str = ""
    keywords: list[str] = Field(default_factory=list)
    language: str = "English"
    characters: list[str] = Field(default_factory=list)
    chapters: list[Chapter] = Field(default_factory=list)
    narration: NarrationConfig = Field(default_factory=NarrationConfig)
    music_volume: float = 0.12
    image_source: ImageSource = ImageSource.AI
    images_per_chapter: int = 4
    knowledge_base: str = ""
    creative_freedom: bool = False
    total_duration_minutes: int = 5
    thumbnail_text: str = ""
    design_concepts: list[ThumbnailDesignConcept] = Field(default_factory=list)
    thumbnails: list[Thumbnail] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        for chapter in self.chapters:
            if chapter.id == chapter_id:
                return chapter
        return None

    def chapter_index(self, chapter_id: str) -> int:
        for index, chapter in enumerate(self.chapters):
            if chapter.id == chapter_id:
                return index
        return -1

    @property
    def title(self) -> str:
        return self.selected_title or (self.title_options[0] if self.title_options else self.topic)


class ChapterScript(BaseModel):
    """Structured script returned by the text service."""
    title: str
    lines: list[ScriptLine] = Field(default_factory=list)
    music_keywords: list[str] = Field(default_factory=list)
    visual_prompts: list[str] = Field(default_factory=list)


class ProjectBlueprint(BaseModel):
    """Project-level plan returned by the text service."""
    title_options: list[str] = Field(default_factory=list)
    description: str = ""
    keywords: list[str] = Field(default_factory=list)
    characters: list[str] = Field(default_factory=list)
    thumbnail_text: str = ""


class ContentIdea(BaseModel):
    """One planned project produced by queue planning."""
    title: str
    topic: str
    knowledge_base: str = ""


class ProjectParams(BaseModel):
    """Everything needed to regenerate a project headlessly."""
    topic: str
    knowledge_base: str = ""
    language: str = "English"
    total_duration_minutes: int = 5
    narration_mode: NarrationMode = NarrationMode.DIALOGUE
    image_source: ImageSource = ImageSource.AI
    images_per_chapter: int = 4
    creative_freedom: bool = False
    music_volume: float = 0.12


class GenerationSettings(BaseModel):
    """Shared settings applied to every planned queue item."""
    language: str = "English"
    total_duration_minutes: int = 5
    narration_mode: NarrationMode = NarrationMode.DIALOGUE
    image_source: ImageSource = ImageSource.AI
    images_per_chapter: int = 4
    creative_freedom: bool = False


class QueueItem(BaseModel):
    """A planned project awaiting headless generation."""
    id: str = Field(..., description="Unique queue item ID")
    title: str = ""
    params: ProjectParams
    status: QueueStatus = Field(default=QueueStatus.PENDING)
    error_message: Optional[str] = None
    output_path: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueState(BaseModel):
    """Persistent queue state."""
    items: list[QueueItem] = Field(default_factory=list)
    archived: list[QueueItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    last_updated: datetime = Field(default_factory=datetime.now)

    def add_item(self, item: QueueItem) -> None:
        self.items.append(item)
        self.last_updated = datetime.now()

    def get_pending(self) -> list[QueueItem]:
        return [item for item in self.items if item.status == QueueStatus.PENDING]

    def get_in_progress(self) -> list[QueueItem]:
        return [item for item in self.items if item.status == QueueStatus.IN_PROGRESS]

    def get_completed(self) -> list[QueueItem]:
        return [item for item in self.items if item.status == QueueStatus.COMPLETED]

    def get_failed(self) -> list[QueueItem]:
        return [item for item in self.items if item.status == QueueStatus.ERROR]

    @property
    def all_completed(self) -> bool:
        return bool(self.items) and len(self.get_completed()) == len(self.items)

    @property
    def progress_percent(self) -> float:
        if not self.items:
            return 0.0
        completed = len(self.get_completed())
        return (completed / len(self.items)) * 100


class ChapterMetadata(BaseModel):
    """Per-chapter metadata consumed by the external video assembler."""
    model_config = ConfigDict(populate_by_name=True)

    chapter_number: int = Field(alias="chapterNumber")
    title: str
    audio_duration: float = Field(alias="audioDuration")
    image_duration: float = Field(alias="imageDuration")
    image_count: int = Field(alias="imageCount")
    music_volume: float = Field(alias="musicVolume")
    sfx_timings: list[SfxTiming] = Field(default_factory=list, alias="sfxTimings")
