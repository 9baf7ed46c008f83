"""Interfaces of the external services the pipeline talks to."""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from chapter_studio.models import (
    ChapterScript, ContentIdea, ImageArtifact, ImageSource, MusicTrack, NarrationConfig,
    NarrationMode, ProjectBlueprint, ProjectParams, ScriptLine, SoundEffect, Thumbnail,
    ThumbnailDesignConcept,
)


@dataclass
class ChapterContext:
    """What the text service needs to write one chapter."""
    topic: str
    chapter_number: int
    total_chapters: int
    language: str = "English"
    knowledge_base: str = ""
    narration_mode: NarrationMode = NarrationMode.DIALOGUE
    characters: List[str] = field(default_factory=list)
    previous_titles: List[str] = field(default_factory=list)
    creative_freedom: bool = False
    images_per_chapter: int = 4


class ScriptService(Protocol):
    """Turns prompts into structured scripts and plans."""

    async def generate_script(self, context: ChapterContext) -> ChapterScript: ...

    async def generate_blueprint(self, params: ProjectParams) -> ProjectBlueprint: ...

    async def generate_content_plan(self, count: int) -> List[ContentIdea]: ...

    async def generate_design_concepts(self, topic: str, language: str) -> List[ThumbnailDesignConcept]: ...


class SpeechSynthesizer(Protocol):
    """Voices a script. An empty line set yields one second of silence."""

    async def synthesize(self, lines: List[ScriptLine], narration: NarrationConfig) -> bytes: ...


class ImageService(Protocol):
    async def generate_images(self, prompts: List[str], count: int, source: ImageSource) -> List[ImageArtifact]: ...


class TrackSearch(Protocol):
    """Ranked background-music search; callers take the first result."""

    async def search_tracks(self, keywords: List[str]) -> List[MusicTrack]: ...


class SoundEffectSearch(Protocol):
    """Ranked sound-effect search; callers take the first result."""

    async def search_sounds(self, keywords: List[str]) -> List[SoundEffect]: ...


class ThumbnailRenderer(Protocol):
    """Burns headline text onto a base image, one thumbnail per concept."""

    async def render(
        self,
        image: ImageArtifact,
        text: str,
        concepts: List[ThumbnailDesignConcept],
    ) -> List[Thumbnail]: ...


@dataclass
class Services:
    """The collaborators a pipeline run is wired with."""
    script: ScriptService
    speech: SpeechSynthesizer
    images: ImageService
    tracks: Optional[TrackSearch] = None
    sounds: Optional[SoundEffectSearch] = None
    thumbnails: Optional[ThumbnailRenderer] = None
