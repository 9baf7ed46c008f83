"""Chapter Studio - chapter-by-chapter production of narrated media projects."""

__version__ = "1.0.0"

# Core modules
from chapter_studio.config import AppConfig, load_config, save_config
from chapter_studio.models import (
    Chapter, ChapterStatus, ChapterMetadata, ImageArtifact, MusicTrack, NarrationMode, Project,
    ProjectParams, QueueItem, QueueState, QueueStatus, ScriptLine, SfxTiming, SoundEffect,
)
from chapter_studio.chapter_state import ProjectStore
from chapter_studio.orchestrator import ChapterOrchestrator, build_project
from chapter_studio.queue_manager import ChapterAutoRunner, ProjectFactory, QueueManager
from chapter_studio.services import ChapterContext, Services
from chapter_studio.timing import compute_sfx_timings

# Output modules
from chapter_studio.packager import ChapterPackager, PackageReport
from chapter_studio.speech import EdgeSpeechSynthesizer, TTSVoice

__all__ = [
    # Core
    "AppConfig", "load_config", "save_config",
    "Chapter", "ChapterStatus", "ChapterMetadata", "ImageArtifact", "MusicTrack", "NarrationMode",
    "Project", "ProjectParams", "QueueItem", "QueueState", "QueueStatus", "ScriptLine", "SfxTiming",
    "SoundEffect", "ProjectStore", "ChapterOrchestrator", "build_project",
    "ChapterAutoRunner", "ProjectFactory", "QueueManager", "ChapterContext", "Services",
    "compute_sfx_timings",
    # Output
    "ChapterPackager", "PackageReport", "EdgeSpeechSynthesizer", "TTSVoice",
]
