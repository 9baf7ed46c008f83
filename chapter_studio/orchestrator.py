"""Chapter generation: script first, then concurrent asset production."""

import asyncio
import math
from typing import Awaitable, Callable, Dict, List, Optional, Set, TypeVar
from uuid import uuid4

from rich.console import Console

from chapter_studio.audio_tools import sniff_audio_extension
from chapter_studio.chapter_state import ProjectStore
from chapter_studio.config import AppConfig, load_config
from chapter_studio.media_search import MediaResolver
from chapter_studio.models import (
    Chapter, ChapterStatus, ImageArtifact, MusicTrack, NarrationConfig, NarrationMode, Project,
    ProjectBlueprint, ProjectParams, ScriptLine,
)
from chapter_studio.outcomes import AssetKind, AssetPolicy, Failure, Outcome, settle_all
from chapter_studio.resilience import ChapterStudioError, call_with_retries
from chapter_studio.search_cache import SearchCache
from chapter_studio.services import ChapterContext, Services
from chapter_studio.timing import compute_sfx_timings


console = Console()

T = TypeVar("T")

AUDIO_MIME_TYPES = {".wav": "audio/wav", ".mp3": "audio/mpeg", ".ogg": "audio/ogg", ".flac": "audio/flac"}


def chapter_count(total_minutes: int, chapter_minutes: int = 5) -> int:
    """Number of chapters for a target project length."""
    return max(1, math.ceil(total_minutes / chapter_minutes))


def build_project(
    params: ProjectParams,
    blueprint: ProjectBlueprint,
    config: Optional[AppConfig] = None,
) -> Project:
    """Create a project with all chapters pending.

    Args:
        params: Generation parameters.
        blueprint: Titles, description and cast from the text service.
        config: Application configuration.

    Returns:
        A new project; the chapter count is fixed from here on.
    """
    config = config or load_config()
    count = chapter_count(params.total_duration_minutes, config.generation.chapter_duration_minutes)
    narration = NarrationConfig(
        mode=params.narration_mode,
        monologue_voice=config.audio.tts_voice if params.narration_mode == NarrationMode.MONOLOGUE else None,
    )
    return Project(
        id=str(uuid4())[:8],
        topic=params.topic,
        selected_title=blueprint.title_options[0] if blueprint.title_options else params.topic,
        title_options=blueprint.title_options,
        description=blueprint.description,
        keywords=blueprint.keywords,
        language=params.language,
        characters=blueprint.characters,
        chapters=[
            Chapter(id=str(uuid4())[:8], title=f"Chapter {number}")
            for number in range(1, count + 1)
        ],
        narration=narration,
        music_volume=params.music_volume,
        image_source=params.image_source,
        images_per_chapter=params.images_per_chapter,
        knowledge_base=params.knowledge_base,
        creative_freedom=params.creative_freedom,
        total_duration_minutes=params.total_duration_minutes,
        thumbnail_text=blueprint.thumbnail_text,
    )


class ChapterOrchestrator:
    """Drives chapters of one project through their lifecycle."""

    def __init__(
        self,
        store: ProjectStore,
        services: Services,
        config: Optional[AppConfig] = None,
        resolver: Optional[MediaResolver] = None,
        policy: Optional[AssetPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the orchestrator.

        Args:
            store: Store owning the project state.
            services: External collaborators.
            config: Application configuration. Uses default if not provided.
            resolver: Music and SFX resolver. Built from services if not provided.
            policy: Which asset failures fail a chapter.
            sleep: Backoff sleep used by retries.
        """
        self.config = config or load_config()
        self.store = store
        self.services = services
        self.sleep = sleep
        self.cache = SearchCache(self.config.cache.search_ttl_seconds, self.config.cache.max_entries)
        self.resolver = resolver or MediaResolver(
            services.tracks,
            services.sounds,
            self.cache,
            retry=self.config.retry,
            prefetch_sfx=self.config.generation.prefetch_sfx_audio,
            sleep=sleep,
        )
        self.policy = policy or AssetPolicy.from_config(self.config.generation)
        self.last_errors: Dict[str, BaseException] = {}
        self._background: Set[asyncio.Task] = set()

    async def _remote(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        retry = self.config.retry
        return await call_with_retries(
            operation,
            max_attempts=retry.max_attempts,
            initial_delay_ms=retry.initial_delay_ms,
            timeout=retry.call_timeout_seconds,
            label=label,
            sleep=self.sleep,
        )

    def _context(self, chapter: Chapter) -> ChapterContext:
        project = self.store.project
        index = project.chapter_index(chapter.id)
        previous = [c.title for c in project.chapters[:index] if c.status == ChapterStatus.COMPLETED]
        return ChapterContext(
            topic=project.topic,
            chapter_number=index + 1,
            total_chapters=len(project.chapters),
            language=project.language,
            knowledge_base=project.knowledge_base,
            narration_mode=project.narration.mode,
            characters=project.characters,
            previous_titles=previous,
            creative_freedom=project.creative_freedom,
            images_per_chapter=project.images_per_chapter,
        )

    def _fail(self, chapter_id: str, error: BaseException) -> Chapter:
        message = str(error) or type(error).__name__
        self.last_errors[chapter_id] = error
        console.print(f"[red][FAIL] Chapter {chapter_id}: {message}[/red]")
        return self.store.update_chapter(chapter_id, ChapterStatus.ERROR, error=message)

    async def generate_chapter(self, chapter_id: str) -> Chapter:
        """Generate one pending chapter end to end.

        The script is requested first; narration, images, music and sound
        effects then run concurrently. Only a failure of a mandatory asset
        moves the chapter to error, and in that case no partial asset is kept.

        Args:
            chapter_id: Chapter to generate.

        Returns:
            The chapter in its final state for this attempt.
        """
        chapter = self.store.get_chapter(chapter_id)
        if chapter.status != ChapterStatus.PENDING:
            console.print(
                f"[yellow]Chapter {chapter_id} is {chapter.status.value}, not pending; skipping[/yellow]"
            )
            return chapter

        context = self._context(chapter)
        console.print(
            f"\n[bold cyan]Chapter {context.chapter_number}/{context.total_chapters}: writing script[/bold cyan]"
        )
        self.store.update_chapter(chapter_id, ChapterStatus.SCRIPT_GENERATING)

        try:
            script = await self._remote(
                lambda: self.services.script.generate_script(context),
                f"script for chapter {context.chapter_number}",
            )
        except ChapterStudioError as e:
            return self._fail(chapter_id, e)

        chapter = self.store.update_chapter(
            chapter_id,
            ChapterStatus.AUDIO_GENERATING,
            title=script.title or chapter.title,
            script=script.lines,
            music_keywords=script.music_keywords,
            visual_prompts=script.visual_prompts,
        )

        try:
            return await self._produce_assets(chapter, context.chapter_number)
        except Exception as e:
            return self._fail(chapter_id, e)

    async def _synthesize(self, lines: List[ScriptLine]) -> bytes:
        narration = self.store.project.narration
        audio = await self._remote(lambda: self.services.speech.synthesize(lines, narration), "narration")
        if not audio:
            raise ValueError("Speech service returned no audio")
        return audio

    async def _generate_images(self, chapter: Chapter, start_thumbnails: bool = False) -> List[ImageArtifact]:
        project = self.store.project
        prompts = chapter.visual_prompts or [chapter.title or project.topic]
        images = await self._remote(
            lambda: self.services.images.generate_images(prompts, project.images_per_chapter, project.image_source),
            "images",
        )
        if start_thumbnails and images:
            self._spawn(self._create_thumbnails(images[0]))
        return images

    async def _select_music(self, chapter: Chapter) -> Optional[MusicTrack]:
        keywords = chapter.music_keywords or [self.store.project.topic]
        track = await self.resolver.select_music(keywords)
        if track is None:
            raise LookupError(f"No background music found for: {', '.join(keywords)}")
        return track

    async def _produce_assets(self, chapter: Chapter, number: int) -> Chapter:
        console.print(f"[cyan]Chapter {number}: generating narration, images, music and sound effects[/cyan]")

        outcomes = await settle_all({
            AssetKind.NARRATION: self._synthesize(chapter.script),
            AssetKind.IMAGES: self._generate_images(chapter, start_thumbnails=number == 1),
            AssetKind.MUSIC: self._select_music(chapter),
            AssetKind.SOUND_EFFECTS: self.resolver.resolve_script(chapter.script),
        })

        blocking = self.policy.blocking_failures(outcomes)
        if blocking:
            first = next(iter(blocking.values()))
            message = "; ".join(f"{kind.value} failed: {failure.reason}" for kind, failure in blocking.items())
            self.last_errors[chapter.id] = first.error or RuntimeError(first.reason)
            console.print(f"[red][FAIL] Chapter {number}: {message}[/red]")
            return self.store.update_chapter(chapter.id, ChapterStatus.ERROR, error=message)

        for kind, failure in self.policy.degraded(outcomes).items():
            console.print(f"[yellow]Chapter {number}: {kind.value} omitted ({failure.reason})[/yellow]")

        audio = _value(outcomes[AssetKind.NARRATION], b"")
        images = _value(outcomes[AssetKind.IMAGES], [])
        music = _value(outcomes[AssetKind.MUSIC], None)
        lines = _value(outcomes[AssetKind.SOUND_EFFECTS], chapter.script)

        generation = self.config.generation
        timings = compute_sfx_timings(
            lines,
            chars_per_second=generation.chars_per_second,
            max_sfx_duration=generation.max_sfx_duration,
            default_volume=generation.default_sfx_volume,
        )

        completed = self.store.update_chapter(
            chapter.id,
            ChapterStatus.COMPLETED,
            script=lines,
            audio=audio,
            audio_mime_type=AUDIO_MIME_TYPES.get(sniff_audio_extension(audio), "audio/mpeg"),
            images=images,
            background_music=music,
            sfx_timings=timings,
        )
        self.last_errors.pop(chapter.id, None)
        console.print(
            f"[green][OK] Chapter {number} completed: {len(images)} images, "
            f"{len(timings)} SFX cues, music: {music.name if music else 'none'}[/green]"
        )

        return completed

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @property
    def background_tasks(self) -> Set[asyncio.Task]:
        return set(self._background)

    async def drain_background_tasks(self) -> None:
        """Wait for thumbnail work spawned by completed chapters."""
        while self._background:
            results = await asyncio.gather(*list(self._background), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    console.print(f"[yellow]Background task failed: {result}[/yellow]")

    async def _create_thumbnails(self, base_image: ImageArtifact) -> None:
        """Design and render thumbnails from the first chapter's lead image."""
        project = self.store.project
        try:
            concepts = await self._remote(
                lambda: self.services.script.generate_design_concepts(project.topic, project.language),
                "thumbnail concepts",
            )
            self.store.update_project(design_concepts=concepts)

            if self.services.thumbnails is None:
                return

            text = project.thumbnail_text or project.title
            thumbnails = await self._remote(
                lambda: self.services.thumbnails.render(base_image, text, concepts),
                "thumbnail rendering",
            )
            self.store.update_project(thumbnails=thumbnails)
            console.print(f"[green]Thumbnails ready: {len(thumbnails)}[/green]")
        except ChapterStudioError as e:
            console.print(f"[yellow]Thumbnail generation failed: {e}[/yellow]")

    async def retry_chapter(self, chapter_id: str) -> Chapter:
        """Send a failed chapter back to pending and generate it again."""
        chapter = self.store.get_chapter(chapter_id)
        if chapter.status != ChapterStatus.ERROR:
            console.print(f"[yellow]Chapter {chapter_id} has not failed; nothing to retry[/yellow]")
            return chapter
        self.store.update_chapter(chapter_id, ChapterStatus.PENDING)
        return await self.generate_chapter(chapter_id)

    async def regenerate_audio(self, chapter_id: str) -> Chapter:
        """Voice a chapter's existing script again, leaving its other assets alone."""
        chapter = self.store.get_chapter(chapter_id)
        if chapter.status not in (ChapterStatus.COMPLETED, ChapterStatus.ERROR) or not chapter.script:
            console.print(f"[yellow]Chapter {chapter_id} has no finished script to voice[/yellow]")
            return chapter

        console.print(f"[cyan]Regenerating narration for chapter {chapter_id}[/cyan]")
        self.store.update_chapter(chapter_id, ChapterStatus.AUDIO_GENERATING)
        try:
            audio = await self._synthesize(chapter.script)
        except Exception as e:
            return self._fail(chapter_id, e)

        update = {
            "audio": audio,
            "audio_mime_type": AUDIO_MIME_TYPES.get(sniff_audio_extension(audio), "audio/mpeg"),
        }
        if chapter.sfx_timings is None:
            generation = self.config.generation
            update["sfx_timings"] = compute_sfx_timings(
                chapter.script,
                chars_per_second=generation.chars_per_second,
                max_sfx_duration=generation.max_sfx_duration,
                default_volume=generation.default_sfx_volume,
            )
        return self.store.update_chapter(chapter_id, ChapterStatus.COMPLETED, **update)

    async def regenerate_images(self, chapter_id: str) -> Chapter:
        """Replace a completed chapter's images; on failure the old ones stay."""
        chapter = self.store.get_chapter(chapter_id)
        if chapter.status != ChapterStatus.COMPLETED:
            console.print(f"[yellow]Chapter {chapter_id} is not completed; cannot regenerate images[/yellow]")
            return chapter

        console.print(f"[cyan]Regenerating images for chapter {chapter_id}[/cyan]")
        self.store.update_chapter(chapter_id, ChapterStatus.IMAGES_GENERATING)
        try:
            images = await self._generate_images(chapter)
        except Exception as e:
            console.print(f"[yellow]Image regeneration failed, keeping previous images: {e}[/yellow]")
            return self.store.update_chapter(chapter_id, ChapterStatus.COMPLETED)

        updated = self.store.update_chapter(chapter_id, ChapterStatus.COMPLETED, images=images)
        if self.store.project.chapter_index(chapter_id) == 0 and images:
            self._spawn(self._create_thumbnails(images[0]))
        return updated


def _value(outcome: Outcome, default):
    if isinstance(outcome, Failure):
        return default
    return outcome.value if outcome.value is not None else default
