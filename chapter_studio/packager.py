"""Packaging of completed chapters into a timing-annotated archive."""

import asyncio
import base64
import json
import shutil
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import requests
from rich.console import Console
from rich.table import Table

from chapter_studio.assembly import ChapterAssembly, render_assembly_script
from chapter_studio.audio_tools import (
    AudioToolkit, extension_for_mime, sniff_audio_extension, sniff_image_extension,
)
from chapter_studio.config import AppConfig, PackagingConfig, load_config
from chapter_studio.models import (
    Chapter, ChapterMetadata, ChapterStatus, ImageArtifact, MusicTrack, Project, SfxTiming, SoundEffect,
)
from chapter_studio.resilience import ChapterStudioError, fetch_with_fallback
from chapter_studio.subtitles import build_cues, render_srt
from chapter_studio.timing import sanitize_file_name


console = Console()

MIN_IMAGE_BYTES = 100


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def image_display_duration(audio_duration: float, image_count: int, packaging: PackagingConfig) -> float:
    """Seconds each image is shown, spread evenly over the narration."""
    if image_count <= 0 or audio_duration <= 0:
        return packaging.default_image_duration
    return round(
        clamp(audio_duration / image_count, packaging.min_image_duration, packaging.max_image_duration), 3
    )


def sfx_mix_volume(name: str, volume: float, packaging: PackagingConfig, default_volume: float = 0.7) -> float:
    """Mix level for a cue: sudden sounds sit louder than atmospheric ones.

    A cue at the default volume gets exactly the configured level; explicit
    per-line volumes scale it proportionally.
    """
    lowered = name.lower()
    level = packaging.sfx_sudden_volume if any(k in lowered for k in packaging.sudden_sfx_keywords) \
        else packaging.sfx_atmospheric_volume
    scale = volume / default_volume if default_volume > 0 else 1.0
    return round(clamp(level * scale, 0.0, 1.0), 3)


def finalize_sfx_timings(
    timings: List[SfxTiming],
    audio_duration: float,
    written: Dict[str, str],
    packaging: PackagingConfig,
    max_sfx_duration: float = 3.0,
    default_volume: float = 0.7,
) -> List[SfxTiming]:
    """Clamp cues to the measured narration and point them at written files.

    Args:
        timings: Cues computed at generation time.
        audio_duration: Measured narration length in seconds.
        written: Planned cue path -> path of the file actually written.
        packaging: Mix levels.
        max_sfx_duration: Upper bound for one cue.
        default_volume: Volume a cue has when its line set none.

    Returns:
        Cues that have a file and start before the narration ends.
    """
    finalized = []
    for timing in timings:
        path = written.get(timing.file_path)
        if path is None:
            continue
        duration = round(min(max_sfx_duration, timing.duration, audio_duration - timing.start_time), 3)
        if duration <= 0:
            continue
        finalized.append(timing.model_copy(update={
            "duration": duration,
            "volume": sfx_mix_volume(timing.name, timing.volume, packaging, default_volume),
            "file_path": path,
        }))
    return finalized


def _decode_data_url(url: str) -> Optional[bytes]:
    if not url.startswith("data:") or "," not in url:
        return None
    header, payload = url.split(",", 1)
    if header.endswith(";base64"):
        return base64.b64decode(payload)
    return payload.encode("utf-8")


@dataclass
class ChapterPackageResult:
    """Outcome of packaging one chapter."""
    number: int
    title: str
    folder: Path
    success: bool = False
    audio_duration: float = 0.0
    image_count: int = 0
    music_file: Optional[str] = None
    sfx_files: List[str] = field(default_factory=list)
    placeholders: List[str] = field(default_factory=list)
    omitted: List[str] = field(default_factory=list)
    error: Optional[str] = None
    assembly: Optional[ChapterAssembly] = None


@dataclass
class PackageReport:
    """Result of packaging a project."""
    output_dir: Path
    chapters: List[ChapterPackageResult] = field(default_factory=list)
    manifest_path: Optional[Path] = None
    thumbnail_count: int = 0
    zip_path: Optional[Path] = None

    @property
    def packaged(self) -> List[ChapterPackageResult]:
        return [chapter for chapter in self.chapters if chapter.success]

    @property
    def failed(self) -> List[ChapterPackageResult]:
        return [chapter for chapter in self.chapters if not chapter.success]

    @property
    def total_duration(self) -> float:
        return round(sum(chapter.audio_duration for chapter in self.packaged), 3)


class ChapterPackager:
    """Writes completed chapters and project metadata to an output folder."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        toolkit: Optional[AudioToolkit] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the packager.

        Args:
            config: Application configuration. Uses default if not provided.
            toolkit: Audio measuring and trimming helper.
            session: Optional requests session for downloads.
        """
        self.config = config or load_config()
        self.packaging = self.config.packaging
        self.toolkit = toolkit or AudioToolkit()
        self.session = session

    async def _fetch(self, url: str, min_bytes: Optional[int] = None) -> bytes:
        inline = _decode_data_url(url)
        if inline is not None:
            return inline
        response = await fetch_with_fallback(url, self.config.retry, min_bytes=min_bytes, session=self.session)
        return response.content

    async def package_project(self, project: Project, output_dir: Path) -> PackageReport:
        """Package every completed chapter plus project-level files.

        Args:
            project: Project to package; it is only read.
            output_dir: Archive root.

        Returns:
            Report listing packaged and failed chapters.
        """
        output_dir = Path(output_dir)
        chapters_dir = output_dir / "chapters"
        chapters_dir.mkdir(parents=True, exist_ok=True)

        console.print(f"\n[bold cyan]Packaging '{project.title}' into {output_dir}[/bold cyan]")
        report = PackageReport(output_dir=output_dir)

        for number, chapter in enumerate(project.chapters, 1):
            if chapter.status != ChapterStatus.COMPLETED:
                console.print(f"[yellow]Skipping chapter {number} ({chapter.status.value})[/yellow]")
                continue
            report.chapters.append(await self.package_chapter(project, chapter, number, chapters_dir))

        report.thumbnail_count = await self._write_thumbnails(project, output_dir)
        report.manifest_path = self._write_manifest(project, report)
        self._write_upload_info(project, report)
        self._write_assembly_script(project, report)

        self.print_report(report)
        return report

    async def package_to_zip(self, project: Project, zip_path: Path) -> PackageReport:
        """Package into a temporary folder and compress it into one zip file."""
        zip_path = Path(zip_path)
        zip_path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp) / (sanitize_file_name(project.title, 60) or project.id)
            report = await self.package_project(project, root)
            with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for path in sorted(root.rglob("*")):
                    if path.is_file():
                        archive.write(path, path.relative_to(root.parent))

        report.output_dir = zip_path
        report.zip_path = zip_path
        console.print(f"[green]Archive written: {zip_path}[/green]")
        return report

    async def package_chapter(
        self,
        project: Project,
        chapter: Chapter,
        number: int,
        chapters_dir: Path,
    ) -> ChapterPackageResult:
        """Write one chapter folder. Any exception aborts only this chapter."""
        folder = chapters_dir / f"chapter_{number:02d}"
        result = ChapterPackageResult(number=number, title=chapter.title, folder=folder)

        try:
            if folder.exists():
                shutil.rmtree(folder)
            folder.mkdir(parents=True)

            if not chapter.audio:
                raise ValueError("chapter has no narration audio")
            audio_file = "audio" + sniff_audio_extension(
                chapter.audio, extension_for_mime(chapter.audio_mime_type, ".mp3")
            )
            (folder / audio_file).write_bytes(chapter.audio)
            audio_duration = await asyncio.to_thread(self.toolkit.measure_duration, chapter.audio)

            cues = build_cues(
                chapter.script,
                chars_per_second=self.config.generation.chars_per_second,
                max_line_length=self.packaging.subtitle_max_line_length,
                max_lines=self.packaging.subtitle_max_lines,
                min_duration=self.packaging.min_subtitle_duration,
            )
            (folder / "subtitles.srt").write_text(render_srt(cues), encoding="utf-8")

            if chapter.background_music and chapter.background_music.audio_url:
                try:
                    result.music_file = await self._write_music(chapter.background_music, audio_duration, folder)
                except Exception as e:
                    result.omitted.append(f"music: {e}")
                    console.print(f"[yellow]Chapter {number}: music omitted ({e})[/yellow]")

            image_files = await self._write_images(chapter.images, folder, result)
            written = await self._write_sound_effects(chapter, folder, result)

            generation = self.config.generation
            timings = finalize_sfx_timings(
                chapter.sfx_timings or [],
                audio_duration,
                written,
                self.packaging,
                max_sfx_duration=generation.max_sfx_duration,
                default_volume=generation.default_sfx_volume,
            )
            metadata = ChapterMetadata(
                chapter_number=number,
                title=chapter.title,
                audio_duration=round(audio_duration, 3),
                image_duration=image_display_duration(audio_duration, len(image_files), self.packaging),
                image_count=len(image_files),
                music_volume=project.music_volume,
                sfx_timings=timings,
            )
            (folder / "metadata.json").write_text(
                json.dumps(metadata.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False) + "\n",
                encoding="utf-8",
            )

            result.success = True
            result.audio_duration = metadata.audio_duration
            result.image_count = metadata.image_count
            result.assembly = ChapterAssembly(
                number=number,
                title=chapter.title,
                folder=f"chapters/{folder.name}",
                audio_file=audio_file,
                audio_duration=metadata.audio_duration,
                image_duration=metadata.image_duration,
                image_files=image_files,
                music_file=result.music_file,
                music_volume=project.music_volume,
                sfx=timings,
            )
            console.print(
                f"[green][OK] Chapter {number}: {metadata.audio_duration:.1f}s, "
                f"{metadata.image_count} images, {len(timings)} SFX cues[/green]"
            )
        except Exception as e:
            result.error = str(e) or type(e).__name__
            console.print(f"[red][FAIL] Chapter {number} packaging: {result.error}[/red]")

        return result

    async def _write_music(self, track: MusicTrack, audio_duration: float, folder: Path) -> str:
        data = await self._fetch(track.audio_url)
        music_duration = await asyncio.to_thread(self.toolkit.measure_duration, data)

        if audio_duration > 0 and music_duration > audio_duration:
            path = folder / "music.wav"
            await asyncio.to_thread(
                self.toolkit.trim_with_fade, data, audio_duration, path, self.packaging.music_fade_out
            )
        else:
            path = folder / f"music{sniff_audio_extension(data)}"
            path.write_bytes(data)
        return path.name

    async def _write_images(
        self,
        images: List[ImageArtifact],
        folder: Path,
        result: ChapterPackageResult,
    ) -> List[str]:
        images_dir = folder / "images"
        images_dir.mkdir(exist_ok=True)
        written: List[str] = []

        for index, image in enumerate(images, 1):
            try:
                data = image.data
                if data is None:
                    if not image.url:
                        raise ValueError("image has neither data nor URL")
                    data = await self._fetch(image.url, min_bytes=MIN_IMAGE_BYTES)
                name = f"{len(written) + 1:03d}{sniff_image_extension(data, image.mime_type)}"
                (images_dir / name).write_bytes(data)
                written.append(f"images/{name}")
            except (ChapterStudioError, ValueError, OSError) as e:
                result.omitted.append(f"image {index}: {e}")
                console.print(f"[yellow]Chapter {result.number}: image {index} omitted ({e})[/yellow]")
        return written

    async def _write_sound_effects(
        self,
        chapter: Chapter,
        folder: Path,
        result: ChapterPackageResult,
    ) -> Dict[str, str]:
        """Write one file per distinct cue; returns planned path -> written path."""
        effects: Dict[str, SoundEffect] = {}
        for line in chapter.script:
            if line.is_sfx and line.sound_effect is not None:
                effects.setdefault(sanitize_file_name(line.sound_effect.name), line.sound_effect)

        written: Dict[str, str] = {}
        for timing in chapter.sfx_timings or []:
            if timing.file_path in written:
                continue
            stem = Path(timing.file_path).stem
            effect = effects.get(stem)
            if effect is None:
                result.omitted.append(f"sfx {timing.name}: no source")
                continue
            try:
                path = await self._write_sound_effect(effect, stem, folder / "sfx", result)
            except Exception as e:
                result.omitted.append(f"sfx {timing.name}: {e}")
                console.print(f"[yellow]Chapter {result.number}: SFX '{timing.name}' omitted ({e})[/yellow]")
                continue
            if path is not None:
                written[timing.file_path] = path
        return written

    async def _write_sound_effect(
        self,
        effect: SoundEffect,
        stem: str,
        sfx_dir: Path,
        result: ChapterPackageResult,
    ) -> Optional[str]:
        data = effect.data
        last_error: Optional[Exception] = None
        if data is None:
            for url in effect.preview_urls():
                try:
                    data = await self._fetch(url)
                    break
                except ChapterStudioError as e:
                    last_error = e

        sfx_dir.mkdir(exist_ok=True)
        if data is None:
            placeholder = sfx_dir / f"{stem}.link.txt"
            placeholder.write_text(
                "\n".join([effect.name, *effect.preview_urls()]) + "\n",
                encoding="utf-8",
            )
            result.placeholders.append(f"sfx/{placeholder.name}")
            console.print(
                f"[yellow]Chapter {result.number}: SFX '{effect.name}' kept as link ({last_error or 'no preview URL'})[/yellow]"
            )
            return None

        max_duration = self.config.generation.max_sfx_duration
        duration = await asyncio.to_thread(self.toolkit.measure_duration, data)
        if duration > max_duration:
            path = sfx_dir / f"{stem}.wav"
            await asyncio.to_thread(self.toolkit.trim_with_fade, data, max_duration, path, 0.0)
        else:
            path = sfx_dir / f"{stem}{sniff_audio_extension(data, extension_for_mime(effect.mime_type, '.mp3'))}"
            path.write_bytes(data)

        relative = f"sfx/{path.name}"
        result.sfx_files.append(relative)
        return relative

    async def _write_thumbnails(self, project: Project, output_dir: Path) -> int:
        count = 0
        for index, thumbnail in enumerate(project.thumbnails, 1):
            try:
                data = thumbnail.data
                if data is None:
                    if not thumbnail.url:
                        continue
                    data = await self._fetch(thumbnail.url, min_bytes=MIN_IMAGE_BYTES)
                thumbnails_dir = output_dir / "thumbnails"
                thumbnails_dir.mkdir(exist_ok=True)
                name = f"thumbnail_{index:02d}_{sanitize_file_name(thumbnail.style, 30)}"
                (thumbnails_dir / f"{name}{sniff_image_extension(data, thumbnail.mime_type)}").write_bytes(data)
                count += 1
            except (ChapterStudioError, OSError) as e:
                console.print(f"[yellow]Thumbnail {index} omitted ({e})[/yellow]")
        return count

    def _write_manifest(self, project: Project, report: PackageReport) -> Path:
        manifest = {
            "title": project.title,
            "totalChapters": len(report.packaged),
            "totalDuration": report.total_duration,
            "description": project.description,
            "keywords": project.keywords,
            "chapters": [
                {
                    "chapterNumber": chapter.number,
                    "title": chapter.title,
                    "folder": f"chapters/{chapter.folder.name}",
                    "audioDuration": chapter.audio_duration,
                }
                for chapter in report.packaged
            ],
            "youtube": {
                "titleOptions": project.title_options,
                "selectedTitle": project.title,
                "description": project.description,
                "tags": project.keywords,
                "thumbnailCount": report.thumbnail_count,
                "language": project.language,
            },
        }
        path = report.output_dir / "project_metadata.json"
        path.write_text(json.dumps(manifest, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        return path

    def _write_upload_info(self, project: Project, report: PackageReport) -> Path:
        lines = [
            f"TITLE: {project.title}",
            "",
            "ALTERNATIVE TITLES:",
            *[f"  - {title}" for title in project.title_options if title != project.title],
            "",
            "DESCRIPTION:",
            project.description,
            "",
            "CHAPTERS:",
        ]
        offset = 0.0
        for chapter in report.packaged:
            minutes, seconds = divmod(int(offset), 60)
            lines.append(f"{minutes:02d}:{seconds:02d} {chapter.title}")
            offset += chapter.audio_duration
        lines += [
            "",
            f"TAGS: {', '.join(project.keywords)}",
            f"LANGUAGE: {project.language}",
            f"THUMBNAILS: {report.thumbnail_count}",
        ]
        path = report.output_dir / "youtube_upload_info.txt"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    def _write_assembly_script(self, project: Project, report: PackageReport) -> Path:
        entries = [chapter.assembly for chapter in report.packaged if chapter.assembly is not None]
        script = render_assembly_script(
            entries,
            self.config.video,
            output_name=f"{sanitize_file_name(project.title, 60) or project.id}.mp4",
        )
        path = report.output_dir / "assemble_video.sh"
        path.write_text(script, encoding="utf-8")
        path.chmod(0o755)
        return path

    def print_report(self, report: PackageReport) -> None:
        """Display packaging results as a table."""
        table = Table(title="Packaging Report")
        table.add_column("Chapter", style="cyan")
        table.add_column("Title", style="magenta", max_width=30)
        table.add_column("Duration", style="blue")
        table.add_column("Images", style="blue")
        table.add_column("SFX", style="blue")
        table.add_column("Status", style="green")

        for chapter in report.chapters:
            status = "[green]ok[/green]" if chapter.success else f"[red]{(chapter.error or 'failed')[:30]}[/red]"
            table.add_row(
                str(chapter.number),
                chapter.title,
                f"{chapter.audio_duration:.1f}s",
                str(chapter.image_count),
                str(len(chapter.sfx_files)),
                status,
            )

        console.print(table)
        console.print(
            f"[bold]Packaged:[/bold] {len(report.packaged)} | [bold]Failed:[/bold] {len(report.failed)} | "
            f"[bold]Total:[/bold] {report.total_duration:.1f}s"
        )
