import asyncio
import json
import zipfile

import requests

from chapter_studio import resilience
from chapter_studio.audio_tools import AudioToolkit, silence_wav
from chapter_studio.config import PackagingConfig
from chapter_studio.models import (
    Chapter, ChapterStatus, ImageArtifact, MusicTrack, Project, ScriptLine, SfxTiming, SoundEffect, Thumbnail,
)
from chapter_studio.packager import (
    ChapterPackager, finalize_sfx_timings, image_display_duration, sfx_mix_volume,
)
from chapter_studio.timing import compute_sfx_timings

from tests.fakes import PNG_BYTES, make_config, wav_data_url


def _lines(effect=None):
    return [
        ScriptLine(speaker="Narrator", text="Hello world"),
        ScriptLine(speaker="SFX", text="door creak", sound_effect=effect or SoundEffect(
            id="s1", name="Door Creak", data=silence_wav(1.0, 8000), mime_type="audio/wav",
        )),
        ScriptLine(speaker="Narrator", text="The end"),
    ]


def _chapter(chapter_id="c1", lines=None, status=ChapterStatus.COMPLETED, **fields) -> Chapter:
    lines = lines if lines is not None else _lines()
    values = dict(
        id=chapter_id,
        title="Opening",
        status=status,
        script=lines,
        audio=silence_wav(4.0, 8000),
        audio_mime_type="audio/wav",
        images=[ImageArtifact(data=PNG_BYTES), ImageArtifact(data=PNG_BYTES)],
        background_music=MusicTrack(id="t1", name="Calm", audio_url=wav_data_url(1.0)),
        sfx_timings=compute_sfx_timings(lines),
    )
    values.update(fields)
    return Chapter(**values)


def _project(*chapters) -> Project:
    return Project(
        id="p1",
        topic="doors",
        selected_title="The Door",
        title_options=["The Door", "Doors of Time"],
        description="A story about a door.",
        keywords=["door", "story"],
        chapters=list(chapters) or [_chapter()],
        thumbnails=[Thumbnail(style="Bold Red", data=PNG_BYTES)],
    )


def _package(config, project, output_dir):
    return asyncio.run(ChapterPackager(config).package_project(project, output_dir))


def test_chapter_folder_contents_and_metadata(tmp_path):
    config = make_config(tmp_path)
    out = tmp_path / "package"

    report = _package(config, _project(), out)

    folder = out / "chapters" / "chapter_01"
    assert len(report.packaged) == 1
    assert (folder / "audio.wav").exists()
    assert (folder / "music.wav").exists()
    assert (folder / "sfx" / "door_creak.wav").exists()
    assert sorted(p.name for p in (folder / "images").iterdir()) == ["001.png", "002.png"]
    assert "Hello world" in (folder / "subtitles.srt").read_text()

    metadata = json.loads((folder / "metadata.json").read_text())
    assert metadata == {
        "chapterNumber": 1,
        "title": "Opening",
        "audioDuration": 4.0,
        "imageDuration": 2.0,
        "imageCount": 2,
        "musicVolume": 0.12,
        "sfxTimings": [{
            "name": "Door Creak",
            "startTime": 0.73,
            "duration": 2.0,
            "volume": 0.2,
            "filePath": "sfx/door_creak.wav",
        }],
    }


def test_packaging_twice_gives_identical_metadata(tmp_path):
    config = make_config(tmp_path)
    project = _project()
    out = tmp_path / "package"

    _package(config, project, out)
    first = (out / "chapters" / "chapter_01" / "metadata.json").read_bytes()
    _package(config, project, out)
    second = (out / "chapters" / "chapter_01" / "metadata.json").read_bytes()

    assert first == second


def test_longer_music_is_trimmed_to_narration_length(tmp_path):
    config = make_config(tmp_path)
    chapter = _chapter(background_music=MusicTrack(id="t2", name="Long Theme", audio_url=wav_data_url(8.0)))
    out = tmp_path / "package"

    report = _package(config, _project(chapter), out)

    folder = out / "chapters" / "chapter_01"
    metadata = json.loads((folder / "metadata.json").read_text())
    music_duration = AudioToolkit().measure_duration((folder / "music.wav").read_bytes())
    assert report.packaged[0].music_file == "music.wav"
    assert report.packaged[0].omitted == []
    assert abs(music_duration - metadata["audioDuration"]) < 0.05


def test_chapter_without_sfx_has_no_sfx_folder(tmp_path):
    config = make_config(tmp_path)
    lines = [ScriptLine(speaker="Narrator", text="Only words here.")]
    out = tmp_path / "package"

    report = _package(config, _project(_chapter(lines=lines, sfx_timings=[])), out)

    folder = out / "chapters" / "chapter_01"
    assert report.packaged
    assert not (folder / "sfx").exists()
    assert json.loads((folder / "metadata.json").read_text())["sfxTimings"] == []


def test_unreachable_sfx_becomes_link_placeholder(tmp_path, monkeypatch):
    def offline(url, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(resilience.requests, "get", offline)
    effect = SoundEffect(id="s2", name="Door Creak", previews={"preview-hq-mp3": "https://cdn.example/door.mp3"})
    config = make_config(tmp_path)
    out = tmp_path / "package"

    report = _package(config, _project(_chapter(lines=_lines(effect), background_music=None)), out)

    folder = out / "chapters" / "chapter_01"
    link = folder / "sfx" / "door_creak.link.txt"
    assert link.read_text().splitlines() == ["Door Creak", "https://cdn.example/door.mp3"]
    assert json.loads((folder / "metadata.json").read_text())["sfxTimings"] == []
    assert report.chapters[0].placeholders == ["sfx/door_creak.link.txt"]


def test_only_completed_chapters_are_packaged_and_failures_are_isolated(tmp_path):
    config = make_config(tmp_path)
    chapters = [
        _chapter("c1"),
        _chapter("c2", status=ChapterStatus.ERROR, error="script failed", audio=None),
        _chapter("c3", audio=None),
        _chapter("c4"),
    ]
    out = tmp_path / "package"

    report = _package(config, _project(*chapters), out)

    assert [c.number for c in report.packaged] == [1, 4]
    assert [c.number for c in report.failed] == [3]
    assert "no narration audio" in report.failed[0].error
    assert not (out / "chapters" / "chapter_02").exists()

    manifest = json.loads((out / "project_metadata.json").read_text())
    assert manifest["title"] == "The Door"
    assert manifest["totalChapters"] == 2
    assert manifest["totalDuration"] == 8.0
    assert manifest["youtube"]["tags"] == ["door", "story"]
    assert manifest["youtube"]["thumbnailCount"] == 1
    assert (out / "thumbnails" / "thumbnail_01_bold_red.png").exists()

    script = (out / "assemble_video.sh").read_text()
    assert "chapters/chapter_01/images.txt" in script
    assert "chapter_04.mp4" in script
    assert "chapter_03.mp4" not in script
    assert "00:04 Opening" in (out / "youtube_upload_info.txt").read_text()


def test_package_to_zip(tmp_path):
    config = make_config(tmp_path)
    zip_path = tmp_path / "archives" / "door.zip"

    report = asyncio.run(ChapterPackager(config).package_to_zip(_project(), zip_path))

    assert report.zip_path == zip_path
    with zipfile.ZipFile(zip_path) as archive:
        names = archive.namelist()
    assert "the_door/chapters/chapter_01/metadata.json" in names
    assert "the_door/project_metadata.json" in names


def test_image_display_duration_is_clamped():
    packaging = PackagingConfig()
    assert image_display_duration(100.0, 4, packaging) == 20.0
    assert image_display_duration(3.0, 4, packaging) == 2.0
    assert image_display_duration(30.0, 4, packaging) == 7.5
    assert image_display_duration(30.0, 0, packaging) == 5.0


def test_sfx_mix_volume_and_clamping():
    packaging = PackagingConfig()
    assert sfx_mix_volume("Sudden Crash", 0.7, packaging) == 0.4
    assert sfx_mix_volume("Gentle Rain", 0.7, packaging) == 0.2
    assert sfx_mix_volume("Rain", 0.35, packaging) == 0.1

    timings = [
        SfxTiming(name="Bell", start_time=1.0, duration=3.0, volume=0.7, file_path="sfx/bell.wav"),
        SfxTiming(name="Late", start_time=9.5, duration=2.0, volume=0.7, file_path="sfx/late.wav"),
        SfxTiming(name="After", start_time=12.0, duration=2.0, volume=0.7, file_path="sfx/after.wav"),
        SfxTiming(name="Lost", start_time=2.0, duration=2.0, volume=0.7, file_path="sfx/lost.wav"),
    ]
    written = {"sfx/bell.wav": "sfx/bell.mp3", "sfx/late.wav": "sfx/late.wav", "sfx/after.wav": "sfx/after.wav"}

    finalized = finalize_sfx_timings(timings, 10.0, written, packaging)

    assert [(t.name, t.duration, t.file_path) for t in finalized] == [
        ("Bell", 3.0, "sfx/bell.mp3"),
        ("Late", 0.5, "sfx/late.wav"),
    ]
