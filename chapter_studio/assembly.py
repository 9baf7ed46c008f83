"""Shell script that assembles a packaged project into videos with ffmpeg."""

import shlex
from dataclasses import dataclass, field
from typing import List, Optional

from chapter_studio.config import VideoOutputConfig
from chapter_studio.models import SfxTiming


@dataclass
class ChapterAssembly:
    """What the script needs to know about one packaged chapter."""
    number: int
    title: str
    folder: str
    audio_file: str
    audio_duration: float
    image_duration: float
    image_files: List[str] = field(default_factory=list)
    music_file: Optional[str] = None
    music_volume: float = 0.12
    sfx: List[SfxTiming] = field(default_factory=list)

    @property
    def output_name(self) -> str:
        return f"chapter_{self.number:02d}.mp4"


def image_list(entry: ChapterAssembly) -> str:
    """ffmpeg concat-demuxer list showing each image for its display duration."""
    lines = []
    for image in entry.image_files:
        lines.append(f"file '{image}'")
        lines.append(f"duration {entry.image_duration:.2f}")
    if entry.image_files:
        # The concat demuxer ignores the last duration unless the file repeats.
        lines.append(f"file '{entry.image_files[-1]}'")
    return "\n".join(lines)


def filter_graph(entry: ChapterAssembly, video: VideoOutputConfig) -> str:
    width, height = video.resolution
    parts = [
        f"[0:v]scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps={video.fps},format=yuv420p[v]"
    ]
    mix = ["[1:a]"]
    next_input = 2

    if entry.music_file:
        parts.append(f"[{next_input}:a]volume={entry.music_volume:.3f}[music]")
        mix.append("[music]")
        next_input += 1

    for index, cue in enumerate(entry.sfx):
        delay_ms = int(round(cue.start_time * 1000))
        parts.append(
            f"[{next_input}:a]atrim=0:{cue.duration:.3f},adelay={delay_ms}:all=1,"
            f"volume={cue.volume:.3f}[sfx{index}]"
        )
        mix.append(f"[sfx{index}]")
        next_input += 1

    if len(mix) == 1:
        parts.append("[1:a]anull[a]")
    else:
        parts.append(f"{''.join(mix)}amix=inputs={len(mix)}:duration=first:normalize=0[a]")
    return ";".join(parts)


def chapter_command(entry: ChapterAssembly, video: VideoOutputConfig) -> List[str]:
    folder = entry.folder
    width, height = video.resolution
    if entry.image_files:
        command = ["ffmpeg", "-y", "-f", "concat", "-safe", "0", "-i", f"{folder}/images.txt"]
    else:
        command = [
            "ffmpeg", "-y", "-f", "lavfi",
            "-i", f"color=c=black:s={width}x{height}:d={entry.audio_duration:.3f}",
        ]
    command += ["-i", f"{folder}/{entry.audio_file}"]
    if entry.music_file:
        command += ["-i", f"{folder}/{entry.music_file}"]
    for cue in entry.sfx:
        command += ["-i", f"{folder}/{cue.file_path}"]
    command += [
        "-filter_complex", filter_graph(entry, video),
        "-map", "[v]", "-map", "[a]",
        "-c:v", video.codec, "-preset", video.preset, "-crf", str(video.crf),
        "-c:a", video.audio_codec,
        "-t", f"{entry.audio_duration:.3f}",
        f"output/{entry.output_name}",
    ]
    return command


def render_assembly_script(
    entries: List[ChapterAssembly],
    video: Optional[VideoOutputConfig] = None,
    output_name: str = "project.mp4",
) -> str:
    """Build a bash script that renders each chapter and concatenates them.

    Args:
        entries: Packaged chapters in order.
        video: Encoding settings.
        output_name: File name of the concatenated video.

    Returns:
        Script text, run from the package root.
    """
    video = video or VideoOutputConfig()
    out = [
        "#!/usr/bin/env bash",
        "# Renders every packaged chapter with ffmpeg, then joins them.",
        "set -euo pipefail",
        'cd "$(dirname "$0")"',
        "mkdir -p output",
        "",
    ]

    for entry in entries:
        out.append(f"# Chapter {entry.number}: {' '.join(entry.title.split())}")
        if entry.image_files:
            out.append(f"cat > {shlex.quote(entry.folder + '/images.txt')} <<'EOF'")
            out.append(image_list(entry))
            out.append("EOF")
        out.append(" ".join(shlex.quote(part) for part in chapter_command(entry, video)))
        out.append("")

    out.append(": > output/chapters.txt")
    for entry in entries:
        out.append(f"echo \"file '{entry.output_name}'\" >> output/chapters.txt")
    out.append(
        "ffmpeg -y -f concat -safe 0 -i output/chapters.txt -c copy "
        f"{shlex.quote('output/' + output_name)}"
    )
    out.append(f"echo \"Done: output/{output_name}\"")
    return "\n".join(out) + "\n"
