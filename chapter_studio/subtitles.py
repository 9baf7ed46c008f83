"""SRT subtitle generation from chapter scripts."""

import re
from dataclasses import dataclass
from typing import Iterable, List

from chapter_studio.models import ScriptLine
from chapter_studio.timing import CHARS_PER_SECOND


MOJIBAKE = {
    "â€™": "'",
    "â€˜": "'",
    "â€œ": '"',
    "â€\x9d": '"',
    "â€”": "-",
    "â€“": "-",
    "â€¦": "...",
    "Â ": " ",
    "Ã©": "é",
    "Ã¨": "è",
    "Ã¡": "á",
    "Ã³": "ó",
    "Ã±": "ñ",
    "Ã¼": "ü",
    "Ã¶": "ö",
    "Ã¤": "ä",
}

CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass(frozen=True)
class SubtitleCue:
    index: int
    start: float
    end: float
    text: str


def clean_text(text: str) -> str:
    """Repair common mojibake, drop control characters and collapse whitespace."""
    for broken, fixed in MOJIBAKE.items():
        text = text.replace(broken, fixed)
    text = CONTROL_CHARS.sub("", text)
    return " ".join(text.split())


def wrap_words(text: str, max_length: int = 42) -> List[str]:
    """Greedily pack words into lines of at most ``max_length`` characters.

    A single word longer than the limit is split across lines.
    """
    lines: List[str] = []
    current = ""
    for word in text.split():
        while len(word) > max_length:
            if current:
                lines.append(current)
                current = ""
            lines.append(word[:max_length])
            word = word[max_length:]
        if not word:
            continue
        if not current:
            current = word
        elif len(current) + 1 + len(word) <= max_length:
            current = f"{current} {word}"
        else:
            lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def format_timestamp(seconds: float) -> str:
    """Format seconds as an SRT timestamp (HH:MM:SS,mmm)."""
    total_ms = int(round(max(0.0, seconds) * 1000))
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, millis = divmod(rest, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def build_cues(
    lines: Iterable[ScriptLine],
    chars_per_second: float = CHARS_PER_SECOND,
    max_line_length: int = 42,
    max_lines: int = 2,
    min_duration: float = 1.0,
) -> List[SubtitleCue]:
    """Split spoken lines into timed subtitle cues.

    Each cue holds up to ``max_lines`` wrapped lines and lasts
    ``max(min_duration, len(text) / chars_per_second)`` seconds. SFX lines
    produce no cues and do not advance the clock.
    """
    cues: List[SubtitleCue] = []
    clock = 0.0
    for line in lines:
        if line.is_sfx:
            continue
        text = clean_text(line.text)
        if not text:
            continue
        wrapped = wrap_words(text, max_line_length)
        for start in range(0, len(wrapped), max_lines):
            chunk = wrapped[start:start + max_lines]
            duration = max(min_duration, len(" ".join(chunk)) / chars_per_second)
            cues.append(SubtitleCue(
                index=len(cues) + 1,
                start=clock,
                end=clock + duration,
                text="\n".join(chunk),
            ))
            clock += duration
    return cues


def render_srt(cues: Iterable[SubtitleCue]) -> str:
    blocks = [
        f"{cue.index}\n{format_timestamp(cue.start)} --> {format_timestamp(cue.end)}\n{cue.text}\n"
        for cue in cues
    ]
    return "\n".join(blocks)
