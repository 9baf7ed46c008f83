"""Sound-effect cue timing for chapter scripts.

The narration clock is estimated from a fixed reading rate: every spoken
line advances it by ``len(text) / chars_per_second`` seconds, SFX cues never
advance it. Packaging later clamps these cues against the measured audio
duration, so this module stays free of any I/O.
"""

import re
from typing import Iterable, List

from chapter_studio.models import ScriptLine, SfxTiming


CHARS_PER_SECOND = 15.0
MAX_SFX_DURATION = 3.0
MIN_SFX_DURATION = 2.0
DEFAULT_SFX_VOLUME = 0.7
SFX_CHARS_PER_SECOND = 50.0


def sanitize_file_name(name: str, max_length: int = 50) -> str:
    """Turn a sound-effect name into a safe file stem.

    Args:
        name: Display name of the sound effect.
        max_length: Maximum length of the returned stem.

    Returns:
        Lower-case stem with spaces replaced by underscores.
    """
    cleaned = re.sub(r"[^\w\s-]", "", name)
    cleaned = re.sub(r"\s+", "_", cleaned.strip())
    return cleaned.lower()[:max_length] or "sfx"


def line_duration(text: str, chars_per_second: float = CHARS_PER_SECOND) -> float:
    """Estimated spoken duration of one line in seconds."""
    return len(text) / chars_per_second


def spoken_duration(lines: Iterable[ScriptLine], chars_per_second: float = CHARS_PER_SECOND) -> float:
    """Estimated narration length of a script, skipping SFX cues."""
    return sum(
        line_duration(line.text, chars_per_second)
        for line in lines
        if not line.is_sfx and line.text
    )


def compute_sfx_timings(
    lines: Iterable[ScriptLine],
    chars_per_second: float = CHARS_PER_SECOND,
    max_sfx_duration: float = MAX_SFX_DURATION,
    default_volume: float = DEFAULT_SFX_VOLUME,
) -> List[SfxTiming]:
    """Compute cue timings for every resolved SFX line of a script.

    Args:
        lines: Script lines in order.
        chars_per_second: Reading rate used for the narration clock.
        max_sfx_duration: Upper bound for a single cue.
        default_volume: Volume used when a line carries none.

    Returns:
        Timings in script order with non-decreasing start times.
    """
    timings: List[SfxTiming] = []
    current_time = 0.0

    for line in lines:
        if line.is_sfx:
            if line.sound_effect is None:
                continue
            duration = min(max_sfx_duration, max(MIN_SFX_DURATION, len(line.text) / SFX_CHARS_PER_SECOND))
            volume = line.sound_effect_volume if line.sound_effect_volume is not None else default_volume
            timings.append(SfxTiming(
                name=line.sound_effect.name,
                start_time=round(current_time, 2),
                duration=duration,
                volume=volume,
                file_path=f"sfx/{sanitize_file_name(line.sound_effect.name)}.wav",
            ))
        elif line.text:
            current_time += line_duration(line.text, chars_per_second)

    return timings
