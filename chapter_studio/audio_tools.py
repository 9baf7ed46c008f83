"""Audio helpers used while packaging: duration, trimming and silence."""

import io
import struct
import tempfile
import wave
from pathlib import Path
from typing import Optional

from moviepy import AudioFileClip
from moviepy.audio.fx.AudioFadeOut import AudioFadeOut
from rich.console import Console


console = Console()


AUDIO_SIGNATURES = [
    (b"RIFF", ".wav"),
    (b"ID3", ".mp3"),
    (b"\xff\xfb", ".mp3"),
    (b"\xff\xf3", ".mp3"),
    (b"\xff\xf2", ".mp3"),
    (b"OggS", ".ogg"),
    (b"fLaC", ".flac"),
]

IMAGE_SIGNATURES = [
    (b"\x89PNG", ".png"),
    (b"\xff\xd8\xff", ".jpg"),
    (b"GIF8", ".gif"),
]

MIME_EXTENSIONS = {
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/wave": ".wav",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/ogg": ".ogg",
    "audio/flac": ".flac",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


def sniff_audio_extension(data: bytes, default: str = ".mp3") -> str:
    for signature, extension in AUDIO_SIGNATURES:
        if data.startswith(signature):
            return extension
    return default


def sniff_image_extension(data: bytes, mime_type: str = "", default: str = ".png") -> str:
    for signature, extension in IMAGE_SIGNATURES:
        if data.startswith(signature):
            return extension
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ".webp"
    return MIME_EXTENSIONS.get(mime_type.split(";")[0].strip().lower(), default)


def extension_for_mime(mime_type: str, default: str) -> str:
    return MIME_EXTENSIONS.get(mime_type.split(";")[0].strip().lower(), default)


def silence_wav(seconds: float = 1.0, sample_rate: int = 24000) -> bytes:
    """Mono 16-bit PCM WAV of the given length."""
    frames = int(seconds * sample_rate)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(struct.pack("<h", 0) * frames)
    return buffer.getvalue()


def wav_duration(data: bytes) -> Optional[float]:
    """Duration of a PCM WAV blob from its header, or None if it is not one."""
    if not data.startswith(b"RIFF"):
        return None
    try:
        with wave.open(io.BytesIO(data), "rb") as wav:
            rate = wav.getframerate()
            if rate <= 0:
                return None
            return wav.getnframes() / rate
    except (wave.Error, EOFError):
        return None


class AudioToolkit:
    """Measure and trim audio blobs with moviepy."""

    def __init__(self, temp_dir: Optional[Path] = None):
        self.temp_dir = temp_dir

    def measure_duration(self, data: bytes) -> float:
        """Get the duration of an audio blob.

        Args:
            data: Encoded audio (WAV, MP3, OGG, ...).

        Returns:
            Duration in seconds.
        """
        duration = wav_duration(data)
        if duration is not None:
            return duration

        with tempfile.TemporaryDirectory(dir=self.temp_dir) as tmp:
            source = Path(tmp) / f"probe{sniff_audio_extension(data)}"
            source.write_bytes(data)
            clip = AudioFileClip(str(source))
            try:
                return float(clip.duration)
            finally:
                clip.close()

    def trim_with_fade(
        self,
        data: bytes,
        target_duration: float,
        output_path: Path,
        fade_out: float = 1.0,
    ) -> Path:
        """Cut audio to a target length and fade out its tail.

        Args:
            data: Encoded source audio.
            target_duration: Length of the output in seconds.
            output_path: Output file; its suffix selects the codec.
            fade_out: Linear fade-out length in seconds, 0 to disable.

        Returns:
            Path to the written file.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(dir=self.temp_dir) as tmp:
            source = Path(tmp) / f"source{sniff_audio_extension(data)}"
            source.write_bytes(data)

            clip = AudioFileClip(str(source))
            try:
                trimmed = clip.subclipped(0, min(target_duration, clip.duration))
                if fade_out > 0:
                    trimmed = trimmed.with_effects([AudioFadeOut(min(fade_out, target_duration))])
                trimmed.write_audiofile(str(output_path), logger=None)
                trimmed.close()
            finally:
                clip.close()

        console.print(f"[dim]Trimmed audio to {target_duration:.1f}s: {output_path.name}[/dim]")
        return output_path
