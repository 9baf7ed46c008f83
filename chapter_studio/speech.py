"""Narration synthesis with Edge TTS."""

from typing import Dict, List, Optional

import edge_tts
from rich.console import Console

from chapter_studio.audio_tools import silence_wav
from chapter_studio.config import AppConfig, load_config
from chapter_studio.models import NarrationConfig, NarrationMode, ScriptLine


console = Console()


class TTSVoice:
    """Text-to-speech voice configuration."""

    VOICES = {
        "aria": "en-US-AriaNeural",
        "guy": "en-US-GuyNeural",
        "jenny": "en-US-JennyNeural",
        "sonia": "en-GB-SoniaNeural",
        "ryan": "en-GB-RyanNeural",
        "mia": "en-AU-MiaNeural",
        "natasha": "en-CA-NatashaNeural",
        "clara": "en-IE-ClaraNeural",
    }

    @classmethod
    def get_voice(cls, name: str) -> str:
        """Get voice ID by short name; full voice IDs pass through."""
        if "-" in name:
            return name
        return cls.VOICES.get(name.lower(), cls.VOICES["aria"])

    @classmethod
    def list_voices(cls) -> Dict[str, str]:
        return cls.VOICES.copy()


class EdgeSpeechSynthesizer:
    """Voice a chapter script line by line and join the MP3 streams."""

    def __init__(self, config: Optional[AppConfig] = None):
        """Initialize the synthesizer.

        Args:
            config: Application configuration. Uses default if not provided.
        """
        self.config = config or load_config()
        self.audio_settings = self.config.audio

    def assign_voices(self, lines: List[ScriptLine], narration: NarrationConfig) -> Dict[str, str]:
        """Map every speaker to a voice ID.

        Speakers without an explicit assignment get the configured character
        voices in order of first appearance; the first speaker is the narrator.
        """
        default = self.audio_settings.tts_voice
        if narration.mode == NarrationMode.MONOLOGUE:
            voice = TTSVoice.get_voice(narration.monologue_voice or default)
            return {line.speaker: voice for line in lines if not line.is_sfx}

        voices: Dict[str, str] = {}
        spare = list(self.audio_settings.character_voices)
        for line in lines:
            if line.is_sfx or line.speaker in voices:
                continue
            if line.speaker in narration.character_voices:
                voices[line.speaker] = TTSVoice.get_voice(narration.character_voices[line.speaker])
            elif not voices:
                voices[line.speaker] = TTSVoice.get_voice(default)
            elif spare:
                voices[line.speaker] = TTSVoice.get_voice(spare.pop(0))
            else:
                voices[line.speaker] = TTSVoice.get_voice(default)
        return voices

    async def _speak(self, text: str, voice: str) -> bytes:
        communicate = edge_tts.Communicate(
            text=text,
            voice=voice,
            rate=self.audio_settings.voice_rate,
            volume=self.audio_settings.voice_volume,
        )
        audio = bytearray()
        async for chunk in communicate.stream():
            if chunk["type"] == "audio":
                audio.extend(chunk["data"])
        return bytes(audio)

    async def synthesize(self, lines: List[ScriptLine], narration: NarrationConfig) -> bytes:
        """Voice every spoken line of a script.

        Args:
            lines: Script lines; SFX cues are skipped.
            narration: Voice assignments.

        Returns:
            MP3 audio, or one second of WAV silence when nothing is spoken.
        """
        spoken = [line for line in lines if not line.is_sfx and line.text.strip()]
        if not spoken:
            return silence_wav(1.0, self.audio_settings.silence_sample_rate)

        voices = self.assign_voices(spoken, narration)
        console.print(f"[cyan]Generating TTS: {len(spoken)} lines, {len(voices)} voice(s)[/cyan]")

        audio = bytearray()
        for line in spoken:
            audio.extend(await self._speak(line.text, voices[line.speaker]))

        console.print(f"[green]TTS done: {len(audio) // 1024}KB[/green]")
        return bytes(audio)
