import asyncio

from chapter_studio.config import AppConfig
from chapter_studio.models import NarrationConfig, NarrationMode, ScriptLine
from chapter_studio.speech import EdgeSpeechSynthesizer, TTSVoice


def _lines():
    return [
        ScriptLine(speaker="Narrator", text="It was late."),
        ScriptLine(speaker="SFX", text="thunder"),
        ScriptLine(speaker="Keeper", text="Light the lamp."),
        ScriptLine(speaker="Narrator", text="He did."),
    ]


def test_dialogue_voices_follow_first_appearance():
    synthesizer = EdgeSpeechSynthesizer(AppConfig())

    voices = synthesizer.assign_voices(_lines(), NarrationConfig(mode=NarrationMode.DIALOGUE))

    assert voices == {"Narrator": "en-US-AriaNeural", "Keeper": "en-US-GuyNeural"}


def test_explicit_and_monologue_voices():
    synthesizer = EdgeSpeechSynthesizer(AppConfig())

    explicit = synthesizer.assign_voices(_lines(), NarrationConfig(character_voices={"Keeper": "ryan"}))
    monologue = synthesizer.assign_voices(
        _lines(), NarrationConfig(mode=NarrationMode.MONOLOGUE, monologue_voice="sonia")
    )

    assert explicit["Keeper"] == "en-GB-RyanNeural"
    assert set(monologue.values()) == {"en-GB-SoniaNeural"}


def test_synthesize_concatenates_spoken_lines(monkeypatch):
    synthesizer = EdgeSpeechSynthesizer(AppConfig())
    spoken = []

    async def fake_speak(text, voice):
        spoken.append((text, voice))
        return text.encode("utf-8")

    monkeypatch.setattr(synthesizer, "_speak", fake_speak)

    audio = asyncio.run(synthesizer.synthesize(_lines(), NarrationConfig()))

    assert audio == b"It was late.Light the lamp.He did."
    assert [text for text, _ in spoken] == ["It was late.", "Light the lamp.", "He did."]


def test_empty_script_yields_silence():
    synthesizer = EdgeSpeechSynthesizer(AppConfig())
    audio = asyncio.run(synthesizer.synthesize([ScriptLine(speaker="SFX", text="wind")], NarrationConfig()))
    assert audio.startswith(b"RIFF")


def test_voice_lookup():
    assert TTSVoice.get_voice("guy") == "en-US-GuyNeural"
    assert TTSVoice.get_voice("en-IN-NeerjaNeural") == "en-IN-NeerjaNeural"
    assert TTSVoice.get_voice("unknown") == "en-US-AriaNeural"
