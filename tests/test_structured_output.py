import asyncio

import pytest

from chapter_studio.models import NarrationMode
from chapter_studio.resilience import ChapterStudioError, StructuredOutputError
from chapter_studio.services import ChapterContext
from chapter_studio.structured_output import (
    Failed, NeedsCorrection, Ok, StructuredScriptWriter, generate_structured, parse_structured_response,
)

from tests.fakes import no_sleep

SCRIPT_JSON = """```json
{
  "title": "The Last Watch",
  "lines": [
    {"speaker": "Narrator", "text": " The lamp flickered. "},
    {"speaker": "sfx", "text": "wind howling", "searchKeywords": "wind, howling"}
  ],
  "musicKeywords": ["dark", "ambient"],
  "visualPrompts": ["a lighthouse in a storm"]
}
```"""


def _context() -> ChapterContext:
    return ChapterContext(
        topic="lighthouses",
        chapter_number=1,
        total_chapters=3,
        language="English",
        knowledge_base="",
        narration_mode=NarrationMode.DIALOGUE,
        characters=["Narrator"],
        previous_titles=[],
        creative_freedom=False,
        images_per_chapter=4,
    )


class ScriptedGenerator:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_parse_results_are_tagged():
    assert isinstance(parse_structured_response('{"a": 1}'), Ok)
    assert isinstance(parse_structured_response("Sure! {\"a\": 1} Hope that helps."), Ok)
    assert isinstance(parse_structured_response("{broken"), NeedsCorrection)
    assert isinstance(parse_structured_response("{broken", allow_correction=False), Failed)
    assert isinstance(parse_structured_response("   "), Failed)


def test_one_correction_round():
    generator = ScriptedGenerator("not json at all", '{"fixed": true}')

    result = asyncio.run(generate_structured(generator, "give me json"))

    assert result == {"fixed": True}
    assert len(generator.prompts) == 2
    assert "not json at all" in generator.prompts[1]


def test_second_malformed_response_fails():
    generator = ScriptedGenerator("nope", "still nope", "never asked")

    with pytest.raises(StructuredOutputError):
        asyncio.run(generate_structured(generator, "give me json"))
    assert len(generator.prompts) == 2


def test_writer_builds_script_lines():
    writer = StructuredScriptWriter(ScriptedGenerator(SCRIPT_JSON), sleep=no_sleep)

    script = asyncio.run(writer.generate_script(_context()))

    assert script.title == "The Last Watch"
    assert script.lines[0].text == "The lamp flickered."
    assert script.lines[1].is_sfx
    assert script.lines[1].speaker == "SFX"
    assert script.lines[1].search_keywords == ["wind", "howling"]
    assert script.music_keywords == ["dark", "ambient"]


def test_writer_falls_back_to_secondary_generator():
    primary = ScriptedGenerator("garbage", "more garbage")
    secondary = ScriptedGenerator('[{"style": "bold", "headline": "LAST WATCH", "textColor": "#FF0000"}]')
    writer = StructuredScriptWriter(primary, secondary, sleep=no_sleep)

    concepts = asyncio.run(writer.generate_design_concepts("lighthouses", "English"))

    assert concepts[0].headline == "LAST WATCH"
    assert concepts[0].text_color == "#FF0000"


def test_writer_content_plan_builds_knowledge_base():
    plan = '[{"title": "T", "topic": "bells", "historicalFact": "cast in 1700", "twist": "it was silent", "structure": "linear", "tone": "wistful"}]'
    writer = StructuredScriptWriter(ScriptedGenerator(plan), sleep=no_sleep)

    ideas = asyncio.run(writer.generate_content_plan(1))

    assert ideas[0].topic == "bells"
    assert "Historical Fact: cast in 1700" in ideas[0].knowledge_base
    assert "Tone: wistful" in ideas[0].knowledge_base


def test_writer_without_secondary_surfaces_error():
    writer = StructuredScriptWriter(ScriptedGenerator("x", "y"), sleep=no_sleep)
    with pytest.raises(ChapterStudioError):
        asyncio.run(writer.generate_design_concepts("lighthouses", "English"))
