"""Structured JSON output from free-form text generators.

Parsing is a two-stage operation. ``parse_structured_response`` returns a
tagged result; ``NeedsCorrection`` triggers exactly one correction request in
which the generator is shown its own malformed output.
"""

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationError, field_validator
from rich.console import Console

from chapter_studio.config import RetryConfig
from chapter_studio.models import (
    ChapterScript, ContentIdea, NarrationMode, ProjectBlueprint, ProjectParams, ScriptLine,
    SFX_SPEAKER, ThumbnailDesignConcept,
)
from chapter_studio.resilience import StructuredOutputError, generate_with_fallback
from chapter_studio.services import ChapterContext


console = Console()

TextGenerator = Callable[[str], Awaitable[str]]

FENCE_PATTERN = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class Ok:
    value: Any


@dataclass(frozen=True)
class NeedsCorrection:
    raw: str
    reason: str


@dataclass(frozen=True)
class Failed:
    reason: str


ParseResult = Union[Ok, NeedsCorrection, Failed]


def strip_code_fence(text: str) -> str:
    match = FENCE_PATTERN.match(text)
    return match.group(1) if match else text.strip()


def _extract_json_block(text: str) -> Optional[str]:
    """Cut the outermost JSON object or array out of surrounding prose."""
    starts = [pos for pos in (text.find("{"), text.find("[")) if pos >= 0]
    if not starts:
        return None
    start = min(starts)
    end = text.rfind("}" if text[start] == "{" else "]")
    if end <= start:
        return None
    return text[start:end + 1]


def parse_structured_response(
    raw: str,
    model: Optional[Type[BaseModel]] = None,
    allow_correction: bool = True,
) -> ParseResult:
    """Parse a JSON response, optionally validating it against a model.

    Args:
        raw: Text returned by the generator.
        model: Pydantic model to validate the parsed data with.
        allow_correction: Whether a malformed response may be sent back for fixing.

    Returns:
        Ok with the parsed (and validated) value, NeedsCorrection when a
        correction round may help, or Failed.
    """
    if not raw or not raw.strip():
        return Failed("empty response from text service")

    def reject(reason: str) -> ParseResult:
        return NeedsCorrection(raw, reason) if allow_correction else Failed(reason)

    text = strip_code_fence(raw)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        block = _extract_json_block(text)
        if block is None:
            return reject(f"response is not JSON: {e}")
        try:
            data = json.loads(block)
        except json.JSONDecodeError as inner:
            return reject(f"malformed JSON: {inner}")

    if model is None:
        return Ok(data)

    try:
        return Ok(model.model_validate(data))
    except ValidationError as e:
        return reject(f"unexpected JSON shape: {e.error_count()} validation error(s)")


def correction_prompt(result: NeedsCorrection) -> str:
    return (
        "The following text was supposed to be valid JSON but could not be used "
        f"({result.reason}). Return only the corrected JSON, with no commentary "
        "and no code fences.\n\n"
        f"{result.raw}"
    )


async def generate_structured(
    generate: TextGenerator,
    prompt: str,
    model: Optional[Type[BaseModel]] = None,
) -> Any:
    """Ask for JSON, with one correction round for malformed output.

    Raises:
        StructuredOutputError: The response is still unusable after correction.
    """
    result = parse_structured_response(await generate(prompt), model)

    if isinstance(result, NeedsCorrection):
        console.print(f"[yellow]Structured output rejected ({result.reason}), requesting correction[/yellow]")
        corrected = await generate(correction_prompt(result))
        result = parse_structured_response(corrected, model, allow_correction=False)

    if isinstance(result, Ok):
        return result.value
    raise StructuredOutputError(f"Text service returned unusable output: {result.reason}")


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _LinePayload(_Payload):
    speaker: str
    text: str = ""
    search_keywords: Optional[List[str]] = Field(default=None, alias="searchKeywords")

    @field_validator("search_keywords", mode="before")
    @classmethod
    def _split_keywords(cls, value):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class _ScriptPayload(_Payload):
    title: str
    lines: List[_LinePayload] = Field(default_factory=list)
    music_keywords: List[str] = Field(default_factory=list, alias="musicKeywords")
    visual_prompts: List[str] = Field(default_factory=list, alias="visualPrompts")


class _BlueprintPayload(_Payload):
    title_options: List[str] = Field(default_factory=list, alias="titleOptions")
    description: str = ""
    keywords: List[str] = Field(default_factory=list)
    characters: List[str] = Field(default_factory=list)
    thumbnail_text: str = Field(default="", alias="thumbnailText")


class _IdeaPayload(_Payload):
    title: str
    topic: str
    historical_fact: str = Field(default="", alias="historicalFact")
    twist: str = ""
    structure: str = ""
    tone: str = ""


class _ConceptPayload(_Payload):
    style: str
    headline: str = ""
    description: str = ""
    text_color: str = Field(default="#FFFFFF", alias="textColor")


class _IdeaListPayload(RootModel[List[_IdeaPayload]]):
    pass


class _ConceptListPayload(RootModel[List[_ConceptPayload]]):
    pass


class StructuredScriptWriter:
    """Script, blueprint and planning service over raw text generators.

    Each request goes to the primary generator with retries and falls back to
    the secondary generator when the primary gives up.
    """

    def __init__(
        self,
        primary: TextGenerator,
        secondary: Optional[TextGenerator] = None,
        retry: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.primary = primary
        self.secondary = secondary
        self.retry = retry or RetryConfig()
        self.sleep = sleep

    async def _request(self, prompt: str, model: Type[BaseModel], label: str) -> Any:
        async def primary():
            return await generate_structured(self.primary, prompt, model)

        async def secondary():
            return await generate_structured(self.secondary, prompt, model)

        return await generate_with_fallback(
            primary,
            secondary if self.secondary is not None else None,
            max_attempts=self.retry.max_attempts,
            initial_delay_ms=self.retry.initial_delay_ms,
            timeout=self.retry.call_timeout_seconds,
            label=label,
            sleep=self.sleep,
        )

    async def generate_script(self, context: ChapterContext) -> ChapterScript:
        payload = await self._request(script_prompt(context), _ScriptPayload, f"script for chapter {context.chapter_number}")
        lines = [
            ScriptLine(
                speaker=SFX_SPEAKER if line.speaker.strip().upper() == SFX_SPEAKER else line.speaker.strip(),
                text=line.text.strip(),
                search_keywords=line.search_keywords,
            )
            for line in payload.lines
        ]
        return ChapterScript(
            title=payload.title,
            lines=lines,
            music_keywords=payload.music_keywords,
            visual_prompts=payload.visual_prompts,
        )

    async def generate_blueprint(self, params: ProjectParams) -> ProjectBlueprint:
        payload = await self._request(blueprint_prompt(params), _BlueprintPayload, "project blueprint")
        return ProjectBlueprint(**payload.model_dump())

    async def generate_content_plan(self, count: int) -> List[ContentIdea]:
        ideas = await self._request(content_plan_prompt(count), _IdeaListPayload, "content plan")
        return [
            ContentIdea(
                title=idea.title,
                topic=idea.topic,
                knowledge_base=(
                    f"Historical Fact: {idea.historical_fact}\n"
                    f"Twist: {idea.twist}\n"
                    f"Structure: {idea.structure}\n"
                    f"Tone: {idea.tone}"
                ),
            )
            for idea in ideas.root[:count]
        ]

    async def generate_design_concepts(self, topic: str, language: str) -> List[ThumbnailDesignConcept]:
        concepts = await self._request(design_concepts_prompt(topic, language), _ConceptListPayload, "thumbnail concepts")
        return [ThumbnailDesignConcept(**concept.model_dump()) for concept in concepts.root]


def script_prompt(context: ChapterContext) -> str:
    if context.narration_mode == NarrationMode.MONOLOGUE:
        voices = "Use a single speaker named Narrator for every spoken line."
    else:
        cast = ", ".join(context.characters) or "Narrator plus up to two characters"
        voices = f"Write it as a dialogue between: {cast}."
    previous = "; ".join(context.previous_titles) or "none"
    return (
        f"Write chapter {context.chapter_number} of {context.total_chapters} of a narrated story "
        f"about: {context.topic}.\n"
        f"Language: {context.language}. {voices}\n"
        f"Previous chapters: {previous}.\n"
        f"Background notes:\n{context.knowledge_base or 'none'}\n"
        f"{'You may take creative liberties with the facts.' if context.creative_freedom else 'Stay faithful to the facts.'}\n"
        f"Insert sound-effect cues as lines whose speaker is \"{SFX_SPEAKER}\", with a short "
        "description as text and searchKeywords listing 1-3 English search terms.\n"
        f"Return JSON: {{\"title\": str, \"lines\": [{{\"speaker\": str, \"text\": str, "
        f"\"searchKeywords\": [str]}}], \"musicKeywords\": [str], "
        f"\"visualPrompts\": [str x {context.images_per_chapter}]}}"
    )


def blueprint_prompt(params: ProjectParams) -> str:
    return (
        f"Plan a narrated video project about: {params.topic}.\n"
        f"Language: {params.language}. Target length: {params.total_duration_minutes} minutes.\n"
        f"Background notes:\n{params.knowledge_base or 'none'}\n"
        "Return JSON: {\"titleOptions\": [str x 3], \"description\": str, "
        "\"keywords\": [str], \"characters\": [str], \"thumbnailText\": str}"
    )


def content_plan_prompt(count: int) -> str:
    return (
        f"Propose {count} distinct ideas for narrated history videos.\n"
        "Return a JSON array of objects: {\"title\": str, \"topic\": str, "
        "\"historicalFact\": str, \"twist\": str, \"structure\": str, \"tone\": str}"
    )


def design_concepts_prompt(topic: str, language: str) -> str:
    return (
        f"Propose three thumbnail design concepts for a video about: {topic}.\n"
        f"Headlines must be in {language} and at most five words.\n"
        "Return a JSON array of objects: {\"style\": str, \"headline\": str, "
        "\"description\": str, \"textColor\": str}"
    )
