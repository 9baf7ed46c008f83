"""Per-sub-task outcomes and the policy deciding which failures are fatal."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Dict, FrozenSet, Generic, Mapping, Optional, TypeVar, Union

from chapter_studio.config import GenerationConfig


T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    reason: str
    error: Optional[BaseException] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Success[Any], Failure]


async def settle(awaitable: Awaitable[T]) -> Union[Success[T], Failure]:
    """Await and wrap the result, turning an exception into a Failure."""
    try:
        return Success(await awaitable)
    except Exception as e:
        return Failure(str(e) or type(e).__name__, e)


class AssetKind(str, Enum):
    """Concurrent sub-tasks of chapter asset generation."""
    NARRATION = "narration"
    IMAGES = "images"
    MUSIC = "music"
    SOUND_EFFECTS = "sound_effects"


async def settle_all(tasks: Mapping[AssetKind, Awaitable[Any]]) -> Dict[AssetKind, Outcome]:
    """Run every sub-task concurrently and collect one outcome per kind."""
    kinds = list(tasks)
    outcomes = await asyncio.gather(*(settle(tasks[kind]) for kind in kinds))
    return dict(zip(kinds, outcomes))


@dataclass(frozen=True)
class AssetPolicy:
    """Decision table naming the sub-tasks whose failure fails the chapter.

    ======================  =========================================
    sub-task                failure effect
    ======================  =========================================
    narration               chapter -> error
    music                   chapter -> error only if music_required
    images                  omitted, logged
    sound_effects           omitted, logged
    ======================  =========================================
    """
    mandatory: FrozenSet[AssetKind] = frozenset({AssetKind.NARRATION})

    @classmethod
    def from_config(cls, generation: GenerationConfig) -> "AssetPolicy":
        mandatory = {AssetKind.NARRATION}
        if generation.music_required:
            mandatory.add(AssetKind.MUSIC)
        return cls(mandatory=frozenset(mandatory))

    def is_mandatory(self, kind: AssetKind) -> bool:
        return kind in self.mandatory

    def blocking_failures(self, outcomes: Mapping[AssetKind, Outcome]) -> Dict[AssetKind, Failure]:
        """Failures that must move the chapter to error."""
        return {
            kind: outcome
            for kind, outcome in outcomes.items()
            if isinstance(outcome, Failure) and self.is_mandatory(kind)
        }

    def degraded(self, outcomes: Mapping[AssetKind, Outcome]) -> Dict[AssetKind, Failure]:
        """Failures that are only logged and replaced by empty results."""
        return {
            kind: outcome
            for kind, outcome in outcomes.items()
            if isinstance(outcome, Failure) and not self.is_mandatory(kind)
        }
