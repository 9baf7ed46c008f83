"""Chapter lifecycle and the project store that owns chapter state."""

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional

from rich.console import Console

from chapter_studio.models import Chapter, ChapterStatus, Project
from chapter_studio.resilience import ChapterStudioError


console = Console()


ALLOWED_TRANSITIONS: Dict[ChapterStatus, FrozenSet[ChapterStatus]] = {
    ChapterStatus.PENDING: frozenset({
        ChapterStatus.SCRIPT_GENERATING,
        ChapterStatus.ERROR,
    }),
    ChapterStatus.SCRIPT_GENERATING: frozenset({
        ChapterStatus.AUDIO_GENERATING,
        ChapterStatus.IMAGES_GENERATING,
        ChapterStatus.ERROR,
    }),
    ChapterStatus.AUDIO_GENERATING: frozenset({
        ChapterStatus.IMAGES_GENERATING,
        ChapterStatus.COMPLETED,
        ChapterStatus.ERROR,
    }),
    ChapterStatus.IMAGES_GENERATING: frozenset({
        ChapterStatus.AUDIO_GENERATING,
        ChapterStatus.COMPLETED,
        ChapterStatus.ERROR,
    }),
    # Regeneration side transitions.
    ChapterStatus.COMPLETED: frozenset({
        ChapterStatus.AUDIO_GENERATING,
        ChapterStatus.IMAGES_GENERATING,
    }),
    ChapterStatus.ERROR: frozenset({
        ChapterStatus.PENDING,
        ChapterStatus.AUDIO_GENERATING,
        ChapterStatus.IMAGES_GENERATING,
    }),
}

PROTECTED_FIELDS = {"id", "status"}


class InvalidTransitionError(ChapterStudioError):
    """A chapter was asked to move to a status it cannot reach."""

    def __init__(self, chapter_id: str, current: ChapterStatus, target: ChapterStatus):
        super().__init__(f"Chapter {chapter_id}: cannot move from {current.value} to {target.value}")
        self.chapter_id = chapter_id
        self.current = current
        self.target = target


class ChapterNotFoundError(ChapterStudioError):
    """No chapter with the given id exists in the project."""


def can_transition(current: ChapterStatus, target: ChapterStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class ChapterEvent:
    """Emitted to listeners after a chapter object was replaced."""
    project_id: str
    previous: Chapter
    current: Chapter

    @property
    def status_changed(self) -> bool:
        return self.previous.status != self.current.status

    @property
    def audio_replaced(self) -> bool:
        """True when playback handles derived from the old audio must be released."""
        return self.previous.audio is not self.current.audio


ChapterListener = Callable[[ChapterEvent], None]


class ProjectStore:
    """Holds the current project and applies every chapter update.

    Projects and chapters are frozen models. Each update builds a new chapter
    from the old one plus the named fields, then a new project around it, so
    a reader holding ``store.project`` never sees a half-applied change.
    """

    def __init__(self, project: Project):
        self._project = project
        self._listeners: List[ChapterListener] = []

    @property
    def project(self) -> Project:
        return self._project

    def subscribe(self, listener: ChapterListener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get_chapter(self, chapter_id: str) -> Chapter:
        chapter = self._project.get_chapter(chapter_id)
        if chapter is None:
            raise ChapterNotFoundError(f"Chapter {chapter_id} not found in project {self._project.id}")
        return chapter

    def chapters_with_status(self, status: ChapterStatus) -> List[Chapter]:
        return [chapter for chapter in self._project.chapters if chapter.status == status]

    def next_pending(self) -> Optional[Chapter]:
        for chapter in self._project.chapters:
            if chapter.status == ChapterStatus.PENDING:
                return chapter
        return None

    @property
    def is_generating(self) -> bool:
        return any(chapter.status.is_generating for chapter in self._project.chapters)

    def update_chapter(
        self,
        chapter_id: str,
        status: Optional[ChapterStatus] = None,
        **fields,
    ) -> Chapter:
        """Replace a chapter with a copy carrying the given status and fields.

        Fields that are not named keep their current values. Leaving the
        error state clears the error message; entering it requires one.

        Args:
            chapter_id: Chapter to update.
            status: Target status, or None to keep the current one.
            **fields: Chapter fields to replace.

        Returns:
            The new chapter object.

        Raises:
            ChapterNotFoundError: Unknown chapter id.
            InvalidTransitionError: The status change is not allowed.
            ValueError: Unknown or protected field names, or a missing error message.
        """
        unknown = set(fields) - (set(Chapter.model_fields) - PROTECTED_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update chapter fields: {', '.join(sorted(unknown))}")

        index = self._project.chapter_index(chapter_id)
        if index < 0:
            raise ChapterNotFoundError(f"Chapter {chapter_id} not found in project {self._project.id}")
        previous = self._project.chapters[index]

        update = dict(fields)
        if status is not None and status != previous.status:
            if not can_transition(previous.status, status):
                raise InvalidTransitionError(chapter_id, previous.status, status)
            update["status"] = status
            if status == ChapterStatus.ERROR:
                if not fields.get("error"):
                    raise ValueError("Moving a chapter to error requires an error message")
            elif "error" not in fields:
                update["error"] = None

        current = previous.model_copy(update=update)
        chapters = list(self._project.chapters)
        chapters[index] = current
        self._project = self._project.model_copy(update={"chapters": chapters})

        self._notify(ChapterEvent(self._project.id, previous, current))
        return current

    def update_project(self, **fields) -> Project:
        """Replace project-level fields such as thumbnails or design concepts."""
        if "chapters" in fields or "id" in fields:
            raise ValueError("Chapters and project id are changed only through chapter updates")
        unknown = set(fields) - set(Project.model_fields)
        if unknown:
            raise ValueError(f"Cannot update project fields: {', '.join(sorted(unknown))}")
        self._project = self._project.model_copy(update=fields)
        return self._project

    def _notify(self, event: ChapterEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                console.print(f"[red]Chapter listener failed: {e}[/red]")
