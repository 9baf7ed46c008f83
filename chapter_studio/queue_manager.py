"""Queue manager for batch project generation, plus continuous chapter mode."""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional
from uuid import uuid4
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn

from chapter_studio.chapter_state import ChapterEvent, ProjectStore
from chapter_studio.config import AppConfig, load_config
from chapter_studio.models import (
    ChapterStatus, GenerationSettings, ImageSource, NarrationMode, Project, ProjectParams,
    QueueItem, QueueState, QueueStatus,
)
from chapter_studio.orchestrator import ChapterOrchestrator, build_project
from chapter_studio.packager import ChapterPackager, PackageReport
from chapter_studio.resilience import call_with_retries
from chapter_studio.services import Services
from chapter_studio.timing import sanitize_file_name

console = Console()


class ChapterAutoRunner:
    """Generates a project's pending chapters one at a time.

    A chapter is started only when none is generating and the runner is not
    paused. Pausing withholds the next chapter; the one in flight finishes.
    """

    def __init__(self, store: ProjectStore, orchestrator: ChapterOrchestrator):
        self.store = store
        self.orchestrator = orchestrator
        self.paused = False
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _on_event(self, event: ChapterEvent) -> None:
        if event.status_changed and not event.current.status.is_generating:
            self._wake.set()

    def start(self) -> asyncio.Task:
        """Start the loop in the background; returns the tracked task."""
        if self.running:
            return self._task
        self._task = asyncio.ensure_future(self._run())
        return self._task

    def pause(self) -> None:
        self.paused = True
        console.print("[yellow]Chapter generation paused after the current chapter[/yellow]")

    def resume(self) -> None:
        self.paused = False
        self._wake.set()
        console.print("[cyan]Chapter generation resumed[/cyan]")

    async def run_until_idle(self) -> None:
        """Run until no pending chapter remains."""
        await self.start()

    async def _run(self) -> None:
        unsubscribe = self.store.subscribe(self._on_event)
        try:
            while True:
                self._wake.clear()
                if self.paused or self.store.is_generating:
                    await self._wake.wait()
                    continue

                chapter = self.store.next_pending()
                if chapter is None:
                    break
                await self.orchestrator.generate_chapter(chapter.id)
        finally:
            unsubscribe()


class ProjectFactory:
    """Headless project creation: blueprint, chapters, then every chapter."""

    def __init__(
        self,
        services: Services,
        config: Optional[AppConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.services = services
        self.config = config or load_config()
        self.sleep = sleep

    async def create_project(self, params: ProjectParams, generate_all: bool = True) -> Project:
        """Create a project and optionally generate all of its chapters.

        Args:
            params: Generation parameters.
            generate_all: Run every chapter through generation before returning.

        Returns:
            The project as it stands after generation.
        """
        retry = self.config.retry
        console.print(f"\n[bold cyan]Planning project: {params.topic}[/bold cyan]")
        blueprint = await call_with_retries(
            lambda: self.services.script.generate_blueprint(params),
            max_attempts=retry.max_attempts,
            initial_delay_ms=retry.initial_delay_ms,
            timeout=retry.call_timeout_seconds,
            label="project blueprint",
            sleep=self.sleep,
        )

        store = ProjectStore(build_project(params, blueprint, self.config))
        console.print(
            f"[green]Project '{store.project.title}' created with {len(store.project.chapters)} chapters[/green]"
        )
        if not generate_all:
            return store.project

        orchestrator = ChapterOrchestrator(store, self.services, self.config, sleep=self.sleep)
        await ChapterAutoRunner(store, orchestrator).run_until_idle()
        await orchestrator.drain_background_tasks()
        return store.project


class QueueManager:
    """Manages the processing queue of planned projects."""

    QUEUE_FILE = "queue_state.json"

    def __init__(
        self,
        config: AppConfig,
        services: Optional[Services] = None,
        factory: Optional[ProjectFactory] = None,
        packager: Optional[ChapterPackager] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.state: QueueState = QueueState()
        self.queue_path = Path(config.paths.output) / self.QUEUE_FILE
        self.factory = factory or (ProjectFactory(services, config, sleep=sleep) if services else None)
        self.packager = packager or ChapterPackager(config)
        self.sleep = sleep
        self.paused = False
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._results: Dict[str, int] = {}

    def load_state(self) -> None:
        """Load queue state from disk; interrupted items go back to pending."""
        if self.queue_path.exists():
            with open(self.queue_path, "r") as f:
                data = json.load(f)
                self.state = QueueState(**data)
            for item in self.state.get_in_progress():
                item.status = QueueStatus.PENDING
                item.started_at = None
            console.print(f"[cyan]Loaded queue with {len(self.state.items)} items[/cyan]")
        else:
            self.state = QueueState()

    def save_state(self) -> None:
        """Save queue state to disk."""
        self.state.last_updated = datetime.now()
        self.queue_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.queue_path, "w") as f:
            json.dump(self.state.model_dump(mode="json"), f, indent=2, default=str)

    def add_item(self, params: ProjectParams, title: str = "", save: bool = True) -> QueueItem:
        """Add a fully specified project to the queue."""
        item = QueueItem(id=str(uuid4())[:8], title=title or params.topic, params=params)
        self.state.add_item(item)
        if save:
            self.save_state()
        console.print(f"[green]Queued: {item.title}[/green]")
        return item

    def add_from_csv(self, csv_path: Path) -> int:
        """Load project parameters from CSV and add them to the queue.

        Only ``topic`` is required; other columns match ``ProjectParams``
        field names plus an optional ``title``.
        """
        import pandas as pd

        if not csv_path.exists():
            console.print(f"[red]CSV file not found: {csv_path}[/red]")
            return 0

        df = pd.read_csv(csv_path)
        count = 0

        for _, row in df.iterrows():
            values = {
                key: row[key] for key in ProjectParams.model_fields
                if key in row.index and pd.notna(row[key]) and str(row[key]).strip() != ""
            }
            if "topic" not in values:
                console.print(f"[yellow]Skipping CSV row without topic: {dict(row)}[/yellow]")
                continue
            for key in ("total_duration_minutes", "images_per_chapter"):
                if key in values:
                    values[key] = int(values[key])
            if "music_volume" in values:
                values["music_volume"] = float(values["music_volume"])
            if "creative_freedom" in values:
                values["creative_freedom"] = str(values["creative_freedom"]).strip().lower() in ("1", "true", "yes")
            for key in ("topic", "knowledge_base", "language"):
                if key in values:
                    values[key] = str(values[key]).strip()

            title = str(row["title"]).strip() if "title" in row.index and pd.notna(row["title"]) else ""
            self.add_item(ProjectParams(**values), title=title, save=False)
            count += 1

        self.save_state()
        console.print(f"[green]Added {count} projects from {csv_path.name}[/green]")
        return count

    async def plan(self, count: int, settings: Optional[GenerationSettings] = None) -> List[QueueItem]:
        """Ask the text service for a content plan and queue each idea."""
        if self.factory is None:
            raise ValueError("Planning needs services to be configured")
        settings = settings or GenerationSettings()
        retry = self.config.retry

        console.print(f"[cyan]Planning {count} projects...[/cyan]")
        ideas = await call_with_retries(
            lambda: self.factory.services.script.generate_content_plan(count),
            max_attempts=retry.max_attempts,
            initial_delay_ms=retry.initial_delay_ms,
            timeout=retry.call_timeout_seconds,
            label="content plan",
            sleep=self.sleep,
        )

        items = []
        for idea in ideas:
            params = ProjectParams(
                topic=idea.topic,
                knowledge_base=idea.knowledge_base,
                **settings.model_dump(),
            )
            items.append(self.add_item(params, title=idea.title, save=False))
        self.save_state()
        return items

    def get_next_pending(self) -> Optional[QueueItem]:
        """Get the next pending item from the queue."""
        for item in self.state.items:
            if item.status == QueueStatus.PENDING:
                return item
        return None

    def update_item_status(
        self,
        item_id: str,
        status: QueueStatus,
        error_message: Optional[str] = None
    ) -> None:
        """Update the status of a queue item."""
        for item in self.state.items:
            if item.id == item_id:
                if status == QueueStatus.IN_PROGRESS and any(
                    other.id != item_id for other in self.state.get_in_progress()
                ):
                    raise RuntimeError("Another queue item is already in progress")
                item.status = status
                if status == QueueStatus.IN_PROGRESS:
                    item.started_at = datetime.now()
                elif status in [QueueStatus.COMPLETED, QueueStatus.ERROR]:
                    item.completed_at = datetime.now()
                if error_message:
                    item.error_message = error_message
                break
        self.save_state()

    def mark_completed(self, item_id: str, output_path: Optional[str] = None) -> None:
        """Mark an item as completed."""
        for item in self.state.items:
            if item.id == item_id:
                item.output_path = output_path
                item.error_message = None
        self.update_item_status(item_id, QueueStatus.COMPLETED)

    def mark_error(self, item_id: str, error: str) -> None:
        """Mark an item as failed."""
        self.update_item_status(item_id, QueueStatus.ERROR, error)

    def clear_queue(self) -> None:
        """Clear all items from the queue."""
        self.state = QueueState()
        self.save_state()
        console.print("[yellow]Queue cleared[/yellow]")

    def clear_completed(self) -> None:
        """Remove completed items from the queue."""
        self.state.items = [
            item for item in self.state.items
            if item.status != QueueStatus.COMPLETED
        ]
        self.save_state()
        console.print("[yellow]Completed items removed[/yellow]")

    def reset_failed(self) -> None:
        """Reset failed items to pending."""
        for item in self.state.items:
            if item.status == QueueStatus.ERROR:
                item.status = QueueStatus.PENDING
                item.error_message = None
                item.started_at = None
                item.completed_at = None
        self.save_state()
        console.print("[yellow]Failed items reset to pending[/yellow]")

    def archive_completed(self) -> None:
        """Move every item to the archive once the whole queue has completed."""
        if not self.state.all_completed:
            return
        self.state.archived.extend(self.state.items)
        self.state.items = []
        self.save_state()
        console.print("[cyan]All queued projects completed; queue archived[/cyan]")

    def show_status(self) -> None:
        """Display queue status as a table."""
        table = Table(title="Queue Status")
        table.add_column("ID", style="cyan")
        table.add_column("Title", style="magenta", max_width=40)
        table.add_column("Minutes", style="blue")
        table.add_column("Status", style="green")
        table.add_column("Output", style="blue", max_width=30)
        table.add_column("Error", style="red", max_width=30)

        for item in self.state.items:
            status_style = {
                QueueStatus.PENDING: "white",
                QueueStatus.IN_PROGRESS: "cyan",
                QueueStatus.COMPLETED: "green",
                QueueStatus.ERROR: "red",
            }.get(item.status, "white")

            table.add_row(
                item.id,
                item.title,
                str(item.params.total_duration_minutes),
                f"[{status_style}]{item.status.value}[/{status_style}]",
                item.output_path or "",
                (item.error_message or "")[:30],
            )

        console.print(table)

        pending = len(self.state.get_pending())
        in_progress = len(self.state.get_in_progress())
        completed = len(self.state.get_completed())
        failed = len(self.state.get_failed())

        console.print(f"\n[bold]Summary:[/bold] {pending} pending | {in_progress} in progress | {completed} completed | {failed} failed")
        console.print(f"[bold]Progress:[/bold] {self.state.progress_percent:.1f}%")
        if self.state.archived:
            console.print(f"[dim]Archived: {len(self.state.archived)} items[/dim]")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start processing in the background; returns the tracked task."""
        if self.factory is None:
            raise ValueError("Processing needs services to be configured")
        if self.running:
            return self._task
        self._results = {"processed": 0, "succeeded": 0, "failed": 0}
        self._task = asyncio.ensure_future(self._run())
        return self._task

    def pause(self) -> None:
        """Withhold the next item; the one in progress finishes."""
        self.paused = True
        console.print("[yellow]Queue paused after the current item[/yellow]")

    def resume(self) -> None:
        self.paused = False
        self._wake.set()
        console.print("[cyan]Queue resumed[/cyan]")

    async def run_until_complete(self) -> Dict[str, int]:
        """Process pending items until none remain."""
        await self.start()
        return dict(self._results)

    async def _run(self) -> None:
        pending_count = len(self.state.get_pending())
        if pending_count == 0:
            console.print("[yellow]No pending items in queue[/yellow]")
            return

        console.print(f"\n[bold cyan]Starting queue processing ({pending_count} items)[/bold cyan]\n")

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Processing queue...", total=pending_count)

            while True:
                if self.paused:
                    self._wake.clear()
                    await self._wake.wait()
                    continue

                item = self.get_next_pending()
                if not item:
                    break

                progress.update(task, description=item.title)
                succeeded = await self.process_item(item)

                self._results["processed"] += 1
                self._results["succeeded" if succeeded else "failed"] += 1
                progress.advance(task)

                if self.config.queue.delay_between_items > 0:
                    await self.sleep(self.config.queue.delay_between_items)

        console.print(f"\n[bold]Queue processing complete![/bold]")
        console.print(
            f"Processed: {self._results['processed']} | Succeeded: {self._results['succeeded']} "
            f"| Failed: {self._results['failed']}"
        )
        if self.config.queue.archive_completed:
            self.archive_completed()

    async def process_item(self, item: QueueItem) -> bool:
        """Create, generate and package one queued project."""
        self.update_item_status(item.id, QueueStatus.IN_PROGRESS)

        try:
            project = await self.factory.create_project(item.params, generate_all=True)
            failed = [c for c in project.chapters if c.status == ChapterStatus.ERROR]
            if len(failed) == len(project.chapters):
                raise RuntimeError(f"No chapter of '{project.title}' completed")
            if failed:
                console.print(f"[yellow]{len(failed)} chapters of '{project.title}' failed; packaging the rest[/yellow]")

            report = await self._package(project)
            if not report.packaged:
                raise RuntimeError(f"Packaging '{project.title}' produced no chapters")

            self.mark_completed(item.id, str(report.output_dir))
            console.print(f"[green][OK] {item.title} -> {report.output_dir}[/green]")
            return True
        except Exception as e:
            self.mark_error(item.id, str(e) or type(e).__name__)
            console.print(f"[red][FAIL] {item.title}: {e}[/red]")
            return False

    async def _package(self, project: Project) -> PackageReport:
        name = f"{sanitize_file_name(project.title, 60)}_{project.id}"
        target = Path(self.config.paths.packages) / name
        if self.config.packaging.write_zip:
            return await self.packager.package_to_zip(project, target.with_suffix(".zip"))
        return await self.packager.package_project(project, target)


def create_sample_csv(output_path: Path) -> None:
    """Create a sample projects CSV file."""
    import pandas as pd

    sample_data = [
        {
            "title": "The Lighthouse Keeper's Last Night",
            "topic": "A lighthouse keeper's final watch before automation",
            "language": "English",
            "total_duration_minutes": 10,
            "narration_mode": NarrationMode.MONOLOGUE.value,
            "image_source": ImageSource.AI.value,
        },
        {
            "title": "The Cartographer's Mistake",
            "topic": "A mapmaker who invented an island that later appeared",
            "language": "English",
            "total_duration_minutes": 15,
            "narration_mode": NarrationMode.DIALOGUE.value,
            "image_source": ImageSource.STOCK.value,
        },
    ]

    df = pd.DataFrame(sample_data)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=False)
    console.print(f"[green]Sample CSV created: {output_path}[/green]")
