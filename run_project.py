"""
=================================================================
  CHAPTER STUDIO

  Produces narrated, chapter-by-chapter media projects and packages
  them for offline video assembly.

  HOW TO USE:
  1. Write a services factory: a function taking an AppConfig and
     returning chapter_studio.services.Services
  2. Queue projects:  python run_project.py import-csv projects.csv
                      python run_project.py plan 5 --services mymod:build
  3. Process them:    python run_project.py run --services mymod:build
  4. Find packages in 'output/packages/'

  REQUIREMENTS:
  - Python packages: pydantic, rich, requests, edge-tts, moviepy, pandas
  - ffmpeg installed (to measure/trim audio and run assemble_video.sh)
=================================================================
"""

import asyncio
import importlib
import sys
from pathlib import Path
from typing import Callable

from rich.console import Console
from rich.panel import Panel

from chapter_studio.config import AppConfig, load_config
from chapter_studio.models import GenerationSettings, ImageSource, NarrationMode, ProjectParams
from chapter_studio.packager import ChapterPackager
from chapter_studio.queue_manager import ProjectFactory, QueueManager, create_sample_csv
from chapter_studio.services import Services
from chapter_studio.speech import TTSVoice
from chapter_studio.timing import sanitize_file_name

console = Console()


def status(msg, style="cyan"):
    console.print(f"[{style}]{msg}[/{style}]")


def error(msg):
    console.print(f"[bold red]ERROR: {msg}[/bold red]")


def success(msg):
    console.print(f"[bold green]{msg}[/bold green]")


def header(msg):
    console.print(Panel(f"[bold magenta]{msg}[/bold magenta]"))


def load_services(spec: str, config: AppConfig) -> Services:
    """Import ``module:factory`` and call the factory with the config."""
    if ":" not in spec:
        raise ValueError(f"Expected module:factory, got '{spec}'")
    module_name, attr = spec.split(":", 1)
    factory: Callable[[AppConfig], Services] = getattr(importlib.import_module(module_name), attr)
    services = factory(config)
    if not isinstance(services, Services):
        raise TypeError(f"{spec} returned {type(services).__name__}, not Services")
    return services


def settings_from_args(args) -> GenerationSettings:
    return GenerationSettings(
        language=args.language,
        total_duration_minutes=args.minutes,
        narration_mode=NarrationMode(args.narration),
        image_source=ImageSource(args.images),
        images_per_chapter=args.images_per_chapter,
        creative_freedom=args.creative,
    )


async def create_single_project(config: AppConfig, services: Services, params: ProjectParams, zip_output: bool) -> int:
    """Generate one project chapter by chapter, then package it."""
    project = await ProjectFactory(services, config).create_project(params, generate_all=True)
    packager = ChapterPackager(config)
    target = Path(config.paths.packages) / f"{sanitize_file_name(project.title, 60)}_{project.id}"
    if zip_output:
        report = await packager.package_to_zip(project, target.with_suffix(".zip"))
    else:
        report = await packager.package_project(project, target)

    if not report.packaged:
        error("No chapter could be packaged")
        return 1
    success(f"Packaged {len(report.packaged)} chapters -> {report.output_dir}")
    return 0


def main() -> int:
    import argparse

    parser = argparse.ArgumentParser(
        description="Chapter Studio - Produce and package narrated chapter projects"
    )
    parser.add_argument("--config", default=None,
                        help="Path to config JSON (default: config.json next to the package)")
    parser.add_argument("--services", default=None,
                        help="Services factory as module:function, called with the AppConfig")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show queue status")
    sub.add_parser("reset-failed", help="Reset failed queue items to pending")
    sub.add_parser("clear-completed", help="Remove completed queue items")
    sub.add_parser("clear", help="Remove every queue item")
    sub.add_parser("voices", help="List short voice names")

    sample = sub.add_parser("sample-csv", help="Write an example projects CSV")
    sample.add_argument("path", type=Path)

    csv_cmd = sub.add_parser("import-csv", help="Queue projects from a CSV file")
    csv_cmd.add_argument("path", type=Path)

    def add_settings(p):
        p.add_argument("--language", default="English")
        p.add_argument("--minutes", type=int, default=5, help="Target project length in minutes")
        p.add_argument("--narration", choices=[m.value for m in NarrationMode], default=NarrationMode.DIALOGUE.value)
        p.add_argument("--images", choices=[s.value for s in ImageSource], default=ImageSource.AI.value)
        p.add_argument("--images-per-chapter", type=int, default=4)
        p.add_argument("--creative", action="store_true", help="Allow creative freedom in scripts")

    plan = sub.add_parser("plan", help="Ask the text service for N project ideas and queue them")
    plan.add_argument("count", type=int)
    add_settings(plan)

    run = sub.add_parser("run", help="Process every pending queue item")
    run.add_argument("--zip", action="store_true", help="Write each package as a zip archive")

    project = sub.add_parser("project", help="Generate and package a single project")
    project.add_argument("topic")
    project.add_argument("--knowledge", default="", help="Background facts to ground the script")
    project.add_argument("--music-volume", type=float, default=0.12)
    project.add_argument("--zip", action="store_true", help="Write the package as a zip archive")
    add_settings(project)

    args = parser.parse_args()
    config = load_config(Path(args.config) if args.config else None)

    if args.command == "voices":
        for name, voice in TTSVoice.list_voices().items():
            console.print(f"  [cyan]{name:10}[/cyan] {voice}")
        return 0

    if args.command == "sample-csv":
        create_sample_csv(args.path)
        return 0

    services = None
    if args.command in ("plan", "run", "project"):
        if not args.services:
            error(f"'{args.command}' needs --services module:factory")
            return 2
        try:
            services = load_services(args.services, config)
        except (ImportError, AttributeError, ValueError, TypeError) as e:
            error(f"Could not load services: {e}")
            return 2

    if args.command == "project":
        header(f"Project: {args.topic}")
        settings = settings_from_args(args)
        params = ProjectParams(
            topic=args.topic,
            knowledge_base=args.knowledge,
            music_volume=args.music_volume,
            **settings.model_dump(),
        )
        return asyncio.run(create_single_project(config, services, params, args.zip))

    manager = QueueManager(config, services=services)
    manager.load_state()

    if args.command == "status":
        manager.show_status()
    elif args.command == "reset-failed":
        manager.reset_failed()
    elif args.command == "clear-completed":
        manager.clear_completed()
    elif args.command == "clear":
        manager.clear_queue()
    elif args.command == "import-csv":
        if manager.add_from_csv(args.path) == 0:
            return 1
    elif args.command == "plan":
        items = asyncio.run(manager.plan(args.count, settings_from_args(args)))
        success(f"Queued {len(items)} projects")
        manager.show_status()
    elif args.command == "run":
        if args.zip:
            config.packaging.write_zip = True
        header("Processing queue")
        results = asyncio.run(manager.run_until_complete())
        status(f"Succeeded: {results.get('succeeded', 0)} | Failed: {results.get('failed', 0)}")
        manager.show_status()
        return 0 if results.get("failed", 0) == 0 else 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
