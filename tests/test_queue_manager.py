import asyncio
import json
import time
from pathlib import Path

from chapter_studio.audio_tools import silence_wav
from chapter_studio.chapter_state import ProjectStore
from chapter_studio.models import (
    ChapterStatus, GenerationSettings, NarrationMode, ProjectBlueprint, ProjectParams, QueueStatus,
)
from chapter_studio.orchestrator import ChapterOrchestrator, build_project
from chapter_studio.queue_manager import ChapterAutoRunner, ProjectFactory, QueueManager

from tests.fakes import FakeScriptService, FakeSpeech, make_config, make_services, no_sleep


class RecordingQueueManager(QueueManager):
    """Records how many items are in progress every time state is saved."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.in_progress_counts = []

    def save_state(self) -> None:
        self.in_progress_counts.append(len(self.state.get_in_progress()))
        super().save_state()


class GatedSpeech(FakeSpeech):
    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def synthesize(self, lines, narration):
        self.calls += 1
        await self.gate.wait()
        return silence_wav(self.seconds, 8000)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_queue_processes_items_one_at_a_time(tmp_path):
    config = make_config(tmp_path)
    services = make_services()
    manager = RecordingQueueManager(config, services=services, sleep=no_sleep)
    for topic in ("first", "second", "third"):
        manager.add_item(ProjectParams(topic=topic))

    results = asyncio.run(manager.run_until_complete())

    assert results == {"processed": 3, "succeeded": 3, "failed": 0}
    assert max(manager.in_progress_counts) == 1
    assert services.script.blueprints == ["first", "second", "third"]
    # Fully completed queues are archived.
    assert manager.state.items == []
    assert [item.status for item in manager.state.archived] == [QueueStatus.COMPLETED] * 3
    for item in manager.state.archived:
        assert (Path(item.output_path) / "project_metadata.json").exists()


def test_failed_item_does_not_halt_queue(tmp_path):
    config = make_config(tmp_path)
    services = make_services(script=FakeScriptService(fail_topics={"broken"}))
    manager = QueueManager(config, services=services, sleep=no_sleep)
    for topic in ("first", "broken", "third"):
        manager.add_item(ProjectParams(topic=topic))

    results = asyncio.run(manager.run_until_complete())

    assert results == {"processed": 3, "succeeded": 2, "failed": 1}
    statuses = {item.params.topic: item.status for item in manager.state.items}
    assert statuses == {
        "first": QueueStatus.COMPLETED,
        "broken": QueueStatus.ERROR,
        "third": QueueStatus.COMPLETED,
    }
    broken = next(item for item in manager.state.items if item.params.topic == "broken")
    assert "cannot plan broken" in broken.error_message
    assert manager.state.archived == []


def test_item_with_no_completed_chapter_is_an_error(tmp_path):
    config = make_config(tmp_path)
    services = make_services(speech=FakeSpeech(fail=True))
    manager = QueueManager(config, services=services, sleep=no_sleep)
    item = manager.add_item(ProjectParams(topic="silent"))

    asyncio.run(manager.run_until_complete())

    assert manager.state.items[0].id == item.id
    assert manager.state.items[0].status == QueueStatus.ERROR


def test_state_persists_and_resets_interrupted_items(tmp_path):
    config = make_config(tmp_path)
    manager = QueueManager(config)
    item = manager.add_item(ProjectParams(topic="lighthouse", narration_mode=NarrationMode.MONOLOGUE))
    manager.update_item_status(item.id, QueueStatus.IN_PROGRESS)

    saved = json.loads(manager.queue_path.read_text())
    assert saved["items"][0]["status"] == "in_progress"

    reloaded = QueueManager(config)
    reloaded.load_state()
    assert reloaded.state.items[0].status == QueueStatus.PENDING
    assert reloaded.state.items[0].params.narration_mode == NarrationMode.MONOLOGUE


def test_maintenance_operations(tmp_path):
    manager = QueueManager(make_config(tmp_path))
    first = manager.add_item(ProjectParams(topic="a"))
    second = manager.add_item(ProjectParams(topic="b"))
    manager.mark_completed(first.id, "out/a")
    manager.mark_error(second.id, "boom")

    manager.reset_failed()
    assert manager.state.items[1].status == QueueStatus.PENDING
    assert manager.state.items[1].error_message is None

    manager.clear_completed()
    assert [item.params.topic for item in manager.state.items] == ["b"]

    manager.clear_queue()
    assert manager.state.items == []


def test_add_from_csv(tmp_path):
    csv_path = tmp_path / "projects.csv"
    csv_path.write_text(
        "title,topic,total_duration_minutes,narration_mode,creative_freedom\n"
        "The Keeper,lighthouse keepers,10,monologue,true\n"
        ",,5,dialogue,false\n"
        ",river ferries,,,\n"
    )
    manager = QueueManager(make_config(tmp_path))

    count = manager.add_from_csv(csv_path)

    assert count == 2
    first, second = manager.state.items
    assert first.title == "The Keeper"
    assert first.params.total_duration_minutes == 10
    assert first.params.narration_mode == NarrationMode.MONOLOGUE
    assert first.params.creative_freedom is True
    assert second.title == "river ferries"
    assert second.params.total_duration_minutes == 5


def test_plan_queues_content_ideas(tmp_path):
    manager = QueueManager(make_config(tmp_path), services=make_services(), sleep=no_sleep)

    items = asyncio.run(manager.plan(2, GenerationSettings(total_duration_minutes=10)))

    assert [item.title for item in items] == ["Idea 1", "Idea 2"]
    assert all(item.params.total_duration_minutes == 10 for item in items)
    assert len(manager.state.get_pending()) == 2


def test_factory_without_generation_leaves_chapters_pending(tmp_path):
    config = make_config(tmp_path)
    factory = ProjectFactory(make_services(), config, sleep=no_sleep)

    project = asyncio.run(factory.create_project(ProjectParams(topic="bells", total_duration_minutes=10), generate_all=False))

    assert len(project.chapters) == 2
    assert all(c.status == ChapterStatus.PENDING for c in project.chapters)


def test_pause_lets_current_chapter_finish_and_withholds_next(tmp_path):
    config = make_config(tmp_path)
    speech = GatedSpeech()
    services = make_services(speech=speech)
    blueprint = ProjectBlueprint(title_options=["Bells"])
    store = ProjectStore(build_project(ProjectParams(topic="bells", total_duration_minutes=10), blueprint, config))

    async def run_test():
        orchestrator = ChapterOrchestrator(store, services, config, sleep=no_sleep)
        runner = ChapterAutoRunner(store, orchestrator)
        task = runner.start()

        await wait_until(lambda: speech.calls == 1)
        runner.pause()
        speech.gate.set()

        await wait_until(lambda: store.project.chapters[0].status == ChapterStatus.COMPLETED)
        await asyncio.sleep(0.05)
        paused_state = (store.project.chapters[1].status, speech.calls, task.done())

        runner.resume()
        await asyncio.wait_for(task, 5)
        await orchestrator.drain_background_tasks()
        return paused_state

    paused_state = asyncio.run(run_test())

    assert paused_state == (ChapterStatus.PENDING, 1, False)
    assert [c.status for c in store.project.chapters] == [ChapterStatus.COMPLETED] * 2
    assert speech.calls == 2
