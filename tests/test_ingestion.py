# =============================================================================
# Unit Tests: Ingestion Queue
# =============================================================================
#
# Drives the real worker pool against a stub processor (text files in,
# text files out). Covers the task lifecycle, counters, pause/resume,
# two-phase ordering, crash recovery and regeneration.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest

from docflow.db.models import IndexSource, TaskStatus
from docflow.errors import InputValidationError, OrderingLockedError
from docflow.workers.ingestion import IngestionQueue
from fakes import StubProcessor, open_store, write_document


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


async def _add_all(queue: IngestionQueue, directory, filenames: list[str]) -> dict[str, str]:
    """Add documents while paused so the pool starts on a full queue."""
    queue.pause()
    ids = {}
    for name in filenames:
        path = write_document(directory, name, f"Text of {name}")
        ids[name] = (await queue.add_task(name, str(path))).id
    queue.resume()
    return ids


class TestConstruction:
    def test_concurrency_bounds(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                processor = StubProcessor(tmp_path / "out")
                with pytest.raises(InputValidationError):
                    IngestionQueue(store, processor, concurrency=0)
                with pytest.raises(InputValidationError):
                    IngestionQueue(store, processor, concurrency=11)
                assert IngestionQueue(store, processor, concurrency=10).concurrency == 10

        _run(scenario())


class TestLifecycle:
    """Tests for processing, counters and validation."""

    def test_tasks_complete_and_counters_update(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                processor = StubProcessor(tmp_path / "out", failing={"bad.md"})
                queue = IngestionQueue(store, processor, concurrency=2)
                await queue.start()
                try:
                    ids = await _add_all(queue, tmp_path / "in", ["a.md", "b.md", "bad.md"])
                    await queue.join()

                    done = await queue.get_task(ids["a.md"])
                    assert done.status == TaskStatus.COMPLETED
                    assert done.result["summary"] == "Summary of a.md"
                    assert done.started_at is not None and done.completed_at is not None

                    failed = await queue.get_task(ids["bad.md"])
                    assert failed.status == TaskStatus.FAILED
                    assert "cannot parse bad.md" in failed.error

                    stats = await queue.statistics()
                    assert stats["total_processed"] == 2
                    assert stats["total_failed"] == 1
                    assert stats["in_flight"] == 0
                    assert stats["concurrency"] == 2
                finally:
                    await queue.stop()

        _run(scenario())

    def test_rejected_file_is_not_persisted(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                queue = IngestionQueue(store, StubProcessor(tmp_path / "out"))
                path = write_document(tmp_path / "in", "notes.txt", "plain text")
                with pytest.raises(InputValidationError):
                    await queue.add_task("notes.txt", str(path))
                with pytest.raises(InputValidationError):
                    await queue.add_task("missing.md", str(tmp_path / "missing.md"))
                fake_pdf = write_document(tmp_path / "in", "fake.pdf", "not a pdf")
                with pytest.raises(InputValidationError):
                    await queue.add_task("fake.pdf", str(fake_pdf))
                assert await queue.list_tasks() == []

        _run(scenario())

    def test_pause_holds_new_work_until_resume(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                processor = StubProcessor(tmp_path / "out")
                queue = IngestionQueue(store, processor)
                await queue.start()
                try:
                    queue.pause()
                    path = write_document(tmp_path / "in", "a.md", "A")
                    task = await queue.add_task("a.md", str(path))
                    await asyncio.sleep(0.1)
                    assert (await queue.get_task(task.id)).status == TaskStatus.PENDING
                    assert (await queue.statistics())["paused"] is True

                    queue.resume()
                    await queue.join()
                    assert (await queue.get_task(task.id)).status == TaskStatus.COMPLETED
                finally:
                    await queue.stop()

        _run(scenario())

    def test_analysis_scores_become_index_entries(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                processor = StubProcessor(
                    tmp_path / "out",
                    dates={"a.md": "2024-05-01"},
                    scores={"a.md": {"sentiment": 0.3}},
                )
                queue = IngestionQueue(store, processor)
                await queue.start()
                try:
                    ids = await _add_all(queue, tmp_path / "in", ["a.md"])
                    await queue.join()
                    entries = await store.indices.list(index_name="sentiment")
                    assert len(entries) == 1
                    assert entries[0].source == IndexSource.PDF_PROCESSING
                    assert entries[0].document_id == ids["a.md"]
                    assert entries[0].timestamp == "2024-05-01T00:00:00"

                    assert await queue.remove(ids["a.md"]) is True
                    assert await store.indices.list(index_name="sentiment") == []
                    assert await queue.remove(ids["a.md"]) is False
                finally:
                    await queue.stop()

        _run(scenario())

    def test_task_removed_mid_processing_is_not_counted(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                processor = StubProcessor(tmp_path / "out", failing={"bad.md"}, delay=0.3)
                queue = IngestionQueue(store, processor, concurrency=2)
                await queue.start()
                try:
                    ids = await _add_all(queue, tmp_path / "in", ["a.md", "bad.md"])
                    for _ in range(50):
                        tasks = await queue.list_tasks()
                        if all(task.status == TaskStatus.PROCESSING for task in tasks):
                            break
                        await asyncio.sleep(0.02)

                    assert await queue.remove(ids["a.md"]) is True
                    assert await queue.remove(ids["bad.md"]) is True
                    await queue.join()

                    stats = await queue.statistics()
                    assert stats["total_processed"] == 0
                    assert stats["total_failed"] == 0
                    assert await queue.list_tasks() == []
                finally:
                    await queue.stop()

        _run(scenario())


class TestOrdering:
    """Tests for auto-reorder and the manual reorder lock."""

    def test_auto_reorder_sorts_by_inferred_date_when_idle(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                processor = StubProcessor(
                    tmp_path / "out",
                    dates={"march.md": "2024-03-15", "january.md": "2024-01-15"},
                )
                queue = IngestionQueue(store, processor, concurrency=1)
                await queue.start()
                try:
                    ids = await _add_all(queue, tmp_path / "in", ["undated.md", "march.md", "january.md"])
                    await queue.join()

                    assert await queue.auto_reorder_status() is True
                    ordered = [task.id for task in await queue.list_tasks()]
                    assert ordered == [ids["january.md"], ids["march.md"], ids["undated.md"]]
                    january = await queue.get_task(ids["january.md"])
                    assert january.sorting_timestamp == "2024-01-15"
                finally:
                    await queue.stop()

        _run(scenario())

    def test_manual_reorder_is_locked_until_auto_reorder(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                queue = IngestionQueue(store, StubProcessor(tmp_path / "out"))
                with pytest.raises(OrderingLockedError):
                    await queue.reorder(["anything"])

                await queue.start()
                try:
                    ids = await _add_all(queue, tmp_path / "in", ["a.md", "b.md"])
                    await queue.join()

                    assert await queue.reorder([ids["b.md"], ids["a.md"]]) is True
                    assert [task.id for task in await queue.list_tasks()] == [ids["b.md"], ids["a.md"]]
                    assert await queue.reorder([ids["a.md"], "missing"]) is False
                finally:
                    await queue.stop()

        _run(scenario())

    def test_auto_reorder_with_nothing_completed(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                queue = IngestionQueue(store, StubProcessor(tmp_path / "out"))
                assert await queue.auto_reorder() is False
                assert await queue.auto_reorder_status() is False

        _run(scenario())


class TestRecoveryAndRegeneration:
    """Tests for restart recovery and explicit regeneration."""

    def test_processing_and_pending_tasks_are_readmitted(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                stuck_path = write_document(tmp_path / "in", "stuck.md", "S")
                waiting_path = write_document(tmp_path / "in", "waiting.md", "W")
                stuck = await store.documents.add("stuck.md", str(stuck_path))
                waiting = await store.documents.add("waiting.md", str(waiting_path))
                await store.documents.transition(stuck.id, TaskStatus.PROCESSING)

                processor = StubProcessor(tmp_path / "out")
                queue = IngestionQueue(store, processor)
                recovered = await queue.start()
                try:
                    assert recovered == [stuck.id, waiting.id]
                    await queue.join()
                    assert processor.processed == [stuck.id, waiting.id]
                    for task_id in recovered:
                        assert (await queue.get_task(task_id)).status == TaskStatus.COMPLETED
                finally:
                    await queue.stop()

        _run(scenario())

    def test_regenerate_reprocesses_a_failed_task(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                processor = StubProcessor(tmp_path / "out", failing={"flaky.md"})
                queue = IngestionQueue(store, processor)
                await queue.start()
                try:
                    ids = await _add_all(queue, tmp_path / "in", ["flaky.md"])
                    await queue.join()
                    assert (await queue.get_task(ids["flaky.md"])).status == TaskStatus.FAILED

                    processor.failing.clear()
                    regenerated = await queue.regenerate(ids["flaky.md"])
                    assert regenerated.status == TaskStatus.PENDING
                    await queue.join()

                    task = await queue.get_task(ids["flaky.md"])
                    assert task.status == TaskStatus.COMPLETED
                    assert task.error is None
                    assert (await queue.statistics())["total_failed"] == 1
                    assert await queue.regenerate("missing") is None
                finally:
                    await queue.stop()

        _run(scenario())

    def test_clear_completed(self, db_url, tmp_path):
        async def scenario():
            async with open_store(db_url) as store:
                processor = StubProcessor(tmp_path / "out", failing={"bad.md"})
                queue = IngestionQueue(store, processor)
                await queue.start()
                try:
                    ids = await _add_all(queue, tmp_path / "in", ["a.md", "bad.md"])
                    await queue.join()
                    assert await queue.clear_completed() == 1
                    assert [task.id for task in await queue.list_tasks()] == [ids["bad.md"]]
                finally:
                    await queue.stop()

        _run(scenario())
