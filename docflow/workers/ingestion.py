# =============================================================================
# Bounded Ingestion Queue: asyncio Worker Pool
# =============================================================================
#
# Accepts (filename, source path), persists a `pending` document task and
# processes it with a fixed pool of N workers (default 1, range 1-10).
#
# PIPELINE (per task):
#   1. pending → processing (started_at persisted)
#   2. processor.process(task)
#   3. processing → completed (result attached) | failed (error captured)
#   4. Statistics: total_processed or total_failed += 1
#   5. Analysis scores from the result become pdf_processing index entries
#
# ORDERING (two phases):
#   upload order (FIFO admission)
#     → auto-reorder by inferred date, run once when the pool goes idle
#       → manual reorder of completed tasks, allowed only after that
#
# RECOVERY:
# start() demotes every `processing` task to `pending`, then re-admits
# all `pending` tasks in creation order. The set {pending ∪ processing}
# found at startup is exactly the set put back on the live queue.
#
# Pause stops workers from *starting* tasks; in-flight tasks finish.
# There is no automatic retry: a failed task stays failed until an
# operator calls regenerate().
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from docflow.config import settings
from docflow.db.models import DocumentTask, IndexEntry, IndexSource, TaskStatus, utcnow
from docflow.db.store import Store
from docflow.errors import InputValidationError, OrderingLockedError
from docflow.services.dates import best_known_date, best_known_timestamp, inferred_timestamp
from docflow.services.processor import DocumentProcessor, DocumentResult

logger = logging.getLogger(__name__)

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10


class IngestionQueue:
    """
    FIFO document-processing queue with bounded concurrency.

    Args:
        store: Durable store (source of truth for every task).
        processor: Collaborator that turns a file into a DocumentResult.
        concurrency: Worker pool size (default: settings.ingest_concurrency).
    """

    def __init__(
        self,
        store: Store,
        processor: DocumentProcessor,
        concurrency: int | None = None,
    ) -> None:
        size = settings.ingest_concurrency if concurrency is None else concurrency
        if not MIN_CONCURRENCY <= size <= MAX_CONCURRENCY:
            raise InputValidationError(
                f"Concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}, got {size}"
            )
        self.concurrency = size
        self._store = store
        self._processor = processor
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._in_flight: set[str] = set()
        self._running = asyncio.Event()
        self._running.set()
        self._idle_lock = asyncio.Lock()

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self) -> list[str]:
        """
        Recover persisted work and spawn the worker pool.

        Returns:
            Ids of the tasks re-admitted to the queue.
        """
        recovered = await self.recover()
        if not self._workers:
            self._workers = [
                asyncio.create_task(self._worker(n), name=f"ingest-worker-{n}")
                for n in range(self.concurrency)
            ]
            logger.info("Ingestion queue started with %d worker(s)", self.concurrency)
        return recovered

    async def recover(self) -> list[str]:
        demoted = await self._store.documents.demote_processing()
        for task_id in demoted:
            logger.warning("[%s] Found in processing at startup; demoted to pending", task_id)

        pending = await self._store.documents.list(status=TaskStatus.PENDING)
        pending.sort(key=lambda task: task.created_at.replace(tzinfo=None))
        for task in pending:
            self._queue.put_nowait(task.id)

        if pending:
            logger.info("Re-admitted %d pending task(s)", len(pending))
        return [task.id for task in pending]

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Ingestion queue stopped")

    async def join(self) -> None:
        """Wait until every admitted task has reached a terminal state."""
        await self._queue.join()

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def add_task(self, filename: str, source_path: str, task_id: str | None = None) -> DocumentTask:
        """
        Validate, persist and enqueue a new document.

        Raises:
            InputValidationError: If the file is rejected (nothing persisted).
        """
        self._processor.validate(source_path, filename)
        task = await self._store.documents.add(filename, source_path, task_id=task_id)
        self._queue.put_nowait(task.id)
        logger.info("[%s] Queued %s", task.id, filename)
        return task

    async def get_task(self, task_id: str) -> DocumentTask | None:
        return await self._store.documents.get(task_id)

    async def list_tasks(self, status: TaskStatus | None = None) -> list[DocumentTask]:
        return await self._store.documents.list(status=status)

    def pause(self) -> None:
        self._running.clear()
        logger.info("Ingestion queue paused")

    def resume(self) -> None:
        self._running.set()
        logger.info("Ingestion queue resumed")

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    async def remove(self, task_id: str) -> bool:
        """Delete one task and the index entries recorded from it."""
        removed = await self._store.documents.delete(task_id)
        if removed:
            await self._store.indices.delete_for_document(task_id)
            logger.info("[%s] Removed", task_id)
        return removed

    async def clear_completed(self) -> int:
        removed = await self._store.documents.delete_completed()
        for task_id in removed:
            await self._store.indices.delete_for_document(task_id)
        logger.info("Cleared %d completed task(s)", len(removed))
        return len(removed)

    async def regenerate(self, task_id: str) -> DocumentTask | None:
        """Reset a completed/failed task to `pending` and re-enqueue it."""
        task = await self._store.documents.reset(task_id)
        if task is None:
            return None
        await self._store.indices.delete_for_document(task_id)
        self._queue.put_nowait(task_id)
        logger.info("[%s] Regenerating", task_id)
        return task

    async def reorder(self, ordered_ids: Sequence[str]) -> bool:
        """
        Manually reorder completed tasks for display.

        Returns:
            False (nothing changed) if any id is unknown or not completed.

        Raises:
            OrderingLockedError: The automatic reorder has not run yet.
        """
        if not await self.auto_reorder_status():
            raise OrderingLockedError("Auto-reorder has not completed yet; manual reorder is locked")
        accepted = await self._store.documents.reorder(list(ordered_ids))
        if not accepted:
            logger.info("Reorder rejected: every task must exist and be completed")
        return accepted

    async def auto_reorder_status(self) -> bool:
        return (await self._store.documents.statistics()).auto_reorder_completed

    async def auto_reorder(self) -> bool:
        """
        Sort completed tasks by inferred document date.

        Tasks without an inferred date follow the dated ones, in their
        current order. Returns False when there is nothing to sort.
        """
        completed = await self._store.documents.list(status=TaskStatus.COMPLETED)
        if not completed:
            return False

        dated = [task for task in completed if inferred_timestamp(task)]
        undated = [task for task in completed if not inferred_timestamp(task)]
        dated.sort(key=best_known_date)

        ordered = [(task.id, inferred_timestamp(task)) for task in dated]
        ordered += [(task.id, task.sorting_timestamp) for task in undated]
        await self._store.documents.apply_chronology(ordered)
        await self._store.documents.set_auto_reorder_completed(True)
        logger.info("Auto-reorder completed: %d dated, %d undated", len(dated), len(undated))
        return True

    async def statistics(self) -> dict[str, Any]:
        stats = await self._store.documents.statistics()
        return {
            "total_processed": stats.total_processed,
            "total_failed": stats.total_failed,
            "last_processed_at": stats.last_processed_at,
            "auto_reorder_completed": stats.auto_reorder_completed,
            "concurrency": self.concurrency,
            "paused": self.is_paused,
            "queued": self.queued,
            "in_flight": len(self._in_flight),
        }

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    async def _worker(self, number: int) -> None:
        while True:
            task_id = await self._queue.get()
            # Counted from dequeue so a paused worker's task never looks idle
            self._in_flight.add(task_id)
            try:
                await self._running.wait()
                await self._process(task_id)
            except Exception:
                logger.exception("[%s] Ingestion worker %d hit an unexpected error", task_id, number)
            finally:
                self._in_flight.discard(task_id)
                if self._queue.empty() and not self._in_flight:
                    await self._on_idle()
                self._queue.task_done()

    async def _process(self, task_id: str) -> None:
        documents = self._store.documents

        task = await documents.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            logger.info("[%s] Skipping: no longer pending", task_id)
            return

        task = await documents.transition(task_id, TaskStatus.PROCESSING, started_at=utcnow())
        if task is None:
            return
        logger.info("[%s] Processing %s", task_id, task.filename)

        try:
            result = await self._processor.process(task)
        except Exception as exc:
            logger.exception("[%s] Processing failed", task_id)
            failed = await documents.transition(
                task_id, TaskStatus.FAILED, error=str(exc)[:1000], completed_at=utcnow(),
            )
            if failed is not None:
                await documents.record_outcome(succeeded=False)
            return

        updated = await documents.transition(
            task_id, TaskStatus.COMPLETED, result=result.to_dict(), completed_at=utcnow(),
        )
        if updated is None:
            logger.info("[%s] Removed while processing; result discarded", task_id)
            return
        await documents.record_outcome(succeeded=True)
        logger.info("[%s] Completed (%d pages)", task_id, result.page_count)
        await self._record_analysis_scores(updated, result)

    async def _record_analysis_scores(self, task: DocumentTask, result: DocumentResult) -> None:
        scores = result.metadata.get("analysis_scores") or {}
        if not scores:
            return
        timestamp = best_known_timestamp(task)
        entries = [
            IndexEntry(
                index_name=name,
                score_value=float(value),
                queue_id=None,
                task_id=task.id,
                document_id=task.id,
                filename=task.filename,
                timestamp=timestamp,
                quotes=[],
                rationale=result.summary,
                source=IndexSource.PDF_PROCESSING,
            )
            for name, value in scores.items()
        ]
        await self._store.indices.add_many(entries)

    async def _on_idle(self) -> None:
        if self._idle_lock.locked():
            return
        async with self._idle_lock:
            try:
                if not await self.auto_reorder_status():
                    await self.auto_reorder()
            except Exception:
                logger.exception("Auto-reorder failed")
