# =============================================================================
# Durable Store: Independently Lockable Collections
# =============================================================================
#
# The store is the only owner of persisted state. In-memory queue objects
# hold transient references and re-read from here after a restart.
#
# ARCHITECTURE:
#   Store
#   ├── documents  DocumentTaskCollection   (document tasks + statistics)
#   ├── agents     AgentQueueCollection     (runs, tasks nested under runs, payloads)
#   ├── snapshots  MemorySnapshotCollection (insert-only memory checkpoints)
#   └── indices    IndexEntryCollection     (derived scores)
#
# WRITE DISCIPLINE:
# Every mutating method runs inside `_write()`: acquire the collection's
# asyncio.Lock → open a session → read current state → apply the
# field-level change → commit → release. The read-modify-write is held
# end-to-end under the lock, never read-then-separately-write.
#
# Readers use `_read()` and never take the lock. They may observe state
# that is about to be superseded (last-write-wins); they never observe a
# partial write because each write is one transaction.
#
# FAILURE CONTRACT:
# - Any SQLAlchemyError is re-raised as PersistenceError after rollback.
# - update/delete of a missing record returns False (or None) instead of
#   raising.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from docflow.db.engine import create_engine_for, create_session_factory
from docflow.db.models import (
    AgentQueueRecord,
    AgentTaskPayload,
    AgentTaskRecord,
    Base,
    DocumentTask,
    IndexEntry,
    IndexSource,
    IngestionStatistics,
    MemorySnapshot,
    ShrinkMode,
    TaskStatus,
    utcnow,
)
from docflow.errors import InputValidationError, InvalidTransitionError, PersistenceError

logger = logging.getLogger(__name__)

_STATISTICS_ROW_ID = 1


# ---------------------------------------------------------------------------
# Collection Base
# ---------------------------------------------------------------------------


class Collection:
    """One logical store guarded by its own single-writer lock."""

    name = "collection"

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _write(self) -> AsyncIterator[AsyncSession]:
        async with self._lock:
            try:
                async with self._sessions() as session:
                    try:
                        yield session
                        await session.commit()
                    except Exception:
                        await session.rollback()
                        raise
            except SQLAlchemyError as exc:
                logger.error("Write to %s failed: %s", self.name, exc)
                raise PersistenceError(f"Write to {self.name} failed: {exc}") from exc

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Read from %s failed: %s", self.name, exc)
            raise PersistenceError(f"Read from {self.name} failed: {exc}") from exc


def _check_transition(kind: str, key: str, current: TaskStatus, target: TaskStatus) -> None:
    if not current.can_transition_to(target):
        raise InvalidTransitionError(
            f"{kind} {key}: cannot move from {current.value} to {target.value}"
        )


def _reset_fields() -> dict[str, Any]:
    return {"status": TaskStatus.PENDING, "result": None, "error": None}


# ---------------------------------------------------------------------------
# Document Tasks
# ---------------------------------------------------------------------------


class DocumentTaskCollection(Collection):
    """Document tasks plus the single ingestion statistics row."""

    name = "document_tasks"

    async def add(self, filename: str, source_path: str, task_id: str | None = None) -> DocumentTask:
        """Persist a new `pending` task at the end of the display order."""
        async with self._write() as session:
            last = await session.scalar(select(func.max(DocumentTask.display_order)))
            task = DocumentTask(
                id=task_id or uuid.uuid4().hex,
                filename=filename,
                source_path=source_path,
                status=TaskStatus.PENDING,
                display_order=0 if last is None else last + 1,
                created_at=utcnow(),
            )
            session.add(task)
        return task

    async def get(self, task_id: str) -> DocumentTask | None:
        async with self._read() as session:
            return await session.get(DocumentTask, task_id)

    async def list(self, status: TaskStatus | None = None) -> list[DocumentTask]:
        """All tasks in display order (ties broken by creation time)."""
        stmt = select(DocumentTask).order_by(DocumentTask.display_order, DocumentTask.created_at)
        if status is not None:
            stmt = stmt.where(DocumentTask.status == status)
        async with self._read() as session:
            return list((await session.scalars(stmt)).all())

    async def update(self, task_id: str, **values: Any) -> bool:
        async with self._write() as session:
            task = await session.get(DocumentTask, task_id)
            if task is None:
                return False
            for field, value in values.items():
                setattr(task, field, value)
        return True

    async def transition(self, task_id: str, target: TaskStatus, **values: Any) -> DocumentTask | None:
        """
        Move a task along pending → processing → completed|failed.

        Returns None when the task no longer exists (it may have been
        removed while in flight).

        Raises:
            InvalidTransitionError: If the edge is not part of the lifecycle.
        """
        async with self._write() as session:
            task = await session.get(DocumentTask, task_id)
            if task is None:
                return None
            _check_transition("Document task", task_id, task.status, target)
            task.status = target
            for field, value in values.items():
                setattr(task, field, value)
        return task

    async def reset(self, task_id: str) -> DocumentTask | None:
        """Explicit operator reset of a terminal task back to `pending`."""
        async with self._write() as session:
            task = await session.get(DocumentTask, task_id)
            if task is None:
                return None
            if not task.status.is_terminal:
                raise InvalidTransitionError(
                    f"Document task {task_id}: only completed or failed tasks can be regenerated"
                )
            for field, value in _reset_fields().items():
                setattr(task, field, value)
            task.started_at = None
            task.completed_at = None
        return task

    async def demote_processing(self) -> list[str]:
        """Crash recovery: every `processing` task goes back to `pending`."""
        async with self._write() as session:
            stuck = (
                await session.scalars(
                    select(DocumentTask).where(DocumentTask.status == TaskStatus.PROCESSING)
                )
            ).all()
            for task in stuck:
                task.status = TaskStatus.PENDING
                task.started_at = None
        return [task.id for task in stuck]

    async def delete(self, task_id: str) -> bool:
        async with self._write() as session:
            task = await session.get(DocumentTask, task_id)
            if task is None:
                return False
            await session.delete(task)
        return True

    async def delete_completed(self) -> list[str]:
        async with self._write() as session:
            ids = list(
                (
                    await session.scalars(
                        select(DocumentTask.id).where(DocumentTask.status == TaskStatus.COMPLETED)
                    )
                ).all()
            )
            if ids:
                await session.execute(delete(DocumentTask).where(DocumentTask.id.in_(ids)))
        return ids

    async def reorder(self, ordered_ids: Sequence[str]) -> bool:
        """
        Permute the display order of completed tasks.

        The supplied tasks keep the set of display slots they already
        occupy and are re-assigned to them in the new order, so tasks not
        mentioned never move. Rejected (returns False, nothing written)
        when any id is unknown, duplicated, or not `completed`.
        """
        if not ordered_ids or len(set(ordered_ids)) != len(ordered_ids):
            return False
        async with self._write() as session:
            tasks = (
                await session.scalars(select(DocumentTask).where(DocumentTask.id.in_(ordered_ids)))
            ).all()
            if len(tasks) != len(ordered_ids):
                return False
            if any(task.status != TaskStatus.COMPLETED for task in tasks):
                return False
            by_id = {task.id: task for task in tasks}
            slots = sorted(task.display_order for task in tasks)
            for slot, task_id in zip(slots, ordered_ids):
                by_id[task_id].display_order = slot
        return True

    async def apply_chronology(self, ordered: Sequence[tuple[str, str | None]]) -> None:
        """
        Put the given (task id, sorting timestamp) pairs first, in order,
        and shift every other task behind them keeping their relative order.
        """
        listed = {task_id for task_id, _ in ordered}
        async with self._write() as session:
            tasks = (
                await session.scalars(
                    select(DocumentTask).order_by(DocumentTask.display_order, DocumentTask.created_at)
                )
            ).all()
            by_id = {task.id: task for task in tasks}
            for position, (task_id, timestamp) in enumerate(ordered):
                task = by_id.get(task_id)
                if task is not None:
                    task.display_order = position
                    task.sorting_timestamp = timestamp
            rest = [task for task in tasks if task.id not in listed]
            for offset, task in enumerate(rest, start=len(listed)):
                task.display_order = offset

    async def count_by_status(self) -> dict[str, int]:
        async with self._read() as session:
            rows = (
                await session.execute(
                    select(DocumentTask.status, func.count()).group_by(DocumentTask.status)
                )
            ).all()
        counts = {status.value: 0 for status in TaskStatus}
        counts.update({status.value: count for status, count in rows})
        return counts

    # --- Statistics --------------------------------------------------------

    async def statistics(self) -> IngestionStatistics:
        async with self._read() as session:
            row = await session.get(IngestionStatistics, _STATISTICS_ROW_ID)
        return row or IngestionStatistics(
            id=_STATISTICS_ROW_ID,
            total_processed=0,
            total_failed=0,
            last_processed_at=None,
            auto_reorder_completed=False,
        )

    async def _statistics_row(self, session: AsyncSession) -> IngestionStatistics:
        row = await session.get(IngestionStatistics, _STATISTICS_ROW_ID)
        if row is None:
            row = IngestionStatistics(
                id=_STATISTICS_ROW_ID,
                total_processed=0,
                total_failed=0,
                auto_reorder_completed=False,
            )
            session.add(row)
        return row

    async def record_outcome(self, succeeded: bool) -> None:
        async with self._write() as session:
            row = await self._statistics_row(session)
            if succeeded:
                row.total_processed += 1
            else:
                row.total_failed += 1
            row.last_processed_at = utcnow()

    async def set_auto_reorder_completed(self, completed: bool = True) -> None:
        async with self._write() as session:
            row = await self._statistics_row(session)
            row.auto_reorder_completed = completed


# ---------------------------------------------------------------------------
# Agent Runs (queues with nested tasks)
# ---------------------------------------------------------------------------


class AgentQueueCollection(Collection):
    """
    Agent runs and their ordered tasks.

    Tasks are nested under their run: every task operation is keyed by
    (queue_id, task_id) and guarded by this collection's one lock.
    Payloads are stored in their own table and only loaded on request.
    """

    name = "agent_queues"

    async def create_queue(self, record: AgentQueueRecord) -> AgentQueueRecord:
        now = utcnow()
        record.created_at = record.created_at or now
        record.updated_at = now
        async with self._write() as session:
            session.add(record)
        return record

    async def get_queue(self, queue_id: str) -> AgentQueueRecord | None:
        async with self._read() as session:
            return await session.get(AgentQueueRecord, queue_id)

    async def list_queues(self) -> list[AgentQueueRecord]:
        async with self._read() as session:
            stmt = select(AgentQueueRecord).order_by(AgentQueueRecord.created_at)
            return list((await session.scalars(stmt)).all())

    async def update_queue(self, queue_id: str, **values: Any) -> bool:
        async with self._write() as session:
            record = await session.get(AgentQueueRecord, queue_id)
            if record is None:
                return False
            for field, value in values.items():
                setattr(record, field, value)
            record.updated_at = utcnow()
        return True

    async def delete_queue(self, queue_id: str) -> bool:
        """Delete a run together with its tasks and payloads."""
        async with self._write() as session:
            record = await session.get(AgentQueueRecord, queue_id)
            if record is None:
                return False
            await session.execute(delete(AgentTaskPayload).where(AgentTaskPayload.queue_id == queue_id))
            await session.execute(delete(AgentTaskRecord).where(AgentTaskRecord.queue_id == queue_id))
            await session.delete(record)
        return True

    async def add_task(
        self,
        queue_id: str,
        task_id: str,
        task_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> AgentTaskRecord:
        """Append a `pending` task at the end of the run's task list."""
        async with self._write() as session:
            if await session.get(AgentQueueRecord, queue_id) is None:
                raise InputValidationError(f"Agent queue {queue_id} does not exist")
            last = await session.scalar(
                select(func.max(AgentTaskRecord.position)).where(AgentTaskRecord.queue_id == queue_id)
            )
            now = utcnow()
            task = AgentTaskRecord(
                queue_id=queue_id,
                id=task_id,
                position=0 if last is None else last + 1,
                type=task_type,
                status=TaskStatus.PENDING,
                metadata_=metadata or {},
                created_at=now,
                updated_at=now,
            )
            session.add(task)
            await session.flush()
            session.add(AgentTaskPayload(queue_id=queue_id, task_id=task_id, payload=payload))
        return task

    async def list_tasks(
        self, queue_id: str, status: TaskStatus | None = None,
    ) -> list[AgentTaskRecord]:
        stmt = (
            select(AgentTaskRecord)
            .where(AgentTaskRecord.queue_id == queue_id)
            .order_by(AgentTaskRecord.position)
        )
        if status is not None:
            stmt = stmt.where(AgentTaskRecord.status == status)
        async with self._read() as session:
            return list((await session.scalars(stmt)).all())

    async def get_task(self, queue_id: str, task_id: str) -> AgentTaskRecord | None:
        async with self._read() as session:
            return await session.get(AgentTaskRecord, (queue_id, task_id))

    async def get_payload(self, queue_id: str, task_id: str) -> dict[str, Any] | None:
        async with self._read() as session:
            row = await session.get(AgentTaskPayload, (queue_id, task_id))
        return None if row is None else row.payload

    async def transition_task(
        self, queue_id: str, task_id: str, target: TaskStatus, **values: Any,
    ) -> AgentTaskRecord | None:
        """
        Move one task along pending → processing → completed|failed.

        Raises:
            InvalidTransitionError: If the edge is not part of the lifecycle.
        """
        async with self._write() as session:
            task = await session.get(AgentTaskRecord, (queue_id, task_id))
            if task is None:
                return None
            _check_transition("Agent task", f"{queue_id}/{task_id}", task.status, target)
            task.status = target
            for field, value in values.items():
                setattr(task, field, value)
            task.updated_at = utcnow()
        return task

    async def reset_tasks(self, queue_id: str, task_ids: Iterable[str]) -> int:
        """Explicit operator reset (regenerate / restart) back to `pending`."""
        ids = list(task_ids)
        if not ids:
            return 0
        async with self._write() as session:
            tasks = (
                await session.scalars(
                    select(AgentTaskRecord).where(
                        AgentTaskRecord.queue_id == queue_id,
                        AgentTaskRecord.id.in_(ids),
                    )
                )
            ).all()
            now = utcnow()
            for task in tasks:
                for field, value in _reset_fields().items():
                    setattr(task, field, value)
                task.updated_at = now
        return len(tasks)

    async def find_processing(self) -> dict[str, list[str]]:
        """Tasks stuck in `processing`, grouped by run, in list order."""
        async with self._read() as session:
            rows = (
                await session.execute(
                    select(AgentTaskRecord.queue_id, AgentTaskRecord.id)
                    .where(AgentTaskRecord.status == TaskStatus.PROCESSING)
                    .order_by(AgentTaskRecord.queue_id, AgentTaskRecord.position)
                )
            ).all()
        stuck: dict[str, list[str]] = {}
        for queue_id, task_id in rows:
            stuck.setdefault(queue_id, []).append(task_id)
        return stuck

    async def counts(self) -> dict[str, int]:
        async with self._read() as session:
            queues = await session.scalar(select(func.count()).select_from(AgentQueueRecord))
            tasks = await session.scalar(select(func.count()).select_from(AgentTaskRecord))
        return {"agent_queues": queues or 0, "agent_tasks": tasks or 0}


# ---------------------------------------------------------------------------
# Memory Snapshots
# ---------------------------------------------------------------------------


class MemorySnapshotCollection(Collection):
    """Insert-only memory checkpoints, versioned per memory id."""

    name = "memory_snapshots"

    async def add(
        self,
        memory_id: str,
        context: str,
        max_length: int,
        shrink_mode: ShrinkMode,
        task_id: str | None = None,
    ) -> MemorySnapshot:
        """
        Write a new snapshot.

        The version is the current time in milliseconds, bumped past the
        previous version of the same memory so versions strictly increase.
        """
        async with self._write() as session:
            last = await session.scalar(
                select(func.max(MemorySnapshot.version)).where(MemorySnapshot.memory_id == memory_id)
            )
            version = int(time.time() * 1000)
            if last is not None and version <= last:
                version = last + 1
            snapshot = MemorySnapshot(
                memory_id=memory_id,
                version=version,
                task_id=task_id,
                context=context,
                max_length=max_length,
                shrink_mode=shrink_mode,
                created_at=utcnow(),
            )
            session.add(snapshot)
        return snapshot

    async def get(self, memory_id: str, version: int) -> MemorySnapshot | None:
        async with self._read() as session:
            return await session.scalar(
                select(MemorySnapshot).where(
                    MemorySnapshot.memory_id == memory_id,
                    MemorySnapshot.version == version,
                )
            )

    async def latest(self, memory_id: str) -> MemorySnapshot | None:
        async with self._read() as session:
            return await session.scalar(
                select(MemorySnapshot)
                .where(MemorySnapshot.memory_id == memory_id)
                .order_by(MemorySnapshot.version.desc())
                .limit(1)
            )

    async def latest_for_task(self, memory_id: str, task_id: str) -> MemorySnapshot | None:
        async with self._read() as session:
            return await session.scalar(
                select(MemorySnapshot)
                .where(MemorySnapshot.memory_id == memory_id, MemorySnapshot.task_id == task_id)
                .order_by(MemorySnapshot.version.desc())
                .limit(1)
            )

    async def list(self, memory_id: str) -> list[MemorySnapshot]:
        async with self._read() as session:
            stmt = (
                select(MemorySnapshot)
                .where(MemorySnapshot.memory_id == memory_id)
                .order_by(MemorySnapshot.version)
            )
            return list((await session.scalars(stmt)).all())

    async def delete_memory(self, memory_id: str) -> int:
        async with self._write() as session:
            result = await session.execute(
                delete(MemorySnapshot).where(MemorySnapshot.memory_id == memory_id)
            )
        return result.rowcount or 0

    async def count(self) -> int:
        async with self._read() as session:
            return await session.scalar(select(func.count()).select_from(MemorySnapshot)) or 0


# ---------------------------------------------------------------------------
# Index Entries
# ---------------------------------------------------------------------------


class IndexEntryCollection(Collection):
    """Derived scores, owned by a run (or by a document for pdf_processing)."""

    name = "index_entries"

    async def add(self, entry: IndexEntry) -> IndexEntry:
        entry.id = entry.id or uuid.uuid4().hex
        entry.created_at = entry.created_at or utcnow()
        async with self._write() as session:
            session.add(entry)
        return entry

    async def add_many(self, entries: Sequence[IndexEntry]) -> list[IndexEntry]:
        now = utcnow()
        for entry in entries:
            entry.id = entry.id or uuid.uuid4().hex
            entry.created_at = entry.created_at or now
        async with self._write() as session:
            session.add_all(entries)
        return list(entries)

    async def get(self, entry_id: str) -> IndexEntry | None:
        async with self._read() as session:
            return await session.get(IndexEntry, entry_id)

    async def list(
        self,
        index_name: str | None = None,
        queue_id: str | None = None,
    ) -> list[IndexEntry]:
        stmt = select(IndexEntry).order_by(IndexEntry.timestamp, IndexEntry.created_at)
        if index_name is not None:
            stmt = stmt.where(IndexEntry.index_name == index_name)
        if queue_id is not None:
            stmt = stmt.where(IndexEntry.queue_id == queue_id)
        async with self._read() as session:
            return list((await session.scalars(stmt)).all())

    async def history(
        self,
        index_name: str,
        before: str | None,
        exclude_queue_id: str | None = None,
        limit: int = 20,
    ) -> list[IndexEntry]:
        """Most recent earlier scores of `index_name`, oldest first."""
        stmt = (
            select(IndexEntry)
            .where(IndexEntry.index_name == index_name, IndexEntry.timestamp.is_not(None))
            .order_by(IndexEntry.timestamp.desc())
            .limit(limit)
        )
        if before is not None:
            stmt = stmt.where(IndexEntry.timestamp < before)
        if exclude_queue_id is not None:
            stmt = stmt.where(
                (IndexEntry.queue_id.is_(None)) | (IndexEntry.queue_id != exclude_queue_id)
            )
        async with self._read() as session:
            rows = list((await session.scalars(stmt)).all())
        return list(reversed(rows))

    async def correct(
        self, entry_id: str, score_value: float, rationale: str | None = None,
    ) -> IndexEntry | None:
        """
        Apply a user correction to one entry.

        Raises:
            InputValidationError: If the score is not a number in [-1, 1].
        """
        if isinstance(score_value, bool) or not isinstance(score_value, (int, float)):
            raise InputValidationError("Score must be a number")
        if not -1.0 <= float(score_value) <= 1.0:
            raise InputValidationError(f"Score {score_value} is outside [-1, 1]")
        async with self._write() as session:
            entry = await session.get(IndexEntry, entry_id)
            if entry is None:
                return None
            entry.score_value = float(score_value)
            if rationale is not None:
                entry.rationale = rationale
            entry.corrected = True
        return entry

    async def delete_by_queue(self, queue_id: str) -> int:
        async with self._write() as session:
            result = await session.execute(delete(IndexEntry).where(IndexEntry.queue_id == queue_id))
        return result.rowcount or 0

    async def delete_by_task(self, queue_id: str, task_id: str) -> int:
        async with self._write() as session:
            result = await session.execute(
                delete(IndexEntry).where(IndexEntry.queue_id == queue_id, IndexEntry.task_id == task_id)
            )
        return result.rowcount or 0

    async def delete_for_document(self, document_id: str) -> int:
        """Remove the pdf_processing entries recorded for one document."""
        async with self._write() as session:
            result = await session.execute(
                delete(IndexEntry).where(
                    IndexEntry.document_id == document_id,
                    IndexEntry.source == IndexSource.PDF_PROCESSING,
                )
            )
        return result.rowcount or 0

    async def statistics(self) -> dict[str, int]:
        """Counted on demand so repeated deletes can never double-count."""
        async with self._read() as session:
            entries = await session.scalar(select(func.count()).select_from(IndexEntry))
            agents = await session.scalar(
                select(func.count(func.distinct(IndexEntry.queue_id))).where(IndexEntry.queue_id.is_not(None))
            )
            tasks = await session.scalar(
                select(func.count()).select_from(
                    select(IndexEntry.queue_id, IndexEntry.task_id)
                    .where(IndexEntry.queue_id.is_not(None))
                    .distinct()
                    .subquery()
                )
            )
        return {"total_agents": agents or 0, "total_tasks": tasks or 0, "total_indices": entries or 0}


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class Store:
    """Bundle of the four collections sharing one engine."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        sessions = create_session_factory(engine)
        self.documents = DocumentTaskCollection(sessions)
        self.agents = AgentQueueCollection(sessions)
        self.snapshots = MemorySnapshotCollection(sessions)
        self.indices = IndexEntryCollection(sessions)

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> Store:
        return cls(create_engine_for(url, echo=echo))

    async def init_schema(self) -> None:
        """Create any missing tables."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Schema initialisation failed: {exc}") from exc

    async def close(self) -> None:
        await self.engine.dispose()

    async def database_info(self) -> dict[str, Any]:
        """Record counts across every collection."""
        documents = await self.documents.count_by_status()
        agents = await self.agents.counts()
        index_stats = await self.indices.statistics()
        return {
            "document_tasks": sum(documents.values()),
            "document_tasks_by_status": documents,
            "agent_queues": agents["agent_queues"],
            "agent_tasks": agents["agent_tasks"],
            "memory_snapshots": await self.snapshots.count(),
            "index_entries": index_stats["total_indices"],
        }
