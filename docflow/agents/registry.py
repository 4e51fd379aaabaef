# =============================================================================
# Agent Registry: Run Keys → Live Queues
# =============================================================================
#
# The public face of the agent framework:
#
#   start_run(agent_type, user_query) → queue key
#   list_queues() / list_tasks(key) / get_task(key, task_id)
#   restart_from_task(key, task_id) / regenerate_task(key, task_id)
#   check_finish(key) / pause(key) / resume(key)
#   delete_queue(key)      cascades to index entries + memory snapshots
#   get_snapshot(memory_id, version)
#   recover()              re-drive every run a crash left unfinished
#
# DESIGN DECISION: The in-memory map of live AgentQueue objects is only a
# cache. A missing key is rebuilt from the store on first access (record,
# memory limits, latest memory snapshot), so a process restart loses
# nothing but the cache.
#
# Drains run as background asyncio tasks, one chain per run. Different
# runs drain concurrently; tasks inside one run never do.
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from docflow.agents.orchestrator import build_run, memory_id_for
from docflow.agents.queue import AgentQueue, FinishState
from docflow.agents.workers import WorkerDeps
from docflow.config import settings
from docflow.db.models import (
    AgentQueueRecord,
    AgentTaskRecord,
    AgentType,
    IndexEntry,
    MemorySnapshot,
    QueueStatus,
    ShrinkMode,
    TaskStatus,
)
from docflow.db.store import Store
from docflow.errors import NotFoundError, UnknownTaskTypeError
from docflow.services.llm import LLMProvider, get_llm_provider, get_writing_provider
from docflow.services.memory import RollingMemory

logger = logging.getLogger(__name__)


class AgentRegistry:
    """
    Owns every agent run of the process.

    Args:
        store: Durable store.
        llm: Reasoning provider (default: lazy `get_llm_provider()`).
        writing_llm: Writing provider (default: lazy `get_writing_provider()`).
        memory_max_length / memory_shrink_mode: Limits for new runs.
        articles_dir: Where writing tasks save articles; None disables saving.
    """

    def __init__(
        self,
        store: Store,
        llm: LLMProvider | None = None,
        writing_llm: LLMProvider | None = None,
        *,
        memory_max_length: int | None = None,
        memory_shrink_mode: ShrinkMode | str | None = None,
        articles_dir: str | None = None,
        preview_chars: int | None = None,
        history_limit: int | None = None,
    ) -> None:
        self._store = store
        self._llm = llm
        self._writing_llm = writing_llm
        self.memory_max_length = memory_max_length or settings.memory_max_length
        self.memory_shrink_mode = ShrinkMode(memory_shrink_mode or settings.memory_shrink_mode)
        self.articles_dir = articles_dir
        self.preview_chars = preview_chars or settings.memory_result_preview_chars
        self.history_limit = history_limit or settings.history_limit
        self._queues: dict[str, AgentQueue] = {}
        self._drains: dict[str, asyncio.Task] = {}

    @property
    def llm(self) -> LLMProvider:
        if self._llm is None:
            self._llm = get_llm_provider()
        return self._llm

    @property
    def writing_llm(self) -> LLMProvider:
        if self._writing_llm is None:
            self._writing_llm = get_writing_provider()
        return self._writing_llm

    # -----------------------------------------------------------------------
    # Runs
    # -----------------------------------------------------------------------

    async def start_run(self, agent_type: str, user_query: str, drain: bool = True) -> str:
        """
        Build a run and (by default) start draining it in the background.

        Raises:
            InputValidationError: Unknown agent type, empty query, or no
                completed documents.
        """
        state = await build_run(
            agent_type,
            user_query,
            store=self._store,
            llm=self.llm,
            memory_max_length=self.memory_max_length,
            memory_shrink_mode=self.memory_shrink_mode,
            history_limit=self.history_limit,
        )
        record: AgentQueueRecord = state["record"]
        self._queues[record.id] = AgentQueue(record, self._store, state["memory"], self._deps(record))
        if drain:
            self._schedule(record.id)
        return record.id

    async def get_queue(self, queue_key: str) -> AgentQueue:
        """
        Cached queue for `queue_key`, rebuilt from the store when absent.

        Raises:
            NotFoundError: No such run.
        """
        queue = self._queues.get(queue_key)
        if queue is not None:
            return queue

        record = await self._store.agents.get_queue(queue_key)
        if record is None:
            raise NotFoundError(f"Agent queue {queue_key} not found")

        latest = await self._store.snapshots.latest(record.memory_id)
        memory = RollingMemory(
            record.memory_id,
            self._store.snapshots,
            max_length=record.memory_max_length,
            shrink_mode=record.memory_shrink_mode,
            llm=self.llm if record.memory_shrink_mode == ShrinkMode.COMPRESS else None,
            context=latest.context if latest is not None else "",
        )
        queue = AgentQueue(record, self._store, memory, self._deps(record))
        self._queues[queue_key] = queue
        logger.info("[%s] Rebuilt queue from store", queue_key)
        return queue

    async def list_queues(self) -> list[AgentQueueRecord]:
        return await self._store.agents.list_queues()

    async def get_record(self, queue_key: str) -> AgentQueueRecord:
        record = await self._store.agents.get_queue(queue_key)
        if record is None:
            raise NotFoundError(f"Agent queue {queue_key} not found")
        return record

    async def list_tasks(self, queue_key: str) -> list[AgentTaskRecord]:
        return await (await self.get_queue(queue_key)).list_tasks()

    async def get_task(self, queue_key: str, task_id: str) -> tuple[AgentTaskRecord, dict[str, Any]]:
        """
        Raises:
            NotFoundError: Unknown run or task.
        """
        queue = await self.get_queue(queue_key)
        task = await queue.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found in run {queue_key}")
        return task, await queue.get_payload(task_id) or {}

    # -----------------------------------------------------------------------
    # Operator Actions
    # -----------------------------------------------------------------------

    async def restart_from_task(self, queue_key: str, task_id: str, drain: bool = True) -> list[str]:
        queue = await self.get_queue(queue_key)
        await self._cancel_drain(queue_key)
        reset_ids = await queue.restart_from(task_id)
        if drain:
            self._schedule(queue_key)
        return reset_ids

    async def regenerate_task(self, queue_key: str, task_id: str, drain: bool = True) -> AgentTaskRecord:
        queue = await self.get_queue(queue_key)
        task = await queue.regenerate(task_id)
        if drain:
            self._schedule(queue_key)
        return task

    async def check_finish(self, queue_key: str) -> FinishState:
        return await (await self.get_queue(queue_key)).ensuring_finish()

    async def pause(self, queue_key: str) -> bool:
        await self.get_queue(queue_key)
        return await self._store.agents.update_queue(queue_key, status=QueueStatus.PAUSED)

    async def resume(self, queue_key: str) -> bool:
        await self.get_queue(queue_key)
        updated = await self._store.agents.update_queue(queue_key, status=QueueStatus.ACTIVE)
        self._schedule(queue_key)
        return updated

    async def delete_queue(self, queue_key: str) -> bool:
        """
        Delete a run, its tasks, its index entries and its memory snapshots.

        Idempotent: deleting an unknown or already-deleted run returns
        False and changes nothing.
        """
        await self._cancel_drain(queue_key)
        self._queues.pop(queue_key, None)

        record = await self._store.agents.get_queue(queue_key)
        memory_id = record.memory_id if record is not None else memory_id_for(queue_key)

        entries = await self._store.indices.delete_by_queue(queue_key)
        snapshots = await self._store.snapshots.delete_memory(memory_id)
        deleted = await self._store.agents.delete_queue(queue_key)

        if deleted:
            logger.info(
                "[%s] Deleted run (%d index entries, %d snapshots)", queue_key, entries, snapshots,
            )
        return deleted

    async def get_snapshot(self, memory_id: str, version: int) -> MemorySnapshot:
        snapshot = await self._store.snapshots.get(memory_id, version)
        if snapshot is None:
            raise NotFoundError(f"Snapshot {memory_id}@{version} not found")
        return snapshot

    async def list_snapshots(self, memory_id: str) -> list[MemorySnapshot]:
        return await self._store.snapshots.list(memory_id)

    async def latest_snapshot(self, memory_id: str, task_id: str | None = None) -> MemorySnapshot | None:
        """Newest snapshot of a memory, optionally only those tagged `task_id`."""
        if task_id is None:
            return await self._store.snapshots.latest(memory_id)
        return await self._store.snapshots.latest_for_task(memory_id, task_id)

    async def correct_index(
        self, entry_id: str, score_value: float, rationale: str | None = None,
    ) -> IndexEntry:
        entry = await self._store.indices.correct(entry_id, score_value, rationale)
        if entry is None:
            raise NotFoundError(f"Index entry {entry_id} not found")
        logger.info("[%s] Index entry corrected to %.3f", entry_id, entry.score_value)
        return entry

    async def recover(self) -> list[str]:
        """
        Re-drive every run a previous process left unfinished.

        A run with a task stuck in `processing` is restarted from its first
        stuck task. An `active` run whose remaining tasks are all `pending`
        is drained as it stands. Returns the keys of the recovered runs.
        """
        stuck = await self._store.agents.find_processing()
        for queue_key, task_ids in stuck.items():
            logger.warning("[%s] Task %s was processing at startup; restarting", queue_key, task_ids[0])
            await self.restart_from_task(queue_key, task_ids[0])

        recovered = list(stuck)
        for record in await self._store.agents.list_queues():
            if record.id in stuck or record.status != QueueStatus.ACTIVE:
                continue
            if not await self._store.agents.list_tasks(record.id, status=TaskStatus.PENDING):
                continue
            logger.warning("[%s] Run has pending tasks at startup; resuming drain", record.id)
            self._schedule(record.id)
            recovered.append(record.id)
        return recovered

    # -----------------------------------------------------------------------
    # Background Drains
    # -----------------------------------------------------------------------

    async def join(self, queue_key: str) -> None:
        """Wait for the run's current background drain, if any."""
        task = self._drains.get(queue_key)
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def shutdown(self) -> None:
        for queue_key in list(self._drains):
            await self._cancel_drain(queue_key)

    def _deps(self, record: AgentQueueRecord) -> WorkerDeps:
        return WorkerDeps(
            store=self._store,
            llm=self.llm,
            queue_id=record.id,
            writing_llm=self.writing_llm if record.agent_type == AgentType.DEEP_RESEARCH else None,
            articles_dir=self.articles_dir,
            preview_chars=self.preview_chars,
        )

    def _schedule(self, queue_key: str) -> None:
        previous = self._drains.get(queue_key)
        self._drains[queue_key] = asyncio.create_task(
            self._drive(queue_key, previous), name=f"drain-{queue_key}",
        )

    async def _drive(self, queue_key: str, previous: asyncio.Task | None) -> None:
        if previous is not None and not previous.done():
            with contextlib.suppress(asyncio.CancelledError):
                await previous
        try:
            queue = await self.get_queue(queue_key)
            state = await queue.drain()
            logger.info("[%s] Drain finished: %s", queue_key, state.value)
        except NotFoundError:
            logger.info("[%s] Run no longer exists; drain skipped", queue_key)
        except UnknownTaskTypeError as exc:
            logger.error("[%s] Run aborted: %s", queue_key, exc)
        except Exception:
            logger.exception("[%s] Drain failed", queue_key)

    async def _cancel_drain(self, queue_key: str) -> None:
        task = self._drains.pop(queue_key, None)
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
