# =============================================================================
# Agent Queue: Ordered, Sequential, Restartable
# =============================================================================
#
# One generic queue type serves every orchestrator kind. The differences
# between kinds live in the tasks' `type` (which worker variant runs) and
# in the payloads the orchestrator wrote, never in queue subclasses.
#
# TASK LIFECYCLE:
#   pending → processing → completed | failed
# Only an explicit operator action moves a task backwards:
#   regenerate(task)          one terminal task → pending
#   restart_from(task)        task and everything after it → pending,
#                             memory restored to what it was before task ran
#
# DRAIN:
# Tasks run strictly in list order, one at a time; each depends on the
# memory left by its predecessor. A failed task does not stop the drain.
# An unknown task type does: the run is marked failed and the error is
# raised to the caller.
#
# The queue object is a cache over the store. Everything it knows can be
# rebuilt from the AgentQueueRecord, its tasks and its memory snapshots.
# =============================================================================

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any

from docflow.agents.workers import Worker, WorkerDeps, get_variant
from docflow.db.models import AgentQueueRecord, AgentTaskRecord, QueueStatus, TaskStatus, utcnow
from docflow.db.store import Store
from docflow.errors import InputValidationError, NotFoundError, UnknownTaskTypeError
from docflow.services.memory import COMPLETION_TAG, INITIATION_TAG, RESTART_TAG, RollingMemory

logger = logging.getLogger(__name__)


class FinishState(str, enum.Enum):
    """Outcome of `ensuring_finish()`."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AgentQueue:
    """
    The ordered task list of one agent run.

    Args:
        record: Persisted run record.
        store: Durable store.
        memory: Rolling memory shared by the run's tasks.
        deps: Collaborators handed to every worker.
    """

    def __init__(
        self,
        record: AgentQueueRecord,
        store: Store,
        memory: RollingMemory,
        deps: WorkerDeps,
    ) -> None:
        self.record = record
        self.memory = memory
        self._store = store
        self._deps = deps
        self._drain_lock = asyncio.Lock()

    @property
    def id(self) -> str:
        return self.record.id

    # -----------------------------------------------------------------------
    # Tasks
    # -----------------------------------------------------------------------

    async def add_task(
        self,
        task_id: str,
        task_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> AgentTaskRecord:
        return await self._store.agents.add_task(self.id, task_id, task_type, payload, metadata)

    async def list_tasks(self) -> list[AgentTaskRecord]:
        return await self._store.agents.list_tasks(self.id)

    async def get_task(self, task_id: str) -> AgentTaskRecord | None:
        return await self._store.agents.get_task(self.id, task_id)

    async def get_payload(self, task_id: str) -> dict[str, Any] | None:
        return await self._store.agents.get_payload(self.id, task_id)

    # -----------------------------------------------------------------------
    # Drain
    # -----------------------------------------------------------------------

    async def drain(self) -> FinishState:
        """
        Run every pending task in list order, then evaluate the run.

        Raises:
            UnknownTaskTypeError: A task names a worker variant that does
                not exist. The run is marked failed before raising.
        """
        async with self._drain_lock:
            while True:
                record = await self._store.agents.get_queue(self.id)
                if record is None:
                    logger.info("[%s] Run deleted; stopping drain", self.id)
                    return FinishState.FAILED
                self.record = record
                if record.status == QueueStatus.PAUSED:
                    logger.info("[%s] Run paused; stopping drain", self.id)
                    return FinishState.RUNNING

                pending = await self._store.agents.list_tasks(self.id, status=TaskStatus.PENDING)
                if not pending:
                    break
                await self._run_task(pending[0])

        return await self.ensuring_finish()

    async def _run_task(self, task: AgentTaskRecord) -> None:
        try:
            get_variant(task.type)
        except UnknownTaskTypeError:
            logger.error("[%s] Task %s has unknown type %r; aborting run", self.id, task.id, task.type)
            await self._store.agents.update_queue(self.id, status=QueueStatus.FAILED)
            raise

        await self._store.agents.transition_task(self.id, task.id, TaskStatus.PROCESSING)
        payload = await self.get_payload(task.id) or {}

        try:
            result = await Worker(task.type, self.memory, self._deps).process(payload, task.id)
        except Exception as exc:
            logger.exception("[%s] Task %s raised", self.id, task.id)
            await self._store.agents.transition_task(
                self.id, task.id, TaskStatus.FAILED, error=str(exc)[:1000],
            )
            return

        if result.ok:
            await self._store.agents.transition_task(
                self.id, task.id, TaskStatus.COMPLETED, result=result.data,
            )
        else:
            await self._store.agents.transition_task(
                self.id, task.id, TaskStatus.FAILED,
                result=result.data, error=(result.error or "Worker failed")[:1000],
            )

    async def ensuring_finish(self) -> FinishState:
        """
        All tasks completed ⇒ SUCCEEDED; any task failed ⇒ FAILED;
        otherwise RUNNING. Persists the run status to match.
        """
        tasks = await self.list_tasks()
        statuses = {task.status for task in tasks}

        if tasks and statuses == {TaskStatus.COMPLETED}:
            record = await self._store.agents.get_queue(self.id)
            if record is not None and record.status != QueueStatus.COMPLETED:
                await self.memory.append(
                    f"RUN COMPLETED: {record.name} finished {len(tasks)} task(s) at {utcnow().isoformat()}",
                    task_id=COMPLETION_TAG,
                )
                await self._store.agents.update_queue(self.id, status=QueueStatus.COMPLETED)
                logger.info("[%s] Run completed (%d tasks)", self.id, len(tasks))
            return FinishState.SUCCEEDED

        if TaskStatus.FAILED in statuses:
            await self._store.agents.update_queue(self.id, status=QueueStatus.FAILED)
            return FinishState.FAILED

        return FinishState.RUNNING

    # -----------------------------------------------------------------------
    # Operator Actions
    # -----------------------------------------------------------------------

    async def regenerate(self, task_id: str) -> AgentTaskRecord:
        """
        Reset one completed/failed task to `pending` so the next drain
        re-runs it against the current memory.

        Raises:
            NotFoundError: Unknown task id.
            InputValidationError: The task is still pending or processing.
        """
        task = await self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found in run {self.id}")
        if not task.status.is_terminal:
            raise InputValidationError(f"Task {task_id} is {task.status.value}; nothing to regenerate")

        await self._store.indices.delete_by_task(self.id, task_id)
        await self._store.agents.reset_tasks(self.id, [task_id])
        await self._store.agents.update_queue(self.id, status=QueueStatus.ACTIVE)
        logger.info("[%s] Task %s reset for regeneration", self.id, task_id)
        return await self.get_task(task_id)

    async def restart_from(self, task_id: str) -> list[str]:
        """
        Rewind the run to just before `task_id`.

        Memory is restored from the latest snapshot of the nearest earlier
        task that left one (or the initiation snapshot, or empty) and the
        restored context is checkpointed under the `restart` tag. The
        task, every task after it, and any task interrupted mid-run are
        reset to `pending`; their index entries are deleted.

        Returns:
            Ids of the reset tasks, in list order.

        Raises:
            NotFoundError: Unknown task id.
        """
        tasks = await self.list_tasks()
        position = next((i for i, task in enumerate(tasks) if task.id == task_id), None)
        if position is None:
            raise NotFoundError(f"Task {task_id} not found in run {self.id}")

        self.memory.restore(await self._context_before(tasks, position))
        await self.memory.checkpoint(task_id=RESTART_TAG)

        reset_ids = [
            task.id
            for i, task in enumerate(tasks)
            if i >= position or task.status == TaskStatus.PROCESSING
        ]
        for reset_id in reset_ids:
            await self._store.indices.delete_by_task(self.id, reset_id)
        await self._store.agents.reset_tasks(self.id, reset_ids)
        await self._store.agents.update_queue(self.id, status=QueueStatus.ACTIVE)

        logger.info(
            "[%s] Restarting from %s: %d task(s) reset, memory at %d chars",
            self.id, task_id, len(reset_ids), len(self.memory.context),
        )
        return reset_ids

    async def _context_before(self, tasks: list[AgentTaskRecord], position: int) -> str:
        snapshots = self._store.snapshots
        memory_id = self.memory.memory_id
        for earlier in reversed(tasks[:position]):
            snapshot = await snapshots.latest_for_task(memory_id, earlier.id)
            if snapshot is not None:
                return snapshot.context
        snapshot = await snapshots.latest_for_task(memory_id, INITIATION_TAG)
        return snapshot.context if snapshot is not None else ""
