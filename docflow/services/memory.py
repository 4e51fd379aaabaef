# =============================================================================
# Rolling Memory: Bounded, Checkpointed Context
# =============================================================================
#
# Carries state between the sequential tasks of one agent run so a worker
# does not have to re-read every earlier document.
#
#   append(text) ──▶ context += "\n" + text
#                     │
#                     ├─ len ≤ max ──────────────────────────────┐
#                     │                                          │
#                     └─ len > max ─▶ shrink                     │
#                         ├─ truncate: keep last `max` chars     │
#                         └─ compress: model summary (~max/2),   │
#                            then truncate as a backstop;        │
#                            on failure keep old context and     │
#                            truncate anyway                     │
#                                                                ▼
#                                            MemorySnapshot(task_id tag)
#
# INVARIANT: len(context) <= max_length after every append, whatever the
# strategy and whether or not the summariser answered.
#
# Snapshots are written through the store and never mutated. Restart
# rebuilds a RollingMemory from one of them with `restore()`, then
# `checkpoint()`s the rewound context so the store's latest snapshot
# always matches the live memory.
# =============================================================================

from __future__ import annotations

import logging

from docflow.db.models import MemorySnapshot, ShrinkMode
from docflow.db.store import MemorySnapshotCollection
from docflow.errors import UpstreamError
from docflow.services.llm import LLMProvider, ask_model

logger = logging.getLogger(__name__)

INITIATION_TAG = "initiation"
COMPLETION_TAG = "completion"
RESTART_TAG = "restart"

COMPRESS_SYSTEM_PROMPT = (
    "You condense working notes for an analyst. Keep every fact, figure, "
    "date and conclusion that later steps may need. Drop repetition and "
    "formatting. Reply with the condensed notes only."
)


class RollingMemory:
    """
    Append-only context buffer for one agent run.

    Args:
        memory_id: Key under which snapshots are stored.
        snapshots: Snapshot collection of the durable store.
        max_length: Hard cap on context length in characters.
        shrink_mode: Overflow strategy.
        llm: Provider used by the compress strategy.
        context: Initial context (e.g. restored from a snapshot).
    """

    def __init__(
        self,
        memory_id: str,
        snapshots: MemorySnapshotCollection,
        max_length: int,
        shrink_mode: ShrinkMode = ShrinkMode.COMPRESS,
        llm: LLMProvider | None = None,
        context: str = "",
    ) -> None:
        if max_length <= 0:
            raise ValueError("max_length must be positive")
        self.memory_id = memory_id
        self.max_length = max_length
        self.shrink_mode = ShrinkMode(shrink_mode)
        self._snapshots = snapshots
        self._llm = llm
        self._context = context[-max_length:] if context else ""

    @property
    def context(self) -> str:
        return self._context

    def restore(self, context: str) -> None:
        """Replace the context wholesale (restart-from-task)."""
        self._context = context[-self.max_length:] if context else ""

    async def append(self, text: str, task_id: str | None = None) -> MemorySnapshot:
        """
        Append `text`, shrink if needed, and checkpoint.

        Returns:
            The snapshot written for this append.
        """
        self._context = f"{self._context}\n{text}" if self._context else text
        if len(self._context) > self.max_length:
            await self._shrink()

        return await self.checkpoint(task_id)

    async def checkpoint(self, task_id: str | None = None) -> MemorySnapshot:
        """Persist the current context as a new snapshot."""
        return await self._snapshots.add(
            memory_id=self.memory_id,
            context=self._context,
            max_length=self.max_length,
            shrink_mode=self.shrink_mode,
            task_id=task_id,
        )

    async def _shrink(self) -> None:
        if self.shrink_mode == ShrinkMode.COMPRESS:
            await self._compress()
        self._truncate()

    def _truncate(self) -> None:
        if len(self._context) > self.max_length:
            self._context = self._context[-self.max_length:]

    async def _compress(self) -> None:
        if self._llm is None:
            logger.warning("Memory %s: no summariser configured, truncating", self.memory_id)
            return

        target = self.max_length // 2
        try:
            summary = await ask_model(
                self._llm,
                COMPRESS_SYSTEM_PROMPT,
                f"Condense the notes below to at most {target} characters.\n\n{self._context}",
                label="memory-compress",
            )
        except UpstreamError as exc:
            logger.warning(
                "Memory %s: compression failed (%s), falling back to truncate",
                self.memory_id, exc,
            )
            return

        logger.info(
            "Memory %s compressed: %d → %d chars", self.memory_id, len(self._context), len(summary),
        )
        self._context = summary
