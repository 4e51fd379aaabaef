# =============================================================================
# Unit Tests: Rolling Memory
# =============================================================================
#
# The context must never exceed max_length after an append, whichever
# shrink mode is used and whether or not compression succeeds. Every
# append leaves one snapshot behind.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from docflow.db.models import ShrinkMode
from docflow.services.llm import LLMResponse
from docflow.services.memory import COMPRESS_SYSTEM_PROMPT, RollingMemory
from fakes import open_store


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _summariser(content: str) -> AsyncMock:
    mock_llm = AsyncMock()
    mock_llm.complete.return_value = LLMResponse(
        content=content, model="test-model", input_tokens=100, output_tokens=20,
    )
    return mock_llm


class TestRollingMemory:
    """Tests for RollingMemory.append()."""

    def test_rejects_non_positive_limit(self, db_url):
        async def scenario():
            async with open_store(db_url) as store:
                with pytest.raises(ValueError):
                    RollingMemory("memory-x", store.snapshots, max_length=0)

        _run(scenario())

    def test_truncate_keeps_the_newest_text(self, db_url):
        async def scenario():
            async with open_store(db_url) as store:
                memory = RollingMemory("memory-x", store.snapshots, max_length=50, shrink_mode=ShrinkMode.TRUNCATE)
                for n in range(10):
                    await memory.append(f"line {n} " + "x" * 10)
                    assert len(memory.context) <= 50
                assert memory.context.endswith("line 9 xxxxxxxxxx")

        _run(scenario())

    def test_compress_uses_the_summary(self, db_url):
        async def scenario():
            async with open_store(db_url) as store:
                mock_llm = _summariser("condensed notes")
                memory = RollingMemory(
                    "memory-x", store.snapshots, max_length=40, shrink_mode=ShrinkMode.COMPRESS, llm=mock_llm,
                )
                await memory.append("a" * 30)
                mock_llm.complete.assert_not_called()

                await memory.append("b" * 30)
                mock_llm.complete.assert_called_once()
                assert mock_llm.complete.call_args.kwargs["system"] == COMPRESS_SYSTEM_PROMPT
                assert memory.context == "condensed notes"

        _run(scenario())

    def test_overlong_summary_is_still_bounded(self, db_url):
        async def scenario():
            async with open_store(db_url) as store:
                memory = RollingMemory(
                    "memory-x", store.snapshots, max_length=40,
                    shrink_mode=ShrinkMode.COMPRESS, llm=_summariser("s" * 500),
                )
                await memory.append("a" * 100)
                assert len(memory.context) == 40

        _run(scenario())

    def test_failed_compression_falls_back_to_truncate(self, db_url):
        async def scenario():
            async with open_store(db_url) as store:
                mock_llm = AsyncMock()
                mock_llm.complete.side_effect = RuntimeError("model unavailable")
                memory = RollingMemory(
                    "memory-x", store.snapshots, max_length=40, shrink_mode=ShrinkMode.COMPRESS, llm=mock_llm,
                )
                snapshot = await memory.append("z" * 100)
                assert memory.context == "z" * 40
                assert snapshot.context == memory.context

        _run(scenario())

    def test_every_append_writes_a_tagged_snapshot(self, db_url):
        async def scenario():
            async with open_store(db_url) as store:
                memory = RollingMemory("memory-x", store.snapshots, max_length=1000, shrink_mode=ShrinkMode.TRUNCATE)
                await memory.append("first", task_id="t1")
                await memory.append("second", task_id="t2")

                snapshots = await store.snapshots.list("memory-x")
                assert [snapshot.task_id for snapshot in snapshots] == ["t1", "t2"]
                assert snapshots[-1].context == memory.context
                assert snapshots[-1].max_length == 1000
                assert snapshots[-1].shrink_mode == ShrinkMode.TRUNCATE
                assert snapshots[0].version < snapshots[1].version

        _run(scenario())

    def test_first_append_has_no_leading_separator(self, db_url):
        async def scenario():
            async with open_store(db_url) as store:
                memory = RollingMemory("memory-x", store.snapshots, max_length=1000, shrink_mode=ShrinkMode.TRUNCATE)
                first = await memory.append("TASK INITIATION: start", task_id="initiation")
                assert first.context == "TASK INITIATION: start"
                await memory.append("next")
                assert memory.context == "TASK INITIATION: start\nnext"

        _run(scenario())

    def test_checkpoint_persists_restored_context(self, db_url):
        async def scenario():
            async with open_store(db_url) as store:
                memory = RollingMemory("memory-x", store.snapshots, max_length=1000, shrink_mode=ShrinkMode.TRUNCATE)
                await memory.append("old result", task_id="t1")
                memory.restore("rewound")
                await memory.checkpoint(task_id="restart")

                latest = await store.snapshots.latest("memory-x")
                assert latest.context == "rewound"
                assert latest.task_id == "restart"

        _run(scenario())

    def test_restore_replaces_context(self, db_url):
        async def scenario():
            async with open_store(db_url) as store:
                memory = RollingMemory("memory-x", store.snapshots, max_length=10, shrink_mode=ShrinkMode.TRUNCATE)
                memory.restore("0123456789abc")
                assert memory.context == "3456789abc"

        _run(scenario())
