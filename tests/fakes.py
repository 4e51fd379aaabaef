# =============================================================================
# Test Doubles: Scripted LLM, Stub Processor, Store Helpers
# =============================================================================
#
# Shared by the test modules. No API keys, network or PDF parsing needed:
#   - ScriptedLLM answers every call through a plain function of
#     (system, user) and records the calls it received
#   - StubProcessor "extracts" text by copying a UTF-8 file and reports a
#     configurable inferred date / failure per filename
#   - open_store() yields an initialised Store on a throwaway SQLite file
# =============================================================================

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from docflow.db.models import DocumentTask, TaskStatus, utcnow
from docflow.db.store import Store
from docflow.services.llm import LLMResponse
from docflow.services.processor import DocumentResult, validate_upload


class ScriptedLLM:
    """LLMProvider double whose replies come from `reply(system, user)`."""

    def __init__(self, reply: Callable[[str, str], str], model: str = "fake-model") -> None:
        self._reply = reply
        self.model = model
        self.calls: list[tuple[str, str]] = []

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        user = messages[-1]["content"]
        self.calls.append((system or "", user))
        content = self._reply(system or "", user)
        return LLMResponse(
            content=content,
            model=self.model,
            input_tokens=len(user) // 4,
            output_tokens=len(content) // 4,
        )

    def calls_with(self, system: str) -> list[str]:
        """User instructions of every call made with `system`."""
        return [user for call_system, user in self.calls if call_system == system]


class StubProcessor:
    """DocumentProcessor double that copies text files instead of parsing PDFs."""

    def __init__(
        self,
        output_dir: Path,
        dates: dict[str, str] | None = None,
        failing: set[str] | None = None,
        scores: dict[str, dict[str, float]] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.output_dir = output_dir
        self.dates = dates or {}
        self.failing = failing if failing is not None else set()
        self.scores = scores or {}
        self.delay = delay
        self.processed: list[str] = []

    def validate(self, source_path: str, filename: str) -> None:
        validate_upload(source_path, filename, [".md", ".pdf"])

    async def process(self, task: DocumentTask) -> DocumentResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.processed.append(task.id)
        if task.filename in self.failing:
            raise RuntimeError(f"cannot parse {task.filename}")

        text = Path(task.source_path).read_text(encoding="utf-8")
        self.output_dir.mkdir(parents=True, exist_ok=True)
        text_path = self.output_dir / f"{task.id}.md"
        text_path.write_text(text, encoding="utf-8")

        metadata: dict[str, Any] = {}
        if task.filename in self.dates:
            metadata["inferred_timestamp"] = self.dates[task.filename]
        if task.filename in self.scores:
            metadata["analysis_scores"] = self.scores[task.filename]

        return DocumentResult(
            summary=f"Summary of {task.filename}",
            extracted_text_path=str(text_path),
            page_count=1,
            file_size=len(text),
            processed_at=utcnow().isoformat(),
            metadata=metadata,
        )


@asynccontextmanager
async def open_store(url: str):
    store = Store.from_url(url)
    await store.init_schema()
    try:
        yield store
    finally:
        await store.close()


def write_document(directory: Path, filename: str, text: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_text(text, encoding="utf-8")
    return path


async def seed_completed(
    store: Store, directory: Path, documents: list[tuple[str, str | None, str]],
) -> dict[str, str]:
    """
    Insert already-processed documents, in the given upload order.

    Args:
        documents: (filename, inferred date or None, text) triples.

    Returns:
        filename → document task id.
    """
    ids: dict[str, str] = {}
    for filename, date, text in documents:
        path = write_document(directory, filename, text)
        task = await store.documents.add(filename, str(path))
        await store.documents.transition(task.id, TaskStatus.PROCESSING, started_at=utcnow())
        metadata = {"inferred_timestamp": date} if date else {}
        await store.documents.transition(
            task.id,
            TaskStatus.COMPLETED,
            completed_at=utcnow(),
            result={
                "summary": f"Summary of {filename}",
                "extracted_text_path": str(path),
                "page_count": 1,
                "file_size": len(text),
                "metadata": metadata,
            },
        )
        ids[filename] = task.id
    return ids


def as_json(**fields: Any) -> str:
    return json.dumps(fields)
