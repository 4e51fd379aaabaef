# =============================================================================
# Workers: Payload + Memory → Structured Result
# =============================================================================
#
# One template, four variants. A variant is a plain async function that
# builds the instructions, calls the model and parses the reply. The
# Worker wraps every variant in the same steps:
#
#   1. read memory.context (snapshot at call time)
#   2. variant(job)  → WorkerResult (ok, or a typed failure)
#   3. memory.append("Task <id> completed with result: <json[:N]>", task_id)
#
# VARIANTS (selected by the agent task's `type`):
#   quantify          score in [-1, 1] + quotes + rationale → IndexEntry
#   research          answer + quotes + rationale
#   change_statement  change type + quotes + description
#   writing           title + markdown article over every research finding
#
# FAILURE POLICY:
# Upstream errors and unparseable replies come back as a failed
# WorkerResult ({"error", "raw"}); the queue marks only that task failed.
# A document whose extracted text cannot be read raises, and the queue
# records the exception the same way. An unknown `type` raises
# UnknownTaskTypeError, which aborts the drain.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from docflow.agents import prompts
from docflow.db.models import IndexEntry, IndexSource, TaskStatus, utcnow
from docflow.db.store import Store
from docflow.errors import UnknownTaskTypeError, UpstreamError
from docflow.services.llm import LLMProvider, ask_model
from docflow.services.memory import RollingMemory
from docflow.services.replies import parse_json_reply, parse_score

logger = logging.getLogger(__name__)

PREVIOUS_UNAVAILABLE = "Previous article could not be loaded."


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class WorkerResult:
    """What a worker hands back to its queue."""

    data: dict[str, Any]
    ok: bool = True
    error: str | None = None

    @classmethod
    def failed(cls, error: str, raw: str = "") -> WorkerResult:
        return cls(data={"error": error, "raw": raw}, ok=False, error=error)


@dataclass
class WorkerDeps:
    """Collaborators shared by every worker of one agent run."""

    store: Store
    llm: LLMProvider
    queue_id: str
    writing_llm: LLMProvider | None = None
    articles_dir: str | None = None
    preview_chars: int = 500


@dataclass
class WorkerJob:
    """Everything a variant may read for one task."""

    task_id: str
    payload: dict[str, Any]
    context: str
    deps: WorkerDeps


Variant = Callable[[WorkerJob], Awaitable[WorkerResult]]


# ---------------------------------------------------------------------------
# Shared Helpers
# ---------------------------------------------------------------------------


async def load_article(payload: dict[str, Any]) -> str:
    """
    Read the task's document text.

    Raises:
        OSError: The extracted text file cannot be read.
        ValueError: The payload has neither inline text nor a path.
    """
    if payload.get("article"):
        return payload["article"]
    path = payload.get("extracted_text_path")
    if not path:
        raise ValueError("Task payload has no extracted text")
    return await asyncio.to_thread(Path(path).read_text, encoding="utf-8")


def _previous_block(payload: dict[str, Any]) -> str:
    previous = payload.get("previous_article")
    if not previous:
        return ""
    return prompts.PREVIOUS_DOCUMENT_BLOCK.format(
        previous_timestamp=previous.get("timestamp") or "unknown date",
        previous_text=previous.get("text") or PREVIOUS_UNAVAILABLE,
    )


def _history_block(payload: dict[str, Any]) -> str:
    history = payload.get("history") or []
    if not history:
        return ""
    return prompts.HISTORY_BLOCK.format(history="\n".join(history))


def _common_fields(job: WorkerJob, article: str) -> dict[str, str]:
    payload = job.payload
    return {
        "question": payload.get("question", ""),
        "intent": payload.get("intent", ""),
        "timestamp": payload.get("timestamp") or "unknown",
        "article_id": payload.get("article_id", ""),
        "index_name": payload.get("index_name") or "",
        "article": article,
        "previous_block": _previous_block(payload),
        "context": job.context or "(none yet)",
    }


async def _ask_for_json(
    job: WorkerJob, system: str, user: str, required: tuple[str, ...],
) -> tuple[dict[str, Any] | None, WorkerResult | None]:
    """Call the model and parse; returns (data, None) or (None, failure)."""
    try:
        reply = await ask_model(job.deps.llm, system, user, label=f"{job.task_id}")
    except UpstreamError as exc:
        return None, WorkerResult.failed(str(exc))

    parsed = parse_json_reply(reply, required=required)
    if not parsed.ok:
        logger.warning("[%s] Unparseable reply: %s", job.task_id, parsed.error)
        return None, WorkerResult.failed(parsed.error or "Unparseable reply", parsed.raw)
    return parsed.data, None


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


async def quantify(job: WorkerJob) -> WorkerResult:
    """Score one document on the run's index and record an IndexEntry."""
    article = await load_article(job.payload)
    fields = _common_fields(job, article)
    user = prompts.SCORING_PROMPT.format(**fields, history_block=_history_block(job.payload))

    data, failure = await _ask_for_json(job, prompts.SCORING_SYSTEM_PROMPT, user, ("score_value",))
    if failure is not None:
        return failure

    score = parse_score(data["score_value"])
    if score is None:
        return WorkerResult.failed(
            f"score_value {data['score_value']!r} is not a decimal in [-1, 1]", json.dumps(data),
        )

    index_name = data.get("score_name") or job.payload.get("index_name") or "index"
    quotes = data.get("quotes") if isinstance(data.get("quotes"), list) else []
    rationale = str(data.get("rationale") or data.get("rational") or "")

    entry = await job.deps.store.indices.add(
        IndexEntry(
            index_name=index_name,
            score_value=score,
            queue_id=job.deps.queue_id,
            task_id=job.task_id,
            document_id=job.payload.get("article_id", ""),
            filename=job.payload.get("filename", ""),
            timestamp=job.payload.get("timestamp"),
            quotes=quotes,
            rationale=rationale,
            source=IndexSource.INDICES_CREATION,
        )
    )

    return WorkerResult(
        data={
            **data,
            "score_name": index_name,
            "score_value": score,
            "quotes": quotes,
            "rationale": rationale,
            "timestamp": job.payload.get("timestamp"),
            "index_entry_id": entry.id,
        }
    )


async def research(job: WorkerJob) -> WorkerResult:
    """Answer the run's question from one document."""
    article = await load_article(job.payload)
    user = prompts.RESEARCH_PROMPT.format(**_common_fields(job, article))

    data, failure = await _ask_for_json(job, prompts.RESEARCH_SYSTEM_PROMPT, user, ("answer",))
    if failure is not None:
        return failure
    return WorkerResult(data={**data, "timestamp": job.payload.get("timestamp")})


async def change_statement(job: WorkerJob) -> WorkerResult:
    """Describe how statements changed relative to the previous document."""
    article = await load_article(job.payload)
    user = prompts.CHANGE_STATEMENT_PROMPT.format(**_common_fields(job, article))

    data, failure = await _ask_for_json(
        job, prompts.CHANGE_STATEMENT_SYSTEM_PROMPT, user, ("change_type",),
    )
    if failure is not None:
        return failure

    data.setdefault("analysis_name", job.payload.get("index_name"))
    return WorkerResult(data={**data, "timestamp": job.payload.get("timestamp")})


async def write_article(job: WorkerJob) -> WorkerResult:
    """
    Synthesize the final narrative of a deep-research run.

    Reads every completed research result of the run, asks the reasoning
    model for a title and the writing model for the article, and
    optionally saves the article as markdown with a front-matter header.
    """
    payload = job.payload
    deps = job.deps
    sources_map: dict[str, dict[str, Any]] = payload.get("article_id_map") or {}

    findings = []
    for task in await deps.store.agents.list_tasks(deps.queue_id, status=TaskStatus.COMPLETED):
        if task.type == "research" and task.result:
            meta = task.metadata_ or {}
            findings.append(
                f"- [{meta.get('filename', task.id)} | {task.result.get('timestamp') or 'unknown'}] "
                f"{task.result.get('answer', '')}"
            )

    question = payload.get("question", "")
    intent = payload.get("intent", "")

    try:
        title = await ask_model(
            deps.llm,
            prompts.TITLE_SYSTEM_PROMPT,
            prompts.TITLE_PROMPT.format(question=question, intent=intent),
            max_tokens=64,
            label=f"{job.task_id}:title",
        )
        title = title.strip().strip('"').splitlines()[0]
    except UpstreamError as exc:
        logger.warning("[%s] Title generation failed (%s); using question", job.task_id, exc)
        title = question[:80] or "Research Article"

    sources = "\n".join(
        f"- {info.get('filename', doc_id)} ({info.get('timestamp') or 'unknown date'})"
        for doc_id, info in sources_map.items()
    )
    user = prompts.WRITING_PROMPT.format(
        title=title,
        question=question,
        intent=intent,
        sources=sources or "(none)",
        findings="\n".join(findings) or "(none)",
        context=job.context or "(none)",
    )

    try:
        article = await ask_model(
            deps.writing_llm or deps.llm,
            prompts.WRITING_SYSTEM_PROMPT,
            user,
            label=f"{job.task_id}:article",
        )
    except UpstreamError as exc:
        return WorkerResult.failed(str(exc))

    filepath = None
    if deps.articles_dir:
        filepath = await asyncio.to_thread(
            _save_article, Path(deps.articles_dir), title, article, deps.queue_id, question,
        )

    return WorkerResult(
        data={
            "title": title,
            "article": article,
            "filepath": filepath,
            "source_count": len(sources_map),
        }
    )


def _slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:60] or "article"


def _save_article(directory: Path, title: str, article: str, queue_id: str, question: str) -> str:
    now = utcnow()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{_slugify(title)}-{int(now.timestamp() * 1000)}.md"
    header = (
        "---\n"
        f"title: {json.dumps(title)}\n"
        f"generated_at: {now.isoformat()}\n"
        f"run_id: {queue_id}\n"
        f"user_query: {json.dumps(question)}\n"
        "---\n\n"
    )
    path.write_text(header + article, encoding="utf-8")
    return str(path)


# ---------------------------------------------------------------------------
# Variant Registry & Template
# ---------------------------------------------------------------------------

VARIANTS: dict[str, Variant] = {
    "quantify": quantify,
    "research": research,
    "change_statement": change_statement,
    "writing": write_article,
}


def get_variant(task_type: str) -> Variant:
    """
    Raises:
        UnknownTaskTypeError: `task_type` is not one of VARIANTS.
    """
    try:
        return VARIANTS[task_type]
    except KeyError:
        raise UnknownTaskTypeError(f"Unknown agent task type: {task_type!r}") from None


class Worker:
    """Runs one variant inside the shared read-context / append-result template."""

    def __init__(self, task_type: str, memory: RollingMemory, deps: WorkerDeps) -> None:
        self.task_type = task_type
        self._variant = get_variant(task_type)
        self._memory = memory
        self._deps = deps

    async def process(self, payload: dict[str, Any], task_id: str) -> WorkerResult:
        job = WorkerJob(
            task_id=task_id,
            payload=payload,
            context=self._memory.context,
            deps=self._deps,
        )
        logger.info("[%s] %s worker started", task_id, self.task_type)
        result = await self._variant(job)

        preview = json.dumps(result.data, ensure_ascii=False, default=str)[: self._deps.preview_chars]
        await self._memory.append(f"Task {task_id} completed with result: {preview}", task_id=task_id)

        if result.ok:
            logger.info("[%s] %s worker finished", task_id, self.task_type)
        else:
            logger.warning("[%s] %s worker failed: %s", task_id, self.task_type, result.error)
        return result
