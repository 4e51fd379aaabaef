# =============================================================================
# LangGraph Orchestrator: Building an Agent Run
# =============================================================================
#
# Every orchestrator kind runs the same graph; an AgentProfile supplies
# the per-kind differences (worker type, task id prefix, whether a fixed
# index name is requested, whether a trailing writing task is added).
#
# GRAPH TOPOLOGY:
#   START ──▶ collect_documents ──▶ intent ──▶ fan_out ──▶ END
#
#   collect_documents  completed document tasks with extracted text,
#                      sorted by best-known real date; none ⇒ validation
#                      error before anything is persisted
#   intent             reasoning model → taskName, intent, index name
#                      (fallbacks when the call fails or is unparseable)
#   fan_out            persist the run + initiation memory, then one task
#                      per document carrying the previous document's text
#                      (read now, at fan-out time), plus the writing task
#                      for deep research
#
# The graph only builds the run. Draining is the registry's job.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from docflow.agents import prompts
from docflow.agents.workers import PREVIOUS_UNAVAILABLE
from docflow.db.models import (
    AgentQueueRecord,
    AgentType,
    DocumentTask,
    QueueStatus,
    ShrinkMode,
    TaskStatus,
    utcnow,
)
from docflow.db.store import Store
from docflow.errors import InputValidationError, UpstreamError
from docflow.services.dates import best_known_date, best_known_timestamp
from docflow.services.llm import LLMProvider, ask_model
from docflow.services.memory import INITIATION_TAG, RollingMemory
from docflow.services.replies import parse_json_reply

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Per-Kind Profiles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentProfile:
    """What distinguishes one orchestrator kind from another."""

    label: str                     # display prefix for fallback names
    task_type: str                 # worker variant for per-document tasks
    task_prefix: str               # agent task id = f"{task_prefix}-{doc_id}"
    index_key: str | None = None   # intent reply key holding the fixed name
    with_history: bool = False     # attach earlier scores of the same index
    with_writing: bool = False     # append one trailing "writing" task


PROFILES: dict[AgentType, AgentProfile] = {
    AgentType.INDICES: AgentProfile(
        label="Indices",
        task_type="quantify",
        task_prefix="indices-quantify",
        index_key="indexName",
        with_history=True,
    ),
    AgentType.DEEP_RESEARCH: AgentProfile(
        label="Deep Research",
        task_type="research",
        task_prefix="research",
        with_writing=True,
    ),
    AgentType.CHANGE_STATEMENT: AgentProfile(
        label="Change Statement",
        task_type="change_statement",
        task_prefix="change-statement",
        index_key="analysisName",
    ),
}


def resolve_agent_type(agent_type: str | AgentType) -> AgentType:
    """
    Raises:
        InputValidationError: Not one of the orchestrator kinds.
    """
    try:
        return AgentType(agent_type)
    except ValueError:
        valid = ", ".join(kind.value for kind in AgentType)
        raise InputValidationError(f"Unknown agent type {agent_type!r}. Valid: {valid}") from None


# ---------------------------------------------------------------------------
# Graph State
# ---------------------------------------------------------------------------


class RunState(TypedDict, total=False):
    """
    State that flows through the graph.

    NOTE: `store`, `llm` and `memory` are live objects, not JSON. The graph
    is compiled without a checkpointer, so nothing tries to serialise them.
    """

    # --- Input (set by caller) ---
    agent_type: AgentType
    user_query: str
    store: Store
    llm: LLMProvider
    memory_max_length: int
    memory_shrink_mode: ShrinkMode
    history_limit: int

    # --- Intermediate ---
    documents: list[DocumentTask]
    task_name: str
    intent: str
    index_name: str | None

    # --- Output ---
    record: AgentQueueRecord
    memory: RollingMemory
    task_ids: list[str]


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def collect_documents_node(state: RunState) -> dict:
    completed = await state["store"].documents.list(status=TaskStatus.COMPLETED)
    usable = [task for task in completed if (task.result or {}).get("extracted_text_path")]
    if not usable:
        raise InputValidationError("No completed documents with extracted text to process")

    usable.sort(key=best_known_date)
    logger.info("Collected %d document(s) for %s run", len(usable), state["agent_type"].value)
    return {"documents": usable}


async def intent_node(state: RunState) -> dict:
    agent_type = state["agent_type"]
    profile = PROFILES[agent_type]
    query = state["user_query"]

    fallback = {
        "task_name": f"{profile.label}: {query[:30]}...",
        "intent": query,
        "index_name": f"{agent_type.value}_index" if profile.index_key else None,
    }

    try:
        reply = await ask_model(
            state["llm"],
            prompts.INTENT_SYSTEM_PROMPT,
            prompts.INTENT_PROMPTS[agent_type.value].format(query=query),
            label=f"intent:{agent_type.value}",
        )
    except UpstreamError as exc:
        logger.warning("Intent extraction failed (%s); using fallback names", exc)
        return fallback

    parsed = parse_json_reply(reply)
    if not parsed.ok:
        logger.warning("Intent reply unparseable (%s); using fallback names", parsed.error)
        return fallback

    data = parsed.data
    index_name = None
    if profile.index_key:
        index_name = str(data.get(profile.index_key) or "").strip() or fallback["index_name"]

    return {
        "task_name": str(data.get("taskName") or "").strip() or fallback["task_name"],
        "intent": str(data.get("intent") or "").strip() or fallback["intent"],
        "index_name": index_name,
    }


async def fan_out_node(state: RunState) -> dict:
    store = state["store"]
    agent_type = state["agent_type"]
    profile = PROFILES[agent_type]
    documents: list[DocumentTask] = state["documents"]

    queue_id = f"{agent_type.value}-{uuid.uuid4().hex[:12]}"
    record = await store.agents.create_queue(
        AgentQueueRecord(
            id=queue_id,
            name=state["task_name"],
            agent_type=agent_type,
            status=QueueStatus.ACTIVE,
            user_query=state["user_query"],
            intent=state["intent"],
            index_name=state.get("index_name"),
            memory_id=memory_id_for(queue_id),
            memory_max_length=state["memory_max_length"],
            memory_shrink_mode=state["memory_shrink_mode"],
            created_at=utcnow(),
        )
    )

    memory = RollingMemory(
        record.memory_id,
        store.snapshots,
        max_length=record.memory_max_length,
        shrink_mode=record.memory_shrink_mode,
        llm=state["llm"],
    )
    initiation = f"TASK INITIATION: {record.name}\nQuery: {record.user_query}\nIntent: {record.intent}"
    if record.index_name:
        initiation += f"\nIndex: {record.index_name}"
    await memory.append(initiation, task_id=INITIATION_TAG)

    task_ids: list[str] = []
    previous: DocumentTask | None = None
    for document in documents:
        timestamp = best_known_timestamp(document)
        payload: dict[str, Any] = {
            "question": record.user_query,
            "intent": record.intent,
            "index_name": record.index_name,
            "article_id": document.id,
            "filename": document.filename,
            "timestamp": timestamp,
            "extracted_text_path": document.result["extracted_text_path"],
            "previous_article": await _previous_reference(previous),
        }
        if profile.with_history and record.index_name:
            history = await store.indices.history(
                record.index_name,
                before=timestamp,
                exclude_queue_id=queue_id,
                limit=state["history_limit"],
            )
            payload["history"] = [f"{entry.timestamp}: {entry.score_value}" for entry in history]

        task_id = f"{profile.task_prefix}-{document.id}"
        await store.agents.add_task(
            queue_id,
            task_id,
            profile.task_type,
            payload,
            metadata={"document_id": document.id, "filename": document.filename, "timestamp": timestamp},
        )
        task_ids.append(task_id)
        previous = document

    if profile.with_writing:
        task_id = f"research-writing-{queue_id}"
        await store.agents.add_task(
            queue_id,
            task_id,
            "writing",
            {
                "question": record.user_query,
                "intent": record.intent,
                "article_id_map": {
                    document.id: {
                        "filename": document.filename,
                        "timestamp": best_known_timestamp(document),
                    }
                    for document in documents
                },
            },
            metadata={"document_count": len(documents)},
        )
        task_ids.append(task_id)

    logger.info("[%s] Run '%s' created with %d task(s)", queue_id, record.name, len(task_ids))
    return {"record": record, "memory": memory, "task_ids": task_ids}


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def memory_id_for(queue_id: str) -> str:
    return f"memory-{queue_id}"


async def _previous_reference(previous: DocumentTask | None) -> dict[str, Any] | None:
    if previous is None:
        return None
    try:
        text = await asyncio.to_thread(
            Path(previous.result["extracted_text_path"]).read_text, encoding="utf-8",
        )
    except OSError as exc:
        logger.warning("[%s] Previous article unreadable: %s", previous.id, exc)
        text = PREVIOUS_UNAVAILABLE
    return {
        "article_id": previous.id,
        "filename": previous.filename,
        "timestamp": best_known_timestamp(previous),
        "text": text or PREVIOUS_UNAVAILABLE,
    }


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------

_builder = StateGraph(RunState)
_builder.add_node("collect_documents", collect_documents_node)
_builder.add_node("intent", intent_node)
_builder.add_node("fan_out", fan_out_node)
_builder.add_edge(START, "collect_documents")
_builder.add_edge("collect_documents", "intent")
_builder.add_edge("intent", "fan_out")
_builder.add_edge("fan_out", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def build_run(
    agent_type: str | AgentType,
    user_query: str,
    *,
    store: Store,
    llm: LLMProvider,
    memory_max_length: int,
    memory_shrink_mode: ShrinkMode,
    history_limit: int = 20,
) -> RunState:
    """
    Run the graph and return its final state (record, memory, task ids).

    Raises:
        InputValidationError: Unknown agent type, empty query, or no
            completed documents.
    """
    kind = resolve_agent_type(agent_type)
    if not user_query or not user_query.strip():
        raise InputValidationError("User query must not be empty")

    return await graph.ainvoke(
        {
            "agent_type": kind,
            "user_query": user_query.strip(),
            "store": store,
            "llm": llm,
            "memory_max_length": memory_max_length,
            "memory_shrink_mode": ShrinkMode(memory_shrink_mode),
            "history_limit": history_limit,
        }
    )
