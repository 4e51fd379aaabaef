# =============================================================================
# API Response Models: Pydantic V2 Schemas
# =============================================================================
#
# The shape of data coming OUT of the API. Most models read straight from
# the SQLAlchemy rows (`from_attributes=True`); agent tasks are assembled
# explicitly because their metadata column is mapped as `metadata_`.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from docflow.db.models import AgentType, IndexSource, QueueStatus, ShrinkMode, TaskStatus


class HealthResponse(BaseModel):
    """Response for GET /health: confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class DocumentTaskResponse(BaseModel):
    """One document task with its processing outcome."""

    id: str
    filename: str
    status: TaskStatus
    display_order: int
    sorting_timestamp: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class IngestResponse(BaseModel):
    """
    Response for POST /ingest: the upload was accepted and queued.

    Poll GET /ingest/tasks/{task_id} until status is completed or failed.
    """

    task_id: str = Field(description="Id of the created document task")
    filename: str
    status: str = Field(default="pending")
    message: str = Field(default="Document uploaded. Processing queued.")


class IngestStatsResponse(BaseModel):
    """Response for GET /ingest/stats: counters plus store-wide record counts."""

    total_processed: int
    total_failed: int
    last_processed_at: datetime | None = None
    auto_reorder_completed: bool
    concurrency: int
    paused: bool
    queued: int
    in_flight: int
    database: dict[str, Any] = Field(default_factory=dict)


class AutoReorderStatusResponse(BaseModel):
    auto_reorder_completed: bool


class ActionResponse(BaseModel):
    """Generic acknowledgement for operator actions."""

    ok: bool = True
    message: str = ""
    affected: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class AgentQueueResponse(BaseModel):
    """One agent run."""

    id: str
    name: str
    agent_type: AgentType
    status: QueueStatus
    user_query: str
    intent: str
    index_name: str | None = None
    memory_id: str
    memory_max_length: int
    memory_shrink_mode: ShrinkMode
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AgentTaskResponse(BaseModel):
    """One task of an agent run; `payload` is only filled on single-task reads."""

    queue_id: str
    id: str
    position: int
    type: str
    status: TaskStatus
    metadata: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    payload: dict[str, Any] | None = None

    @classmethod
    def from_record(cls, task: Any, payload: dict[str, Any] | None = None) -> AgentTaskResponse:
        return cls(
            queue_id=task.queue_id,
            id=task.id,
            position=task.position,
            type=task.type,
            status=task.status,
            metadata=task.metadata_ or {},
            result=task.result,
            error=task.error,
            created_at=task.created_at,
            updated_at=task.updated_at,
            payload=payload,
        )


class StartAgentResponse(BaseModel):
    """Response for POST /agents: the run was built and its drain started."""

    queue_key: str
    status: str = "active"
    message: str = "Agent run created. Tasks are processing in the background."


class FinishStateResponse(BaseModel):
    queue_key: str
    state: str


class MemorySnapshotResponse(BaseModel):
    """One immutable memory checkpoint."""

    memory_id: str
    version: int
    task_id: str | None = None
    context: str
    max_length: int
    shrink_mode: ShrinkMode
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Indices
# ---------------------------------------------------------------------------


class IndexEntryResponse(BaseModel):
    """One named score with its evidence."""

    id: str
    index_name: str
    score_value: float
    queue_id: str | None = None
    task_id: str | None = None
    document_id: str
    filename: str
    timestamp: str | None = None
    quotes: list[Any] = Field(default_factory=list)
    rationale: str
    source: IndexSource
    corrected: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IndexStatsResponse(BaseModel):
    total_agents: int
    total_tasks: int
    total_indices: int
