# =============================================================================
# Database Models: SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────────┐   ┌──────────────────────┐   ┌─────────────────────┐
# │ document_tasks       │   │ agent_queues         │   │ agent_tasks         │
# ├──────────────────────┤   ├──────────────────────┤   ├─────────────────────┤
# │ id (PK)              │   │ id (PK)              │──▶│ queue_id (PK, FK)   │
# │ filename, source_path│   │ name, agent_type     │   │ id (PK)             │
# │ status               │   │ status, user_query   │   │ position, type      │
# │ display_order        │   │ intent, index_name   │   │ status, result      │
# │ sorting_timestamp    │   │ memory_id + limits   │   │ error               │
# │ result (json), error │   └──────────────────────┘   └─────────────────────┘
# └──────────────────────┘                                        │ 1:1
#                                                      ┌─────────────────────┐
# ┌──────────────────────┐   ┌──────────────────────┐  │ agent_task_payloads │
# │ memory_snapshots     │   │ index_entries        │  ├─────────────────────┤
# ├──────────────────────┤   ├──────────────────────┤  │ queue_id, task_id   │
# │ memory_id, version   │   │ id, index_name       │  │ payload (json)      │
# │ task_id (tag)        │   │ score_value, source  │  └─────────────────────┘
# │ context, limits      │   │ queue_id, task_id    │
# └──────────────────────┘   └──────────────────────┘
#
# ingestion_statistics holds a single row of process-wide counters.
#
# DESIGN DECISIONS:
#
# 1. Agent task payloads live in their own table. Payloads carry a full
#    predecessor document text, so listing tasks only touches agent_tasks.
#
# 2. Memory snapshots are insert-only. Nothing in the codebase updates a
#    snapshot row; restart reads them back by (memory_id, task_id).
#
# 3. JSON columns (`result`, `payload`, `quotes`) use the generic
#    sqlalchemy JSON type so the schema works on SQLite and PostgreSQL.
# =============================================================================

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all docflow tables."""

    pass


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class TaskStatus(str, enum.Enum):
    """
    Lifecycle of both document tasks and agent tasks.

    State machine:
        PENDING → PROCESSING → COMPLETED
                             → FAILED

    Any other edge (e.g. COMPLETED → PENDING) only happens through an
    explicit reset: regenerate, restart-from-task, or crash recovery.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def can_transition_to(self, target: TaskStatus) -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PROCESSING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class QueueStatus(str, enum.Enum):
    """Status of an agent run as a whole."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentType(str, enum.Enum):
    """The three orchestrator kinds."""

    INDICES = "indices"
    DEEP_RESEARCH = "deep_research"
    CHANGE_STATEMENT = "change_statement"


class ShrinkMode(str, enum.Enum):
    """Overflow strategy for rolling memory."""

    TRUNCATE = "truncate"
    COMPRESS = "compress"


class IndexSource(str, enum.Enum):
    """Where an index entry came from."""

    PDF_PROCESSING = "pdf_processing"        # analysis scores at ingestion
    INDICES_CREATION = "indices_creation"    # scoring worker in an agent run


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class DocumentTask(Base):
    """
    One ingested file's processing lifecycle record.

    Created on upload, mutated only by the ingestion queue, deleted only
    by an explicit remove/clear.
    """

    __tablename__ = "document_tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Original filename as uploaded (e.g., "Q3_statement.pdf")
    filename: Mapped[str] = mapped_column(String(500), nullable=False)

    # Where the raw upload lives on disk
    source_path: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus), nullable=False, default=TaskStatus.PENDING,
    )

    # Display position; only ever changed for completed tasks
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Date assigned by the auto-reorder step (ISO string, may be None)
    sorting_timestamp: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # summary, extracted_text_path, page_count, file_size, processed_at, metadata
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<DocumentTask(id={self.id!r}, filename={self.filename!r}, status={self.status.value})>"


class IngestionStatistics(Base):
    """Process-wide ingestion counters. Always exactly one row (id=1)."""

    __tablename__ = "ingestion_statistics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    total_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Manual reorder is refused until this is set
    auto_reorder_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


# ---------------------------------------------------------------------------
# Agent Runs
# ---------------------------------------------------------------------------


class AgentQueueRecord(Base):
    """
    One agent run: an orchestrator invoked against a user query.

    Everything needed to rebuild the in-memory queue after a restart is
    stored here, including the rolling memory's id and limits.
    """

    __tablename__ = "agent_queues"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    agent_type: Mapped[AgentType] = mapped_column(Enum(AgentType), nullable=False)
    status: Mapped[QueueStatus] = mapped_column(
        Enum(QueueStatus), nullable=False, default=QueueStatus.ACTIVE,
    )
    user_query: Mapped[str] = mapped_column(Text, nullable=False)
    intent: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Series name shared by every task (scoring and statement-change runs)
    index_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    memory_id: Mapped[str] = mapped_column(String(128), nullable=False)
    memory_max_length: Mapped[int] = mapped_column(Integer, nullable=False)
    memory_shrink_mode: Mapped[ShrinkMode] = mapped_column(Enum(ShrinkMode), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )


class AgentTaskRecord(Base):
    """Lightweight metadata of one task inside an agent run."""

    __tablename__ = "agent_tasks"

    queue_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("agent_queues.id", ondelete="CASCADE"), primary_key=True,
    )
    id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Order within the run; drains walk tasks by ascending position
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    # Worker variant: "quantify", "research", "change_statement", "writing"
    type: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus), nullable=False, default=TaskStatus.PENDING,
    )

    # Small descriptive fields (document id, filename, timestamp)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )

    __table_args__ = (
        Index("ix_agent_tasks_queue_position", "queue_id", "position"),
    )


class AgentTaskPayload(Base):
    """Payload of one agent task, stored apart from the task metadata."""

    __tablename__ = "agent_task_payloads"

    queue_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    task_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        ForeignKeyConstraint(
            ["queue_id", "task_id"],
            ["agent_tasks.queue_id", "agent_tasks.id"],
            ondelete="CASCADE",
        ),
    )


# ---------------------------------------------------------------------------
# Memory & Derived Artifacts
# ---------------------------------------------------------------------------


class MemorySnapshot(Base):
    """
    Immutable checkpoint of a rolling memory's context.

    `version` is a millisecond timestamp, strictly increasing per memory_id.
    `task_id` tags the agent task whose append produced the snapshot
    ("initiation" / "completion" for run-level appends).
    """

    __tablename__ = "memory_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    memory_id: Mapped[str] = mapped_column(String(128), nullable=False)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False)
    task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    context: Mapped[str] = mapped_column(Text, nullable=False)
    max_length: Mapped[int] = mapped_column(Integer, nullable=False)
    shrink_mode: Mapped[ShrinkMode] = mapped_column(Enum(ShrinkMode), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )

    __table_args__ = (
        Index("ix_memory_snapshots_memory_version", "memory_id", "version", unique=True),
        Index("ix_memory_snapshots_memory_task", "memory_id", "task_id"),
    )


class IndexEntry(Base):
    """
    A named numeric score plus evidence, derived from one document.

    Immutable after creation except for an explicit user correction.
    """

    __tablename__ = "index_entries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    index_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    score_value: Mapped[float] = mapped_column(Float, nullable=False)

    # Owning run and task. queue_id is None for pdf_processing entries.
    queue_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    document_id: Mapped[str] = mapped_column(String(64), nullable=False)
    filename: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    # Best-known real-world date of the source document
    timestamp: Mapped[str | None] = mapped_column(String(64), nullable=True)

    quotes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    rationale: Mapped[str] = mapped_column(Text, nullable=False, default="")
    source: Mapped[IndexSource] = mapped_column(Enum(IndexSource), nullable=False)
    corrected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )
