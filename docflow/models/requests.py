# =============================================================================
# API Request Models: Pydantic V2 Schemas
# =============================================================================
#
# Bodies accepted by the agents, ingestion and indices routers. Field
# constraints here produce automatic 422 responses; domain checks that
# need the store (unknown ids, locked ordering) happen in the routers.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, Field


class StartAgentRequest(BaseModel):
    """
    Request body for POST /agents: start an agent run over every
    completed document.

    Example:
        {
            "agent_type": "indices",
            "user_query": "How hawkish is the central bank's guidance?"
        }
    """

    agent_type: Literal["indices", "deep_research", "change_statement"] = Field(
        ...,
        description="Orchestrator kind to run",
        examples=["indices"],
    )
    user_query: str = Field(
        ...,
        min_length=1,
        max_length=4000,
        description="The question every per-document task works on",
        examples=["How hawkish is the central bank's guidance?"],
    )


class ReorderRequest(BaseModel):
    """Request body for POST /ingest/reorder."""

    ordered_ids: list[str] = Field(
        ...,
        min_length=1,
        description="Completed document task ids in the desired display order",
    )


class CorrectIndexRequest(BaseModel):
    """Request body for PATCH /indices/entries/{entry_id}."""

    score_value: float = Field(..., ge=-1.0, le=1.0, description="Corrected score in [-1, 1]")
    rationale: str | None = Field(
        default=None,
        max_length=4000,
        description="Optional replacement rationale",
    )
