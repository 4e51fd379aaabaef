# =============================================================================
# Indices API: Scored Series
# =============================================================================
#
# ENDPOINTS:
#   GET   /indices                      list entries (filter by name or run)
#   GET   /indices/stats                distinct runs, tasks and entries
#   GET   /indices/entries/{entry_id}   one entry
#   PATCH /indices/entries/{entry_id}   user correction of score/rationale
# =============================================================================

from fastapi import APIRouter, Depends, HTTPException, Query

from docflow.api.deps import Runtime, get_runtime, http_error
from docflow.errors import DocflowError
from docflow.models.requests import CorrectIndexRequest
from docflow.models.responses import IndexEntryResponse, IndexStatsResponse

router = APIRouter(prefix="/indices", tags=["Indices"])


@router.get("", response_model=list[IndexEntryResponse], summary="List index entries")
async def list_entries(
    index_name: str | None = Query(default=None, description="Only entries of this index"),
    queue_key: str | None = Query(default=None, description="Only entries recorded by this run"),
    runtime: Runtime = Depends(get_runtime),
) -> list[IndexEntryResponse]:
    entries = await runtime.store.indices.list(index_name=index_name, queue_id=queue_key)
    return [IndexEntryResponse.model_validate(entry) for entry in entries]


@router.get("/stats", response_model=IndexStatsResponse, summary="Index entry counts")
async def index_stats(runtime: Runtime = Depends(get_runtime)) -> IndexStatsResponse:
    return IndexStatsResponse(**await runtime.store.indices.statistics())


@router.get("/entries/{entry_id}", response_model=IndexEntryResponse, summary="Get one index entry")
async def get_entry(entry_id: str, runtime: Runtime = Depends(get_runtime)) -> IndexEntryResponse:
    entry = await runtime.store.indices.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Index entry {entry_id} not found")
    return IndexEntryResponse.model_validate(entry)


@router.patch("/entries/{entry_id}", response_model=IndexEntryResponse, summary="Correct an index entry")
async def correct_entry(
    entry_id: str, body: CorrectIndexRequest, runtime: Runtime = Depends(get_runtime),
) -> IndexEntryResponse:
    try:
        entry = await runtime.registry.correct_index(entry_id, body.score_value, body.rationale)
    except DocflowError as exc:
        raise http_error(exc) from exc
    return IndexEntryResponse.model_validate(entry)
