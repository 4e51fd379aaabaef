# =============================================================================
# Ingestion API: Document Upload, Status and Ordering
# =============================================================================
#
# ENDPOINTS:
#   POST   /ingest                          upload a file, queue it (202)
#   GET    /ingest/tasks                    list tasks in display order
#   GET    /ingest/tasks/{task_id}          poll one task
#   DELETE /ingest/tasks/completed          clear every completed task
#   DELETE /ingest/tasks/{task_id}          remove one task
#   POST   /ingest/tasks/{task_id}/regenerate
#   POST   /ingest/pause | /ingest/resume
#   POST   /ingest/reorder                  manual order (409 until auto-reorder ran)
#   GET    /ingest/auto-reorder-status
#   GET    /ingest/stats
#
# DESIGN DECISION: 202 Accepted for POST /ingest. Processing happens on
# the in-process worker pool; the response only confirms the task was
# persisted and queued.
# =============================================================================

import asyncio
import logging
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile

from docflow.api.deps import Runtime, get_runtime, http_error
from docflow.db.models import TaskStatus
from docflow.errors import DocflowError
from docflow.models.requests import ReorderRequest
from docflow.models.responses import (
    ActionResponse,
    AutoReorderStatusResponse,
    DocumentTaskResponse,
    IngestResponse,
    IngestStatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ingest", tags=["Ingestion"])


# ---------------------------------------------------------------------------
# POST /ingest: Upload a document
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=IngestResponse,
    status_code=202,
    summary="Upload a document for processing",
    description=(
        "Upload a file to be extracted and summarised. Returns immediately "
        "with a task_id for polling."
    ),
)
async def upload_document(
    file: UploadFile = File(..., description="Document to ingest (PDF)"),
    runtime: Runtime = Depends(get_runtime),
) -> IngestResponse:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Uploaded file has no name.")

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    # Prefix with the task id so two uploads of "report.pdf" never collide
    task_id = uuid.uuid4().hex
    upload_dir = Path(runtime.settings.upload_dir)
    file_path = upload_dir / f"{task_id}_{Path(file.filename).name}"
    await asyncio.to_thread(_save_upload, file_path, content)

    try:
        task = await runtime.ingestion.add_task(file.filename, str(file_path), task_id=task_id)
    except DocflowError as exc:
        file_path.unlink(missing_ok=True)
        raise http_error(exc) from exc

    logger.info("Saved upload: %s (%d bytes) → %s", file.filename, len(content), file_path)
    return IngestResponse(
        task_id=task.id,
        filename=task.filename,
        message=f"Document '{task.filename}' uploaded. Processing queued.",
    )


def _save_upload(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


# ---------------------------------------------------------------------------
# Task Status
# ---------------------------------------------------------------------------


@router.get("/tasks", response_model=list[DocumentTaskResponse], summary="List document tasks")
async def list_tasks(
    status: TaskStatus | None = Query(default=None, description="Filter by status"),
    runtime: Runtime = Depends(get_runtime),
) -> list[DocumentTaskResponse]:
    tasks = await runtime.ingestion.list_tasks(status=status)
    return [DocumentTaskResponse.model_validate(task) for task in tasks]


@router.get("/tasks/{task_id}", response_model=DocumentTaskResponse, summary="Get one document task")
async def get_task(task_id: str, runtime: Runtime = Depends(get_runtime)) -> DocumentTaskResponse:
    task = await runtime.ingestion.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return DocumentTaskResponse.model_validate(task)


# Declared before /tasks/{task_id} so "completed" is not read as an id
@router.delete("/tasks/completed", response_model=ActionResponse, summary="Clear completed tasks")
async def clear_completed(runtime: Runtime = Depends(get_runtime)) -> ActionResponse:
    count = await runtime.ingestion.clear_completed()
    return ActionResponse(message=f"Cleared {count} completed task(s)")


@router.delete("/tasks/{task_id}", response_model=ActionResponse, summary="Remove a document task")
async def remove_task(task_id: str, runtime: Runtime = Depends(get_runtime)) -> ActionResponse:
    if not await runtime.ingestion.remove(task_id):
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return ActionResponse(message=f"Task {task_id} removed", affected=[task_id])


@router.post(
    "/tasks/{task_id}/regenerate",
    response_model=DocumentTaskResponse,
    status_code=202,
    summary="Re-process a completed or failed task",
)
async def regenerate_task(task_id: str, runtime: Runtime = Depends(get_runtime)) -> DocumentTaskResponse:
    existing = await runtime.ingestion.get_task(task_id)
    if existing is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    task = await runtime.ingestion.regenerate(task_id)
    if task is None:
        raise HTTPException(
            status_code=400,
            detail=f"Task {task_id} is {existing.status.value}; only completed or failed tasks can be regenerated",
        )
    return DocumentTaskResponse.model_validate(task)


# ---------------------------------------------------------------------------
# Queue Control
# ---------------------------------------------------------------------------


@router.post("/pause", response_model=ActionResponse, summary="Stop starting new tasks")
async def pause(runtime: Runtime = Depends(get_runtime)) -> ActionResponse:
    runtime.ingestion.pause()
    return ActionResponse(message="Ingestion paused")


@router.post("/resume", response_model=ActionResponse, summary="Resume processing")
async def resume(runtime: Runtime = Depends(get_runtime)) -> ActionResponse:
    runtime.ingestion.resume()
    return ActionResponse(message="Ingestion resumed")


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


@router.post("/reorder", response_model=ActionResponse, summary="Manually reorder completed tasks")
async def reorder(body: ReorderRequest, runtime: Runtime = Depends(get_runtime)) -> ActionResponse:
    try:
        accepted = await runtime.ingestion.reorder(body.ordered_ids)
    except DocflowError as exc:
        raise http_error(exc) from exc
    if not accepted:
        raise HTTPException(
            status_code=400,
            detail="Reorder rejected: every id must name a distinct completed task",
        )
    return ActionResponse(message="Order updated", affected=body.ordered_ids)


@router.get(
    "/auto-reorder-status",
    response_model=AutoReorderStatusResponse,
    summary="Whether the automatic date ordering has run",
)
async def auto_reorder_status(runtime: Runtime = Depends(get_runtime)) -> AutoReorderStatusResponse:
    return AutoReorderStatusResponse(auto_reorder_completed=await runtime.ingestion.auto_reorder_status())


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


@router.get("/stats", response_model=IngestStatsResponse, summary="Ingestion counters and record counts")
async def stats(runtime: Runtime = Depends(get_runtime)) -> IngestStatsResponse:
    counters = await runtime.ingestion.statistics()
    return IngestStatsResponse(**counters, database=await runtime.store.database_info())
