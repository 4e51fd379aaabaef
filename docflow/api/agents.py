# =============================================================================
# Agents API: Runs, Tasks, Operator Actions and Memory
# =============================================================================
#
# ENDPOINTS:
#   POST   /agents                                   start a run (202)
#   GET    /agents                                   list runs
#   GET    /agents/memory/{memory_id}                list snapshots
#   GET    /agents/memory/{memory_id}/{version}      one snapshot
#   GET    /agents/{queue_key}                       one run
#   DELETE /agents/{queue_key}                       delete run + derived data
#   GET    /agents/{queue_key}/tasks                 tasks in run order
#   GET    /agents/{queue_key}/tasks/{task_id}       one task with payload
#   POST   /agents/{queue_key}/tasks/{task_id}/restart
#   POST   /agents/{queue_key}/tasks/{task_id}/regenerate
#   POST   /agents/{queue_key}/check-finish
#   POST   /agents/{queue_key}/pause | /resume
#
# Runs drain in the background; every action returns as soon as the
# state change is persisted.
# =============================================================================

import logging

from fastapi import APIRouter, Depends

from docflow.api.deps import Runtime, get_runtime, http_error
from docflow.errors import DocflowError
from docflow.models.requests import StartAgentRequest
from docflow.models.responses import (
    ActionResponse,
    AgentQueueResponse,
    AgentTaskResponse,
    FinishStateResponse,
    MemorySnapshotResponse,
    StartAgentResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["Agents"])


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=StartAgentResponse,
    status_code=202,
    summary="Start an agent run over every completed document",
)
async def start_agent(body: StartAgentRequest, runtime: Runtime = Depends(get_runtime)) -> StartAgentResponse:
    try:
        queue_key = await runtime.registry.start_run(body.agent_type, body.user_query)
    except DocflowError as exc:
        raise http_error(exc) from exc
    return StartAgentResponse(queue_key=queue_key)


@router.get("", response_model=list[AgentQueueResponse], summary="List agent runs")
async def list_agents(runtime: Runtime = Depends(get_runtime)) -> list[AgentQueueResponse]:
    return [AgentQueueResponse.model_validate(record) for record in await runtime.registry.list_queues()]


# ---------------------------------------------------------------------------
# Memory Snapshots
# ---------------------------------------------------------------------------


@router.get(
    "/memory/{memory_id}",
    response_model=list[MemorySnapshotResponse],
    summary="List a memory's snapshots, oldest first",
)
async def list_snapshots(memory_id: str, runtime: Runtime = Depends(get_runtime)) -> list[MemorySnapshotResponse]:
    snapshots = await runtime.registry.list_snapshots(memory_id)
    return [MemorySnapshotResponse.model_validate(snapshot) for snapshot in snapshots]


@router.get(
    "/memory/{memory_id}/{version}",
    response_model=MemorySnapshotResponse,
    summary="Get one memory snapshot",
)
async def get_snapshot(
    memory_id: str, version: int, runtime: Runtime = Depends(get_runtime),
) -> MemorySnapshotResponse:
    try:
        snapshot = await runtime.registry.get_snapshot(memory_id, version)
    except DocflowError as exc:
        raise http_error(exc) from exc
    return MemorySnapshotResponse.model_validate(snapshot)


# ---------------------------------------------------------------------------
# One Run
# ---------------------------------------------------------------------------


@router.get("/{queue_key}", response_model=AgentQueueResponse, summary="Get one agent run")
async def get_agent(queue_key: str, runtime: Runtime = Depends(get_runtime)) -> AgentQueueResponse:
    try:
        record = await runtime.registry.get_record(queue_key)
    except DocflowError as exc:
        raise http_error(exc) from exc
    return AgentQueueResponse.model_validate(record)


@router.delete("/{queue_key}", response_model=ActionResponse, summary="Delete a run and its derived data")
async def delete_agent(queue_key: str, runtime: Runtime = Depends(get_runtime)) -> ActionResponse:
    deleted = await runtime.registry.delete_queue(queue_key)
    message = f"Run {queue_key} deleted" if deleted else f"Run {queue_key} did not exist"
    return ActionResponse(ok=deleted, message=message)


@router.get("/{queue_key}/tasks", response_model=list[AgentTaskResponse], summary="List a run's tasks")
async def list_agent_tasks(queue_key: str, runtime: Runtime = Depends(get_runtime)) -> list[AgentTaskResponse]:
    try:
        tasks = await runtime.registry.list_tasks(queue_key)
    except DocflowError as exc:
        raise http_error(exc) from exc
    return [AgentTaskResponse.from_record(task) for task in tasks]


@router.get(
    "/{queue_key}/tasks/{task_id}",
    response_model=AgentTaskResponse,
    summary="Get one task with its payload",
)
async def get_agent_task(
    queue_key: str, task_id: str, runtime: Runtime = Depends(get_runtime),
) -> AgentTaskResponse:
    try:
        task, payload = await runtime.registry.get_task(queue_key, task_id)
    except DocflowError as exc:
        raise http_error(exc) from exc
    return AgentTaskResponse.from_record(task, payload)


# ---------------------------------------------------------------------------
# Operator Actions
# ---------------------------------------------------------------------------


@router.post(
    "/{queue_key}/tasks/{task_id}/restart",
    response_model=ActionResponse,
    status_code=202,
    summary="Restore memory and re-run from this task onward",
)
async def restart_from_task(
    queue_key: str, task_id: str, runtime: Runtime = Depends(get_runtime),
) -> ActionResponse:
    try:
        reset_ids = await runtime.registry.restart_from_task(queue_key, task_id)
    except DocflowError as exc:
        raise http_error(exc) from exc
    return ActionResponse(message=f"Restarted from {task_id}", affected=reset_ids)


@router.post(
    "/{queue_key}/tasks/{task_id}/regenerate",
    response_model=AgentTaskResponse,
    status_code=202,
    summary="Re-run one task against the current memory",
)
async def regenerate_task(
    queue_key: str, task_id: str, runtime: Runtime = Depends(get_runtime),
) -> AgentTaskResponse:
    try:
        task = await runtime.registry.regenerate_task(queue_key, task_id)
    except DocflowError as exc:
        raise http_error(exc) from exc
    return AgentTaskResponse.from_record(task)


@router.post("/{queue_key}/check-finish", response_model=FinishStateResponse, summary="Evaluate run completion")
async def check_finish(queue_key: str, runtime: Runtime = Depends(get_runtime)) -> FinishStateResponse:
    try:
        state = await runtime.registry.check_finish(queue_key)
    except DocflowError as exc:
        raise http_error(exc) from exc
    return FinishStateResponse(queue_key=queue_key, state=state.value)


@router.post("/{queue_key}/pause", response_model=ActionResponse, summary="Stop the run after the current task")
async def pause_agent(queue_key: str, runtime: Runtime = Depends(get_runtime)) -> ActionResponse:
    try:
        await runtime.registry.pause(queue_key)
    except DocflowError as exc:
        raise http_error(exc) from exc
    return ActionResponse(message=f"Run {queue_key} paused")


@router.post("/{queue_key}/resume", response_model=ActionResponse, summary="Resume a paused run")
async def resume_agent(queue_key: str, runtime: Runtime = Depends(get_runtime)) -> ActionResponse:
    try:
        await runtime.registry.resume(queue_key)
    except DocflowError as exc:
        raise http_error(exc) from exc
    return ActionResponse(message=f"Run {queue_key} resumed")
