# =============================================================================
# API Dependencies: Runtime Access and Error Mapping
# =============================================================================
#
# The application lifespan builds one Runtime (store, ingestion queue,
# agent registry) and parks it on `app.state`. Route handlers receive it
# through `Depends(get_runtime)`, which tests can swap via
# `app.dependency_overrides`.
#
# ERROR MAPPING (domain error → HTTP status):
#   NotFoundError          404
#   OrderingLockedError    409
#   InputValidationError   400
#   PersistenceError       500
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request

from docflow.agents.registry import AgentRegistry
from docflow.config import Settings
from docflow.db.store import Store
from docflow.errors import (
    DocflowError,
    InputValidationError,
    NotFoundError,
    OrderingLockedError,
    PersistenceError,
)
from docflow.workers.ingestion import IngestionQueue

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Long-lived collaborators shared by every request."""

    store: Store
    ingestion: IngestionQueue
    registry: AgentRegistry
    settings: Settings


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return runtime


def http_error(exc: DocflowError) -> HTTPException:
    """Translate a domain error into the HTTPException a handler raises."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, OrderingLockedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InputValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PersistenceError):
        logger.error("Persistence failure: %s", exc)
        return HTTPException(status_code=500, detail="Storage error")
    logger.error("Unhandled domain error: %s", exc)
    return HTTPException(status_code=500, detail=str(exc))
