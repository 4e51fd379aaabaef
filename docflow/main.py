# =============================================================================
# FastAPI Application: Entry Point
# =============================================================================
#
# create_app() wires every long-lived collaborator inside the lifespan:
#
#   startup:  Store (schema created) → PdfDocumentProcessor
#             → IngestionQueue.start()   (recovers pending/processing tasks)
#             → AgentRegistry.recover()  (restarts runs left mid-task)
#   shutdown: registry drains cancelled → ingestion workers stopped
#             → engine disposed
#
# Everything is single-process: the ingestion pool and the agent drains
# are asyncio tasks on the server's event loop.
#
# USAGE:
#   uvicorn docflow.main:app --reload
# =============================================================================

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from docflow.agents.registry import AgentRegistry
from docflow.api.agents import router as agents_router
from docflow.api.deps import Runtime
from docflow.api.indices import router as indices_router
from docflow.api.ingest import router as ingest_router
from docflow.config import Settings, get_settings
from docflow.db.store import Store
from docflow.models.responses import HealthResponse
from docflow.services.llm import LLMProvider, get_llm_provider
from docflow.services.processor import DocumentProcessor, PdfDocumentProcessor
from docflow.workers.ingestion import IngestionQueue

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    llm: LLMProvider | None = None,
    writing_llm: LLMProvider | None = None,
    processor: DocumentProcessor | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration (default: the cached `get_settings()`).
        llm / writing_llm: Model providers (default: built from settings).
        processor: Document processor (default: PdfDocumentProcessor).
    """
    config = settings or get_settings()

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = Store.from_url(config.database_url, echo=config.debug)
        await store.init_schema()

        reasoning = llm or get_llm_provider()
        ingestion = IngestionQueue(
            store,
            processor or PdfDocumentProcessor(
                reasoning,
                extracted_text_dir=config.extracted_text_dir,
                supported_extensions=config.supported_extensions,
            ),
            concurrency=config.ingest_concurrency,
        )
        registry = AgentRegistry(
            store,
            reasoning,
            writing_llm,
            memory_max_length=config.memory_max_length,
            memory_shrink_mode=config.memory_shrink_mode,
            articles_dir=config.articles_dir if config.save_articles else None,
            preview_chars=config.memory_result_preview_chars,
            history_limit=config.history_limit,
        )

        recovered = await ingestion.start()
        restarted = await registry.recover()
        logger.info(
            "%s %s started (%d document task(s) re-queued, %d run(s) restarted)",
            config.app_name, config.app_version, len(recovered), len(restarted),
        )

        app.state.runtime = Runtime(store=store, ingestion=ingestion, registry=registry, settings=config)
        try:
            yield
        finally:
            app.state.runtime = None
            await registry.shutdown()
            await ingestion.stop()
            await store.close()
            logger.info("%s stopped", config.app_name)

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="Document ingestion and sequential multi-document LLM analysis.",
        lifespan=lifespan,
    )
    app.include_router(ingest_router)
    app.include_router(agents_router)
    app.include_router(indices_router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(version=config.app_version, service=config.app_name)

    return app


app = create_app()
